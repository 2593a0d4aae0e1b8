"""
Pydantic Settings configuration for Postal Clerk.

Loads configuration from a TOML file (``~/.config/postal-clerk/config.toml``
by default) and from environment variables prefixed with ``POSTAL_CLERK_``.
Environment variables win over the file. Account tables are validated into
:class:`AccountConfig` and resolved into an immutable :class:`Account` for
the lifetime of one command.
"""

import os
import subprocess
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from postal_clerk.exceptions import ConfigurationError
from postal_clerk.models.message import format_address

DEFAULT_CONFIG_PATH = Path("~/.config/postal-clerk/config.toml")
CONFIG_PATH_ENV = "POSTAL_CLERK_CONFIG"

Security = Literal["ssl", "starttls", "plain"]


class AccountConfig(BaseModel):
    """One ``[accounts.<name>]`` table from the config file."""

    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    name: str | None = None
    default: bool = False
    signature: str | None = None
    downloads_dir: Path | None = None
    notify_cmd: str | None = None
    inbox_mailbox: str = Field("INBOX", min_length=1)
    sent_mailbox: str = Field("Sent", min_length=1)

    imap_host: str = Field(..., min_length=1)
    imap_port: int = Field(993, ge=1, le=65535)
    imap_security: Security = "ssl"
    imap_login: str | None = None
    imap_passwd: SecretStr | None = None
    imap_passwd_cmd: str | None = None

    smtp_host: str = Field(..., min_length=1)
    smtp_port: int = Field(465, ge=1, le=65535)
    smtp_security: Security = "ssl"
    smtp_login: str | None = None
    smtp_passwd: SecretStr | None = None
    smtp_passwd_cmd: str | None = None


class Endpoint(BaseModel):
    """Connection parameters for one protocol server."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    security: Security
    login: str
    passwd: SecretStr | None = None
    passwd_cmd: str | None = None

    def password(self) -> str:
        """Return the password, running the password command if needed.

        Resolved on demand so commands that never connect (templates) never
        run the command.

        Raises:
            ConfigurationError: If no password source is configured or the
                command fails.
        """
        if self.passwd is not None:
            return self.passwd.get_secret_value()
        if not self.passwd_cmd:
            raise ConfigurationError(f"No password configured for {self.login}@{self.host}")
        try:
            result = subprocess.run(
                self.passwd_cmd, shell=True, check=True, capture_output=True, text=True
            )
        except (OSError, subprocess.CalledProcessError) as e:
            raise ConfigurationError(f"Password command failed for {self.host}: {e}") from e
        return result.stdout.rstrip("\r\n")


class Account(BaseModel):
    """Resolved account identity. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    email: str
    inbox_mailbox: str = "INBOX"
    sent_mailbox: str = "Sent"
    imap: Endpoint
    smtp: Endpoint
    downloads_dir: Path
    notify_cmd: str = "notify-send"
    signature: str | None = None

    @property
    def address(self) -> str:
        """Formatted ``Name <email>`` address for From headers."""
        return format_address(self.display_name, self.email)


class Settings(BaseSettings):
    """Application settings loaded from the config file and environment."""

    # Global display name, used when an account does not set its own
    name: str = ""
    downloads_dir: Path = Path("~/Downloads")
    notify_cmd: str = "notify-send"
    signature: str | None = None
    # Seconds between IDLE re-issues for watch/notify
    idle_keepalive: int = Field(500, ge=1, le=29 * 60)

    accounts: dict[str, AccountConfig] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_prefix="POSTAL_CLERK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    def account(self, name: str | None = None) -> Account:
        """Select and resolve an account.

        Selection order: the explicit ``name``, then the account marked
        ``default``, then the only configured account.

        Raises:
            ConfigurationError: If no account matches.
        """
        if not self.accounts:
            raise ConfigurationError("No accounts configured")

        if name is not None:
            if name not in self.accounts:
                raise ConfigurationError(f"Unknown account '{name}'")
            key = name
        else:
            defaults = [k for k, acc in self.accounts.items() if acc.default]
            if defaults:
                key = defaults[0]
            elif len(self.accounts) == 1:
                key = next(iter(self.accounts))
            else:
                raise ConfigurationError("Several accounts configured and none is marked default")

        config = self.accounts[key]
        return Account(
            name=key,
            display_name=config.name or self.name,
            email=config.email,
            inbox_mailbox=config.inbox_mailbox,
            sent_mailbox=config.sent_mailbox,
            imap=Endpoint(
                host=config.imap_host,
                port=config.imap_port,
                security=config.imap_security,
                login=config.imap_login or config.email,
                passwd=config.imap_passwd,
                passwd_cmd=config.imap_passwd_cmd,
            ),
            smtp=Endpoint(
                host=config.smtp_host,
                port=config.smtp_port,
                security=config.smtp_security,
                login=config.smtp_login or config.email,
                passwd=config.smtp_passwd,
                passwd_cmd=config.smtp_passwd_cmd,
            ),
            downloads_dir=(config.downloads_dir or self.downloads_dir).expanduser(),
            notify_cmd=config.notify_cmd or self.notify_cmd,
            signature=config.signature if config.signature is not None else self.signature,
        )


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    """Pick the config file: explicit path, then $POSTAL_CLERK_CONFIG, then default."""
    raw = config_path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    return Path(raw).expanduser()


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings with the TOML source pointed at ``config_path``.

    Raises:
        ConfigurationError: If the file or environment holds invalid values.
    """
    toml_path = resolve_config_path(config_path)

    class FileSettings(Settings):
        model_config = SettingsConfigDict(toml_file=toml_path)

    try:
        return FileSettings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {toml_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Malformed configuration file {toml_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration {toml_path}: {e}") from e


@lru_cache
def get_settings(config_path: str | None = None) -> Settings:
    """Get cached settings instance.

    Uses lru_cache so one invocation parses the config file once.
    """
    return load_settings(config_path)
