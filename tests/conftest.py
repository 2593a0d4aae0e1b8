"""Pytest configuration and fixtures."""

import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Keep the developer's own config and environment out of the tests
for _key in [k for k in os.environ if k.startswith("POSTAL_CLERK_")]:
    del os.environ[_key]
os.environ["POSTAL_CLERK_CONFIG"] = "/nonexistent/postal-clerk/config.toml"


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Reset the cached settings between tests."""
    from postal_clerk.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def account(tmp_path: Path):
    """Resolved test account with inline passwords."""
    from postal_clerk.config import Account, Endpoint

    return Account(
        name="work",
        display_name="Test User",
        email="me@test.local",
        imap=Endpoint(
            host="imap.test.local", port=993, security="ssl", login="me@test.local", passwd="secret"
        ),
        smtp=Endpoint(
            host="smtp.test.local", port=465, security="ssl", login="me@test.local", passwd="secret"
        ),
        downloads_dir=tmp_path / "downloads",
    )


@pytest.fixture
def mock_imap_client() -> AsyncMock:
    """aioimaplib client double. Capability and IDLE-stop calls are synchronous."""
    client = AsyncMock()
    client.wait_hello_from_server.return_value = None
    client.login.return_value = ("OK", [b"LOGIN completed"])
    client.select.return_value = ("OK", [b"3 EXISTS", b"0 RECENT", b"[READ-WRITE] SELECT completed"])
    client.logout.return_value = ("OK", [b"LOGOUT completed"])
    for command in ("store", "copy", "move", "expunge", "append", "noop", "fetch", "uid"):
        getattr(client, command).return_value = ("OK", [f"{command.upper()} completed".encode()])
    client.search.return_value = ("OK", [b"", b"SEARCH completed"])
    client.uid_search.return_value = ("OK", [b"", b"SEARCH completed"])
    client.has_capability = MagicMock(return_value=True)
    client.idle_done = MagicMock()
    return client


@pytest.fixture
def sample_email_bytes():
    """Sample raw email bytes."""
    return b"""From: Alice Sender <alice@example.com>
To: me@test.local, bob@example.com
Cc: carol@example.com
Subject: Test Email
Date: Mon, 02 Jun 2025 10:30:00 +0000
Message-ID: <test-123@example.com>
Content-Type: text/plain

This is a test email body.
Second line.
"""


@pytest.fixture
def multipart_email_bytes():
    """Multipart email with an HTML alternative and a PDF attachment."""
    return b"""From: alice@example.com
To: me@test.local
Subject: Report
Date: Tue, 03 Jun 2025 08:00:00 +0000
Message-ID: <report-1@example.com>
MIME-Version: 1.0
Content-Type: multipart/mixed; boundary="XYZ"

--XYZ
Content-Type: multipart/alternative; boundary="ALT"

--ALT
Content-Type: text/plain; charset=utf-8

See attached.
--ALT
Content-Type: text/html; charset=utf-8

<p>See attached.</p>
--ALT--
--XYZ
Content-Type: application/pdf
Content-Disposition: attachment; filename="report.pdf"
Content-Transfer-Encoding: base64

JVBERi0xLjQKJcOkw7zDtsOf
--XYZ--
"""
