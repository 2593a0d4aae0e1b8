"""Async SMTP delivery session.

This module provides the outgoing side of a command: a session that owns
one aiosmtplib connection, opens it lazily on the first send, and closes
it when the command ends.
"""

from email.message import EmailMessage
from email.utils import getaddresses
from typing import TYPE_CHECKING

import aiosmtplib
import structlog

from postal_clerk.exceptions import ConnectionFailedError, DeliveryError, PostalClerkError
from postal_clerk.models import Msg

if TYPE_CHECKING:
    from postal_clerk.config import Account

logger = structlog.get_logger(__name__)


class DeliverySession:
    """Async SMTP client for sending composed messages.

    Connects on the first :meth:`send` using the account's delivery
    credentials. Use as an async context manager so the connection is
    closed on every exit path.

    Attributes:
        account: Account whose SMTP endpoint is used.
    """

    # Timeout for SMTP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: "Account") -> None:
        """Initialize the delivery session without connecting.

        Args:
            account: Account configuration with SMTP server details.
        """
        self.account = account
        self._client: aiosmtplib.SMTP | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self) -> None:
        """Connect and authenticate.

        Raises:
            ConnectionFailedError: If the server cannot be reached or
                refuses the credentials.
        """
        endpoint = self.account.smtp
        logger.info("smtp_connecting", host=endpoint.host, port=endpoint.port)
        client = aiosmtplib.SMTP(
            hostname=endpoint.host,
            port=endpoint.port,
            use_tls=endpoint.security == "ssl",
            start_tls=endpoint.security == "starttls",
            timeout=self.TIMEOUT,
        )
        try:
            await client.connect()
            await client.login(endpoint.login, endpoint.password())
        except PostalClerkError:
            client.close()
            raise
        except aiosmtplib.SMTPAuthenticationError as e:
            client.close()
            logger.error("smtp_auth_failed", login=endpoint.login, code=e.code)
            raise ConnectionFailedError(
                f"SMTP authentication failed for {endpoint.login}: {e.code} {e.message}"
            ) from e
        except (aiosmtplib.SMTPException, OSError) as e:
            client.close()
            logger.error("smtp_connection_failed", host=endpoint.host, error=str(e))
            raise ConnectionFailedError(
                f"SMTP connection to {endpoint.host}:{endpoint.port} failed: {e}"
            ) from e

        self._client = client
        logger.info("smtp_connected", login=endpoint.login)

    async def disconnect(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._client is None:
            return
        client = self._client
        self._client = None
        try:
            await client.quit()
        except Exception:
            client.close()
        logger.info("smtp_disconnected")

    async def send(self, msg: Msg | EmailMessage) -> None:
        """Deliver a message to all of its recipients.

        Envelope recipients are To, Cc and Bcc; the Bcc header itself is
        not transmitted.

        Raises:
            DeliveryError: If there are no recipients or the server refuses
                the message.
            ConnectionFailedError: If the lazy connect fails.
        """
        message = msg.to_email_message() if isinstance(msg, Msg) else msg
        recipients = [
            addr
            for _, addr in getaddresses(
                message.get_all("To", []) + message.get_all("Cc", []) + message.get_all("Bcc", [])
            )
            if addr
        ]
        if not recipients:
            raise DeliveryError("No recipients specified")

        _, sender = getaddresses([str(message.get("From", ""))])[0]
        del message["Bcc"]

        if not self.is_connected:
            await self.connect()

        try:
            errors, response = await self._client.send_message(
                message, sender=sender or self.account.email, recipients=recipients
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            logger.error("smtp_recipients_refused", count=len(e.recipients))
            raise DeliveryError(
                "All recipients refused: " + ", ".join(r.recipient for r in e.recipients)
            ) from e
        except aiosmtplib.SMTPResponseException as e:
            logger.error("smtp_send_failed", code=e.code, message=str(e.message))
            raise DeliveryError(f"Delivery failed: {e.code} {e.message}") from e
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("smtp_send_failed", error=str(e))
            raise DeliveryError(f"Delivery failed: {e}") from e

        if errors:
            # Partial refusal: some recipients were accepted
            logger.warning("smtp_recipients_partially_refused", refused=list(errors))
        logger.info("smtp_sent", recipients=len(recipients), response=response)

    async def __aenter__(self) -> "DeliverySession":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.disconnect()
