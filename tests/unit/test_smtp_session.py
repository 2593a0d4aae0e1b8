"""Tests for the SMTP delivery session."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import pytest

from postal_clerk.exceptions import ConnectionFailedError, DeliveryError
from postal_clerk.models import Msg
from postal_clerk.transport.smtp_client import DeliverySession


@pytest.fixture
def mock_smtp_client() -> AsyncMock:
    client = AsyncMock()
    client.is_connected = True
    client.close = MagicMock()
    client.send_message.return_value = ({}, "250 OK queued")
    return client


@pytest.fixture
def smtp_factory(mock_smtp_client: AsyncMock):
    with patch(
        "postal_clerk.transport.smtp_client.aiosmtplib.SMTP", return_value=mock_smtp_client
    ) as factory:
        yield factory


@pytest.fixture
def outgoing() -> Msg:
    return Msg(
        from_addr="Test User <me@test.local>",
        to=["alice@example.com"],
        cc=["Carol <carol@example.com>"],
        bcc=["hidden@example.com"],
        subject="Hello",
        body_plain="Hi\n",
    )


class TestDeliverySession:
    """Tests for DeliverySession."""

    @pytest.mark.asyncio
    async def test_send_connects_lazily(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        session = DeliverySession(account)
        smtp_factory.assert_not_called()

        await session.send(outgoing)

        smtp_factory.assert_called_once_with(
            hostname="smtp.test.local", port=465, use_tls=True, start_tls=False, timeout=30
        )
        mock_smtp_client.connect.assert_awaited_once()
        mock_smtp_client.login.assert_awaited_once_with("me@test.local", "secret")

    @pytest.mark.asyncio
    async def test_envelope_includes_bcc_but_header_does_not(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        await DeliverySession(account).send(outgoing)

        args, kwargs = mock_smtp_client.send_message.call_args
        message = args[0]
        assert kwargs["sender"] == "me@test.local"
        assert kwargs["recipients"] == [
            "alice@example.com",
            "carol@example.com",
            "hidden@example.com",
        ]
        assert message["Bcc"] is None
        assert message["Subject"] == "Hello"

    @pytest.mark.asyncio
    async def test_second_send_reuses_connection(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        session = DeliverySession(account)
        await session.send(outgoing)
        await session.send(outgoing)

        smtp_factory.assert_called_once()
        assert mock_smtp_client.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_no_recipients_rejected_before_connecting(
        self, account, mock_smtp_client, smtp_factory
    ) -> None:
        with pytest.raises(DeliveryError):
            await DeliverySession(account).send(Msg(from_addr="me@test.local", subject="x"))
        smtp_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_starttls_endpoint(self, account, outgoing, mock_smtp_client, smtp_factory) -> None:
        endpoint = account.smtp.model_copy(update={"security": "starttls", "port": 587})
        account = account.model_copy(update={"smtp": endpoint})

        await DeliverySession(account).send(outgoing)

        _, kwargs = smtp_factory.call_args
        assert kwargs["use_tls"] is False
        assert kwargs["start_tls"] is True
        assert kwargs["port"] == 587

    @pytest.mark.asyncio
    async def test_auth_failure_raises_connection_failed(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        mock_smtp_client.login.side_effect = aiosmtplib.SMTPAuthenticationError(535, "bad creds")
        session = DeliverySession(account)

        with pytest.raises(ConnectionFailedError):
            await session.send(outgoing)

        mock_smtp_client.close.assert_called_once()
        mock_smtp_client.send_message.assert_not_awaited()
        assert not session.is_connected

    @pytest.mark.asyncio
    async def test_unreachable_server(self, account, outgoing, mock_smtp_client, smtp_factory) -> None:
        mock_smtp_client.connect.side_effect = aiosmtplib.SMTPConnectError("refused")

        with pytest.raises(ConnectionFailedError):
            await DeliverySession(account).send(outgoing)

    @pytest.mark.asyncio
    async def test_all_recipients_refused(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        mock_smtp_client.send_message.side_effect = aiosmtplib.SMTPRecipientsRefused(
            [aiosmtplib.SMTPRecipientRefused(550, "no such user", "alice@example.com")]
        )

        with pytest.raises(DeliveryError) as exc_info:
            await DeliverySession(account).send(outgoing)
        assert "alice@example.com" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_rejected_message(self, account, outgoing, mock_smtp_client, smtp_factory) -> None:
        mock_smtp_client.send_message.side_effect = aiosmtplib.SMTPDataError(554, "spam")

        with pytest.raises(DeliveryError) as exc_info:
            await DeliverySession(account).send(outgoing)
        assert "554" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_partial_refusal_is_not_an_error(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        mock_smtp_client.send_message.return_value = (
            {"hidden@example.com": (550, "no such user")},
            "250 OK",
        )

        await DeliverySession(account).send(outgoing)

    @pytest.mark.asyncio
    async def test_context_manager_disconnects(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        async with DeliverySession(account) as session:
            await session.send(outgoing)

        mock_smtp_client.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_without_send_is_noop(self, account, smtp_factory) -> None:
        session = DeliverySession(account)
        await session.disconnect()
        await session.disconnect()
        smtp_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_quit_falls_back_to_close(
        self, account, outgoing, mock_smtp_client, smtp_factory
    ) -> None:
        mock_smtp_client.quit.side_effect = aiosmtplib.SMTPServerDisconnected("gone")
        session = DeliverySession(account)
        await session.send(outgoing)

        await session.disconnect()

        mock_smtp_client.close.assert_called_once()
