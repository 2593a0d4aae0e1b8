"""Tests for the IMAP mailbox session."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from aioimaplib import aioimaplib

from postal_clerk.core.flags import parse_flags
from postal_clerk.core.ranges import parse_range
from postal_clerk.exceptions import (
    ConnectionFailedError,
    ConnectionLostError,
    InvalidStateError,
    NotFoundError,
    ProtocolError,
)
from postal_clerk.models import Msg
from postal_clerk.transport.imap_client import (
    FetchDetail,
    MailboxSession,
    SessionState,
    quote_mailbox,
)

HEADER = b"From: alice@example.com\r\nSubject: Hello\r\n\r\n"


@pytest.fixture
def imap_factory(mock_imap_client: AsyncMock):
    """Patch the SSL client class to hand out the mock client."""
    with patch(
        "postal_clerk.transport.imap_client.aioimaplib.IMAP4_SSL", return_value=mock_imap_client
    ) as factory:
        yield factory


async def open_session(account, mailbox: str = "INBOX") -> MailboxSession:
    session = MailboxSession(account, mailbox)
    await session.connect()
    await session.select()
    return session


# ==============================================================================
# Connection lifecycle
# ==============================================================================


class TestConnection:
    """Connect, select and logout."""

    @pytest.mark.asyncio
    async def test_context_manager_selects_and_logs_out(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        async with MailboxSession(account) as session:
            assert session.state == SessionState.SELECTED
            assert session.selected_mailbox == "INBOX"
            assert session.exists == 3

        mock_imap_client.login.assert_awaited_once_with("me@test.local", "secret")
        mock_imap_client.logout.assert_awaited_once()
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_logout_runs_when_body_raises(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        with pytest.raises(RuntimeError):
            async with MailboxSession(account):
                raise RuntimeError("boom")

        mock_imap_client.logout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, account, mock_imap_client, imap_factory) -> None:
        session = await open_session(account)

        await session.logout()
        await session.logout()

        mock_imap_client.logout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_login_raises_connection_failed(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.login.return_value = ("NO", [b"[AUTHENTICATIONFAILED] Invalid"])
        session = MailboxSession(account)

        with pytest.raises(ConnectionFailedError) as exc_info:
            await session.connect()

        assert "AUTHENTICATIONFAILED" in exc_info.value.message
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_network_failure_raises_connection_failed(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.wait_hello_from_server.side_effect = OSError("unreachable")

        with pytest.raises(ConnectionFailedError):
            await MailboxSession(account).connect()

    @pytest.mark.asyncio
    async def test_unknown_mailbox_raises_not_found(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.select.return_value = ("NO", [b"Mailbox doesn't exist"])

        with pytest.raises(NotFoundError):
            async with MailboxSession(account, "Nope"):
                pass

        mock_imap_client.logout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_operations_require_selected_mailbox(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = MailboxSession(account)
        with pytest.raises(InvalidStateError):
            await session.search()

        await session.connect()
        with pytest.raises(InvalidStateError):
            await session.fetch(parse_range("1"))

    @pytest.mark.asyncio
    async def test_starttls_uses_plain_client(self, account, mock_imap_client) -> None:
        endpoint = account.imap.model_copy(update={"security": "starttls", "port": 143})
        account = account.model_copy(update={"imap": endpoint})

        with patch(
            "postal_clerk.transport.imap_client.aioimaplib.IMAP4", return_value=mock_imap_client
        ) as factory:
            await MailboxSession(account).connect()

        factory.assert_called_once()
        mock_imap_client.starttls.assert_awaited_once()


# ==============================================================================
# Listing, searching and fetching
# ==============================================================================


class TestQueries:
    """Non-destructive mailbox operations."""

    @pytest.mark.asyncio
    async def test_list_mailboxes(self, account, mock_imap_client, imap_factory) -> None:
        mock_imap_client.list.return_value = (
            "OK",
            [
                b'(\\HasNoChildren) "/" INBOX',
                b'(\\HasNoChildren \\Sent) "/" "Sent Items"',
                b"LIST completed",
            ],
        )
        session = await open_session(account)

        mailboxes = await session.list_mailboxes()

        assert [m.name for m in mailboxes] == ["INBOX", "Sent Items"]
        assert mailboxes[1].delimiter == "/"
        assert "\\Sent" in mailboxes[1].attributes

    @pytest.mark.asyncio
    async def test_search_returns_range(self, account, mock_imap_client, imap_factory) -> None:
        mock_imap_client.search.return_value = ("OK", [b"5 1 3", b"SEARCH completed"])
        session = await open_session(account)

        result = await session.search("UNSEEN")

        assert list(result) == [1, 3, 5]
        mock_imap_client.search.assert_awaited_once_with("UNSEEN")

    @pytest.mark.asyncio
    async def test_empty_search_is_not_an_error(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account)
        assert not await session.search("FROM nobody")

    @pytest.mark.asyncio
    async def test_uids(self, account, mock_imap_client, imap_factory) -> None:
        mock_imap_client.uid_search.return_value = ("OK", [b"11 12 15", b"SEARCH completed"])
        session = await open_session(account)

        assert await session.uids() == {11, 12, 15}

    @pytest.mark.asyncio
    async def test_fetch_orders_by_sequence(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.fetch.return_value = (
            "OK",
            [
                b"3 FETCH (UID 13 FLAGS (\\Seen) RFC822.SIZE 120 BODY[HEADER] {44}",
                bytearray(HEADER),
                b")",
                b"1 FETCH (UID 11 FLAGS () RFC822.SIZE 100 BODY[HEADER] {44}",
                bytearray(HEADER),
                b")",
                b"FETCH completed",
            ],
        )
        session = await open_session(account)

        messages = await session.fetch(parse_range("3,1"), FetchDetail.SUMMARY)

        assert [m.seq for m in messages] == [1, 3]
        assert [m.uid for m in messages] == [11, 13]
        assert messages[1].size == 120
        assert "\\Seen" in messages[1].flags
        assert messages[0].subject == "Hello"
        assert messages[0].body_plain is None
        mock_imap_client.fetch.assert_awaited_once_with(
            "1,3", "(UID FLAGS RFC822.SIZE BODY.PEEK[HEADER])"
        )

    @pytest.mark.asyncio
    async def test_fetch_one_full_body(
        self, account, mock_imap_client, imap_factory, sample_email_bytes
    ) -> None:
        mock_imap_client.fetch.return_value = (
            "OK",
            [
                f"2 FETCH (UID 12 FLAGS () BODY[] {{{len(sample_email_bytes)}}}".encode(),
                bytearray(sample_email_bytes),
                b")",
                b"FETCH completed",
            ],
        )
        session = await open_session(account)

        msg = await session.fetch_one(2)

        assert msg.seq == 2
        assert msg.body_plain.startswith("This is a test email body.")
        assert msg.raw == sample_email_bytes

    @pytest.mark.asyncio
    async def test_fetch_one_absent_raises_not_found(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account)

        with pytest.raises(NotFoundError):
            await session.fetch_one(4)
        mock_imap_client.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_by_uid(self, account, mock_imap_client, imap_factory) -> None:
        session = await open_session(account)

        await session.fetch_uids(parse_range("11:12"))

        mock_imap_client.uid.assert_awaited_once_with(
            "fetch", "11:12", "(UID FLAGS RFC822.SIZE BODY.PEEK[HEADER])"
        )


# ==============================================================================
# Mutations
# ==============================================================================


class TestMutations:
    """Flag, copy, move, delete and save."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,item", [("set_flags", "FLAGS"), ("add_flags", "+FLAGS"), ("remove_flags", "-FLAGS")]
    )
    async def test_flag_operations(
        self, account, mock_imap_client, imap_factory, method: str, item: str
    ) -> None:
        session = await open_session(account)

        await getattr(session, method)(parse_range("1,3"), parse_flags("seen"))

        mock_imap_client.store.assert_awaited_once_with("1,3", item, "(\\Seen)")

    @pytest.mark.asyncio
    async def test_flag_absent_message_raises_not_found(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account)

        with pytest.raises(NotFoundError):
            await session.add_flags(parse_range("3:4"), parse_flags("seen"))
        mock_imap_client.store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_copy(self, account, mock_imap_client, imap_factory) -> None:
        session = await open_session(account)

        await session.copy(parse_range("1:2"), "Archive")

        mock_imap_client.copy.assert_awaited_once_with("1:2", "Archive")
        assert session.exists == 3

    @pytest.mark.asyncio
    async def test_move_uses_move_capability(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account)

        await session.move(parse_range("1:2"), "Sent Items")

        mock_imap_client.move.assert_awaited_once_with("1:2", '"Sent Items"')
        mock_imap_client.copy.assert_not_awaited()
        assert session.exists == 1

    @pytest.mark.asyncio
    async def test_move_falls_back_to_copy_and_expunge(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.has_capability.return_value = False
        mock_imap_client.fetch.return_value = ("OK", [b"2 FETCH (UID 12)", b"FETCH completed"])
        session = await open_session(account)

        await session.move(parse_range("2"), "Archive")

        mock_imap_client.fetch.assert_awaited_once_with("2", "(UID)")
        mock_imap_client.copy.assert_awaited_once_with("2", "Archive")
        mock_imap_client.store.assert_awaited_once_with("2", "+FLAGS", "(\\Deleted)")
        mock_imap_client.expunge.assert_awaited_once()
        mock_imap_client.move.assert_not_awaited()
        assert session.exists == 2

    @pytest.mark.asyncio
    async def test_move_is_all_or_nothing(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        """A range with an absent member mutates nothing."""
        session = await open_session(account)

        with pytest.raises(NotFoundError) as exc_info:
            await session.move(parse_range("2:5"), "Archive")

        assert "4:5" in exc_info.value.message
        mock_imap_client.move.assert_not_awaited()
        mock_imap_client.copy.assert_not_awaited()
        mock_imap_client.store.assert_not_awaited()
        mock_imap_client.expunge.assert_not_awaited()
        assert session.exists == 3

    @pytest.mark.asyncio
    async def test_copy_is_all_or_nothing(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account)

        with pytest.raises(NotFoundError):
            await session.copy(parse_range("1,9"), "Archive")
        mock_imap_client.copy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_flags_and_expunges_by_uid(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.fetch.return_value = ("OK", [b"3 FETCH (UID 13)", b"FETCH completed"])
        session = await open_session(account)

        await session.delete(parse_range("3"))

        mock_imap_client.store.assert_awaited_once_with("3", "+FLAGS", "(\\Deleted)")
        mock_imap_client.uid.assert_awaited_once_with("expunge", "13")
        mock_imap_client.expunge.assert_not_awaited()
        assert session.exists == 2

    @pytest.mark.asyncio
    async def test_delete_keeps_other_deleted_messages_without_uidplus(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        """Messages flagged Deleted elsewhere survive the expunge."""
        mock_imap_client.has_capability.side_effect = lambda name: name != "UIDPLUS"
        mock_imap_client.fetch.return_value = ("OK", [b"3 FETCH (UID 13)", b"FETCH completed"])
        mock_imap_client.uid_search.return_value = ("OK", [b"7 13", b"SEARCH completed"])
        calls = []
        mock_imap_client.uid.side_effect = lambda *args: calls.append(("uid", *args)) or (
            "OK", [b"UID completed"]
        )
        mock_imap_client.expunge.side_effect = lambda: calls.append(("expunge",)) or (
            "OK", [b"EXPUNGE completed"]
        )
        session = await open_session(account)

        await session.delete(parse_range("3"))

        mock_imap_client.uid_search.assert_awaited_once_with("DELETED")
        assert calls == [
            ("uid", "store", "7", "-FLAGS", "(\\Deleted)"),
            ("expunge",),
            ("uid", "store", "7", "+FLAGS", "(\\Deleted)"),
        ]
        assert session.exists == 2

    @pytest.mark.asyncio
    async def test_delete_without_uid_in_response_raises(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account)

        with pytest.raises(ProtocolError):
            await session.delete(parse_range("3"))
        mock_imap_client.store.assert_not_awaited()
        assert session.exists == 3

    @pytest.mark.asyncio
    async def test_save_appends_with_crlf(self, account, mock_imap_client, imap_factory) -> None:
        session = await open_session(account)

        await session.save("Sent", Msg(raw=b"Subject: x\n\nbody\n"), parse_flags("seen"))

        mock_imap_client.append.assert_awaited_once_with(
            b"Subject: x\r\n\r\nbody\r\n", mailbox="Sent", flags="(\\Seen)"
        )

    @pytest.mark.asyncio
    async def test_rejected_command_surfaces_server_text(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.copy.return_value = ("NO", [b"[TRYCREATE] No such mailbox"])
        session = await open_session(account)

        with pytest.raises(ProtocolError) as exc_info:
            await session.copy(parse_range("1"), "Missing")

        assert "[TRYCREATE] No such mailbox" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_drop_marks_session_lost(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.store.side_effect = aioimaplib.Abort("socket closed")
        session = await open_session(account, "Archive")

        with pytest.raises(ConnectionLostError):
            await session.add_flags(parse_range("1"), parse_flags("seen"))

        assert session.state == SessionState.DISCONNECTED
        assert session.mailbox == "Archive"

    @pytest.mark.asyncio
    async def test_reconnect_reselects_mailbox(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        session = await open_session(account, "Archive")

        await session.reconnect()

        assert session.state == SessionState.SELECTED
        assert session.selected_mailbox == "Archive"
        assert mock_imap_client.login.await_count == 2


# ==============================================================================
# IDLE
# ==============================================================================


class TestIdle:
    """Waiting for server pushes."""

    @staticmethod
    def finished_idle() -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.set_result(("OK", [b"IDLE terminated"]))
        return future

    @pytest.mark.asyncio
    async def test_push_updates_exists(self, account, mock_imap_client, imap_factory) -> None:
        mock_imap_client.idle_start.return_value = self.finished_idle()
        mock_imap_client.wait_server_push.return_value = [b"4 EXISTS"]
        session = await open_session(account)

        pushed = await session.idle(10)

        assert pushed == ["4 EXISTS"]
        assert session.exists == 4
        mock_imap_client.idle_done.assert_called_once()

    @pytest.mark.asyncio
    async def test_keepalive_timeout_returns_nothing(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.idle_start.return_value = self.finished_idle()
        mock_imap_client.wait_server_push.side_effect = asyncio.TimeoutError()
        session = await open_session(account)

        assert await session.idle(10) == []
        mock_imap_client.idle_done.assert_called_once()
        assert session.exists == 3

    @pytest.mark.asyncio
    async def test_no_idle_capability_polls_with_noop(
        self, account, mock_imap_client, imap_factory
    ) -> None:
        mock_imap_client.has_capability.return_value = False
        mock_imap_client.noop.return_value = ("OK", [b"5 EXISTS", b"NOOP completed"])
        session = await open_session(account)

        pushed = await session.idle(0)

        assert pushed == ["5 EXISTS"]
        assert session.exists == 5
        mock_imap_client.idle_start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_idle_connection_drop(self, account, mock_imap_client, imap_factory) -> None:
        mock_imap_client.idle_start.side_effect = OSError("reset")
        session = await open_session(account)

        with pytest.raises(ConnectionLostError):
            await session.idle(10)
        assert session.state == SessionState.DISCONNECTED


def test_quote_mailbox() -> None:
    assert quote_mailbox("INBOX") == "INBOX"
    assert quote_mailbox("Sent Items") == '"Sent Items"'
    assert quote_mailbox('a"b') == '"a\\"b"'
