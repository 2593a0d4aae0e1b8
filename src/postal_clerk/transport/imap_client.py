"""Async IMAP mailbox session."""

import asyncio
import contextlib
import re
from enum import Enum
from typing import Any

import structlog
from aioimaplib import aioimaplib

from postal_clerk.config import Account
from postal_clerk.core.flags import Flag, FlagSet
from postal_clerk.core.ranges import SeqRange, format_range
from postal_clerk.exceptions import (
    ConnectionFailedError,
    ConnectionLostError,
    InvalidStateError,
    NotFoundError,
    PostalClerkError,
    ProtocolError,
)
from postal_clerk.models import Mailbox, Msg

logger = structlog.get_logger(__name__)

_FETCH_START = re.compile(r"^(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_LIST_LINE = re.compile(r'\(([^)]*)\)\s+(?:"([^"]*)"|NIL)\s+(.+)', re.IGNORECASE)
_EXISTS = re.compile(r"(\d+)\s+EXISTS", re.IGNORECASE)
_CRLF = re.compile(rb"\r?\n")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SELECTED = "selected"


class FetchDetail(str, Enum):
    """How much of each message a fetch retrieves."""

    SUMMARY = "summary"
    FULL = "full"


FETCH_ITEMS = {
    FetchDetail.SUMMARY: "(UID FLAGS RFC822.SIZE BODY.PEEK[HEADER])",
    FetchDetail.FULL: "(UID FLAGS RFC822.SIZE BODY.PEEK[])",
}

DELETED = FlagSet.of([Flag.DELETED.value])


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for IMAP commands if it needs quoting."""
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _decode(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _response_text(lines: list[Any]) -> str:
    return " ".join(_decode(line) for line in lines).strip()


class MailboxSession:
    """Async IMAP session owning exactly one aioimaplib connection.

    State moves Disconnected -> Connected -> Selected -> Disconnected.
    Every sequence-addressed operation requires a selected mailbox.
    Use as an async context manager so logout runs on every exit path::

        async with MailboxSession(account, "INBOX") as session:
            messages = await session.fetch(parse_range("1:10"), FetchDetail.SUMMARY)
    """

    # Timeout for IMAP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: Account, mailbox: str | None = None) -> None:
        self.account = account
        self.mailbox = mailbox or account.inbox_mailbox
        self._client: aioimaplib.IMAP4 | None = None
        self._state = SessionState.DISCONNECTED
        self._selected: str | None = None
        self._exists = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def selected_mailbox(self) -> str | None:
        return self._selected

    @property
    def exists(self) -> int:
        """Message count of the selected mailbox."""
        return self._exists

    async def connect(self) -> None:
        """Open and authenticate the connection.

        Raises:
            ConnectionFailedError: On network or authentication failure.
            ConfigurationError: If the password cannot be resolved.
        """
        endpoint = self.account.imap
        logger.info("imap_connecting", host=endpoint.host, port=endpoint.port)
        try:
            if endpoint.security == "ssl":
                self._client = aioimaplib.IMAP4_SSL(
                    host=endpoint.host, port=endpoint.port, timeout=self.TIMEOUT
                )
            else:
                self._client = aioimaplib.IMAP4(
                    host=endpoint.host, port=endpoint.port, timeout=self.TIMEOUT
                )
            await self._client.wait_hello_from_server()
            if endpoint.security == "starttls":
                await self._client.starttls()

            status, lines = await self._client.login(endpoint.login, endpoint.password())
        except PostalClerkError:
            self._drop()
            raise
        except Exception as e:
            self._drop()
            logger.error("imap_connection_failed", host=endpoint.host, error=str(e))
            raise ConnectionFailedError(
                f"IMAP connection to {endpoint.host}:{endpoint.port} failed: {e}"
            ) from e

        if status != "OK":
            self._drop()
            logger.error("imap_auth_failed", login=endpoint.login)
            raise ConnectionFailedError(
                f"IMAP authentication failed for {endpoint.login}: {_response_text(lines)}"
            )

        self._state = SessionState.CONNECTED
        logger.info("imap_connected", login=endpoint.login)

    async def logout(self) -> None:
        """Release the connection. Safe to call more than once."""
        if self._client is None:
            return
        client = self._client
        self._drop()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(client.logout(), timeout=self.TIMEOUT)
        logger.info("imap_logged_out")

    def _drop(self) -> None:
        self._client = None
        self._state = SessionState.DISCONNECTED
        self._selected = None
        self._exists = 0

    def _mark_lost(self) -> None:
        # Remember the selection so reconnect() can restore it
        if self._selected:
            self.mailbox = self._selected
        self._drop()

    async def reconnect(self) -> None:
        """Reopen the connection and reselect the previously selected mailbox."""
        mailbox = self._selected or self.mailbox
        await self.logout()
        await self.connect()
        await self.select(mailbox)

    async def __aenter__(self) -> "MailboxSession":
        await self.connect()
        try:
            await self.select(self.mailbox)
        except BaseException:
            await self.logout()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.logout()

    def _require_connected(self) -> None:
        if self._client is None or self._state == SessionState.DISCONNECTED:
            raise InvalidStateError("IMAP session is not connected")

    def _require_selected(self) -> None:
        self._require_connected()
        if self._state != SessionState.SELECTED:
            raise InvalidStateError("No mailbox selected")

    async def _command(self, name: str, *args: Any, **kwargs: Any) -> list[Any]:
        """Run an aioimaplib command and return its response lines.

        Raises:
            ConnectionLostError: If the connection drops or times out.
            ProtocolError: If the server answers anything but OK.
        """
        self._require_connected()
        try:
            status, lines = await getattr(self._client, name)(*args, **kwargs)
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as e:
            logger.error("imap_connection_lost", command=name, error=str(e))
            self._mark_lost()
            raise ConnectionLostError(f"IMAP connection lost during {name.upper()}: {e}") from e

        if status != "OK":
            logger.warning("imap_command_rejected", command=name, status=status)
            raise ProtocolError(f"{name.upper()} failed: {status} {_response_text(lines)}")
        return lines

    def _check_addressed(self, seq_range: SeqRange) -> None:
        """Fail before any mutation if a member of ``seq_range`` is absent."""
        self._require_selected()
        missing = [n for n in seq_range if n > self._exists]
        if missing:
            raise NotFoundError(
                f"Messages not found in {self._selected}: {format_range(SeqRange.of(missing))}"
            )

    def _has_capability(self, capability: str) -> bool:
        return bool(self._client is not None and self._client.has_capability(capability))

    async def select(self, mailbox: str | None = None) -> int:
        """Select a mailbox for subsequent sequence-addressed operations.

        Returns:
            The number of messages in the mailbox.

        Raises:
            NotFoundError: If the server refuses to select the mailbox.
        """
        self._require_connected()
        name = mailbox or self.mailbox
        try:
            lines = await self._command("select", quote_mailbox(name))
        except ProtocolError as e:
            raise NotFoundError(f"Cannot select mailbox '{name}': {e.message}") from e

        self._exists = 0
        for line in lines:
            match = _EXISTS.search(_decode(line))
            if match:
                self._exists = int(match.group(1))

        self._selected = name
        self._state = SessionState.SELECTED
        logger.debug("imap_selected", mailbox=name, exists=self._exists)
        return self._exists

    async def list_mailboxes(self) -> list[Mailbox]:
        self._require_selected()
        lines = await self._command("list", '""', "*")

        mailboxes = []
        for line in lines:
            match = _LIST_LINE.match(_decode(line).strip())
            if not match:
                continue
            attributes, delimiter, name = match.groups()
            name = name.strip()
            if name.startswith('"') and name.endswith('"'):
                name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
            mailboxes.append(Mailbox(name, delimiter, tuple(attributes.split())))
        return mailboxes

    async def search(self, query: str = "ALL") -> SeqRange:
        """Search the selected mailbox. An empty result is a valid answer."""
        self._require_selected()
        lines = await self._command("search", query)
        return SeqRange.of(self._numbers(lines))

    async def uids(self) -> set[int]:
        """UIDs of every message in the selected mailbox."""
        self._require_selected()
        lines = await self._command("uid_search", "ALL")
        return set(self._numbers(lines))

    @staticmethod
    def _numbers(lines: list[Any]) -> list[int]:
        # The last line is the tagged completion text
        payload = lines[:-1] if len(lines) > 1 else lines
        numbers = []
        for line in payload:
            numbers.extend(int(tok) for tok in _decode(line).split() if tok.isdigit())
        return numbers

    async def fetch(self, seq_range: SeqRange, detail: FetchDetail = FetchDetail.SUMMARY) -> list[Msg]:
        """Fetch messages by sequence number, in ascending sequence order."""
        self._require_selected()
        if not seq_range:
            return []
        lines = await self._command("fetch", seq_range.to_imap(), FETCH_ITEMS[detail])
        messages = self._parse_fetch(lines, headers_only=detail == FetchDetail.SUMMARY)
        return sorted(messages, key=lambda m: m.seq or 0)

    async def fetch_uids(self, uids: SeqRange, detail: FetchDetail = FetchDetail.SUMMARY) -> list[Msg]:
        """Fetch messages by UID, in ascending sequence order."""
        self._require_selected()
        if not uids:
            return []
        lines = await self._command("uid", "fetch", uids.to_imap(), FETCH_ITEMS[detail])
        messages = self._parse_fetch(lines, headers_only=detail == FetchDetail.SUMMARY)
        return sorted(messages, key=lambda m: m.seq or 0)

    async def fetch_one(self, seq: int) -> Msg:
        """Fetch one full message.

        Raises:
            NotFoundError: If ``seq`` is not in the mailbox.
        """
        self._require_selected()
        if seq < 1 or seq > self._exists:
            raise NotFoundError(f"Message {seq} not found in {self._selected}")
        messages = await self.fetch(SeqRange.of([seq]), FetchDetail.FULL)
        if not messages:
            raise NotFoundError(f"Message {seq} not found in {self._selected}")
        return messages[0]

    @staticmethod
    def _parse_fetch(lines: list[Any], headers_only: bool) -> list[Msg]:
        """Group FETCH response lines per message and parse them.

        aioimaplib hands literal data (the message or header block) over as
        a ``bytearray`` following the ``N FETCH (... {size}`` line.
        """
        records: list[dict[str, Any]] = []
        current: dict[str, Any] | None = None

        for item in lines:
            if isinstance(item, bytearray):
                if current is not None:
                    current["literal"] = bytes(item)
                continue
            text = _decode(item)
            match = _FETCH_START.match(text)
            if match:
                current = {"seq": int(match.group(1)), "text": text, "literal": None}
                records.append(current)
            elif current is not None:
                current["text"] += " " + text

        messages = []
        for record in records:
            text = record["text"]
            uid = re.search(r"UID\s+(\d+)", text, re.IGNORECASE)
            flags = re.search(r"FLAGS\s*\(([^)]*)\)", text, re.IGNORECASE)
            size = re.search(r"RFC822\.SIZE\s+(\d+)", text, re.IGNORECASE)
            kwargs = {
                "seq": record["seq"],
                "uid": int(uid.group(1)) if uid else None,
                "flags": FlagSet.from_imap(flags.group(1)) if flags else FlagSet(),
                "size": int(size.group(1)) if size else None,
            }
            if record["literal"] is not None:
                messages.append(Msg.parse(record["literal"], headers_only=headers_only, **kwargs))
            else:
                messages.append(Msg(**kwargs))
        return messages

    async def _store(self, seq_range: SeqRange, item: str, flags: FlagSet) -> None:
        self._check_addressed(seq_range)
        if not seq_range:
            return
        logger.debug("imap_store", range=seq_range.to_imap(), item=item, flags=str(flags))
        await self._command("store", seq_range.to_imap(), item, flags.to_imap())

    async def set_flags(self, seq_range: SeqRange, flags: FlagSet) -> None:
        """Replace the flag set of every addressed message."""
        await self._store(seq_range, "FLAGS", flags)

    async def add_flags(self, seq_range: SeqRange, flags: FlagSet) -> None:
        await self._store(seq_range, "+FLAGS", flags)

    async def remove_flags(self, seq_range: SeqRange, flags: FlagSet) -> None:
        await self._store(seq_range, "-FLAGS", flags)

    async def copy(self, seq_range: SeqRange, target: str) -> None:
        """Copy messages to ``target``. Nothing is copied if any member is absent."""
        self._check_addressed(seq_range)
        if not seq_range:
            return
        await self._command("copy", seq_range.to_imap(), quote_mailbox(target))
        logger.info("imap_copied", range=seq_range.to_imap(), target=target)

    async def move(self, seq_range: SeqRange, target: str) -> None:
        """Move messages to ``target``. Nothing is moved if any member is absent.

        Uses MOVE when the server supports it, otherwise COPY, flag Deleted
        and an expunge limited to the moved messages.
        """
        self._check_addressed(seq_range)
        if not seq_range:
            return
        message_set = seq_range.to_imap()
        if self._has_capability("MOVE"):
            await self._command("move", message_set, quote_mailbox(target))
        else:
            uids = await self._uids_of(seq_range)
            await self._command("copy", message_set, quote_mailbox(target))
            await self._command("store", message_set, "+FLAGS", DELETED.to_imap())
            await self._expunge_uids(uids)
        self._exists -= len(seq_range)
        logger.info("imap_moved", range=message_set, target=target)

    async def delete(self, seq_range: SeqRange) -> None:
        """Flag messages Deleted and expunge them.

        Other messages already flagged Deleted are left in place.
        """
        self._check_addressed(seq_range)
        if not seq_range:
            return
        uids = await self._uids_of(seq_range)
        await self._command("store", seq_range.to_imap(), "+FLAGS", DELETED.to_imap())
        await self._expunge_uids(uids)
        self._exists -= len(seq_range)
        logger.info("imap_deleted", range=seq_range.to_imap())

    async def _uids_of(self, seq_range: SeqRange) -> SeqRange:
        lines = await self._command("fetch", seq_range.to_imap(), "(UID)")
        uids = [msg.uid for msg in self._parse_fetch(lines, headers_only=True) if msg.uid]
        if len(uids) != len(seq_range):
            raise ProtocolError(f"Server returned {len(uids)} UIDs for {len(seq_range)} messages")
        return SeqRange.of(uids)

    async def _expunge_uids(self, uids: SeqRange) -> None:
        """Expunge exactly ``uids``.

        UID EXPUNGE (UIDPLUS) does this directly. Without it, messages
        flagged Deleted outside ``uids`` lose the flag for the duration of a
        plain EXPUNGE and get it back afterwards.
        """
        if self._has_capability("UIDPLUS"):
            await self._command("uid", "expunge", uids.to_imap())
            return

        lines = await self._command("uid_search", "DELETED")
        others = SeqRange.of(set(self._numbers(lines)) - set(uids))
        if others:
            await self._command("uid", "store", others.to_imap(), "-FLAGS", DELETED.to_imap())
        await self._command("expunge")
        if others:
            await self._command("uid", "store", others.to_imap(), "+FLAGS", DELETED.to_imap())

    async def save(self, target: str, msg: Msg, flags: FlagSet | None = None) -> None:
        """Append a message to ``target`` without delivering it."""
        self._require_selected()
        await self._command(
            "append",
            _CRLF.sub(b"\r\n", msg.as_bytes()),
            mailbox=quote_mailbox(target),
            flags=flags.to_imap() if flags else None,
        )
        logger.info("imap_saved", mailbox=target)

    async def idle(self, timeout: float) -> list[str]:
        """Wait up to ``timeout`` seconds for mailbox activity.

        Enters IDLE, waits for a server push, then leaves IDLE. Servers
        without IDLE are polled with NOOP after sleeping ``timeout``.

        Returns:
            Untagged lines pushed by the server, empty on keepalive timeout.

        Raises:
            ConnectionLostError: If the connection drops while waiting.
        """
        self._require_selected()

        if not self._has_capability("IDLE"):
            await asyncio.sleep(timeout)
            lines = await self._command("noop")
            pushed = [_decode(line) for line in lines[:-1]]
        else:
            try:
                idle_task = await self._client.idle_start()
                try:
                    push = await asyncio.wait_for(self._client.wait_server_push(), timeout=timeout)
                except asyncio.TimeoutError:
                    push = []
                except asyncio.CancelledError:
                    # Leave IDLE so logout can still be sent
                    self._client.idle_done()
                    raise
                self._client.idle_done()
                await asyncio.wait_for(idle_task, timeout=self.TIMEOUT)
            except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as e:
                logger.error("imap_idle_failed", error=str(e))
                self._mark_lost()
                raise ConnectionLostError(f"IMAP connection lost during IDLE: {e}") from e
            # aioimaplib answers with a sentinel string once IDLE is stopped
            pushed = [_decode(line) for line in push] if isinstance(push, list) else []

        for line in pushed:
            match = _EXISTS.search(line)
            if match:
                self._exists = int(match.group(1))
        if pushed:
            logger.debug("imap_idle_push", lines=pushed)
        return pushed
