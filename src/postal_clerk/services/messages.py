"""Message operations behind the CLI commands."""

import mimetypes
from pathlib import Path
from typing import Literal

import aiofiles
import aiofiles.os
import structlog

from postal_clerk.compose import Template, TemplateKind, forward_template, reply_template
from postal_clerk.config import Account
from postal_clerk.core.flags import Flag, FlagSet
from postal_clerk.core.ranges import SeqRange
from postal_clerk.exceptions import NotFoundError
from postal_clerk.models import Attachment, Mailbox, Msg
from postal_clerk.transport import DeliverySession, FetchDetail, MailboxSession

logger = structlog.get_logger(__name__)

SEEN = FlagSet.of([Flag.SEEN.value])
ANSWERED = FlagSet.of([Flag.ANSWERED.value])

MimeKind = Literal["plain", "html"]


def page_of(numbers: list[int], page_size: int, page: int) -> list[int]:
    """Slice one page from ``numbers``, newest (highest) first.

    Page 0 holds the most recent ``page_size`` numbers. A page past the end
    is empty.
    """
    if page_size < 1 or page < 0:
        return []
    newest_first = sorted(numbers, reverse=True)
    start = page * page_size
    return newest_first[start : start + page_size]


def _safe_filename(name: str, fallback: str) -> str:
    # Attachment names come from the sender; keep only the final component
    cleaned = Path(name.replace("\\", "/")).name.strip()
    return cleaned if cleaned not in ("", ".", "..") else fallback


async def load_attachments(paths: list[Path]) -> list[Attachment]:
    """Read local files into attachments, guessing their content type.

    Raises:
        NotFoundError: If a file cannot be read.
    """
    attachments = []
    for path in paths:
        path = Path(path).expanduser()
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise NotFoundError(f"Cannot read attachment {path}: {e}") from e
        content_type, _ = mimetypes.guess_type(path.name)
        attachments.append(Attachment(path.name, content_type or "application/octet-stream", data))
    return attachments


class MessageService:
    """Operations over one selected mailbox and the account's delivery server.

    Each method runs inside an already opened :class:`MailboxSession`; the
    :class:`DeliverySession` connects only if a message is sent.
    """

    def __init__(
        self,
        account: Account,
        session: MailboxSession,
        delivery: DeliverySession | None = None,
    ) -> None:
        self.account = account
        self.session = session
        self.delivery = delivery or DeliverySession(account)

    async def list_mailboxes(self) -> list[Mailbox]:
        return await self.session.list_mailboxes()

    async def list_page(self, page_size: int = 10, page: int = 0) -> list[Msg]:
        """One page of message summaries, newest first."""
        numbers = page_of(list(range(1, self.session.exists + 1)), page_size, page)
        return await self._fetch_newest_first(numbers)

    async def search_page(self, query: str, page_size: int = 10, page: int = 0) -> list[Msg]:
        """One page of search hits, newest first. No hits is an empty page."""
        hits = await self.session.search(query)
        return await self._fetch_newest_first(page_of(list(hits), page_size, page))

    async def _fetch_newest_first(self, numbers: list[int]) -> list[Msg]:
        if not numbers:
            return []
        messages = await self.session.fetch(SeqRange.of(numbers), FetchDetail.SUMMARY)
        return list(reversed(messages))

    async def read(self, seq: int, mime: MimeKind = "plain", raw: bool = False) -> str:
        """Return a message body, or its raw RFC 822 text, and mark it seen.

        A message without the requested part reads as an empty string.
        """
        msg = await self.session.fetch_one(seq)
        await self.session.add_flags(SeqRange.of([seq]), SEEN)
        if raw:
            return msg.as_bytes().decode("utf-8", errors="replace")
        body = msg.body_html if mime == "html" else msg.body_plain
        return body or ""

    async def download_attachments(self, seq: int, directory: Path | None = None) -> list[Path]:
        """Write every attachment of a message to ``directory``.

        Defaults to the account downloads directory.

        Returns:
            The written file paths, in attachment order.
        """
        msg = await self.session.fetch_one(seq)
        target = Path(directory or self.account.downloads_dir).expanduser()
        if not msg.attachments:
            return []

        await aiofiles.os.makedirs(target, exist_ok=True)
        written = []
        for index, attachment in enumerate(msg.attachments, start=1):
            path = target / _safe_filename(attachment.filename, f"attachment-{seq}-{index}")
            async with aiofiles.open(path, "wb") as f:
                await f.write(attachment.data)
            written.append(path)
            logger.info("attachment_saved", path=str(path), size=attachment.size)
        return written

    async def reply_template(self, seq: int, reply_all: bool = False) -> Template:
        source = await self.session.fetch_one(seq)
        return reply_template(self.account, source, reply_all=reply_all)

    async def forward_template(self, seq: int, include_attachments: bool = False) -> Template:
        source = await self.session.fetch_one(seq)
        return forward_template(self.account, source, include_attachments=include_attachments)

    async def send(self, template: Template, attachment_paths: list[Path] | None = None) -> Msg:
        """Deliver a template and file a copy in the sent mailbox.

        The copy keeps its Bcc header and carries the Seen flag. Sending a
        reply also flags its source message Answered.

        Returns:
            The sent message.
        """
        msg = template.msg
        if not msg.from_addr:
            msg.from_addr = self.account.address
        if attachment_paths:
            msg.attachments = msg.attachments + await load_attachments(attachment_paths)

        message = msg.to_email_message()
        sent_copy = Msg(raw=message.as_bytes())
        await self.delivery.send(message)

        await self.session.save(self.account.sent_mailbox, sent_copy, SEEN)
        if template.kind in (TemplateKind.REPLY, TemplateKind.REPLY_ALL) and template.source_seq:
            await self.session.add_flags(SeqRange.of([template.source_seq]), ANSWERED)
        logger.info("message_sent", kind=template.kind.value, recipients=len(msg.to + msg.cc + msg.bcc))
        return msg

    async def send_text(self, text: str) -> Msg:
        """Send a message given as editable text (headers, blank line, body)."""
        return await self.send(Template(TemplateKind.NEW).with_text(text))

    async def save(self, mailbox: str, text: str) -> None:
        """Append a raw message to ``mailbox`` without delivering it."""
        await self.session.save(mailbox, Msg(raw=text.encode("utf-8")))
