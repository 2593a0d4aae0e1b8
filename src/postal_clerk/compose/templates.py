"""Outgoing message templates for new messages, replies and forwards."""

from dataclasses import dataclass, field, replace
from email.utils import parseaddr
from enum import Enum

from postal_clerk.config import Account
from postal_clerk.exceptions import ParseError
from postal_clerk.models import Msg

QUOTE_PREFIX = "> "
SIGNATURE_SEPARATOR = "-- "
REPLY_PREFIX = "Re:"
FORWARD_PREFIX = "Fwd:"

REPLY_ATTRIBUTION = "On {date}, {sender} wrote:"

FORWARD_HEADER_TEMPLATE = """---------- Forwarded message ----------
From: {sender}
Date: {date}
Subject: {subject}
To: {to}
"""

# Headers shown in the editable text form, in order
EDITABLE_HEADERS = ("From", "To", "Cc", "Bcc", "Subject", "In-Reply-To", "References")


class TemplateKind(str, Enum):
    NEW = "new"
    REPLY = "reply"
    REPLY_ALL = "reply-all"
    FORWARD = "forward"


@dataclass
class Template:
    """A transient message prepared for editing and sending.

    Attributes:
        kind: How the template was derived.
        msg: The draft message.
        source_seq: Sequence number of the message replied to or forwarded.
    """

    kind: TemplateKind
    msg: Msg = field(default_factory=Msg)
    source_seq: int | None = None

    def render(self) -> str:
        """Render as editable text: headers, a blank line, then the body."""
        values = {
            "From": self.msg.from_addr,
            "To": ", ".join(self.msg.to),
            "Cc": ", ".join(self.msg.cc),
            "Bcc": ", ".join(self.msg.bcc),
            "Subject": self.msg.subject,
            "In-Reply-To": self.msg.in_reply_to,
            "References": " ".join(self.msg.references),
        }
        lines = [
            f"{name}: {value}"
            for name, value in values.items()
            if value or name in ("To", "Subject")
        ]
        return "\n".join(lines) + "\n\n" + (self.msg.body_plain or "")

    def with_text(self, text: str) -> "Template":
        """Return a copy whose headers and body come from edited ``text``.

        Kind, source message and attachments carry over.

        Raises:
            ParseError: If the text has no header block.
        """
        if not text.strip():
            raise ParseError("Empty message text", text)
        header_block, _, body = text.replace("\r\n", "\n").partition("\n\n")
        first_line = (header_block.splitlines() or [""])[0]
        if ":" not in first_line:
            raise ParseError("Message text must start with headers", first_line)

        edited = Msg.parse(header_block + "\n\n", headers_only=True)
        edited.body_plain = body
        edited.size = None
        edited.attachments = list(self.msg.attachments)
        return replace(self, msg=edited)


def prefix_subject(subject: str, prefix: str) -> str:
    """Add ``prefix`` unless the subject already starts with it (case-insensitive)."""
    stripped = subject.strip()
    if stripped.lower().startswith(prefix.lower()):
        return stripped
    return f"{prefix} {stripped}" if stripped else prefix


def quote_body(body: str) -> str:
    return "\n".join(f"{QUOTE_PREFIX}{line}" for line in body.splitlines())


def _address(value: str) -> str:
    return parseaddr(value)[1].lower()


def _with_signature(body: str, account: Account) -> str:
    if not account.signature:
        return body
    return f"{body}\n{SIGNATURE_SEPARATOR}\n{account.signature}"


def new_template(
    account: Account,
    *,
    to: list[str] | None = None,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    subject: str = "",
    body: str = "",
) -> Template:
    """Blank message from the account identity."""
    msg = Msg(
        from_addr=account.address,
        to=list(to or []),
        cc=list(cc or []),
        bcc=list(bcc or []),
        subject=subject,
        body_plain=_with_signature(body, account),
    )
    return Template(TemplateKind.NEW, msg)


def reply_template(account: Account, source: Msg, reply_all: bool = False) -> Template:
    """Reply to ``source``.

    A plain reply goes to the original sender. Reply-all also addresses the
    original To and Cc recipients, minus the account's own address. The
    original plain body is quoted line by line under an attribution line;
    a source without a decodable plain body yields the attribution only.
    """
    recipients = [source.from_addr] if source.from_addr else []
    if reply_all:
        own = account.email.lower()
        seen = {_address(r) for r in recipients}
        for candidate in source.to + source.cc:
            addr = _address(candidate)
            if addr and addr != own and addr not in seen:
                recipients.append(candidate)
                seen.add(addr)
        recipients = [r for r in recipients if _address(r) != own]

    references = list(source.references) or ([source.in_reply_to] if source.in_reply_to else [])
    if source.message_id and source.message_id not in references:
        references.append(source.message_id)

    attribution = REPLY_ATTRIBUTION.format(date=source.date_str, sender=source.from_addr or "unknown")
    body = f"\n{attribution}\n"
    if source.body_plain:
        body += quote_body(source.body_plain) + "\n"

    msg = Msg(
        from_addr=account.address,
        to=recipients,
        subject=prefix_subject(source.subject, REPLY_PREFIX),
        in_reply_to=source.message_id,
        references=references,
        body_plain=_with_signature(body, account),
    )
    kind = TemplateKind.REPLY_ALL if reply_all else TemplateKind.REPLY
    return Template(kind, msg, source_seq=source.seq)


def forward_template(account: Account, source: Msg, include_attachments: bool = False) -> Template:
    """Forward ``source`` with its body inline (not quoted).

    Attachments are carried over byte for byte only when
    ``include_attachments`` is set.
    """
    header = FORWARD_HEADER_TEMPLATE.format(
        sender=source.from_addr or "unknown",
        date=source.date_str,
        subject=source.subject,
        to=", ".join(source.to),
    )
    if source.cc:
        header += f"Cc: {', '.join(source.cc)}\n"
    body = f"\n{header}\n{source.body_plain or ''}"

    msg = Msg(
        from_addr=account.address,
        subject=prefix_subject(source.subject, FORWARD_PREFIX),
        body_plain=_with_signature(body, account),
        attachments=list(source.attachments) if include_attachments else [],
    )
    return Template(TemplateKind.FORWARD, msg, source_seq=source.seq)
