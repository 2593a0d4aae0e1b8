"""Message model: parsing fetched RFC 822 data and building outgoing MIME."""

from dataclasses import dataclass, field
from datetime import datetime
from email import message_from_bytes, message_from_string
from email.header import decode_header
from email.message import EmailMessage, Message
from email.utils import formatdate, getaddresses, make_msgid, parsedate_to_datetime
from typing import Any

from postal_clerk.core.flags import FlagSet

DEFAULT_MAILBOX = "INBOX"


@dataclass(frozen=True)
class Mailbox:
    """A remote folder, as listed by the server."""

    name: str = DEFAULT_MAILBOX
    delimiter: str | None = None
    attributes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "delimiter": self.delimiter, "attributes": list(self.attributes)}


@dataclass
class Attachment:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def decode_header_value(val: object) -> str:
    """Decode an RFC 2047 header into plain ``str``.

    Never returns an ``email.header.Header``; undecodable input falls back
    to its string form.
    """
    if val is None:
        return ""
    try:
        decoded = []
        for fragment, charset in decode_header(str(val)):
            if isinstance(fragment, bytes):
                decoded.append(fragment.decode(charset or "utf-8", errors="replace"))
            else:
                decoded.append(fragment)
        return "".join(decoded)
    except (LookupError, ValueError):
        return str(val)


def format_address(name: str, addr: str) -> str:
    """Format ``Name <addr>`` in readable (not RFC 2047 encoded) form.

    Names with address specials are quoted so comma-joined lists re-parse.
    """
    if not name:
        return addr
    if any(c in name for c in ',;:"()<>@[]\\'):
        name = '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return f"{name} <{addr}>"


def _addresses(values: list[str]) -> list[str]:
    return [format_address(name, addr) for name, addr in getaddresses(values) if addr]


def _decode_part(part: Message) -> str | None:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return None
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _is_attachment(part: Message) -> bool:
    disposition = str(part.get("Content-Disposition", "")).lower()
    return "attachment" in disposition or (
        part.get_filename() is not None and not part.get_content_type().startswith("text/")
    )


@dataclass
class Msg:
    """An email message.

    Resident messages come from a mailbox and carry a sequence number and
    UID. Transient messages are built locally and have neither.
    """

    seq: int | None = None
    uid: int | None = None
    flags: FlagSet = field(default_factory=FlagSet)
    from_addr: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    reply_to: str | None = None
    subject: str = ""
    date: datetime | None = None
    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)
    body_plain: str | None = None
    body_html: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    size: int | None = None
    raw: bytes | None = None

    @property
    def is_resident(self) -> bool:
        return self.seq is not None

    @property
    def date_str(self) -> str:
        return self.date.strftime("%Y-%m-%d %H:%M") if self.date else "unknown date"

    @classmethod
    def parse(
        cls,
        raw: bytes | str,
        *,
        seq: int | None = None,
        uid: int | None = None,
        flags: FlagSet | None = None,
        size: int | None = None,
        headers_only: bool = False,
    ) -> "Msg":
        """Parse an RFC 822 message or only its header block.

        ``raw`` is the fetched bytes, or already decoded text such as an
        edited header block, whose non-ASCII header values are kept as is.
        """
        if isinstance(raw, str):
            msg = message_from_string(raw)
            data = raw.encode("utf-8")
        else:
            msg = message_from_bytes(raw)
            data = raw

        body_plain: str | None = None
        body_html: str | None = None
        attachments: list[Attachment] = []

        if not headers_only:
            parts = msg.walk() if msg.is_multipart() else [msg]
            for part in parts:
                if part.is_multipart():
                    continue
                content_type = part.get_content_type()
                if _is_attachment(part):
                    payload = part.get_payload(decode=True)
                    if isinstance(payload, bytes):
                        filename = decode_header_value(part.get_filename()) or (
                            f"attachment.{part.get_content_subtype()}"
                        )
                        attachments.append(Attachment(filename, content_type, payload))
                elif content_type == "text/plain" and body_plain is None:
                    body_plain = _decode_part(part)
                elif content_type == "text/html" and body_html is None:
                    body_html = _decode_part(part)

        date = None
        if msg.get("Date"):
            try:
                date = parsedate_to_datetime(str(msg.get("Date")))
            except (TypeError, ValueError):
                date = None

        def header_list(name: str) -> list[str]:
            return _addresses([decode_header_value(v) for v in msg.get_all(name, [])])

        from_list = header_list("From")
        reply_to = header_list("Reply-To")

        return cls(
            seq=seq,
            uid=uid,
            flags=flags or FlagSet(),
            from_addr=from_list[0] if from_list else decode_header_value(msg.get("From")),
            to=header_list("To"),
            cc=header_list("Cc"),
            bcc=header_list("Bcc"),
            reply_to=reply_to[0] if reply_to else None,
            subject=decode_header_value(msg.get("Subject")).strip(),
            date=date,
            message_id=decode_header_value(msg.get("Message-ID")).strip(),
            in_reply_to=decode_header_value(msg.get("In-Reply-To")).strip(),
            references=decode_header_value(msg.get("References")).split(),
            body_plain=body_plain,
            body_html=body_html,
            attachments=attachments,
            size=size if size is not None else len(data),
            raw=None if headers_only else data,
        )

    def to_email_message(self) -> EmailMessage:
        """Build an outgoing MIME message.

        Bcc stays in the built message; the delivery session strips it
        before transmission.
        """
        message = EmailMessage()
        message["From"] = self.from_addr
        if self.to:
            message["To"] = ", ".join(self.to)
        if self.cc:
            message["Cc"] = ", ".join(self.cc)
        if self.bcc:
            message["Bcc"] = ", ".join(self.bcc)
        message["Subject"] = self.subject
        message["Date"] = formatdate(localtime=True) if self.date is None else formatdate(
            self.date.timestamp(), localtime=True
        )
        domain = self.from_addr.rsplit("@", 1)[-1].rstrip(">") if "@" in self.from_addr else None
        message["Message-ID"] = self.message_id or make_msgid(domain=domain)
        if self.in_reply_to:
            message["In-Reply-To"] = self.in_reply_to
        if self.references:
            message["References"] = " ".join(self.references)
        message["X-Mailer"] = "postal-clerk"

        message.set_content(self.body_plain or "")
        if self.body_html:
            message.add_alternative(self.body_html, subtype="html")
        for att in self.attachments:
            maintype, _, subtype = att.content_type.partition("/")
            message.add_attachment(
                att.data,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=att.filename,
            )
        return message

    def as_bytes(self) -> bytes:
        """Raw bytes of a fetched message, or the built MIME of a local one."""
        if self.raw is not None:
            return self.raw
        return self.to_email_message().as_bytes()

    def to_dict(self) -> dict[str, Any]:
        """Summary for structured output."""
        return {
            "seq": self.seq,
            "uid": self.uid,
            "flags": list(self.flags),
            "from": self.from_addr,
            "to": self.to,
            "cc": self.cc,
            "subject": self.subject,
            "date": self.date.isoformat() if self.date else None,
            "message_id": self.message_id,
            "attachments": [a.filename for a in self.attachments],
            "size": self.size,
        }
