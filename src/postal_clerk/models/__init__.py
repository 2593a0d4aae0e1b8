from postal_clerk.models.message import DEFAULT_MAILBOX, Attachment, Mailbox, Msg, format_address

__all__ = ["DEFAULT_MAILBOX", "Attachment", "Mailbox", "Msg", "format_address"]
