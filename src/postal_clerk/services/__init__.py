from postal_clerk.services.messages import MessageService, load_attachments, page_of
from postal_clerk.services.watcher import CommandHook, MailboxWatcher, new_uids

__all__ = [
    "CommandHook",
    "MailboxWatcher",
    "MessageService",
    "load_attachments",
    "new_uids",
    "page_of",
]
