"""Transport layer for postal-clerk.

This module provides async sessions for the two mail protocols:
- MailboxSession: Select, search, fetch, flag, copy/move/delete over IMAP
- DeliverySession: Send composed messages over SMTP
"""

from postal_clerk.transport.imap_client import FetchDetail, MailboxSession, SessionState
from postal_clerk.transport.smtp_client import DeliverySession

__all__ = ["DeliverySession", "FetchDetail", "MailboxSession", "SessionState"]
