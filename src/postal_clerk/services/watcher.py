"""Long-running mailbox watch and new-mail notification."""

import asyncio
import contextlib
import shlex
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt

from postal_clerk.core.logging import sanitize_for_log
from postal_clerk.core.ranges import SeqRange
from postal_clerk.exceptions import ConnectionLostError
from postal_clerk.models import Msg
from postal_clerk.transport import FetchDetail, MailboxSession, SessionState

logger = structlog.get_logger(__name__)

NotifyHook = Callable[[Msg], Awaitable[None]]


def new_uids(before: set[int], after: set[int]) -> set[int]:
    """UIDs present in ``after`` but absent from ``before``.

    A message counts as new only once; flag changes never make it new again.
    """
    return after - before


class CommandHook:
    """Notification hook that runs an external command per new message.

    The command (``notify-send`` by default) receives a title naming the
    sender and the subject as its last two arguments. A failing command is
    logged and otherwise ignored.
    """

    def __init__(self, command: str) -> None:
        self.argv = shlex.split(command)

    async def __call__(self, msg: Msg) -> None:
        title = f"New message from {msg.from_addr or 'unknown sender'}"
        argv = [*self.argv, title, msg.subject or "(no subject)"]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as e:
            logger.warning("notify_hook_failed", command=self.argv[0], error=str(e))
            return

        if process.returncode != 0:
            logger.warning(
                "notify_hook_failed",
                command=self.argv[0],
                returncode=process.returncode,
                stderr=sanitize_for_log(stderr.decode("utf-8", errors="replace"), 200),
            )


def _log_reconnect(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("watch_reconnecting", attempt=retry_state.attempt_number, error=str(error))


class MailboxWatcher:
    """Block on mailbox activity until shutdown is requested.

    Waiting uses the session's IDLE, re-issued every ``keepalive`` seconds.
    Keepalive timeouts are not events. A dropped connection is reopened once
    per operation; a second consecutive drop propagates.
    """

    def __init__(self, session: MailboxSession, keepalive: int) -> None:
        self.session = session
        self.keepalive = keepalive
        self._shutdown = asyncio.Event()
        self._snapshot: set[int] = set()

    @property
    def snapshot(self) -> set[int]:
        """UIDs already seen by :meth:`notify`."""
        return set(self._snapshot)

    @retry(
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(ConnectionLostError),
        before_sleep=_log_reconnect,
        reraise=True,
    )
    async def _guarded(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        if self.session.state == SessionState.DISCONNECTED:
            await self.session.reconnect()
        return await operation(*args)

    async def _wait(self) -> list[str] | None:
        """Idle once. Returns None if shutdown was requested first."""
        idle = asyncio.ensure_future(self._guarded(self.session.idle, self.keepalive))
        stop = asyncio.ensure_future(self._shutdown.wait())
        done, pending = await asyncio.wait({idle, stop}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if idle in done:
            return idle.result()
        return None

    async def watch(self) -> None:
        """Wait on the mailbox until shutdown. Produces no output."""
        logger.info("watch_starting", mailbox=self.session.selected_mailbox, keepalive=self.keepalive)
        while not self._shutdown.is_set():
            pushed = await self._wait()
            if pushed:
                logger.debug("watch_activity", lines=len(pushed))
        logger.info("watch_stopped")

    async def notify(self, hook: NotifyHook) -> None:
        """Like :meth:`watch`, calling ``hook`` once per newly arrived message."""
        logger.info("notify_starting", mailbox=self.session.selected_mailbox, keepalive=self.keepalive)
        self._snapshot = await self._guarded(self.session.uids)
        while not self._shutdown.is_set():
            if await self._wait() is None:
                break
            await self.check_new(hook)
        logger.info("notify_stopped")

    async def check_new(self, hook: NotifyHook) -> list[Msg]:
        """Compare the UID set against the snapshot and notify new arrivals.

        The snapshot is replaced by the current UID set once the hooks ran.

        Returns:
            The newly seen messages, in ascending sequence order.
        """
        current = await self._guarded(self.session.uids)
        fresh = new_uids(self._snapshot, current)

        messages: list[Msg] = []
        if fresh:
            fetched = await self._guarded(
                self.session.fetch_uids, SeqRange.of(fresh), FetchDetail.SUMMARY
            )
            messages = [msg for msg in fetched if msg.uid in fresh]
            for msg in messages:
                logger.info(
                    "new_message",
                    uid=msg.uid,
                    sender=sanitize_for_log(msg.from_addr, 60),
                    subject=sanitize_for_log(msg.subject, 60),
                )
                await hook(msg)

        self._snapshot = current
        return messages

    def request_shutdown(self) -> None:
        """Signal graceful shutdown."""
        logger.info("watch_shutdown_requested")
        self._shutdown.set()
