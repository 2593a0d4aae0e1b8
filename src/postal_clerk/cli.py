"""Command-line interface for Postal Clerk."""

import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Awaitable, Callable, Iterator
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from postal_clerk.compose import Template, is_mailto, new_template, resolve_mailto
from postal_clerk.config import Account, get_settings
from postal_clerk.core import Flag, configure_logging, parse_flags, parse_range
from postal_clerk.exceptions import ParseError, PostalClerkError
from postal_clerk.models import Msg
from postal_clerk.services import CommandHook, MailboxWatcher, MessageService
from postal_clerk.transport import DeliverySession, MailboxSession

logger = structlog.get_logger(__name__)

T = TypeVar("T")

KEEPALIVE_RANGE = click.IntRange(1, 29 * 60)


@contextlib.contextmanager
def _errors() -> Iterator[None]:
    """Report core errors on stderr and exit: 2 for bad input, 1 otherwise."""
    try:
        yield
    except ParseError as e:
        logger.debug("command_rejected", error=str(e), token=e.token)
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(2)
    except PostalClerkError as e:
        logger.debug("command_failed", error_type=type(e).__name__, error=str(e))
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


def _account(ctx: click.Context) -> Account:
    settings = get_settings(ctx.obj["config"])
    return settings.account(ctx.obj["account"])


def _run(ctx: click.Context, operation: Callable[[MessageService], Awaitable[T]]) -> T:
    """Run one operation inside a mailbox session that is always logged out."""
    account = _account(ctx)

    async def runner() -> T:
        async with (
            MailboxSession(account, ctx.obj["mailbox"]) as session,
            DeliverySession(account) as delivery,
        ):
            return await operation(MessageService(account, session, delivery))

    return asyncio.run(runner())


def _emit(ctx: click.Context, data: Any, lines: list[str]) -> None:
    if ctx.obj["output"] == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        for line in lines:
            click.echo(line)


def _summary_line(msg: Msg) -> str:
    marker = " " if Flag.SEEN in msg.flags else "*"
    if msg.attachments:
        marker += "@"
    sender = msg.from_addr or "(unknown)"
    return f"{msg.seq:>5} {marker:<2} {msg.date_str:<16}  {sender[:30]:<30}  {msg.subject}"


def _emit_messages(ctx: click.Context, messages: list[Msg]) -> None:
    _emit(ctx, [m.to_dict() for m in messages], [_summary_line(m) for m in messages])


def _edit_and_send(ctx: click.Context, template: Template, attachments: tuple[Path, ...]) -> None:
    """Open the template in $EDITOR, then send it if it was saved."""
    edited = click.edit(template.render(), extension=".eml")
    if edited is None:
        click.echo("Message not sent.", err=True)
        return
    final = template.with_text(edited)
    sent = _run(ctx, lambda service: service.send(final, list(attachments)))
    recipients = sent.to + sent.cc + sent.bcc
    _emit(ctx, {"sent": True, "recipients": recipients}, [f"Message sent to {', '.join(recipients)}"])


def _read_text(text: str | None) -> str:
    return text if text is not None else click.get_text_stream("stdin").read()


attachment_option = click.option(
    "--attachment",
    "-a",
    "attachments",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Attach a file (repeatable)",
)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (default ~/.config/postal-clerk/config.toml)",
)
@click.option("--account", "-a", "account_name", default=None, help="Account to use")
@click.option("--mailbox", "-m", default=None, help="Mailbox to operate on (default INBOX)")
@click.option(
    "--output", "-o", type=click.Choice(["plain", "json"]), default="plain", help="Output format"
)
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option("--json-logs/--no-json-logs", default=False, help="JSON log format")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    account_name: str | None,
    mailbox: str | None,
    output: str,
    debug: bool,
    json_logs: bool,
) -> None:
    """Postal Clerk - command-line email client."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path
    ctx.obj["account"] = account_name
    ctx.obj["mailbox"] = mailbox
    ctx.obj["output"] = output
    configure_logging(json_format=json_logs, debug=debug)


@main.command()
@click.pass_context
def mailboxes(ctx: click.Context) -> None:
    """List mailboxes."""
    with _errors():
        found = _run(ctx, lambda service: service.list_mailboxes())
    _emit(ctx, [m.to_dict() for m in found], [m.name for m in found])


@main.command(name="list")
@click.option("--page-size", "-s", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--page", "-p", type=click.IntRange(min=1), default=1, show_default=True)
@click.pass_context
def list_messages(ctx: click.Context, page_size: int, page: int) -> None:
    """List message summaries, newest first."""
    with _errors():
        messages = _run(ctx, lambda service: service.list_page(page_size, page - 1))
    _emit_messages(ctx, messages)


@main.command()
@click.argument("query", nargs=-1, required=True)
@click.option("--page-size", "-s", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--page", "-p", type=click.IntRange(min=1), default=1, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: tuple[str, ...], page_size: int, page: int) -> None:
    """Search with IMAP criteria, e.g. ``search FROM alice UNSEEN``."""
    criteria = " ".join(query)
    with _errors():
        messages = _run(ctx, lambda service: service.search_page(criteria, page_size, page - 1))
    _emit_messages(ctx, messages)


@main.command()
@click.argument("seq", type=click.IntRange(min=1))
@click.option("--mime", type=click.Choice(["plain", "html"]), default="plain", show_default=True)
@click.option("--raw", is_flag=True, help="Print the raw RFC 822 message")
@click.pass_context
def read(ctx: click.Context, seq: int, mime: str, raw: bool) -> None:
    """Read a message."""
    with _errors():
        text = _run(ctx, lambda service: service.read(seq, mime, raw))
    _emit(ctx, {"seq": seq, "mime": "raw" if raw else mime, "content": text}, [text])


@main.command()
@click.argument("seq", type=click.IntRange(min=1))
@click.option(
    "--dir", "directory", type=click.Path(file_okay=False, path_type=Path), default=None,
    help="Target directory (default: the account downloads directory)",
)
@click.pass_context
def attachments(ctx: click.Context, seq: int, directory: Path | None) -> None:
    """Download the attachments of a message."""
    with _errors():
        paths = _run(ctx, lambda service: service.download_attachments(seq, directory))
    if not paths:
        click.echo(f"No attachments in message {seq}", err=True)
    _emit(ctx, [str(p) for p in paths], [f"Downloaded {p}" for p in paths])


@main.command()
@attachment_option
@click.pass_context
def write(ctx: click.Context, attachments: tuple[Path, ...]) -> None:
    """Write a new message in $EDITOR and send it."""
    with _errors():
        _edit_and_send(ctx, new_template(_account(ctx)), attachments)


@main.command()
@click.argument("seq", type=click.IntRange(min=1))
@click.option("--all", "reply_all", is_flag=True, help="Reply to all recipients")
@attachment_option
@click.pass_context
def reply(ctx: click.Context, seq: int, reply_all: bool, attachments: tuple[Path, ...]) -> None:
    """Reply to a message."""
    with _errors():
        template = _run(ctx, lambda service: service.reply_template(seq, reply_all))
        _edit_and_send(ctx, template, attachments)


@main.command()
@click.argument("seq", type=click.IntRange(min=1))
@click.option(
    "--attachments", "include_attachments", is_flag=True,
    help="Forward the original attachments too",
)
@attachment_option
@click.pass_context
def forward(
    ctx: click.Context, seq: int, include_attachments: bool, attachments: tuple[Path, ...]
) -> None:
    """Forward a message."""
    with _errors():
        template = _run(ctx, lambda service: service.forward_template(seq, include_attachments))
        _edit_and_send(ctx, template, attachments)


@main.command()
@click.argument("seq_range", metavar="RANGE")
@click.argument("target")
@click.pass_context
def copy(ctx: click.Context, seq_range: str, target: str) -> None:
    """Copy messages to another mailbox."""
    with _errors():
        parsed = parse_range(seq_range)
        _run(ctx, lambda service: service.session.copy(parsed, target))
    _emit(ctx, {"copied": list(parsed), "target": target}, [f"Copied {parsed} to {target}"])


@main.command()
@click.argument("seq_range", metavar="RANGE")
@click.argument("target")
@click.pass_context
def move(ctx: click.Context, seq_range: str, target: str) -> None:
    """Move messages to another mailbox."""
    with _errors():
        parsed = parse_range(seq_range)
        _run(ctx, lambda service: service.session.move(parsed, target))
    _emit(ctx, {"moved": list(parsed), "target": target}, [f"Moved {parsed} to {target}"])


@main.command()
@click.argument("seq_range", metavar="RANGE")
@click.pass_context
def delete(ctx: click.Context, seq_range: str) -> None:
    """Delete messages (flag Deleted and expunge)."""
    with _errors():
        parsed = parse_range(seq_range)
        _run(ctx, lambda service: service.session.delete(parsed))
    _emit(ctx, {"deleted": list(parsed)}, [f"Deleted {parsed}"])


@main.command()
@click.argument("text", required=False)
@click.pass_context
def save(ctx: click.Context, text: str | None) -> None:
    """Save a raw message (argument or stdin) into the mailbox without sending."""
    raw = _read_text(text)
    with _errors():
        target = ctx.obj["mailbox"] or _account(ctx).inbox_mailbox
        _run(ctx, lambda service: service.save(target, raw))
    _emit(ctx, {"saved": True, "mailbox": target}, [f"Message saved to {target}"])


@main.command()
@click.argument("text", required=False)
@click.pass_context
def send(ctx: click.Context, text: str | None) -> None:
    """Send a message given as text (argument or stdin)."""
    raw = _read_text(text)
    with _errors():
        sent = _run(ctx, lambda service: service.send_text(raw))
    recipients = sent.to + sent.cc + sent.bcc
    _emit(ctx, {"sent": True, "recipients": recipients}, [f"Message sent to {', '.join(recipients)}"])


@main.group()
def flag() -> None:
    """Set, add or remove message flags."""


def _change_flags(ctx: click.Context, action: str, seq_range: str, names: tuple[str, ...]) -> None:
    with _errors():
        parsed = parse_range(seq_range)
        flags = parse_flags(" ".join(names))
        _run(ctx, lambda service: getattr(service.session, f"{action}_flags")(parsed, flags))
    _emit(
        ctx,
        {"range": list(parsed), "action": action, "flags": list(flags)},
        [f"Flags {action}: {flags} on {parsed}"],
    )


@flag.command(name="set")
@click.argument("seq_range", metavar="RANGE")
@click.argument("names", metavar="FLAGS...", nargs=-1, required=True)
@click.pass_context
def flag_set(ctx: click.Context, seq_range: str, names: tuple[str, ...]) -> None:
    """Replace the flags of messages."""
    _change_flags(ctx, "set", seq_range, names)


@flag.command(name="add")
@click.argument("seq_range", metavar="RANGE")
@click.argument("names", metavar="FLAGS...", nargs=-1, required=True)
@click.pass_context
def flag_add(ctx: click.Context, seq_range: str, names: tuple[str, ...]) -> None:
    """Add flags to messages."""
    _change_flags(ctx, "add", seq_range, names)


@flag.command(name="remove")
@click.argument("seq_range", metavar="RANGE")
@click.argument("names", metavar="FLAGS...", nargs=-1, required=True)
@click.pass_context
def flag_remove(ctx: click.Context, seq_range: str, names: tuple[str, ...]) -> None:
    """Remove flags from messages."""
    _change_flags(ctx, "remove", seq_range, names)


@main.group()
def template() -> None:
    """Print message templates without sending."""


@template.command(name="new")
@click.pass_context
def template_new(ctx: click.Context) -> None:
    """Print a new-message template."""
    with _errors():
        click.echo(new_template(_account(ctx)).render())


@template.command(name="reply")
@click.argument("seq", type=click.IntRange(min=1))
@click.option("--all", "reply_all", is_flag=True, help="Reply to all recipients")
@click.pass_context
def template_reply(ctx: click.Context, seq: int, reply_all: bool) -> None:
    """Print a reply template."""
    with _errors():
        tpl = _run(ctx, lambda service: service.reply_template(seq, reply_all))
    click.echo(tpl.render())


@template.command(name="forward")
@click.argument("seq", type=click.IntRange(min=1))
@click.option("--attachments", "include_attachments", is_flag=True)
@click.pass_context
def template_forward(ctx: click.Context, seq: int, include_attachments: bool) -> None:
    """Print a forward template."""
    with _errors():
        tpl = _run(ctx, lambda service: service.forward_template(seq, include_attachments))
    click.echo(tpl.render())


def _watch(ctx: click.Context, keepalive: int | None, notify: bool) -> None:
    settings = get_settings(ctx.obj["config"])
    account = settings.account(ctx.obj["account"])
    interval = keepalive or settings.idle_keepalive

    async def runner() -> None:
        async with MailboxSession(account, ctx.obj["mailbox"]) as session:
            watcher = MailboxWatcher(session, interval)
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(signum, watcher.request_shutdown)
            if notify:
                await watcher.notify(CommandHook(account.notify_cmd))
            else:
                await watcher.watch()

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(runner())


@main.command()
@click.option(
    "--keepalive", "-k", type=KEEPALIVE_RANGE, default=None,
    help="IDLE re-issue interval in seconds (default from config)",
)
@click.pass_context
def watch(ctx: click.Context, keepalive: int | None) -> None:
    """Wait for mailbox activity until interrupted."""
    with _errors():
        _watch(ctx, keepalive, notify=False)


@main.command()
@click.option(
    "--keepalive", "-k", type=KEEPALIVE_RANGE, default=None,
    help="IDLE re-issue interval in seconds (default from config)",
)
@click.pass_context
def notify(ctx: click.Context, keepalive: int | None) -> None:
    """Run the notify command for every new message until interrupted."""
    with _errors():
        _watch(ctx, keepalive, notify=True)


@main.command(hidden=True)
@click.argument("uri")
@click.pass_context
def mailto(ctx: click.Context, uri: str) -> None:
    """Compose a message from a mailto: URI."""
    with _errors():
        _edit_and_send(ctx, resolve_mailto(uri, _account(ctx)), ())


def entrypoint(argv: list[str] | None = None) -> None:
    """Console script entry point.

    Order-sensitive: a leading ``mailto:`` URI is routed to the ``mailto``
    command before click parses anything, because desktop handlers pass the
    URI as the only argument and it would otherwise be read as a command.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if args and is_mailto(args[0]):
        args = ["mailto", *args]
    main(args=args, prog_name="postal-clerk")


if __name__ == "__main__":
    entrypoint()
