"""Entry point for the marketplace messaging command line client."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys

from . import __version__
from .api.client import check_connection
from .api.models import DeliveryState, Message
from .errors import MessagingError
from .messaging import ChatLog
from .state.cache import Cache
from .utils.config import Config

logger = logging.getLogger(__name__)


def _format_message(message: Message, user_id: str) -> str:
    who = "you" if message.sender_id == user_id else message.sender_id
    text = message.content or ""
    if message.attachment_url:
        text = f"{text} [{message.attachment_url}]".strip()
    status = ""
    if message.delivery is DeliveryState.PENDING:
        status = " (sending)"
    elif message.delivery is DeliveryState.FAILED:
        status = " (failed)"
    return f"{message.created_at:%Y-%m-%d %H:%M} {who}: {text}{status}"


def _make_app(config: Config):
    from .application import MessagingApp

    return MessagingApp(config=config, cache=Cache())


async def _configure(config: Config, args: argparse.Namespace) -> int:
    api_key = args.api_key or getpass.getpass("API key: ")
    ok, message = await check_connection(args.server_url, api_key)
    if not ok:
        print(f"Connection failed: {message}", file=sys.stderr)
        return 1
    config.server_url = args.server_url
    config.api_key = api_key
    if args.realtime_url:
        config.realtime_url = args.realtime_url
    print("Configured.")
    if not config.using_secure_storage:
        print("Warning: no system keyring available, secrets stored in a local file.")
    return 0


async def _login(config: Config, args: argparse.Namespace) -> int:
    app = _make_app(config)
    try:
        password = getpass.getpass("Password: ")
        user = await app.sign_in(args.email, password)
        print(f"Signed in as {user.username}")
        return 0
    finally:
        await app.shutdown()


async def _logout(config: Config, args: argparse.Namespace) -> int:
    app = _make_app(config)
    try:
        if await app.start() is None:
            print("Not signed in.")
            return 0
        await app.sign_out()
        print("Signed out.")
        return 0
    finally:
        await app.shutdown()


async def _inbox(config: Config, args: argparse.Namespace) -> int:
    app = _make_app(config)
    try:
        if await app.start() is None:
            print("Not signed in. Run 'login' first.", file=sys.stderr)
            return 1
        inbox = await app.conversation_list()
        groups = inbox.groups.value
        if inbox.last_error is not None and inbox.synced_at is not None:
            print(f"Offline, showing conversations as of {inbox.synced_at:%Y-%m-%d %H:%M}")
        if not groups:
            print("No conversations.")
        for group in groups.values():
            print(f"[{group.listing_id}] {group.listing_title}")
            for summary in group.conversations:
                print(
                    f"    {summary.display_name} ({summary.counterparty_id}) "
                    f"{summary.last_message_at:%Y-%m-%d %H:%M}: {summary.last_message or ''}"
                )
        return 0
    finally:
        await app.shutdown()


async def _unread(config: Config, args: argparse.Namespace) -> int:
    app = _make_app(config)
    try:
        if await app.start() is None:
            print("Not signed in. Run 'login' first.", file=sys.stderr)
            return 1
        print(app.unread.count.value)
        return 0
    finally:
        await app.shutdown()


async def _chat(config: Config, args: argparse.Namespace) -> int:
    app = _make_app(config)
    try:
        user = await app.start()
        if user is None:
            print("Not signed in. Run 'login' first.", file=sys.stderr)
            return 1

        printed: set[str] = set()

        def show(log: ChatLog) -> None:
            for message in log.messages:
                if message.id in printed or message.is_optimistic:
                    continue
                printed.add(message.id)
                print(_format_message(message, user.id))

        session = await app.open_chat(args.listing_id, args.user_id)
        show(session.log.value)
        session.log.subscribe(show)
        if session.listing is not None:
            print(f"-- {session.listing.title} --")
        print("Type a message and press Enter. Ctrl-D to quit.")

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            try:
                await session.send(line)
            except MessagingError as e:
                print(f"Not sent: {e}", file=sys.stderr)
        return 0
    finally:
        await app.shutdown()


COMMANDS = {
    "configure": _configure,
    "login": _login,
    "logout": _logout,
    "inbox": _inbox,
    "unread": _unread,
    "chat": _chat,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketplace-messaging",
        description="Marketplace messaging client",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    configure = sub.add_parser("configure", help="Set server URL and API key")
    configure.add_argument("server_url", help="Base URL of the hosted project")
    configure.add_argument("--api-key", help="Public API key (prompted if omitted)")
    configure.add_argument("--realtime-url", help="Realtime endpoint, if different")

    login = sub.add_parser("login", help="Sign in with e-mail and password")
    login.add_argument("email")

    sub.add_parser("logout", help="Sign out and clear the local cache")
    sub.add_parser("inbox", help="List conversations grouped by listing")
    sub.add_parser("unread", help="Print the unread notification count")

    chat = sub.add_parser("chat", help="Open an interactive chat")
    chat.add_argument("listing_id", type=int)
    chat.add_argument("user_id", help="The other participant")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the command line client."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = Config()
    if args.command != "configure" and not config.is_configured:
        print("Not configured. Run 'configure' first.", file=sys.stderr)
        return 1

    try:
        return asyncio.run(COMMANDS[args.command](config, args))
    except MessagingError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
