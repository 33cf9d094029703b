"""
chisme — headless session client entry point.

Connects to one server, optionally opens a channel, and logs every store
change until interrupted:

  python -m chisme_client --token <jwt> --server-id <guild> --channel <id>
"""

import argparse
import asyncio
import logging
import signal

from chisme_client.config import settings
from chisme_client.core import events
from chisme_client.core.errors import SessionError
from chisme_client.services.session import ServerSession
from chisme_client.websocket.connection import ConnectionState

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chisme-client", description="Headless chisme session client")
    parser.add_argument("--token", default=settings.AUTH_TOKEN, help="bearer token (default: AUTH_TOKEN)")
    parser.add_argument("--server-id", default=settings.SERVER_ID, help="server / guild id (default: SERVER_ID)")
    parser.add_argument("--channel", default=None, help="text channel to open once connected")
    parser.add_argument("--user-name", default="Unknown", help="display name sent with messages")
    return parser.parse_args(argv)


async def serve(args: argparse.Namespace) -> None:
    session = ServerSession(args.server_id, args.token, args.user_name)
    background: set[asyncio.Task] = set()

    def on_change(kind: str, channel_id: str | None) -> None:
        if kind in (events.NEW_MESSAGE, events.HISTORY_PAGE) and channel_id:
            latest = session.messages(channel_id)[-1:] or [None]
            if latest[0] is not None:
                logger.info("[%s] %s: %s", channel_id, latest[0].user_name, latest[0].content)
        else:
            logger.debug("store change: %s (%s)", kind, channel_id)

    def on_state(old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.CONNECTED and args.channel and session.active_channel_id is None:
            task = asyncio.create_task(open_channel(args.channel))
            background.add(task)
            task.add_done_callback(background.discard)

    async def open_channel(channel_id: str) -> None:
        try:
            await session.open_channel(channel_id)
        except SessionError as exc:
            logger.error("Could not open channel %s: %s", channel_id, exc)

    session.subscribe(on_change)
    session.connection.add_state_listener(on_state)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    async with session:
        waiter = asyncio.create_task(stop.wait())
        while not stop.is_set():
            await asyncio.wait({waiter}, timeout=1.0)
            if session.connection.auth_error is not None:
                logger.error("Authentication failed: %s", session.connection.auth_error)
                break
        waiter.cancel()


def run(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)
    if not args.token:
        logger.warning("No token given; the server will treat this session as anonymous")
    try:
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
