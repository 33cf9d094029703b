"""
Pytest fixtures and fakes shared across all test modules.

Nothing here touches the network: the duplex socket is a FakeTransport fed
from an asyncio.Queue, the REST collaborator is either FakeApi (session
tests) or an httpx.MockTransport (API client tests), and time comes from
FakeClock.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chisme_client.core.errors import NotConnectedError
from chisme_client.core.permissions import PRESET_MEMBER, PermissionSnapshot
from chisme_client.schemas.message import Message
from chisme_client.schemas.role import ChannelOverride, Member, Role
from chisme_client.state.presence import PresenceStore
from chisme_client.state.store import SessionStore
from chisme_client.websocket.backoff import ExponentialBackoff
from chisme_client.websocket.dispatcher import EventDispatcher

SERVER_ID = "guild-1"
SELF_ID = "user-self"

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Duplex socket
# ---------------------------------------------------------------------------


class FakeTransport:
    """In-memory stand-in for AiohttpTransport. push() frames in, read .sent out."""

    def __init__(self, user_id: str = SELF_ID, identity: bool = True):
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        if identity:
            self.push({"type": "identity", "user_id": user_id})

    def push(self, frame: dict) -> None:
        self._inbox.put_nowait(frame)

    def drop(self, code: int = 1006) -> None:
        """Simulate the server closing the socket."""
        self.close_code = code
        self._inbox.put_nowait(None)

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise NotConnectedError()
        self.sent.append(data)

    async def receive_json(self) -> dict | None:
        return await self._inbox.get()

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [f["type"] for f in self.sent]


class FakeConnector:
    """Hands out queued transports (or raises queued errors) in order.

    With nothing queued, a connect attempt waits until something is.
    """

    def __init__(self, *items):
        self.urls: list[str] = []
        self.transports: list[FakeTransport] = []
        self._items = list(items)
        self._more = asyncio.Event()

    def queue(self, item) -> None:
        self._items.append(item)
        self._more.set()

    async def __call__(self, url: str):
        self.urls.append(url)
        while not self._items:
            self._more.clear()
            await self._more.wait()
        item = self._items.pop(0)
        if isinstance(item, Exception):
            raise item
        self.transports.append(item)
        return item


def instant_backoff() -> ExponentialBackoff:
    return ExponentialBackoff(min_delay=0, max_delay=0, jitter=0)


async def eventually(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# REST collaborator
# ---------------------------------------------------------------------------


class FakeApi:
    """Minimal in-memory fake with ApiClient's surface."""

    def __init__(self):
        self.roles: list[Role] = [Role(id=SERVER_ID, name="@everyone", permissions=int(PRESET_MEMBER))]
        self.member_roles: list[Role] = []
        self.overrides: dict[str, list] = {}
        self.pages: dict[str, list[Message]] = {}
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def _call(self, *call):
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def get_roles(self):
        await self._call("get_roles")
        return list(self.roles)

    async def get_member_roles(self, user_id):
        await self._call("get_member_roles", user_id)
        return list(self.member_roles)

    async def get_overrides(self, channel_id):
        await self._call("get_overrides", channel_id)
        return list(self.overrides.get(channel_id, []))

    async def put_override(self, channel_id, target_id, update):
        await self._call("put_override", channel_id, target_id)
        return ChannelOverride(channel_id=channel_id, target_id=target_id, **update.model_dump())

    async def delete_override(self, channel_id, target_id):
        await self._call("delete_override", channel_id, target_id)

    async def get_messages(self, channel_id, limit=None, before=None):
        await self._call("get_messages", channel_id, before)
        page = self.pages.get(channel_id, [])
        if before is not None:
            page = [m for m in page if m.created_at < before]
        return [m.model_copy(deep=True) for m in page[-(limit or 50):]]

    async def add_reaction(self, message_id, emoji):
        await self._call("add_reaction", message_id, emoji)

    async def remove_reaction(self, message_id, emoji):
        await self._call("remove_reaction", message_id, emoji)

    async def pin_message(self, message_id):
        await self._call("pin_message", message_id)

    async def unpin_message(self, message_id):
        await self._call("unpin_message", message_id)

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_message(id: str = "m1", channel_id: str = "c1", user_id: str = "user-2", minutes: int = 0, **extra) -> Message:
    data = {
        "id": id,
        "channel_id": channel_id,
        "user_id": user_id,
        "user_name": extra.pop("user_name", "alice"),
        "content": extra.pop("content", f"message {id}"),
        "created_at": BASE_TIME + timedelta(minutes=minutes),
    }
    data.update(extra)
    return Message.model_validate(data)


def new_message_frame(id: str = "m1", channel_id: str = "c1", user_id: str = "user-2", minutes: int = 0, **extra) -> dict:
    frame = {
        "type": "new_message",
        "id": id,
        "channel_id": channel_id,
        "user_id": user_id,
        "user_name": extra.pop("user_name", "alice"),
        "content": extra.pop("content", f"message {id}"),
        "created_at": (BASE_TIME + timedelta(minutes=minutes)).strftime("%Y-%m-%d %H:%M:%S"),
    }
    frame.update(extra)
    return frame


def grant(snapshot: PermissionSnapshot, bits: int) -> None:
    """Give the local member exactly `bits` server-wide via @everyone."""
    snapshot.set_roles([Role(id=SERVER_ID, name="@everyone", permissions=int(bits))])
    snapshot.member = Member(user_id=snapshot.member.user_id or SELF_ID, server_id=SERVER_ID)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def wall_clock():
    return FakeClock(start=BASE_TIME.timestamp())


@pytest.fixture()
def store(wall_clock):
    s = SessionStore(SERVER_ID, wall_clock)
    s.self_user_id = SELF_ID
    return s


@pytest.fixture()
def presence(clock):
    return PresenceStore(typing_ttl=10.0, clock=clock)


@pytest.fixture()
def dispatcher(store, presence):
    return EventDispatcher(store, presence)

