"""
In-memory session store — one per active server.

Holds the per-channel message sequences, who is online per channel, and the
local user's timeout. Everything here is mutated only by EventDispatcher
(websocket/dispatcher.py); all other components read.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime

from chisme_client.schemas.message import Message

logger = logging.getLogger(__name__)

Listener = Callable[[str, str | None], None]


class ChannelHistory:
    """Messages of one channel, kept in created_at order, keyed by id."""

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self.has_more = True
        self.loaded = False

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def put(self, message: Message) -> None:
        last = next(reversed(self._messages.values()), None)
        self._messages[message.id] = message
        if last is not None and last.id != message.id and message.created_at < last.created_at:
            self._resort()

    def replace(self, old_id: str, message: Message) -> None:
        self._messages.pop(old_id, None)
        self._messages[message.id] = message
        self._resort()

    def remove(self, message_id: str) -> Message | None:
        return self._messages.pop(message_id, None)

    def ordered(self) -> list[Message]:
        return list(self._messages.values())

    def pending(self) -> list[Message]:
        return [m for m in self._messages.values() if m.is_pending]

    def oldest_confirmed(self) -> Message | None:
        return next((m for m in self._messages.values() if not m.is_pending), None)

    def _resort(self) -> None:
        # sorted() is stable, so equal timestamps keep arrival order
        ordered = sorted(self._messages.values(), key=lambda m: m.created_at)
        self._messages = {m.id: m for m in ordered}


class TimeoutState:
    """Local user's own timeout, as an absolute wall-clock expiry."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.until: float | None = None
        self.reason: str | None = None

    def start(self, duration_seconds: float, reason: str | None = None) -> None:
        self.until = self._clock() + duration_seconds
        self.reason = reason

    def is_active(self) -> bool:
        if self.until is None:
            return False
        if self._clock() >= self.until:
            self.until = None
            self.reason = None
            return False
        return True

    def remaining(self) -> float:
        return max(0.0, self.until - self._clock()) if self.is_active() else 0.0


class SessionStore:
    def __init__(self, server_id: str, wall_clock: Callable[[], float] = time.time) -> None:
        self.server_id = server_id
        self.self_user_id: str | None = None
        # channel_id -> ChannelHistory
        self.channels: dict[str, ChannelHistory] = {}
        # message_id -> channel_id, for events that carry only the message id
        self._locator: dict[str, str] = {}
        # channel_id -> {user_id: user_name}
        self.online: dict[str, dict[str, str]] = {}
        self.timeout = TimeoutState(wall_clock)
        self.last_error: str | None = None
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener(kind, channel_id). Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def notify(self, kind: str, channel_id: str | None = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, channel_id)
            except Exception as exc:
                logger.error("store listener failed on %r: %s", kind, exc, exc_info=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def history(self, channel_id: str) -> ChannelHistory:
        history = self.channels.get(channel_id)
        if history is None:
            history = self.channels[channel_id] = ChannelHistory()
        return history

    def messages(self, channel_id: str) -> list[Message]:
        history = self.channels.get(channel_id)
        return history.ordered() if history else []

    def get_message(self, message_id: str) -> Message | None:
        channel_id = self._locator.get(message_id)
        if channel_id is None:
            return None
        return self.channels[channel_id].get(message_id)

    def find_pending(
        self,
        channel_id: str,
        nonce: str | None,
        user_id: str,
        content: str,
        created_at: datetime | None = None,
    ) -> Message | None:
        """Match a server echo to the optimistic message it confirms.

        The nonce is authoritative. Without one, the oldest pending message
        with the same author and content is taken; passing ``created_at``
        (for history pages, which can hold older lookalikes) also requires
        the pending send to be no newer than the server copy.
        """
        history = self.channels.get(channel_id)
        if history is None:
            return None
        pending = history.pending()
        if nonce:
            for message in pending:
                if message.nonce == nonce:
                    return message
        for message in pending:
            if message.user_id != user_id or message.content != content:
                continue
            # server timestamps have whole-second precision
            if created_at is not None and message.created_at.replace(microsecond=0) > created_at:
                continue
            return message
        return None

    # ------------------------------------------------------------------
    # Writes (EventDispatcher only)
    # ------------------------------------------------------------------

    def put_message(self, message: Message) -> None:
        self.history(message.channel_id).put(message)
        self._locator[message.id] = message.channel_id

    def replace_message(self, old_id: str, message: Message) -> None:
        self._locator.pop(old_id, None)
        self.history(message.channel_id).replace(old_id, message)
        self._locator[message.id] = message.channel_id

    def remove_message(self, message_id: str) -> Message | None:
        channel_id = self._locator.pop(message_id, None)
        if channel_id is None:
            return None
        return self.channels[channel_id].remove(message_id)
