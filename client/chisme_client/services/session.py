"""
ServerSession — the per-server context object and the action API on top of it.

One instance per active server. It owns the store, presence, dispatcher,
connection and REST client for that server, and every background task it
starts (typing sweep, post-connect refresh, history loads). activate() brings
it up, deactivate() tears all of it down. A deactivated session is spent;
switching back to a server means building a new one.

Every mutating action checks the locally known permissions first and raises
PermissionDenied without touching the network. The server re-validates
everything, so a stale local snapshot can only make us stricter or let the
server reject us, never bypass it.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from chisme_client.config import settings
from chisme_client.core import events
from chisme_client.core.errors import (
    NotConnectedError,
    PermissionDenied,
    SessionError,
    StaleReferenceError,
    ValidationError,
)
from chisme_client.core.permissions import Permissions, PermissionSnapshot, permission_labels
from chisme_client.schemas.message import Message, RepliedMessage
from chisme_client.schemas.mutation import (
    DeleteMessage,
    DiscardPending,
    EditMessage,
    PinMessage,
    RestoreMessage,
    SendMessage,
    ToggleReaction,
)
from chisme_client.schemas.role import ChannelOverride, Member, OverrideTarget, OverrideUpdate
from chisme_client.schemas.voice import VoicePeer
from chisme_client.services.api import ApiClient
from chisme_client.state.presence import PresenceStore
from chisme_client.state.store import SessionStore
from chisme_client.websocket.backoff import ExponentialBackoff
from chisme_client.websocket.connection import ConnectionManager, ConnectionState, Connector
from chisme_client.websocket.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)

# Quoted text kept in a reply snapshot
REPLY_PREVIEW_LENGTH = 100


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class ServerSession:
    def __init__(
        self,
        server_id: str,
        token: str,
        user_name: str = "Unknown",
        *,
        api: ApiClient | None = None,
        connector: Connector | None = None,
        backoff: ExponentialBackoff | None = None,
        ws_url: str | None = None,
        heartbeat_interval: float | None = None,
        handshake_timeout: float | None = None,
        typing_ttl: float | None = None,
        typing_resend_interval: float | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.server_id = server_id
        self.user_name = user_name
        self._clock = clock
        self._wall_clock = wall_clock
        self.typing_resend_interval = (
            settings.TYPING_RESEND_INTERVAL if typing_resend_interval is None else typing_resend_interval
        )
        self.sweep_interval = settings.TYPING_SWEEP_INTERVAL if sweep_interval is None else sweep_interval

        self.store = SessionStore(server_id, wall_clock)
        self.presence = PresenceStore(typing_ttl, clock)
        self.dispatcher = EventDispatcher(self.store, self.presence)
        self.api = api or ApiClient(token, server_id)
        self.connection = ConnectionManager(
            ws_url or settings.WS_URL,
            token,
            server_id,
            self.dispatcher.apply_inbound,
            connector=connector,
            backoff=backoff,
            heartbeat_interval=heartbeat_interval,
            handshake_timeout=handshake_timeout,
        )
        self.connection.add_state_listener(self._on_state_change)
        self.connection.add_connect_listener(self._on_connected)
        # nothing is granted until the first refresh lands
        self.permissions = PermissionSnapshot(Member(user_id="", server_id=server_id))

        self.active = False
        # single-use: deactivate() closes the API client for good
        self.disposed = False
        self.active_channel_id: str | None = None
        self.voice_channel_id: str | None = None
        self._typing_sent: dict[str, float] = {}
        self._pins_in_flight: set[str] = set()
        self._history_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None

    @property
    def user_id(self) -> str | None:
        return self.store.self_user_id

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def subscribe(self, listener: Callable[[str, str | None], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def activate(self) -> None:
        if self.disposed:
            raise SessionError(f"Session for server {self.server_id} was deactivated; create a new one")
        if self.active:
            return
        self.active = True
        self.connection.start()
        self._sweep_task = asyncio.create_task(self._sweep_typing(), name=f"typing-sweep-{self.server_id}")
        logger.info("Activated server %s", self.server_id)

    async def deactivate(self) -> None:
        if not self.active:
            return
        self.active = False
        self.disposed = True
        await _cancel(self._history_task)
        await _cancel(self._connect_task)
        await _cancel(self._sweep_task)
        self._history_task = self._connect_task = self._sweep_task = None
        await self.connection.stop()

        # unconfirmed sends die with the context; nothing is replayed
        self.dispatcher.apply_optimistic(DiscardPending())
        self.presence.clear()
        self._typing_sent.clear()
        self._pins_in_flight.clear()
        self.voice_channel_id = None
        await self.api.aclose()
        logger.info("Deactivated server %s", self.server_id)

    async def __aenter__(self) -> "ServerSession":
        await self.activate()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.deactivate()

    async def _sweep_typing(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            if self.presence.sweep():
                self.store.notify(events.TYPING_START)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if old is ConnectionState.CONNECTED and new is not ConnectionState.CONNECTED:
            self._typing_sent.clear()
            # the server removes us from voice when the socket drops
            self.dispatcher.apply_inbound({"type": events.CONNECTION_LOST})
            self.voice_channel_id = None

    def _on_connected(self, is_reconnect: bool) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = asyncio.create_task(self._after_connect(is_reconnect), name=f"after-connect-{self.server_id}")

    async def _after_connect(self, is_reconnect: bool) -> None:
        channel_id = self.active_channel_id
        if channel_id is not None:
            try:
                await self.connection.send({"type": events.JOIN_CHANNEL, "channel_id": channel_id})
            except NotConnectedError:
                return
            if is_reconnect:
                logger.info("Reconnected to server %s; resyncing channel %s", self.server_id, channel_id)
                self._start_history_load(channel_id, self._resync(channel_id))

        try:
            await self.refresh_permissions(channel_id)
        except SessionError as exc:
            logger.warning("Permission refresh for server %s failed: %s", self.server_id, exc)

    # ------------------------------------------------------------------
    # Channels and history
    # ------------------------------------------------------------------

    def _start_history_load(self, channel_id: str, coro: Any) -> asyncio.Task:
        if self._history_task is not None and not self._history_task.done():
            self._history_task.cancel()
        self._history_task = asyncio.create_task(coro, name=f"history-{channel_id}")
        return self._history_task

    async def open_channel(self, channel_id: str) -> None:
        """Make channel_id the active text channel and load its latest page."""
        previous = self.active_channel_id
        if previous == channel_id:
            return
        self.active_channel_id = channel_id
        if previous is not None:
            self.dispatcher.apply_optimistic(DiscardPending(channel_id=previous))
            self._typing_sent.pop(previous, None)

        if self.connection.is_connected:
            try:
                if previous is not None:
                    await self.connection.send({"type": events.LEAVE_CHANNEL, "channel_id": previous})
                await self.connection.send({"type": events.JOIN_CHANNEL, "channel_id": channel_id})
            except NotConnectedError:
                # re-joined by _after_connect once the socket is back
                logger.info("Channel switch to %s deferred until reconnect", channel_id)

        if self.user_id is not None and not self.permissions.has_overrides_for(channel_id):
            await self._load_overrides(channel_id)

        task = self._start_history_load(channel_id, self._load_latest(channel_id))
        try:
            await task
        except asyncio.CancelledError:
            # superseded by a newer open_channel; only our own cancellation propagates
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    async def _load_latest(self, channel_id: str) -> None:
        page = await self.api.get_messages(channel_id, limit=settings.MESSAGES_PER_PAGE)
        if channel_id != self.active_channel_id:
            logger.debug("Dropping history for %s: no longer the active channel", channel_id)
            return
        self.dispatcher.apply_inbound(
            {
                "type": events.HISTORY_PAGE,
                "channel_id": channel_id,
                "messages": page,
                "has_more": len(page) >= settings.MESSAGES_PER_PAGE,
            }
        )

    async def _resync(self, channel_id: str) -> None:
        try:
            page = await self.api.get_messages(channel_id, limit=settings.MESSAGES_PER_PAGE)
        except SessionError as exc:
            logger.warning("Resync of channel %s failed: %s", channel_id, exc)
            return
        if channel_id != self.active_channel_id:
            return
        event: dict[str, Any] = {"type": events.HISTORY_PAGE, "channel_id": channel_id, "messages": page}
        if not self.store.history(channel_id).loaded:
            event["has_more"] = len(page) >= settings.MESSAGES_PER_PAGE
        self.dispatcher.apply_inbound(event)

    async def load_older_messages(self, channel_id: str | None = None) -> int:
        """Scroll-back: fetch the page before the oldest confirmed message. Returns its size."""
        channel_id = channel_id or self.active_channel_id
        if channel_id is None:
            raise ValidationError("No channel open")
        history = self.store.history(channel_id)
        if not history.has_more:
            return 0
        oldest = history.oldest_confirmed()
        before = oldest.created_at if oldest is not None else None
        page = await self.api.get_messages(channel_id, limit=settings.MESSAGES_PER_PAGE, before=before)
        self.dispatcher.apply_inbound(
            {
                "type": events.HISTORY_PAGE,
                "channel_id": channel_id,
                "messages": page,
                "has_more": len(page) >= settings.MESSAGES_PER_PAGE,
            }
        )
        return len(page)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def check_permission(self, required: Permissions, channel_id: str | None = None) -> bool:
        return self.permissions.check(required, channel_id)

    def _require(self, required: Permissions, channel_id: str | None = None) -> None:
        if not self.permissions.check(required, channel_id):
            label = ", ".join(permission_labels(required)) or required.name
            raise PermissionDenied(f"Missing permission: {label}", required)

    async def refresh_permissions(self, channel_id: str | None = None) -> None:
        """Reload roles and our own role assignments, plus one channel's overrides."""
        user_id = self.user_id
        if user_id is None:
            raise NotConnectedError("Identity not known yet")
        roles = await self.api.get_roles()
        member_roles = await self.api.get_member_roles(user_id)

        known = {r.id: r for r in roles}
        for role in member_roles:
            known.setdefault(role.id, role)
        self.permissions.set_roles(known.values())
        self.permissions.member = Member(
            user_id=user_id,
            server_id=self.server_id,
            role_ids={r.id for r in member_roles},
        )
        if channel_id is not None:
            await self._load_overrides(channel_id)
        logger.debug("Permissions refreshed for %s on server %s", user_id, self.server_id)

    async def _load_overrides(self, channel_id: str) -> None:
        try:
            overrides = await self.api.get_overrides(channel_id)
        except PermissionDenied:
            logger.debug("Not allowed to read overrides of channel %s", channel_id)
            return
        self.permissions.set_channel_overrides(channel_id, overrides)

    async def set_override(
        self,
        channel_id: str,
        target_type: OverrideTarget,
        target_id: str,
        allow: int = 0,
        deny: int = 0,
    ) -> ChannelOverride:
        if allow & deny:
            raise ValidationError("A permission cannot be both allowed and denied")
        self._require(Permissions.MANAGE_ROLES, channel_id)
        override = await self.api.put_override(
            channel_id, target_id, OverrideUpdate(target_type=target_type, allow=allow, deny=deny)
        )
        self.permissions.set_override(override)
        return override

    async def delete_override(self, channel_id: str, target_type: OverrideTarget, target_id: str) -> None:
        self._require(Permissions.MANAGE_ROLES, channel_id)
        try:
            await self.api.delete_override(channel_id, target_id)
        except StaleReferenceError:
            logger.debug("Override %s on %s already gone", target_id, channel_id)
        self.permissions.remove_override(channel_id, target_type, target_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._wall_clock(), timezone.utc)

    def _require_connected(self) -> str:
        if not self.connection.is_connected or self.user_id is None:
            raise NotConnectedError()
        return self.user_id

    @staticmethod
    def _clean_content(content: str) -> str:
        content = content.strip()
        if not content:
            raise ValidationError("Message is empty")
        if len(content) > settings.MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {settings.MAX_MESSAGE_LENGTH} characters")
        return content

    def _confirmed(self, message_id: str) -> Message | None:
        message = self.store.get_message(message_id)
        if message is not None and message.is_pending:
            raise ValidationError("Message has not been delivered yet")
        return message

    def _may_manage(self, message: Message) -> None:
        if message.user_id != self.user_id:
            self._require(Permissions.MANAGE_MESSAGES, message.channel_id)

    async def send_message(
        self,
        content: str,
        channel_id: str | None = None,
        reply_to: str | None = None,
    ) -> Message:
        channel_id = channel_id or self.active_channel_id
        if channel_id is None:
            raise ValidationError("No channel open")
        content = self._clean_content(content)
        user_id = self._require_connected()
        if self.store.timeout.is_active():
            remaining = int(self.store.timeout.remaining())
            raise PermissionDenied(f"You are timed out for another {remaining}s")
        self._require(Permissions.SEND_MESSAGES, channel_id)

        replied = None
        if reply_to is not None:
            quoted = self.store.get_message(reply_to)
            if quoted is not None:
                replied = RepliedMessage(
                    id=quoted.id,
                    content=quoted.content[:REPLY_PREVIEW_LENGTH],
                    user_name=quoted.user_name,
                )

        nonce = uuid.uuid4().hex
        message = self.dispatcher.apply_optimistic(
            SendMessage(
                nonce=nonce,
                channel_id=channel_id,
                user_id=user_id,
                user_name=self.user_name,
                content=content,
                created_at=self._now(),
                reply_to=reply_to,
                replied_message=replied,
            )
        )
        payload = {
            "type": events.SEND_MESSAGE,
            "channel_id": channel_id,
            "content": content,
            "user_id": user_id,
            "user_name": self.user_name,
            "nonce": nonce,
        }
        if reply_to is not None:
            payload["reply_to"] = reply_to
        try:
            await self.connection.send(payload)
        except NotConnectedError:
            self.dispatcher.apply_optimistic(DiscardPending(channel_id=channel_id, nonce=nonce))
            raise
        self._typing_sent.pop(channel_id, None)
        return message

    async def edit_message(self, message_id: str, content: str) -> Message | None:
        content = self._clean_content(content)
        self._require_connected()
        message = self._confirmed(message_id)
        if message is None:
            logger.debug("Edit of unknown message %s ignored", message_id)
            return None
        self._may_manage(message)

        previous = self.dispatcher.apply_optimistic(
            EditMessage(message_id=message_id, content=content, edited_at=self._now())
        )
        try:
            await self.connection.send({"type": events.EDIT_MESSAGE, "message_id": message_id, "content": content})
        except NotConnectedError:
            if self.store.get_message(message_id) is not None:
                self.dispatcher.apply_optimistic(
                    EditMessage(message_id=message_id, content=previous.content, edited_at=previous.edited_at)
                )
            raise
        return self.store.get_message(message_id)

    async def delete_message(self, message_id: str) -> None:
        message = self.store.get_message(message_id)
        if message is None:
            return
        if message.is_pending:
            self.dispatcher.apply_optimistic(DiscardPending(channel_id=message.channel_id, nonce=message.nonce))
            return
        self._require_connected()
        self._may_manage(message)

        removed = self.dispatcher.apply_optimistic(DeleteMessage(message_id=message_id))
        try:
            await self.connection.send(
                {"type": events.DELETE_MESSAGE, "message_id": message_id, "channel_id": message.channel_id}
            )
        except NotConnectedError:
            if removed is not None and self.store.get_message(message_id) is None:
                self.dispatcher.apply_optimistic(RestoreMessage(message=removed))
            raise

    async def toggle_reaction(self, message_id: str, emoji: str) -> bool | None:
        """Add or remove our reaction. Returns True if we now react, None for an unknown message."""
        message = self._confirmed(message_id)
        if message is None:
            return None
        user_id = self.user_id
        if user_id is None:
            raise NotConnectedError("Identity not known yet")
        adding = user_id not in message.reactions.get(emoji, ())
        if adding:
            self._require(Permissions.ADD_REACTIONS, message.channel_id)

        toggle = ToggleReaction(message_id=message_id, emoji=emoji, user_id=user_id)
        reacted = self.dispatcher.apply_optimistic(toggle)
        try:
            if adding:
                await self.api.add_reaction(message_id, emoji)
            else:
                await self.api.remove_reaction(message_id, emoji)
        except SessionError as exc:
            self._revert_reaction(toggle, reacted)
            if isinstance(exc, StaleReferenceError):
                return None
            raise
        return reacted

    def _revert_reaction(self, toggle: ToggleReaction, reacted: bool) -> None:
        message = self.store.get_message(toggle.message_id)
        if message is None:
            return
        # an echo may already have landed; only flip back if still in our state
        if (toggle.user_id in message.reactions.get(toggle.emoji, ())) == reacted:
            self.dispatcher.apply_optimistic(toggle)

    async def toggle_pin(self, message_id: str) -> bool | None:
        """Pin or unpin. Returns the new pinned state, None if unknown or already in flight."""
        message = self._confirmed(message_id)
        if message is None or message_id in self._pins_in_flight:
            return None
        self._require(Permissions.MANAGE_MESSAGES, message.channel_id)

        pinning = message.pinned_at is None
        previous_at, previous_by = message.pinned_at, message.pinned_by
        self.dispatcher.apply_optimistic(
            PinMessage(message_id=message_id, pinned=pinning, pinned_at=self._now(), pinned_by=self.user_id)
        )
        self._pins_in_flight.add(message_id)
        try:
            if pinning:
                await self.api.pin_message(message_id)
            else:
                await self.api.unpin_message(message_id)
        except SessionError as exc:
            if self.store.get_message(message_id) is not None:
                self.dispatcher.apply_optimistic(
                    PinMessage(message_id=message_id, pinned=not pinning, pinned_at=previous_at, pinned_by=previous_by)
                )
            if isinstance(exc, StaleReferenceError):
                return None
            raise
        finally:
            self._pins_in_flight.discard(message_id)
        return pinning

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    async def notify_typing(self, channel_id: str | None = None) -> bool:
        """Emit typing_start, at most once per resend interval per channel."""
        channel_id = channel_id or self.active_channel_id
        if channel_id is None:
            return False
        self._require_connected()
        now = self._clock()
        last = self._typing_sent.get(channel_id)
        if last is not None and now - last < self.typing_resend_interval:
            return False
        self._require(Permissions.SEND_MESSAGES, channel_id)
        await self.connection.send({"type": events.TYPING_START, "channel_id": channel_id})
        self._typing_sent[channel_id] = now
        return True

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------

    async def join_voice(self, channel_id: str) -> None:
        user_id = self._require_connected()
        self._require(Permissions.CONNECT, channel_id)
        if self.voice_channel_id == channel_id:
            return
        if self.voice_channel_id is not None:
            await self.leave_voice()
        await self.connection.send(
            {"type": events.JOIN_VOICE, "channel_id": channel_id, "user_id": user_id, "user_name": self.user_name}
        )
        self.voice_channel_id = channel_id

    async def leave_voice(self) -> None:
        channel_id = self.voice_channel_id
        if channel_id is None:
            return
        self.voice_channel_id = None
        user_id = self.user_id
        try:
            await self.connection.send({"type": events.LEAVE_VOICE, "channel_id": channel_id, "user_id": user_id})
        except NotConnectedError:
            # the server already dropped us along with the socket
            pass
        if user_id is not None:
            self.dispatcher.apply_inbound({"type": events.VOICE_PEER_LEFT, "channel_id": channel_id, "user_id": user_id})

    async def relay_signal(self, kind: str, target_user_id: str, payload: str) -> None:
        """Forward an opaque offer/answer/ICE payload to one peer in our voice channel."""
        if kind not in events.SIGNAL_TYPES:
            raise ValidationError(f"Not a signaling type: {kind!r}")
        if self.voice_channel_id is None:
            raise ValidationError("Not in a voice channel")
        if len(payload) > settings.MAX_SIGNAL_LENGTH:
            raise ValidationError("Signaling payload too large")
        user_id = self._require_connected()
        field = "candidate" if kind == events.ICE_CANDIDATE else "sdp"
        await self.connection.send(
            {
                "type": kind,
                "channel_id": self.voice_channel_id,
                "target_user_id": target_user_id,
                "from_user_id": user_id,
                field: payload,
            }
        )

    def add_signal_listener(self, listener: Callable[[dict[str, Any]], None]) -> None:
        self.dispatcher.add_signal_listener(listener)

    async def update_voice_status(self, is_muted: bool, is_deafened: bool) -> None:
        if self.voice_channel_id is None:
            raise ValidationError("Not in a voice channel")
        user_id = self._require_connected()
        frame = {
            "type": events.VOICE_STATUS_UPDATE,
            "channel_id": self.voice_channel_id,
            "user_id": user_id,
            "is_muted": is_muted,
            "is_deafened": is_deafened,
        }
        await self.connection.send(frame)
        # the broadcast echo carries the same frame; applying it now is idempotent
        self.dispatcher.apply_inbound(frame)

    async def set_talking(self, talking: bool) -> bool:
        channel_id = self.voice_channel_id
        if channel_id is None:
            return False
        user_id = self._require_connected()
        if (user_id in self.presence.talking_in(channel_id)) == talking:
            return False
        frame = {"type": events.VOICE_TALKING, "channel_id": channel_id, "user_id": user_id, "talking": talking}
        await self.connection.send(frame)
        self.dispatcher.apply_inbound(frame)
        return True

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def timeout_user(self, user_id: str, duration_seconds: int, reason: str | None = None) -> None:
        if not 0 < duration_seconds <= settings.MAX_TIMEOUT_SECONDS:
            raise ValidationError(f"Timeout must be between 1 and {settings.MAX_TIMEOUT_SECONDS} seconds")
        self._require_connected()
        self._require(Permissions.MODERATE_MEMBERS)
        payload: dict[str, Any] = {"type": events.TIMEOUT_USER, "user_id": user_id, "duration_seconds": duration_seconds}
        if reason:
            payload["reason"] = reason
        await self.connection.send(payload)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def messages(self, channel_id: str | None = None) -> list[Message]:
        channel_id = channel_id or self.active_channel_id
        return self.store.messages(channel_id) if channel_id else []

    def typing_users(self, channel_id: str | None = None) -> dict[str, str]:
        channel_id = channel_id or self.active_channel_id
        if channel_id is None:
            return {}
        typing = self.presence.typing_in(channel_id)
        typing.pop(self.user_id or "", None)
        return typing

    def voice_members(self, channel_id: str | None = None) -> list[VoicePeer]:
        channel_id = channel_id or self.voice_channel_id
        return self.presence.voice_members(channel_id) if channel_id else []

    def online_users(self, channel_id: str | None = None) -> dict[str, str]:
        channel_id = channel_id or self.active_channel_id
        return dict(self.store.online.get(channel_id, {})) if channel_id else {}
