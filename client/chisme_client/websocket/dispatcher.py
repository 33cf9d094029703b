"""
Event dispatcher / reconciler.

Two entry points, both synchronous, both writing the same SessionStore:

  apply_optimistic(mutation)  local intent, applied before the server answers
  apply_inbound(event)        authoritative frames from the socket (plus the
                              local-only history_page / connection_lost)

Conflicts resolve server-wins. Inbound handling is idempotent: replaying a
frame leaves the store exactly as the first application did.
"""

import logging
from collections.abc import Callable
from typing import Any

import pydantic

from chisme_client.core import events
from chisme_client.core.errors import StaleReferenceError
from chisme_client.schemas.message import Message, MessageStatus, parse_timestamp
from chisme_client.schemas.mutation import (
    DeleteMessage,
    DiscardPending,
    EditMessage,
    Mutation,
    PinMessage,
    RestoreMessage,
    SendMessage,
    ToggleReaction,
)
from chisme_client.schemas.voice import VoicePeer
from chisme_client.state.presence import PresenceStore
from chisme_client.state.store import SessionStore

logger = logging.getLogger(__name__)

SignalListener = Callable[[dict[str, Any]], None]


def merge_message(existing: Message | None, incoming: Message) -> Message:
    """Fold an authoritative copy of a message over whatever we hold locally.

    Server fields always win. Reactions and pin state are kept from the
    local copy only when the incoming payload doesn't carry them (live
    new_message frames don't; REST pages do).
    """
    if existing is None:
        return incoming.model_copy(update={"status": MessageStatus.CONFIRMED})

    provided = incoming.model_fields_set
    update: dict[str, Any] = {"status": MessageStatus.CONFIRMED}
    if "reactions" not in provided:
        update["reactions"] = {emoji: set(users) for emoji, users in existing.reactions.items()}
    if "pinned_at" not in provided:
        update["pinned_at"] = existing.pinned_at
        update["pinned_by"] = existing.pinned_by
    if "edited_at" not in provided:
        update["edited_at"] = existing.edited_at
    if "replied_message" not in provided and existing.replied_message is not None:
        update["replied_message"] = existing.replied_message
    if incoming.nonce is None:
        update["nonce"] = existing.nonce
    return incoming.model_copy(update=update)


class EventDispatcher:
    def __init__(self, store: SessionStore, presence: PresenceStore) -> None:
        self.store = store
        self.presence = presence
        self._signal_listeners: list[SignalListener] = []
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            events.IDENTITY: self._on_identity,
            events.NEW_MESSAGE: self._on_new_message,
            events.MESSAGE_EDITED: self._on_message_edited,
            events.MESSAGE_DELETED: self._on_message_deleted,
            events.MESSAGE_PINNED: self._on_message_pinned,
            events.REACTION_ADD: self._on_reaction_add,
            events.REACTION_REMOVE: self._on_reaction_remove,
            events.TYPING_START: self._on_typing_start,
            events.USER_JOINED: self._on_user_joined,
            events.USER_LEFT: self._on_user_left,
            events.USER_TIMEDOUT: self._on_user_timedout,
            events.VOICE_PEER_JOINED: self._on_voice_peer_joined,
            events.VOICE_PEER_LEFT: self._on_voice_peer_left,
            events.VOICE_MEMBERS: self._on_voice_members,
            events.VOICE_STATE_SYNC: self._on_voice_state_sync,
            events.VOICE_STATUS_UPDATE: self._on_voice_status_update,
            events.VOICE_TALKING: self._on_voice_talking,
            events.ERROR: self._on_error,
            events.HISTORY_PAGE: self._on_history_page,
            events.CONNECTION_LOST: self._on_connection_lost,
        }

    def add_signal_listener(self, listener: SignalListener) -> None:
        """Register the media-negotiation collaborator for offer/answer/ICE frames."""
        self._signal_listeners.append(listener)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def apply_inbound(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type in events.SIGNAL_TYPES:
            # opaque, hand over untouched
            for listener in list(self._signal_listeners):
                listener(event)
            return

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring unhandled event %r", event_type)
            return

        try:
            handler(event)
        except (KeyError, TypeError, ValueError, pydantic.ValidationError) as exc:
            logger.warning("Dropping malformed %r event: %s", event_type, exc)

    def _on_identity(self, event: dict[str, Any]) -> None:
        self.store.self_user_id = str(event["user_id"])
        self.store.notify(events.IDENTITY)

    def _on_new_message(self, event: dict[str, Any]) -> None:
        incoming = Message.model_validate(event)
        self._reconcile(incoming)
        # a message means its author has stopped typing
        self.presence.clear_typing(incoming.channel_id, incoming.user_id)
        self.store.notify(events.NEW_MESSAGE, incoming.channel_id)

    def _reconcile(self, incoming: Message, live: bool = True) -> None:
        existing = self.store.get_message(incoming.id)
        if existing is not None:
            self.store.put_message(merge_message(existing, incoming))
            return

        pending = self.store.find_pending(
            incoming.channel_id,
            incoming.nonce,
            incoming.user_id,
            incoming.content,
            # a live echo always follows our send; a page may predate it
            None if live else incoming.created_at,
        )
        if pending is not None:
            self.store.replace_message(pending.id, merge_message(pending, incoming))
            return

        self.store.put_message(merge_message(None, incoming))

    def _on_message_edited(self, event: dict[str, Any]) -> None:
        message = self.store.get_message(str(event["id"]))
        if message is None:
            logger.debug("Edit for unknown message %s — ignoring", event["id"])
            return
        message.content = event["content"]
        message.edited_at = parse_timestamp(event.get("edited_at")) or message.edited_at
        self.store.notify(events.MESSAGE_EDITED, message.channel_id)

    def _on_message_deleted(self, event: dict[str, Any]) -> None:
        removed = self.store.remove_message(str(event["id"]))
        if removed is not None:
            self.store.notify(events.MESSAGE_DELETED, removed.channel_id)

    def _on_message_pinned(self, event: dict[str, Any]) -> None:
        message = self.store.get_message(str(event["message_id"]))
        if message is None:
            return
        if event.get("pinned"):
            pinned_at = parse_timestamp(event.get("pinned_at"))
            message.pinned_at = pinned_at or message.pinned_at
            message.pinned_by = event.get("pinned_by") or message.pinned_by
        else:
            message.pinned_at = None
            message.pinned_by = None
        self.store.notify(events.MESSAGE_PINNED, message.channel_id)

    def _on_reaction_add(self, event: dict[str, Any]) -> None:
        message = self.store.get_message(str(event["message_id"]))
        if message is None:
            return
        message.reactions.setdefault(event["emoji"], set()).add(str(event["user_id"]))
        self.store.notify(events.REACTION_ADD, message.channel_id)

    def _on_reaction_remove(self, event: dict[str, Any]) -> None:
        message = self.store.get_message(str(event["message_id"]))
        if message is None:
            return
        users = message.reactions.get(event["emoji"])
        if users is not None:
            users.discard(str(event["user_id"]))
            if not users:
                del message.reactions[event["emoji"]]
        self.store.notify(events.REACTION_REMOVE, message.channel_id)

    def _on_typing_start(self, event: dict[str, Any]) -> None:
        user_id = str(event["user_id"])
        if user_id == self.store.self_user_id:
            return
        channel_id = str(event["channel_id"])
        self.presence.set_typing(channel_id, user_id, event.get("user_name") or "Unknown")
        self.store.notify(events.TYPING_START, channel_id)

    def _on_user_joined(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        self.store.online.setdefault(channel_id, {})[str(event["user_id"])] = event.get("user_name") or "Unknown"
        self.store.notify(events.USER_JOINED, channel_id)

    def _on_user_left(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        self.store.online.get(channel_id, {}).pop(str(event["user_id"]), None)
        self.store.notify(events.USER_LEFT, channel_id)

    def _on_user_timedout(self, event: dict[str, Any]) -> None:
        if str(event["user_id"]) != self.store.self_user_id:
            return
        self.store.timeout.start(float(event["duration_seconds"]), event.get("reason"))
        self.store.notify(events.USER_TIMEDOUT)

    def _on_voice_peer_joined(self, event: dict[str, Any]) -> None:
        peer = VoicePeer.model_validate(event)
        self.presence.set_voice_presence(peer)
        self.store.notify(events.VOICE_PEER_JOINED, peer.channel_id)

    def _on_voice_peer_left(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        self.presence.clear_voice_presence(channel_id, str(event["user_id"]))
        self.store.notify(events.VOICE_PEER_LEFT, channel_id)

    def _on_voice_members(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        peers = [VoicePeer.model_validate({"channel_id": channel_id, **m}) for m in event.get("members", [])]
        self.presence.replace_channel_roster(channel_id, peers)
        self.store.notify(events.VOICE_MEMBERS, channel_id)

    def _on_voice_state_sync(self, event: dict[str, Any]) -> None:
        peers = [VoicePeer.model_validate(p) for p in event.get("voice_states", [])]
        self.presence.replace_roster(peers)
        self.store.notify(events.VOICE_STATE_SYNC)

    def _on_voice_status_update(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        self.presence.update_voice_status(
            channel_id,
            str(event["user_id"]),
            is_muted=bool(event.get("is_muted", False)),
            is_deafened=bool(event.get("is_deafened", False)),
        )
        self.store.notify(events.VOICE_STATUS_UPDATE, channel_id)

    def _on_voice_talking(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        self.presence.set_talking(channel_id, str(event["user_id"]), bool(event.get("talking")))
        self.store.notify(events.VOICE_TALKING, channel_id)

    def _on_error(self, event: dict[str, Any]) -> None:
        message = str(event.get("message", "Unknown error"))
        logger.warning("Server rejected an action: %s", message)
        self.store.last_error = message
        self.store.notify(events.ERROR)

    def _on_history_page(self, event: dict[str, Any]) -> None:
        channel_id = str(event["channel_id"])
        history = self.store.history(channel_id)
        for raw in event.get("messages", []):
            incoming = raw if isinstance(raw, Message) else Message.model_validate(raw)
            self._reconcile(incoming, live=False)
        if "has_more" in event:
            history.has_more = bool(event["has_more"])
        history.loaded = True
        self.store.notify(events.HISTORY_PAGE, channel_id)

    def _on_connection_lost(self, event: dict[str, Any]) -> None:
        # the server drops us from voice when the socket goes; so do we
        user_id = event.get("user_id") or self.store.self_user_id
        if user_id is None:
            return
        channel_id = self.presence.voice_channel_of(str(user_id))
        if channel_id is not None:
            self.presence.clear_voice_channel(channel_id)
            self.store.notify(events.CONNECTION_LOST, channel_id)

    # ------------------------------------------------------------------
    # Optimistic
    # ------------------------------------------------------------------

    def apply_optimistic(self, mutation: Mutation) -> Any:
        if isinstance(mutation, SendMessage):
            return self._send(mutation)
        if isinstance(mutation, EditMessage):
            return self._edit(mutation)
        if isinstance(mutation, DeleteMessage):
            return self._delete(mutation)
        if isinstance(mutation, RestoreMessage):
            self.store.put_message(mutation.message)
            self.store.notify(events.NEW_MESSAGE, mutation.message.channel_id)
            return mutation.message
        if isinstance(mutation, DiscardPending):
            return self._discard(mutation)
        if isinstance(mutation, ToggleReaction):
            return self._toggle_reaction(mutation)
        if isinstance(mutation, PinMessage):
            return self._pin(mutation)
        raise TypeError(f"Unknown mutation {type(mutation).__name__}")

    def _send(self, mutation: SendMessage) -> Message:
        provisional_id = f"pending:{mutation.nonce}"
        existing = self.store.get_message(provisional_id)
        if existing is not None:
            return existing
        message = Message(
            id=provisional_id,
            channel_id=mutation.channel_id,
            user_id=mutation.user_id,
            user_name=mutation.user_name,
            content=mutation.content,
            created_at=mutation.created_at,
            reply_to=mutation.reply_to,
            replied_message=mutation.replied_message,
            status=MessageStatus.PENDING,
            nonce=mutation.nonce,
        )
        self.store.put_message(message)
        self.store.notify(events.SEND_MESSAGE, message.channel_id)
        return message

    def _edit(self, mutation: EditMessage) -> Message:
        message = self._require(mutation.message_id)
        previous = message.model_copy()
        message.content = mutation.content
        message.edited_at = mutation.edited_at
        self.store.notify(events.EDIT_MESSAGE, message.channel_id)
        return previous

    def _delete(self, mutation: DeleteMessage) -> Message | None:
        removed = self.store.remove_message(mutation.message_id)
        if removed is not None:
            self.store.notify(events.DELETE_MESSAGE, removed.channel_id)
        return removed

    def _discard(self, mutation: DiscardPending) -> int:
        if mutation.channel_id is not None:
            channel_ids = [mutation.channel_id]
        else:
            channel_ids = list(self.store.channels)
        discarded = 0
        for channel_id in channel_ids:
            history = self.store.channels.get(channel_id)
            if history is None:
                continue
            for message in history.pending():
                if mutation.nonce is None or message.nonce == mutation.nonce:
                    self.store.remove_message(message.id)
                    discarded += 1
        if discarded:
            logger.info("Discarded %d unconfirmed message(s)", discarded)
            self.store.notify(events.MESSAGE_DELETED, mutation.channel_id)
        return discarded

    def _toggle_reaction(self, mutation: ToggleReaction) -> bool:
        """Flip the user's reaction. Returns True if the user now reacts."""
        message = self._require(mutation.message_id)
        users = message.reactions.setdefault(mutation.emoji, set())
        if mutation.user_id in users:
            users.discard(mutation.user_id)
            reacted = False
        else:
            users.add(mutation.user_id)
            reacted = True
        if not users:
            del message.reactions[mutation.emoji]
        self.store.notify(events.REACTION_ADD if reacted else events.REACTION_REMOVE, message.channel_id)
        return reacted

    def _pin(self, mutation: PinMessage) -> bool:
        """Set pin state. Returns False, touching nothing, if already in that state."""
        message = self._require(mutation.message_id)
        if mutation.pinned == (message.pinned_at is not None):
            return False
        message.pinned_at = mutation.pinned_at if mutation.pinned else None
        message.pinned_by = mutation.pinned_by if mutation.pinned else None
        self.store.notify(events.MESSAGE_PINNED, message.channel_id)
        return True

    def _require(self, message_id: str) -> Message:
        message = self.store.get_message(message_id)
        if message is None:
            raise StaleReferenceError(f"Unknown message {message_id}")
        return message
