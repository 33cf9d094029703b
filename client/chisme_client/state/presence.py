"""
Ephemeral presence — typing indicators and voice rosters.

Typing:
  (channel_id, user_id) -> TypingEntry(user_name, expires_at)
  Each typing_start refreshes expires_at = now + TYPING_TTL. Expiry is
  checked lazily on every read; sweep() purges opportunistically.

Voice:
  channel_id -> {user_id: VoicePeer}. Plain set semantics, no TTL — a peer
  that drops without a leave event stays listed until the next snapshot.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from chisme_client.config import settings
from chisme_client.schemas.voice import VoicePeer

logger = logging.getLogger(__name__)


@dataclass
class TypingEntry:
    user_name: str
    expires_at: float


class PresenceStore:
    def __init__(
        self,
        typing_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.typing_ttl = typing_ttl if typing_ttl is not None else settings.TYPING_TTL
        self._clock = clock
        # channel_id -> {user_id: TypingEntry}
        self._typing: dict[str, dict[str, TypingEntry]] = {}
        # channel_id -> {user_id: VoicePeer}
        self._voice: dict[str, dict[str, VoicePeer]] = {}
        # channel_id -> user_ids currently transmitting
        self._talking: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    def set_typing(self, channel_id: str, user_id: str, user_name: str, ttl: float | None = None) -> None:
        """Create or refresh a typing entry."""
        ttl = self.typing_ttl if ttl is None else ttl
        self._typing.setdefault(channel_id, {})[user_id] = TypingEntry(user_name, self._clock() + ttl)

    def clear_typing(self, channel_id: str, user_id: str) -> None:
        entries = self._typing.get(channel_id)
        if entries is None:
            return
        entries.pop(user_id, None)
        if not entries:
            del self._typing[channel_id]

    def typing_in(self, channel_id: str) -> dict[str, str]:
        """Return {user_id: user_name} for unexpired typists in a channel."""
        entries = self._typing.get(channel_id)
        if not entries:
            return {}
        now = self._clock()
        for user_id in [uid for uid, e in entries.items() if e.expires_at <= now]:
            del entries[user_id]
        if not entries:
            del self._typing[channel_id]
            return {}
        return {uid: e.user_name for uid, e in entries.items()}

    def is_typing(self, channel_id: str, user_id: str) -> bool:
        return user_id in self.typing_in(channel_id)

    def sweep(self) -> int:
        """Drop every expired typing entry. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for channel_id in list(self._typing):
            entries = self._typing[channel_id]
            expired = [uid for uid, e in entries.items() if e.expires_at <= now]
            for uid in expired:
                del entries[uid]
            removed += len(expired)
            if not entries:
                del self._typing[channel_id]
        return removed

    # ------------------------------------------------------------------
    # Voice roster
    # ------------------------------------------------------------------

    def set_voice_presence(self, peer: VoicePeer) -> None:
        self._voice.setdefault(peer.channel_id, {})[peer.user_id] = peer

    def clear_voice_presence(self, channel_id: str, user_id: str) -> bool:
        roster = self._voice.get(channel_id)
        self._talking.get(channel_id, set()).discard(user_id)
        if roster is None or roster.pop(user_id, None) is None:
            return False
        if not roster:
            del self._voice[channel_id]
        return True

    def replace_channel_roster(self, channel_id: str, peers: Iterable[VoicePeer]) -> None:
        roster = {p.user_id: p for p in peers if p.channel_id == channel_id}
        if roster:
            self._voice[channel_id] = roster
        else:
            self._voice.pop(channel_id, None)
        talking = self._talking.get(channel_id)
        if talking:
            talking.intersection_update(roster)

    def replace_roster(self, peers: Iterable[VoicePeer]) -> None:
        self._voice = {}
        for peer in peers:
            self.set_voice_presence(peer)
        self._talking = {
            cid: users & set(self._voice.get(cid, {})) for cid, users in self._talking.items() if cid in self._voice
        }

    def clear_voice_channel(self, channel_id: str) -> None:
        self._voice.pop(channel_id, None)
        self._talking.pop(channel_id, None)

    def update_voice_status(self, channel_id: str, user_id: str, is_muted: bool, is_deafened: bool) -> None:
        peer = self._voice.get(channel_id, {}).get(user_id)
        if peer is None:
            logger.debug("voice status for unknown peer %s in %s — ignoring", user_id, channel_id)
            return
        self._voice[channel_id][user_id] = peer.model_copy(update={"is_muted": is_muted, "is_deafened": is_deafened})

    def set_talking(self, channel_id: str, user_id: str, talking: bool) -> None:
        if talking:
            self._talking.setdefault(channel_id, set()).add(user_id)
        else:
            self._talking.get(channel_id, set()).discard(user_id)

    def talking_in(self, channel_id: str) -> set[str]:
        return set(self._talking.get(channel_id, ()))

    def voice_members(self, channel_id: str) -> list[VoicePeer]:
        return list(self._voice.get(channel_id, {}).values())

    def voice_channel_of(self, user_id: str) -> str | None:
        for channel_id, roster in self._voice.items():
            if user_id in roster:
                return channel_id
        return None

    def clear(self) -> None:
        self._typing.clear()
        self._voice.clear()
        self._talking.clear()
