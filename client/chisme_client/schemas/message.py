import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, field_validator


class MessageStatus(str, enum.Enum):
    PENDING = "pending"  # applied locally, no server echo yet
    CONFIRMED = "confirmed"


def parse_timestamp(value: Any) -> Any:
    """Accept the server's "YYYY-MM-DD HH:MM:SS" (naive UTC) as well as ISO 8601."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class RepliedMessage(BaseModel):
    """Snapshot of the quoted message, frozen at reply time."""

    id: str
    content: str
    user_name: str = "Unknown"


class ReactionGroup(BaseModel):
    emoji: str
    count: int = 0
    user_ids: list[str] = []


class Message(BaseModel):
    id: str
    channel_id: str
    user_id: str
    user_name: str = "Unknown"
    avatar_url: str | None = None
    content: str = ""
    created_at: datetime
    edited_at: datetime | None = None
    is_bot: bool = False
    reply_to: str | None = None
    replied_message: RepliedMessage | None = None
    # emoji -> ids of users who reacted; counts are always derived from this
    reactions: dict[str, set[str]] = {}
    pinned_at: datetime | None = None
    pinned_by: str | None = None
    status: MessageStatus = MessageStatus.CONFIRMED
    nonce: str | None = None

    @field_validator("created_at", "edited_at", "pinned_at", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @field_validator("reactions", mode="before")
    @classmethod
    def _reaction_groups(cls, value: Any) -> Any:
        # REST pages carry [{emoji, count, user_ids}]
        if isinstance(value, list):
            grouped: dict[str, set[str]] = {}
            for group in value:
                if isinstance(group, ReactionGroup):
                    group = group.model_dump()
                grouped.setdefault(group["emoji"], set()).update(group.get("user_ids", []))
            return {emoji: users for emoji, users in grouped.items() if users}
        return value

    @property
    def is_pending(self) -> bool:
        return self.status is MessageStatus.PENDING

    def reaction_count(self, emoji: str) -> int:
        return len(self.reactions.get(emoji, ()))

    def reaction_groups(self) -> list[ReactionGroup]:
        return [
            ReactionGroup(emoji=emoji, count=len(users), user_ids=sorted(users))
            for emoji, users in self.reactions.items()
            if users
        ]
