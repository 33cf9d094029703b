"""Optimistic mutations — local intent applied before the server confirms."""

from datetime import datetime

from pydantic import BaseModel

from chisme_client.schemas.message import Message, RepliedMessage


class SendMessage(BaseModel):
    nonce: str
    channel_id: str
    user_id: str
    user_name: str
    content: str
    created_at: datetime
    reply_to: str | None = None
    replied_message: RepliedMessage | None = None


class EditMessage(BaseModel):
    message_id: str
    content: str
    edited_at: datetime | None


class DeleteMessage(BaseModel):
    message_id: str


class RestoreMessage(BaseModel):
    message: Message


class DiscardPending(BaseModel):
    """Drop unconfirmed sends — one by nonce, or every one in the channel."""

    channel_id: str | None = None
    nonce: str | None = None


class ToggleReaction(BaseModel):
    message_id: str
    emoji: str
    user_id: str


class PinMessage(BaseModel):
    message_id: str
    pinned: bool
    pinned_at: datetime | None = None
    pinned_by: str | None = None


Mutation = SendMessage | EditMessage | DeleteMessage | RestoreMessage | DiscardPending | ToggleReaction | PinMessage
