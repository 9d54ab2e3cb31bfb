from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from habitchat.schemas.common import PublicUserRead


class ConversationCreateRequest(BaseModel):
    type: Literal["private", "group", "ai"] = "private"
    participant_ids: list[int] = Field(default_factory=list, max_length=200)
    name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    avatar_url: str | None = Field(default=None, max_length=500)


class MessageSendRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=36)
    content: str = ""
    message_type: str = "text"
    reply_to_id: str | None = Field(default=None, max_length=36)
    media_url: str | None = Field(default=None, max_length=1000)
    media_metadata: dict[str, Any] | None = None
    mentions: list[int] = Field(default_factory=list)


class MessageEditRequest(BaseModel):
    content: str


class MarkReadRequest(BaseModel):
    message_ids: list[str] = Field(default_factory=list)


class SenderRead(BaseModel):
    user_id: int
    uid: str
    username: str
    nickname: str | None = None
    avatar_url: str | None = None


class MessageRead(BaseModel):
    message_id: str
    conversation_id: str
    sender_id: int | None = None
    sender: SenderRead | None = None
    content: str
    message_type: str
    media_url: str | None = None
    media_metadata: dict[str, Any] | None = None
    reply_to_id: str | None = None
    reactions: list[Any] = Field(default_factory=list)
    mentions: list[Any] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    is_read: bool = False
    read_at: datetime | None = None
    is_delivered: bool = False
    delivered_at: datetime | None = None
    sent_at: datetime


class MessagePageRead(BaseModel):
    conversation_id: str
    messages: list[MessageRead]
    page: int
    size: int
    total: int
    has_more: bool


class LastMessagePreview(BaseModel):
    message_id: str
    content: str
    message_type: str
    sent_at: datetime
    sender_id: int | None = None
    is_deleted: bool = False


class ConversationRead(BaseModel):
    conversation_id: str
    type: str
    name: str | None = None
    description: str | None = None
    avatar_url: str | None = None
    is_active: bool = True
    role: str
    is_muted: bool = False
    is_pinned: bool = False
    unread_count: int = 0
    last_read_at: datetime | None = None
    last_message_at: datetime | None = None
    last_message: LastMessagePreview | None = None
    other_user: PublicUserRead | None = None
    created_at: datetime


class ReadReceiptRead(BaseModel):
    conversation_id: str
    user_id: int
    message_ids: list[str] = Field(default_factory=list)
    read_at: datetime | None = None
