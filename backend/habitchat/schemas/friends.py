from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from habitchat.schemas.common import PublicUserRead


class FriendRequestCreateRequest(BaseModel):
    uid: str = Field(min_length=1, max_length=11, pattern=r"^\d+$")
    message: str | None = Field(default=None, max_length=500)


class FriendRequestRespondRequest(BaseModel):
    action: Literal["accept", "decline"]
    message: str | None = Field(default=None, max_length=500)


class FriendSettingsUpdateRequest(BaseModel):
    alias: str | None = Field(default=None, max_length=100)
    is_starred: bool | None = None
    is_muted: bool | None = None


class FriendshipRead(BaseModel):
    id: int
    requester_id: int
    addressee_id: int
    status: str
    requester_message: str | None = None
    reject_reason: str | None = None
    friendship_alias: str | None = None
    is_starred: bool = False
    is_muted: bool = False
    is_blocked: bool = False
    blocked_by_id: int | None = None
    conversation_id: str | None = None
    created_at: datetime
    updated_at: datetime
    responded_at: datetime | None = None


class FriendRequestRead(BaseModel):
    id: int
    status: str
    message: str | None = None
    direction: Literal["received", "sent"]
    created_at: datetime
    user: PublicUserRead


class FriendRead(BaseModel):
    user_id: int
    uid: str
    username: str
    nickname: str | None = None
    display_name: str
    avatar_url: str | None = None
    is_online: bool = False
    last_seen_at: datetime | None = None
    friend_since: datetime
    friendship_id: int
    conversation_id: str | None = None
    is_starred: bool = False
    is_muted: bool = False
    unread_count: int = 0
    last_message_at: datetime | None = None


class UserSearchRead(PublicUserRead):
    friendship_status: str | None = None
    friendship_id: int | None = None
    can_send_request: bool = True


class FriendNotificationRead(BaseModel):
    id: int
    friendship_id: int
    type: str
    message: str | None = None
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime
    from_user: PublicUserRead | None = None


class FriendNotificationPageRead(BaseModel):
    items: list[FriendNotificationRead]
    total: int
    unread: int
