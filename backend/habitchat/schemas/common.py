from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Envelope shared by every REST response: ``{success, message, data}``."""

    success: bool = True
    message: str = ""
    data: T | None = None


class PublicUserRead(BaseModel):
    user_id: int
    uid: str
    username: str
    nickname: str | None = None
    avatar_url: str | None = None
    is_online: bool = False
