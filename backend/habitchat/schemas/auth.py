from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=8, max_length=128)
    nickname: str | None = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    login: str = Field(min_length=3, max_length=255, description="Email or username")
    password: str = Field(min_length=8, max_length=128)


class UserRead(BaseModel):
    id: int
    uid: str
    email: EmailStr
    username: str
    nickname: str | None = None
    avatar_url: str | None = None
    role: str
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead
