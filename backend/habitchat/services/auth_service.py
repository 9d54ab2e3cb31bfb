from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from habitchat.core.config import get_settings
from habitchat.core.exceptions import ConflictError, InternalError, UnauthorizedError
from habitchat.core.security import generate_uid, hash_password, verify_password
from habitchat.db.models import User
from habitchat.db.session import commit_or_raise
from habitchat.schemas.auth import RegisterRequest

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_user_by_id(db: Session, user_id: int) -> User | None:
    return db.get(User, user_id)


def get_active_user_by_id(db: Session, user_id: int) -> User | None:
    user = db.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


def get_user_by_uid(db: Session, uid: str) -> User | None:
    return db.scalar(select(User).where(User.uid == uid.strip()))


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.scalar(select(User).where(User.email == email.lower()))


def get_user_by_username(db: Session, username: str) -> User | None:
    return db.scalar(select(User).where(User.username == username.strip()))


def _generate_unique_uid(db: Session) -> str:
    settings = get_settings()
    for _ in range(max(1, settings.uid_generation_attempts)):
        candidate = generate_uid()
        if not db.scalar(select(User.id).where(User.uid == candidate)):
            return candidate
    raise InternalError("Could not allocate a unique user id")


def create_user(db: Session, payload: RegisterRequest) -> User:
    email = payload.email.lower()
    username = payload.username.strip()
    existing = db.scalar(
        select(User).where(or_(User.email == email, User.username == username))
    )
    if existing:
        field = "Email" if existing.email == email else "Username"
        raise ConflictError(f"{field} already in use")

    existing_user_count = db.scalar(select(func.count(User.id))) or 0
    user = User(
        uid=_generate_unique_uid(db),
        email=email,
        username=username,
        nickname=(payload.nickname or "").strip() or username,
        password_hash=hash_password(payload.password),
        role="admin" if existing_user_count == 0 else "user",
        is_active=True,
    )
    db.add(user)
    commit_or_raise(db, "Email or username already in use")
    db.refresh(user)
    logger.info("user_registered", user_id=user.id, uid=user.uid)
    return user


def authenticate_user(db: Session, login: str, password: str) -> User:
    normalized = login.strip()
    user = db.scalar(
        select(User).where(or_(User.email == normalized.lower(), User.username == normalized))
    )
    if not user or not verify_password(password, user.password_hash):
        raise UnauthorizedError("Invalid credentials")
    if not user.is_active:
        raise UnauthorizedError("Account is disabled")

    user.last_login_at = _utc_now()
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("user_logged_in", user_id=user.id)
    return user


def is_recently_online(user: User) -> bool:
    if not user.last_login_at:
        return False
    settings = get_settings()
    elapsed = (_utc_now() - as_utc(user.last_login_at)).total_seconds()
    return elapsed < settings.online_window_seconds


def public_profile(user: User) -> dict:
    return {
        "user_id": user.id,
        "uid": user.uid,
        "username": user.username,
        "nickname": user.nickname,
        "avatar_url": user.avatar_url,
    }
