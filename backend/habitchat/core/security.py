from datetime import datetime, timedelta, timezone
import secrets
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt
from passlib.context import CryptContext

from habitchat.core.config import get_settings

pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")
ALGORITHM = "HS256"
UID_LENGTH = 11


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: int, *, username: str | None = None) -> str:
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    expire = issued_at + timedelta(minutes=settings.access_token_expire_minutes)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "exp": expire,
        "iat": issued_at,
        "jti": uuid4().hex,
    }
    if username:
        payload["username"] = username
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token_payload(token: str) -> dict[str, Any] | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def user_id_from_token(token: str | None) -> int | None:
    if not token:
        return None
    payload = decode_access_token_payload(token)
    if not payload:
        return None
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        return None
    return int(subject)


def strip_bearer_prefix(token: str | None) -> str | None:
    if not isinstance(token, str):
        return None
    if token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]
    token = token.strip()
    return token or None


def generate_uid() -> str:
    # 11 digits, never starting with 0
    first = secrets.choice("123456789")
    rest = "".join(secrets.choice("0123456789") for _ in range(UID_LENGTH - 1))
    return first + rest
