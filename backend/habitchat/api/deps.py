from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from habitchat.core.config import get_settings
from habitchat.core.exceptions import UnauthorizedError
from habitchat.core.security import user_id_from_token
from habitchat.db.models import User
from habitchat.db.session import get_db
from habitchat.services.auth_service import get_active_user_by_id
from habitchat.services.presence_service import PresenceRegistry, presence_registry

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{get_settings().api_prefix}/auth/login",
    auto_error=False,
)


def get_current_user_id(token: str | None = Depends(oauth2_scheme)) -> int:
    if not token:
        raise UnauthorizedError("Not authenticated")
    user_id = user_id_from_token(token)
    if user_id is None:
        raise UnauthorizedError("Invalid or expired token")
    return user_id


def get_current_user(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> User:
    user = get_active_user_by_id(db, user_id)
    if not user:
        raise UnauthorizedError("User not found")
    return user


def get_presence() -> PresenceRegistry:
    return presence_registry
