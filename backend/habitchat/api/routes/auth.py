import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from habitchat.api.deps import get_current_user
from habitchat.core.request_meta import extract_client_ip, extract_user_agent
from habitchat.core.security import create_access_token
from habitchat.db.models import User
from habitchat.db.session import get_db
from habitchat.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserRead
from habitchat.schemas.common import ApiResponse
from habitchat.services.auth_service import authenticate_user, create_user

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/register",
    response_model=ApiResponse[UserRead],
    status_code=status.HTTP_201_CREATED,
)
def register(
    payload: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ApiResponse[UserRead]:
    user = create_user(db, payload)
    logger.info(
        "register_success",
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=extract_user_agent(request),
    )
    return ApiResponse(message="Registered", data=UserRead.model_validate(user))


@router.post("/login", response_model=ApiResponse[TokenResponse])
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ApiResponse[TokenResponse]:
    user = authenticate_user(db, payload.login, payload.password)
    token = create_access_token(user.id, username=user.username)
    logger.info("login_success", user_id=user.id, ip_address=extract_client_ip(request))
    return ApiResponse(
        message="Logged in",
        data=TokenResponse(access_token=token, user=UserRead.model_validate(user)),
    )


@router.get("/me", response_model=ApiResponse[UserRead])
def me(current_user: User = Depends(get_current_user)) -> ApiResponse[UserRead]:
    return ApiResponse(data=UserRead.model_validate(current_user))
