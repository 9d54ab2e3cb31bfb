from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from habitchat.core.config import get_settings
from habitchat.db.session import get_db
from habitchat.schemas.common import ApiResponse

router = APIRouter()


@router.get("/health", response_model=ApiResponse[dict])
def health(response: Response, db: Session = Depends(get_db)) -> ApiResponse[dict]:
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ApiResponse(
        success=database == "ok",
        message="ok" if database == "ok" else "degraded",
        data={"app": settings.app_name, "database": database},
    )
