import structlog
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from habitchat.api.routes import router as api_router
from habitchat.core.config import get_settings
from habitchat.core.exceptions import envelope, register_exception_handlers
from habitchat.core.log_config import RequestLoggingMiddleware, setup_logging
from habitchat.core.request_meta import extract_client_ip
from habitchat.db.base import Base
from habitchat.db.session import engine
from habitchat.realtime.socket_server import build_socket_app
from habitchat.services.rate_limit_service import API_AUTH, API_GLOBAL, rate_limit_service

settings = get_settings()
setup_logging()
logger = structlog.get_logger(__name__)

api_app = FastAPI(title=settings.app_name, debug=settings.debug)
register_exception_handlers(api_app, debug=settings.debug)


RATE_LIMIT_EXEMPT_SUFFIXES = ("/health",)


def _rate_limit_scope(path: str) -> str:
    return API_AUTH if "/auth/" in path.lower() else API_GLOBAL


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        path = request.url.path
        if not settings.rate_limit_enabled or path.endswith(RATE_LIMIT_EXEMPT_SUFFIXES):
            return await call_next(request)

        decision = await run_in_threadpool(
            rate_limit_service.hit, _rate_limit_scope(path), extract_client_ip(request)
        )
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content=envelope(False, "Rate limit exceeded"),
                headers=decision.headers(),
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response


api_app.add_middleware(ApiRateLimitMiddleware)
api_app.add_middleware(RequestLoggingMiddleware)
api_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
api_app.include_router(api_router, prefix=settings.api_prefix)


@api_app.on_event("startup")
def on_startup() -> None:
    # Development convenience; deployed databases are managed by Alembic.
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    logger.info(
        "api_started",
        api_prefix=settings.api_prefix,
        presence_backend=settings.presence_backend,
        rate_limit_enabled=settings.rate_limit_enabled,
    )


app = build_socket_app(api_app)
