from fastapi import APIRouter

from habitchat.api.routes.auth import router as auth_router
from habitchat.api.routes.chat import router as chat_router
from habitchat.api.routes.friends import router as friends_router
from habitchat.api.routes.health import router as health_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(auth_router, prefix="/auth", tags=["auth"])
router.include_router(friends_router, prefix="/friends", tags=["friends"])
router.include_router(chat_router, prefix="/chat", tags=["chat"])
