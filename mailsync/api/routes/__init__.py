from fastapi import APIRouter
from mailsync.config import settings
from .health import router as health_router
from .email_sync import router as email_sync_router

# Create main API router
api_router = APIRouter(prefix=settings.api_prefix)
api_router.include_router(email_sync_router, prefix="/email-sync", tags=["Email Synchronization"])

__all__ = ["api_router", "health_router"]
