from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from mailsync.config import settings
from mailsync.db.repositories import AccountRepository
from mailsync.services.email_sync_service import EmailSyncService
from mailsync.services.sync_scheduler import EmailSyncScheduler

security = HTTPBearer(auto_error=False)


async def verify_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> bool:
    """Verify API key if configured."""
    if not settings.api_key:
        return True  # No API key required

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def get_sync_service(request: Request) -> EmailSyncService:
    return request.app.state.services.sync_service


def get_scheduler(request: Request) -> EmailSyncScheduler:
    return request.app.state.services.scheduler


def get_account_repository(request: Request) -> AccountRepository:
    return request.app.state.services.accounts
