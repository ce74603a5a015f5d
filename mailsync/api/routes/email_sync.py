"""
Email Sync Operations API

Read-only status of a user's accounts and on-demand sync triggers. Account
linking and message browsing are handled elsewhere.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status as status_codes
from pydantic import BaseModel, Field

from mailsync.api.dependencies import get_account_repository, get_scheduler, get_sync_service, verify_api_key
from mailsync.db.repositories import AccountRepository
from mailsync.domain.email import SyncStatus
from mailsync.domain.results import SyncFailed
from mailsync.services.email_sync_service import EmailSyncService
from mailsync.services.sync_scheduler import EmailSyncScheduler
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("email_sync_api")

router = APIRouter(dependencies=[Depends(verify_api_key)])


class AccountSyncStatusResponse(BaseModel):
    """Sync status of one linked mailbox."""
    account_id: str
    email_address: str
    provider: str
    is_active: bool
    is_primary: bool
    status: str
    last_synced_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    consecutive_failures: int = 0
    sync_interval_minutes: int
    backfill_complete: bool = False
    total_emails_synced: int = 0
    unread_count: int = 0


class SyncTriggerResponse(BaseModel):
    account_id: str
    status: str = Field("accepted", description="Pass was started in the background")
    force_full: bool = False
    initiated_at: datetime


class AccountOutcomeResponse(BaseModel):
    account_id: str
    status: Optional[str] = None
    emails_added: int = 0
    error: Optional[str] = None


class UserSyncResponse(BaseModel):
    user_id: str
    status: str
    emails_added: int
    accounts: List[AccountOutcomeResponse]


@router.get("/users/{user_id}/accounts", response_model=List[AccountSyncStatusResponse])
async def list_account_sync_status(
    user_id: str,
    sync_service: EmailSyncService = Depends(get_sync_service),
):
    """Per-account sync status for a user."""
    return [AccountSyncStatusResponse(**entry) for entry in await sync_service.get_sync_status(user_id)]


@router.post(
    "/accounts/{account_id}/sync",
    response_model=SyncTriggerResponse,
    status_code=status_codes.HTTP_202_ACCEPTED,
)
async def trigger_account_sync(
    account_id: str,
    force_full: bool = Query(False, description="Discard the cursor and restart the historical backfill"),
    accounts: AccountRepository = Depends(get_account_repository),
    scheduler: EmailSyncScheduler = Depends(get_scheduler),
):
    """Start a sync pass for one account in the background."""
    account = await accounts.get_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=status_codes.HTTP_404_NOT_FOUND, detail="Email account not found")
    if not account.is_active:
        raise HTTPException(status_code=status_codes.HTTP_409_CONFLICT, detail="Email account is inactive")
    if account.status == SyncStatus.IN_PROGRESS or scheduler.trigger_now(account_id, force_full=force_full) is None:
        raise HTTPException(status_code=status_codes.HTTP_409_CONFLICT, detail="Sync already in progress")

    logger.info(f"Triggered {'full' if force_full else 'incremental'} sync for account {account_id}")
    return SyncTriggerResponse(account_id=account_id, force_full=force_full, initiated_at=utc_now())


@router.post("/users/{user_id}/sync", response_model=UserSyncResponse)
async def sync_user_accounts(
    user_id: str,
    force_full: bool = Query(False),
    scheduler: EmailSyncScheduler = Depends(get_scheduler),
):
    """Sync every active account of a user and wait for the outcome."""
    result = await scheduler.sync_user_now(user_id, force_full=force_full)
    outcomes = []
    for outcome in result.outcomes:
        outcomes.append(AccountOutcomeResponse(
            account_id=outcome.account_id,
            status=outcome.status.value if outcome.status else None,
            emails_added=outcome.report.added if hasattr(outcome, "report") else 0,
            error=outcome.message if isinstance(outcome, SyncFailed) else getattr(outcome, "reason", None),
        ))
    return UserSyncResponse(
        user_id=user_id,
        status=result.status.value,
        emails_added=result.emails_added,
        accounts=outcomes,
    )
