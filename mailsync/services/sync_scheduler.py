"""
Sync Scheduler

Periodic tick that selects due accounts and hands them to the sync
executor. Guarantees at-least-interval spacing between passes of an
account, not exact timing.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mailsync.config import settings as default_settings
from mailsync.db.repositories import AccountRepository
from mailsync.domain.email import EmailAccount, SyncStatus
from mailsync.domain.results import SyncOutcome, SyncSkipped, UserSyncResult
from mailsync.services.email_sync_service import EmailSyncService
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("sync_scheduler")

TICK_JOB_ID = "email-sync-tick"


def is_due(account: EmailAccount, now: datetime) -> bool:
    if not account.is_active or account.status == SyncStatus.IN_PROGRESS:
        return False
    if account.last_synced_at is None:
        return True
    return now - account.last_synced_at >= timedelta(minutes=account.sync_interval_minutes)


def select_accounts_due_for_sync(accounts: Iterable[EmailAccount], now: datetime) -> List[EmailAccount]:
    """
    Pure due filter.

    An account is due when it is active, not already syncing, and either has
    never synced or last synced at least ``sync_interval_minutes`` ago.
    """
    return [account for account in accounts if is_due(account, now)]


def find_stale_syncs(accounts: Iterable[EmailAccount], now: datetime, timeout_minutes: int) -> List[EmailAccount]:
    """Accounts left ``in_progress`` longer than the timeout, e.g. by a crashed process."""
    limit = timedelta(minutes=timeout_minutes)
    stale = []
    for account in accounts:
        if account.status != SyncStatus.IN_PROGRESS:
            continue
        started = account.sync_state.last_sync_attempt_at
        if started is None or now - started > limit:
            stale.append(account)
    return stale


class EmailSyncScheduler:
    """
    Drives sync passes on a fixed cadence.

    Each tick loads candidate accounts, recovers stale locks, filters the due
    ones and starts one task per account. Concurrency is bounded by the
    executor's semaphore; an account already running in this process is
    never started twice.
    """

    def __init__(self, sync_service: EmailSyncService, accounts: AccountRepository, config=None, clock=utc_now):
        self.config = config or default_settings
        self.sync_service = sync_service
        self.accounts = accounts
        self.clock = clock
        self.tick_seconds = self.config.scheduler_tick_seconds
        self.stale_timeout_minutes = self.config.stale_sync_timeout_minutes
        self.shutdown_grace_seconds = self.config.shutdown_grace_seconds

        self.scheduler = AsyncIOScheduler()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_event = asyncio.Event()
        self.logger = get_logger("sync_scheduler")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def is_in_flight(self, account_id: str) -> bool:
        return account_id in self._tasks

    async def start(self) -> None:
        """Recover stale locks, then start ticking immediately and every ``tick_seconds``."""
        await self.recover_stale_syncs()
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.tick_seconds),
            id=TICK_JOB_ID,
            name="Email sync tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            next_run_time=self.clock(),
        )
        self.scheduler.start()
        self.logger.info(f"Email sync scheduler started (tick every {self.tick_seconds}s)")

    async def tick(self) -> List[str]:
        """
        Run one scheduling round.

        Returns:
            Ids of the accounts a pass was started for.
        """
        if self._cancel_event.is_set():
            return []

        now = self.clock()
        try:
            candidates = await self.accounts.get_accounts_needing_sync()
            await self._recover(candidates, now)
        except Exception as e:
            self.logger.error(f"Scheduler tick could not load accounts: {e}")
            return []

        due = [a for a in select_accounts_due_for_sync(candidates, now) if not self.is_in_flight(a.id)]
        for account in due:
            self._start(account.id, force_full=False)

        if due:
            self.logger.info(f"Started sync for {len(due)} due account(s)")
        return [a.id for a in due]

    async def recover_stale_syncs(self) -> int:
        candidates = await self.accounts.get_accounts_needing_sync()
        return await self._recover(candidates, self.clock())

    async def _recover(self, candidates: List[EmailAccount], now: datetime) -> int:
        stale = [a for a in find_stale_syncs(candidates, now, self.stale_timeout_minutes)
                 if not self.is_in_flight(a.id)]
        for account in stale:
            self.logger.warning(
                f"Breaking stale sync lock for {account.email_address} "
                f"(started {account.sync_state.last_sync_attempt_at})"
            )
            recovered = account.sync_state.interrupt()
            await self.accounts.update_sync_state(account.id, recovered)
            account.sync_state = recovered
        return len(stale)

    def trigger_now(self, account_id: str, force_full: bool = False) -> Optional[asyncio.Task]:
        """Start an on-demand pass; None when one is already running in this process."""
        if self.is_in_flight(account_id) or self._cancel_event.is_set():
            return None
        return self._start(account_id, force_full=force_full)

    async def sync_user_now(self, user_id: str, force_full: bool = False) -> UserSyncResult:
        """
        Sync every active account of a user and wait for the outcome.

        Passes run as tracked tasks, so shutdown signals them and stale lock
        recovery leaves them alone like scheduled passes.
        """
        return await self.sync_service.sync_user_accounts(
            user_id, force_full=force_full, cancel_event=self._cancel_event, runner=self._run_tracked
        )

    async def _run_tracked(self, account_id: str, force_full: bool = False,
                           cancel_event: Optional[asyncio.Event] = None) -> SyncOutcome:
        if self._cancel_event.is_set():
            return SyncSkipped(account_id=account_id, reason="scheduler stopping")
        if self.is_in_flight(account_id):
            return SyncSkipped(account_id=account_id, reason="already in progress", status=SyncStatus.IN_PROGRESS)
        return await self._start(account_id, force_full=force_full)

    def _start(self, account_id: str, force_full: bool) -> asyncio.Task:
        task = asyncio.create_task(
            self.sync_service.sync_account_bounded(account_id, force_full=force_full,
                                                   cancel_event=self._cancel_event),
            name=f"email-sync-{account_id}",
        )
        self._tasks[account_id] = task
        task.add_done_callback(self._finished(account_id))
        return task

    def _finished(self, account_id: str):
        def callback(task: asyncio.Task) -> None:
            if self._tasks.get(account_id) is task:
                del self._tasks[account_id]
            if not task.cancelled() and task.exception() is not None:
                self.logger.error(f"Sync task for account {account_id} crashed: {task.exception()}")
        return callback

    async def shutdown(self) -> None:
        """Stop ticking, ask running passes to stop and wait for them within the grace period."""
        self._cancel_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        tasks = list(self._tasks.values())
        if tasks:
            self.logger.info(f"Waiting for {len(tasks)} running sync pass(es) to stop")
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info("Email sync scheduler stopped")
