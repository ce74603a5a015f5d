"""
Email Synchronization Service - per-account sync state machine.

One pass for one account runs:

    idle/completed/failed -> in_progress -> completed | failed | idle (cancelled)

Key behaviour:
- Historical backfill on first sync, after ``force_full`` or while a previous
  backfill is unfinished; incremental passes afterwards
- Incremental passes resume from the last UID per folder for providers with
  stable UIDs, or from the received-time high-water mark for generic IMAP;
  every folder of a pass searches from the mark the pass started with
- Invalid cursors (UIDVALIDITY change, missing folder position, lost
  high-water mark) fall back to a bounded historical resync in the same pass
- Deduplication by external id makes every pass idempotent
- The account's sync state is written once when a pass begins and once when
  it ends; the cursor never moves past a message that was not fully stored,
  except one the server refuses to FETCH, which is skipped as malformed
- Every exception is contained at the account boundary
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from mailsync.config import settings as default_settings
from mailsync.db.repositories import AccountRepository, MessageRepository
from mailsync.domain.email import (
    AccountSyncState,
    EmailAccount,
    EmailFolder,
    FolderCursor,
    SyncCursor,
    SyncMode,
    SyncSettings,
    SyncStatus,
)
from mailsync.domain.results import (
    Skipped,
    SyncCompleted,
    SyncFailed,
    SyncInterrupted,
    SyncOutcome,
    SyncReport,
    SyncSkipped,
    UserSyncResult,
)
from mailsync.services.email_connectors.base_connector import FolderStatus, MailboxConnection
from mailsync.services.email_connectors.connector_factory import ConnectionManager
from mailsync.services.message_materializer import MessageMaterializer
from mailsync.utils.datetime_utils import subtract_months, timedelta_seconds, utc_now
from mailsync.utils.errors import (
    ErrorKind,
    InvalidTransitionError,
    ProtocolError,
    classify,
    describe_for_user,
    is_retryable,
)
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import PrometheusSyncMonitor, SyncMonitor

logger = get_logger("email_sync_service")

# (account_id, force_full=..., cancel_event=...) -> outcome of one pass
PassRunner = Callable[..., Awaitable[SyncOutcome]]


@dataclass
class _PassProgress:
    """Mutable bookkeeping for one running pass."""
    cursor: SyncCursor
    report: SyncReport
    # High-water mark as it stood when the pass began; bounds every folder search
    since_mark: Optional[datetime] = None
    interrupted: bool = False
    reset_folders: List[str] = field(default_factory=list)


def select_sync_mode(account: EmailAccount, force_full: bool = False) -> SyncMode:
    if force_full or account.last_synced_at is None or not account.cursor.backfill_complete:
        return SyncMode.HISTORICAL
    return SyncMode.INCREMENTAL


class EmailSyncService:
    """
    Runs sync passes for accounts.

    Args:
        accounts: Account repository (state and credentials).
        messages: Message repository.
        connections: Opens authenticated mailbox sessions.
        materializer: Parses messages and stores attachments.
        sync_settings: Options applied to every pass.
        monitor: Receives pass and message counters.
        config: Settings object for scheduler-level limits.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        messages: MessageRepository,
        connections: ConnectionManager,
        materializer: Optional[MessageMaterializer] = None,
        sync_settings: Optional[SyncSettings] = None,
        monitor: Optional[SyncMonitor] = None,
        config=None,
        clock=utc_now,
    ):
        self.config = config or default_settings
        self.accounts = accounts
        self.messages = messages
        self.connections = connections
        self.materializer = materializer or MessageMaterializer(self.config.attachments_dir, clock=clock)
        self.sync_settings = sync_settings or SyncSettings.from_settings(self.config)
        self.monitor = monitor or PrometheusSyncMonitor()
        self.clock = clock
        self.max_consecutive_failures = self.config.max_consecutive_failures
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_syncs)
        self.logger = get_logger("email_sync_service")

    # Account pass

    async def sync_account(
        self,
        account_id: str,
        force_full: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncOutcome:
        """
        Run one sync pass for an account.

        Args:
            account_id: Account to synchronize.
            force_full: Discard the cursor and restart the historical backfill.
            cancel_event: Checked between messages and folders; when set the
                pass stops after the current message.

        Returns:
            SyncCompleted, SyncFailed, SyncInterrupted or SyncSkipped. Errors
            never propagate; task cancellation is recorded and re-raised.
        """
        account = await self.accounts.get_by_id(account_id)
        if account is None:
            return SyncSkipped(account_id=account_id, reason="account not found")
        if not account.is_active:
            return SyncSkipped(account_id=account_id, reason="account inactive", status=account.status)

        started_at = self.clock()
        try:
            state = account.sync_state.begin(started_at)
        except InvalidTransitionError:
            self.logger.info(f"Sync already in progress for {account.email_address}, skipping")
            return SyncSkipped(account_id=account_id, reason="already in progress", status=account.status)

        await self.accounts.update_sync_state(account.id, state)
        account.sync_state = state

        mode = select_sync_mode(account, force_full)
        cursor = SyncCursor() if force_full else account.cursor
        progress = _PassProgress(cursor=cursor, report=SyncReport(mode=mode, started_at=started_at),
                                 since_mark=cursor.high_water_mark)
        provider = account.provider.value

        self.logger.info(f"Starting {mode.value} sync for {account.email_address} ({provider})")
        self.monitor.pass_started(provider)
        outcome_label = "failed"
        try:
            await self._run_pass(account, mode, progress, cancel_event)
            if progress.interrupted:
                outcome = await self._record_interrupted(account, state, progress)
                outcome_label = "interrupted"
            else:
                outcome = await self._record_completed(account, state, progress)
                outcome_label = "completed"
            return outcome
        except asyncio.CancelledError:
            await self._record_interrupted(account, state, progress)
            outcome_label = "interrupted"
            raise
        except Exception as e:
            return await self._record_failed(account, state, progress, e)
        finally:
            self.monitor.pass_finished(provider, outcome_label, timedelta_seconds(started_at, self.clock()))

    async def _run_pass(self, account: EmailAccount, mode: SyncMode, progress: _PassProgress,
                        cancel_event: Optional[asyncio.Event]) -> None:
        now = progress.report.started_at
        history_months = self.sync_settings.history_months
        window_start = subtract_months(now, history_months) if history_months > 0 else None

        async with self.connections.connection(account) as conn:
            for folder in self.sync_settings.folders():
                if cancel_event is not None and cancel_event.is_set():
                    progress.interrupted = True
                    return

                name = await conn.resolve_folder(folder)
                if name is None:
                    self.logger.info(f"No {folder.value} folder on {account.email_address}, skipping")
                    continue

                status = await conn.select_folder(name)
                await self._sync_folder(conn, account, folder, status, mode, window_start, progress, cancel_event)
                progress.report.folders.append(name)
                if progress.interrupted:
                    return

    def _search_bounds(self, account: EmailAccount, folder_name: str, status: FolderStatus, mode: SyncMode,
                       window_start: Optional[datetime], progress: _PassProgress):
        """Return (since_uid, since_date, cutoff) for one folder, resetting an unusable cursor."""
        position = progress.cursor.folders.get(folder_name)
        if position is not None and position.uid_validity != status.uid_validity:
            self._reset_folder(account, folder_name, progress,
                               f"UIDVALIDITY changed {position.uid_validity} -> {status.uid_validity}")
            position = None

        if mode == SyncMode.HISTORICAL:
            return (position.last_uid if position else None), window_start, window_start

        if self.connections.is_delta_capable(account):
            if position is None:
                if folder_name not in progress.reset_folders:
                    self._reset_folder(account, folder_name, progress, "no stored position")
                return None, window_start, window_start
            return position.last_uid, None, None

        if progress.since_mark is None:
            if position is not None:
                return position.last_uid, window_start, window_start
            self._reset_folder(account, folder_name, progress, "no high-water mark")
            return None, window_start, window_start
        return None, progress.since_mark, None

    def _reset_folder(self, account: EmailAccount, folder_name: str, progress: _PassProgress, reason: str) -> None:
        folders = {k: v for k, v in progress.cursor.folders.items() if k != folder_name}
        progress.cursor = replace(progress.cursor, folders=folders)
        progress.reset_folders.append(folder_name)
        progress.report.cursor_reset = True
        self.logger.warning(
            f"Cursor for {account.email_address}/{folder_name} unusable ({reason}); "
            f"falling back to a bounded historical resync"
        )

    async def _sync_folder(self, conn: MailboxConnection, account: EmailAccount, folder: EmailFolder,
                           status: FolderStatus, mode: SyncMode, window_start: Optional[datetime],
                           progress: _PassProgress, cancel_event: Optional[asyncio.Event]) -> None:
        report = progress.report
        since_uid, since_date, cutoff = self._search_bounds(account, status.name, status, mode,
                                                            window_start, progress)

        uids = await conn.search_uids(since_uid=since_uid, since_date=since_date)
        limit = self.sync_settings.max_emails_per_sync
        capped = len(uids) > limit
        if capped:
            uids = uids[:limit]
            report.batch_cap_hit = True
            self.logger.info(
                f"{account.email_address}/{status.name}: batch limit {limit} reached, remaining mail follows next pass"
            )

        self.logger.debug(f"{account.email_address}/{status.name}: {len(uids)} candidate messages")
        added_before = report.added
        last_uid = since_uid or 0

        for uid in uids:
            if cancel_event is not None and cancel_event.is_set():
                progress.interrupted = True
                return

            try:
                raw = await conn.fetch_message(uid, folder)
            except ProtocolError as e:
                self._skip_unfetchable(account, status.name, uid, progress, e)
                raw = None
            if raw is not None:
                await self._process_message(account, raw, cutoff, progress)

            last_uid = uid
            progress.cursor = progress.cursor.with_folder(status.name, FolderCursor(status.uid_validity, uid))

        if not capped and status.uid_next:
            # Every UID below UIDNEXT was seen or excluded by the search window
            last_uid = max(last_uid, status.uid_next - 1)
        progress.cursor = progress.cursor.with_folder(status.name, FolderCursor(status.uid_validity, last_uid))

        self.logger.info(
            f"{account.email_address}/{status.name}: {report.added - added_before} new of {len(uids)} fetched"
        )

    def _skip_unfetchable(self, account: EmailAccount, folder_name: str, uid: int,
                          progress: _PassProgress, error: Exception) -> None:
        """A server refusal for one UID costs that message only; the cursor moves past it."""
        progress.report.processed += 1
        progress.report.malformed += 1
        self.monitor.message_processed(account.provider.value, "malformed")
        self.logger.warning(f"Skipping UID {uid} in {account.email_address}/{folder_name}, server refused FETCH: {error}")

    async def _process_message(self, account: EmailAccount, raw, cutoff: Optional[datetime],
                               progress: _PassProgress) -> None:
        report = progress.report
        provider = account.provider.value
        report.processed += 1

        result = self.materializer.parse(raw, account)
        if isinstance(result, Skipped):
            report.malformed += 1
            self.monitor.message_processed(provider, "malformed")
            return

        message = result.message
        progress.cursor = progress.cursor.advance_high_water_mark(message.received_at)

        if cutoff is not None and message.received_at is not None and message.received_at < cutoff:
            report.out_of_range += 1
            self.monitor.message_processed(provider, "out_of_range")
            return

        if await self.messages.exists(account.id, message.external_id):
            report.duplicates += 1
            self.monitor.message_processed(provider, "duplicate")
            return

        if self.sync_settings.download_attachments:
            await self.materializer.save_attachments(result, self.sync_settings.max_attachment_size_mb)
        else:
            result.parts = []

        try:
            stored = await self.messages.add(message)
        except Exception:
            await self.materializer.discard_attachments(message)
            raise
        if not stored:
            await self.materializer.discard_attachments(message)
            report.duplicates += 1
            self.monitor.message_processed(provider, "duplicate")
            return

        report.added += 1
        report.attachments_saved += result.attachments_saved
        report.attachment_failures += len(message.attachment_errors)
        self.monitor.message_processed(provider, "added")

    # Terminal transitions

    async def _record_completed(self, account: EmailAccount, state: AccountSyncState,
                                progress: _PassProgress) -> SyncCompleted:
        report = progress.report
        finished_at = self.clock()
        report.completed_at = finished_at
        cursor = replace(progress.cursor, backfill_complete=not report.batch_cap_hit)

        await self.accounts.update_sync_state(
            account.id, state.complete(finished_at, cursor, report.added, report.attachments_saved)
        )
        if report.cursor_reset:
            self.monitor.cursor_reset(account.provider.value)

        self.logger.info(
            f"Sync completed for {account.email_address}: {report.added} added, {report.duplicates} duplicates, "
            f"{report.malformed} malformed, {report.out_of_range} outside window"
            + (" (backfill continues next pass)" if report.batch_cap_hit else "")
        )
        return SyncCompleted(account_id=account.id, report=report, finished_at=finished_at)

    async def _record_failed(self, account: EmailAccount, state: AccountSyncState,
                             progress: _PassProgress, error: Exception) -> SyncFailed:
        kind = classify(error)
        message = describe_for_user(error)
        progress.report.completed_at = self.clock()

        if kind == ErrorKind.UNEXPECTED:
            self.logger.exception(f"Unexpected error syncing {account.email_address}: {error}")
        else:
            self.logger.error(f"Sync failed for {account.email_address} ({kind.value}): {error}")

        failed_state = state.fail(message)
        await self.accounts.update_sync_state(account.id, failed_state)

        deactivated = False
        if failed_state.consecutive_failures >= self.max_consecutive_failures:
            await self.accounts.set_active(account.id, False)
            deactivated = True
            self.logger.warning(
                f"Deactivated {account.email_address} after {failed_state.consecutive_failures} consecutive failures"
            )

        return SyncFailed(
            account_id=account.id,
            error_kind=kind,
            message=message,
            retryable=is_retryable(error),
            report=progress.report,
            deactivated=deactivated,
        )

    async def _record_interrupted(self, account: EmailAccount, state: AccountSyncState,
                                  progress: _PassProgress) -> SyncInterrupted:
        report = progress.report
        report.completed_at = self.clock()
        await self.accounts.update_sync_state(
            account.id, state.interrupt(progress.cursor, report.added, report.attachments_saved)
        )
        self.logger.info(f"Sync interrupted for {account.email_address} after {report.added} new messages")
        return SyncInterrupted(account_id=account.id, report=report)

    # Fan-out

    async def sync_account_bounded(self, account_id: str, force_full: bool = False,
                                   cancel_event: Optional[asyncio.Event] = None) -> SyncOutcome:
        """``sync_account`` under the worker semaphore."""
        async with self.semaphore:
            return await self.sync_account(account_id, force_full=force_full, cancel_event=cancel_event)

    async def sync_accounts(
        self,
        accounts: Iterable[Union[EmailAccount, str]],
        force_full: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        runner: Optional[PassRunner] = None,
    ) -> List[SyncOutcome]:
        """
        Sync several accounts concurrently; one account's failure never affects another.

        ``runner`` replaces ``sync_account_bounded`` for callers that track the
        passes themselves, such as the scheduler.
        """
        run = runner or self.sync_account_bounded
        account_ids = [a.id if isinstance(a, EmailAccount) else a for a in accounts]
        results = await asyncio.gather(
            *(run(aid, force_full=force_full, cancel_event=cancel_event) for aid in account_ids),
            return_exceptions=True,
        )

        outcomes: List[SyncOutcome] = []
        for account_id, result in zip(account_ids, results):
            if isinstance(result, asyncio.CancelledError):
                outcomes.append(SyncInterrupted(account_id=account_id, report=SyncReport()))
            elif isinstance(result, BaseException):
                self.logger.error(f"Sync task for account {account_id} crashed: {result}")
                outcomes.append(SyncFailed(
                    account_id=account_id,
                    error_kind=classify(result),
                    message=describe_for_user(result),
                    retryable=is_retryable(result),
                ))
            else:
                outcomes.append(result)
        return outcomes

    async def sync_user_accounts(self, user_id: str, force_full: bool = False,
                                 cancel_event: Optional[asyncio.Event] = None,
                                 runner: Optional[PassRunner] = None) -> UserSyncResult:
        """Sync every active account of a user."""
        accounts = await self.accounts.get_by_user_id(user_id)
        if not accounts:
            self.logger.info(f"User {user_id} has no email accounts configured")
            return UserSyncResult(user_id=user_id, status=SyncStatus.NO_ACCOUNTS_CONFIGURED)

        active = [a for a in accounts if a.is_active]
        outcomes: List[SyncOutcome] = [
            SyncSkipped(account_id=a.id, reason="account inactive", status=a.status)
            for a in accounts if not a.is_active
        ]
        outcomes.extend(await self.sync_accounts(active, force_full=force_full, cancel_event=cancel_event,
                                              runner=runner))

        ran = [o for o in outcomes if not isinstance(o, SyncSkipped)]
        status = SyncStatus.COMPLETED
        if ran and all(isinstance(o, SyncFailed) for o in ran):
            status = SyncStatus.FAILED
        return UserSyncResult(user_id=user_id, status=status, outcomes=outcomes)

    async def get_sync_status(self, user_id: str) -> List[Dict[str, Any]]:
        """Per-account sync status for display."""
        accounts = await self.accounts.get_by_user_id(user_id)
        statuses = []
        for account in accounts:
            state = account.sync_state
            statuses.append({
                "account_id": account.id,
                "email_address": account.email_address,
                "provider": account.provider.value,
                "is_active": account.is_active,
                "is_primary": account.is_primary,
                "status": state.status.value,
                "last_synced_at": state.last_synced_at,
                "last_sync_error": state.last_sync_error,
                "consecutive_failures": state.consecutive_failures,
                "sync_interval_minutes": account.sync_interval_minutes,
                "backfill_complete": state.cursor.backfill_complete,
                "total_emails_synced": state.total_emails_synced,
                "unread_count": await self.messages.get_unread_count(account_id=account.id),
            })
        return statuses
