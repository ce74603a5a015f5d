"""Outcome types returned by the materializer and the sync executor."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from mailsync.domain.email import EmailMessage, SyncMode, SyncStatus
from mailsync.utils.errors import ErrorKind


@dataclass
class AttachmentPart:
    """Decoded attachment payload waiting to be written."""
    filename: str
    content_type: str
    payload: bytes
    content_id: Optional[str] = None
    is_inline: bool = False


@dataclass
class Materialized:
    message: EmailMessage
    attachments_saved: int = 0
    parts: List[AttachmentPart] = field(default_factory=list, repr=False)


@dataclass
class Skipped:
    external_id: Optional[str]
    reason: str  # "empty_payload" or "parse_error"


MaterializeResult = Union[Materialized, Skipped]


@dataclass
class SyncReport:
    """Counters accumulated during one account pass."""
    mode: SyncMode = SyncMode.INCREMENTAL
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processed: int = 0
    added: int = 0
    duplicates: int = 0
    malformed: int = 0
    out_of_range: int = 0
    attachments_saved: int = 0
    attachment_failures: int = 0
    batch_cap_hit: bool = False
    cursor_reset: bool = False
    folders: List[str] = field(default_factory=list)


@dataclass
class SyncCompleted:
    account_id: str
    report: SyncReport
    finished_at: datetime
    status: SyncStatus = SyncStatus.COMPLETED


@dataclass
class SyncFailed:
    account_id: str
    error_kind: ErrorKind
    message: str
    retryable: bool
    report: SyncReport = field(default_factory=SyncReport)
    deactivated: bool = False
    status: SyncStatus = SyncStatus.FAILED


@dataclass
class SyncInterrupted:
    """The pass was cancelled; the cursor points at the last fully processed message."""
    account_id: str
    report: SyncReport
    status: SyncStatus = SyncStatus.IDLE


@dataclass
class SyncSkipped:
    """No pass ran: the account is inactive, missing or already syncing."""
    account_id: str
    reason: str
    status: Optional[SyncStatus] = None


SyncOutcome = Union[SyncCompleted, SyncFailed, SyncInterrupted, SyncSkipped]


@dataclass
class UserSyncResult:
    """Aggregate of an on-demand sync over all of a user's accounts."""
    user_id: str
    status: SyncStatus
    outcomes: List[SyncOutcome] = field(default_factory=list)

    @property
    def emails_added(self) -> int:
        return sum(o.report.added for o in self.outcomes if isinstance(o, SyncCompleted))

    @property
    def failed_accounts(self) -> List[str]:
        return [o.account_id for o in self.outcomes if isinstance(o, SyncFailed)]
