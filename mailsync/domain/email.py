"""
Domain model for connected mailboxes and synchronized messages.

This module defines plain dataclasses for:
- Email accounts (identity, credentials, sync state)
- The per-account sync state machine (``AccountSyncState``)
- Incremental sync cursors
- Messages and attachments produced by a sync pass
- Sync settings recognised by the executor

Persistence lives in ``mailsync.db``; these objects never hold a session.
"""

import mimetypes
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union
from urllib.parse import quote, unquote

from mailsync.utils.datetime_utils import optional_utc
from mailsync.utils.errors import ConfigurationError, CursorInvalidError, InvalidTransitionError


class EmailProvider(str, Enum):
    """Supported mailbox providers."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    GENERIC_IMAP = "generic_imap"

    @property
    def uses_oauth(self) -> bool:
        return self in (EmailProvider.GMAIL, EmailProvider.OUTLOOK)


class SyncStatus(str, Enum):
    """Account sync status."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    # Reported for a user with zero accounts, never stored on an account
    NO_ACCOUNTS_CONFIGURED = "no_accounts_configured"


class SyncMode(str, Enum):
    HISTORICAL = "historical"
    INCREMENTAL = "incremental"


class EmailFolder(str, Enum):
    """Folder a message was synchronized from."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    ARCHIVE = "archive"
    JUNK = "junk"
    TRASH = "trash"
    CUSTOM = "custom"


class AttachmentType(str, Enum):
    PDF = "pdf"
    WORD = "word"
    EXCEL = "excel"
    POWERPOINT = "powerpoint"
    IMAGE = "image"
    TEXT = "text"
    ARCHIVE = "archive"
    AUDIO = "audio"
    VIDEO = "video"
    EMAIL = "email"
    CALENDAR = "calendar"
    OTHER = "other"

    @classmethod
    def detect(cls, content_type: Optional[str], filename: Optional[str]) -> "AttachmentType":
        """Classify an attachment from its MIME type, falling back to the file extension."""
        ctype = (content_type or "").lower()
        if not ctype or ctype == "application/octet-stream":
            ctype = (mimetypes.guess_type(filename or "")[0] or "").lower()

        if ctype == "application/pdf":
            return cls.PDF
        if "wordprocessingml" in ctype or ctype == "application/msword":
            return cls.WORD
        if "spreadsheetml" in ctype or ctype in ("application/vnd.ms-excel", "text/csv"):
            return cls.EXCEL
        if "presentationml" in ctype or ctype == "application/vnd.ms-powerpoint":
            return cls.POWERPOINT
        if ctype in ("message/rfc822", "application/vnd.ms-outlook"):
            return cls.EMAIL
        if ctype == "text/calendar":
            return cls.CALENDAR
        if ctype in ("application/zip", "application/x-7z-compressed", "application/x-rar-compressed",
                     "application/gzip", "application/x-tar"):
            return cls.ARCHIVE
        for prefix, kind in (("image/", cls.IMAGE), ("audio/", cls.AUDIO),
                             ("video/", cls.VIDEO), ("text/", cls.TEXT)):
            if ctype.startswith(prefix):
                return kind
        return cls.OTHER


# Credentials

@dataclass
class OAuthCredentials:
    """OAuth2 token pair for provider accounts."""
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime] = None
    granted_scopes: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.expires_at = optional_utc(self.expires_at)

    def is_fresh(self, now: datetime, margin_seconds: float) -> bool:
        """True when the access token is usable for at least ``margin_seconds`` more."""
        if not self.access_token or self.expires_at is None:
            return False
        return (self.expires_at - now).total_seconds() > margin_seconds


@dataclass
class ImapCredentials:
    """Server settings for password-based IMAP/SMTP accounts."""
    imap_host: str
    imap_port: int = 993
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    use_tls: bool = True
    password: str = ""
    username: Optional[str] = None  # defaults to the account email address


Credentials = Union[OAuthCredentials, ImapCredentials]


# Cursor

@dataclass(frozen=True)
class FolderCursor:
    """Position inside one IMAP folder: UIDVALIDITY epoch and the last processed UID."""
    uid_validity: int
    last_uid: int


@dataclass
class SyncCursor:
    """
    Incremental sync cursor for one account.

    ``folders`` holds the per-folder UID position (the delta primitive used for
    providers that keep stable UIDs); ``high_water_mark`` is the received time
    of the newest processed message (used for generic IMAP servers).
    """
    folders: Dict[str, FolderCursor] = field(default_factory=dict)
    high_water_mark: Optional[datetime] = None
    backfill_complete: bool = False

    def __post_init__(self):
        self.high_water_mark = optional_utc(self.high_water_mark)

    @property
    def delta_token(self) -> Optional[str]:
        """Opaque, persistable encoding of the per-folder positions."""
        if not self.folders:
            return None
        return "|".join(
            f"{quote(name, safe='')}:{pos.uid_validity}:{pos.last_uid}"
            for name, pos in sorted(self.folders.items())
        )

    @staticmethod
    def parse_delta_token(token: Optional[str]) -> Dict[str, FolderCursor]:
        """
        Decode a delta token produced by ``delta_token``.

        Raises:
            CursorInvalidError: If the token is malformed.
        """
        folders: Dict[str, FolderCursor] = {}
        if not token:
            return folders
        for entry in token.split("|"):
            parts = entry.split(":")
            if len(parts) != 3:
                raise CursorInvalidError(f"Malformed delta token entry: {entry!r}")
            name, uid_validity, last_uid = parts
            try:
                folders[unquote(name)] = FolderCursor(int(uid_validity), int(last_uid))
            except ValueError:
                raise CursorInvalidError(f"Malformed delta token entry: {entry!r}")
        return folders

    @classmethod
    def from_storage(cls, delta_token: Optional[str], high_water_mark: Optional[datetime],
                     backfill_complete: bool) -> "SyncCursor":
        """Rebuild a cursor from persisted columns; a broken token yields an empty, non-backfilled cursor."""
        try:
            folders = cls.parse_delta_token(delta_token)
        except CursorInvalidError:
            return cls(folders={}, high_water_mark=high_water_mark, backfill_complete=False)
        return cls(folders=folders, high_water_mark=high_water_mark, backfill_complete=backfill_complete)

    def with_folder(self, folder: str, position: FolderCursor) -> "SyncCursor":
        folders = dict(self.folders)
        folders[folder] = position
        return replace(self, folders=folders)

    def advance_high_water_mark(self, received_at: Optional[datetime]) -> "SyncCursor":
        received_at = optional_utc(received_at)
        if received_at is None:
            return self
        if self.high_water_mark is None or received_at > self.high_water_mark:
            return replace(self, high_water_mark=received_at)
        return self


# Sync state machine

ALLOWED_TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.IDLE: frozenset({SyncStatus.IN_PROGRESS}),
    SyncStatus.COMPLETED: frozenset({SyncStatus.IN_PROGRESS}),
    SyncStatus.FAILED: frozenset({SyncStatus.IN_PROGRESS}),
    SyncStatus.IN_PROGRESS: frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.IDLE}),
    SyncStatus.NO_ACCOUNTS_CONFIGURED: frozenset(),
}


@dataclass
class AccountSyncState:
    """
    Sync fields of an account, always written as one unit.

    Transitions return new instances; any move outside ``ALLOWED_TRANSITIONS``
    raises ``InvalidTransitionError``.
    """
    status: SyncStatus = SyncStatus.IDLE
    last_synced_at: Optional[datetime] = None
    last_sync_attempt_at: Optional[datetime] = None
    cursor: SyncCursor = field(default_factory=SyncCursor)
    last_sync_error: Optional[str] = None
    consecutive_failures: int = 0
    total_emails_synced: int = 0
    total_attachments_synced: int = 0

    def __post_init__(self):
        self.last_synced_at = optional_utc(self.last_synced_at)
        self.last_sync_attempt_at = optional_utc(self.last_sync_attempt_at)

    def _transition(self, target: SyncStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Cannot move sync status from {self.status.value} to {target.value}")

    def begin(self, now: datetime) -> "AccountSyncState":
        self._transition(SyncStatus.IN_PROGRESS)
        return replace(self, status=SyncStatus.IN_PROGRESS, last_sync_attempt_at=now)

    def complete(self, now: datetime, cursor: SyncCursor, emails_added: int = 0,
                 attachments_added: int = 0) -> "AccountSyncState":
        self._transition(SyncStatus.COMPLETED)
        return replace(
            self,
            status=SyncStatus.COMPLETED,
            last_synced_at=now,
            cursor=cursor,
            last_sync_error=None,
            consecutive_failures=0,
            total_emails_synced=self.total_emails_synced + emails_added,
            total_attachments_synced=self.total_attachments_synced + attachments_added,
        )

    def fail(self, error: str) -> "AccountSyncState":
        # Cursor deliberately untouched so the next pass retries from the same point
        self._transition(SyncStatus.FAILED)
        return replace(
            self,
            status=SyncStatus.FAILED,
            last_sync_error=error,
            consecutive_failures=self.consecutive_failures + 1,
        )

    def reject_credentials(self, now: datetime, error: str) -> "AccountSyncState":
        """Record an attempt that failed before a connection was made (e.g. revoked refresh token)."""
        return self.begin(now).fail(error)

    def interrupt(self, cursor: Optional[SyncCursor] = None, emails_added: int = 0,
                  attachments_added: int = 0) -> "AccountSyncState":
        self._transition(SyncStatus.IDLE)
        return replace(
            self,
            status=SyncStatus.IDLE,
            cursor=cursor if cursor is not None else self.cursor,
            total_emails_synced=self.total_emails_synced + emails_added,
            total_attachments_synced=self.total_attachments_synced + attachments_added,
        )


# Account

MIN_SYNC_INTERVAL_MINUTES = 1
MAX_SYNC_INTERVAL_MINUTES = 1440


def normalize_email_address(address: str) -> str:
    """Key used for the one-account-per-(user, address) rule."""
    return address.strip().lower()


@dataclass
class EmailAccount:
    """One connected mailbox."""
    user_id: str
    email_address: str
    provider: EmailProvider
    credentials: Credentials
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    display_name: Optional[str] = None
    sync_interval_minutes: int = 5
    is_active: bool = True
    is_primary: bool = False
    sync_state: AccountSyncState = field(default_factory=AccountSyncState)

    def __post_init__(self):
        self.email_address = self.email_address.strip()
        self.provider = EmailProvider(self.provider)
        self.sync_interval_minutes = max(MIN_SYNC_INTERVAL_MINUTES,
                                         min(MAX_SYNC_INTERVAL_MINUTES, int(self.sync_interval_minutes)))
        if self.provider.uses_oauth and not isinstance(self.credentials, OAuthCredentials):
            raise ConfigurationError(f"{self.provider.value} accounts require OAuth2 credentials")
        if not self.provider.uses_oauth and not isinstance(self.credentials, ImapCredentials):
            raise ConfigurationError("Generic IMAP accounts require server credentials")
        if self.display_name is None:
            self.display_name = self.email_address

    @property
    def status(self) -> SyncStatus:
        return self.sync_state.status

    @property
    def last_synced_at(self) -> Optional[datetime]:
        return self.sync_state.last_synced_at

    @property
    def last_sync_error(self) -> Optional[str]:
        return self.sync_state.last_sync_error

    @property
    def cursor(self) -> SyncCursor:
        return self.sync_state.cursor

    @property
    def oauth_credentials(self) -> Optional[OAuthCredentials]:
        return self.credentials if isinstance(self.credentials, OAuthCredentials) else None

    @property
    def imap_credentials(self) -> Optional[ImapCredentials]:
        return self.credentials if isinstance(self.credentials, ImapCredentials) else None

    @property
    def normalized_email(self) -> str:
        return normalize_email_address(self.email_address)


# Messages

@dataclass
class EmailAttachment:
    """Attachment stored alongside its parent message."""
    filename: str
    content_type: str
    size_bytes: int
    storage_path: Optional[str] = None
    content_id: Optional[str] = None
    is_inline: bool = False
    attachment_type: AttachmentType = AttachmentType.OTHER
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class EmailMessage:
    """A synchronized mail item."""
    account_id: str
    user_id: str
    external_id: str
    conversation_id: Optional[str]
    subject: str
    from_address: str
    from_name: str
    to_recipients: List[str]
    cc_recipients: List[str] = field(default_factory=list)
    body_text: str = ""
    body_html: Optional[str] = None
    preview: str = ""
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    folder: EmailFolder = EmailFolder.INBOX
    is_read: bool = False
    is_flagged: bool = False
    is_draft: bool = False
    size_bytes: Optional[int] = None
    has_attachments: bool = False
    attachments: List[EmailAttachment] = field(default_factory=list)
    attachment_errors: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        self.sent_at = optional_utc(self.sent_at)
        self.received_at = optional_utc(self.received_at)


# Settings

@dataclass
class SyncSettings:
    """Options recognised by a sync pass."""
    history_months: int = 3  # 0 = all mail, no cutoff
    download_attachments: bool = True
    include_sent_folder: bool = False
    include_drafts_folder: bool = False
    include_archive_folder: bool = False
    max_emails_per_sync: int = 1000
    sync_interval_minutes: int = 5
    max_attachment_size_mb: int = 25

    def __post_init__(self):
        if self.history_months < 0:
            raise ConfigurationError("history_months must be 0 (unlimited) or positive")
        if self.max_emails_per_sync < 1:
            raise ConfigurationError("max_emails_per_sync must be at least 1")

    @classmethod
    def from_settings(cls, settings: Any) -> "SyncSettings":
        return cls(
            history_months=settings.email_sync_history_months,
            download_attachments=settings.email_sync_download_attachments,
            include_sent_folder=settings.email_sync_include_sent_folder,
            include_drafts_folder=settings.email_sync_include_drafts_folder,
            include_archive_folder=settings.email_sync_include_archive_folder,
            max_emails_per_sync=settings.email_sync_max_emails_per_sync,
            sync_interval_minutes=settings.email_sync_interval_minutes,
            max_attachment_size_mb=settings.email_sync_max_attachment_size_mb,
        )

    def folders(self) -> List[EmailFolder]:
        """Folders a pass visits, INBOX first."""
        folders = [EmailFolder.INBOX]
        if self.include_sent_folder:
            folders.append(EmailFolder.SENT)
        if self.include_drafts_folder:
            folders.append(EmailFolder.DRAFTS)
        if self.include_archive_folder:
            folders.append(EmailFolder.ARCHIVE)
        return folders
