from .email import (
    AccountSyncState,
    AttachmentType,
    EmailAccount,
    EmailAttachment,
    EmailFolder,
    EmailMessage,
    EmailProvider,
    FolderCursor,
    ImapCredentials,
    OAuthCredentials,
    SyncCursor,
    SyncMode,
    SyncSettings,
    SyncStatus,
)
from .results import (
    Materialized,
    Skipped,
    SyncCompleted,
    SyncFailed,
    SyncInterrupted,
    SyncReport,
    SyncSkipped,
    UserSyncResult,
)
