"""
Tests for the domain model: accounts, cursors and the sync state machine
"""

from datetime import datetime, timedelta, timezone

import pytest

from mailsync.domain.email import (
    AccountSyncState,
    AttachmentType,
    EmailAccount,
    EmailFolder,
    EmailProvider,
    FolderCursor,
    ImapCredentials,
    OAuthCredentials,
    SyncCursor,
    SyncSettings,
    SyncStatus,
)
from mailsync.utils.datetime_utils import imap_date, subtract_months
from mailsync.utils.errors import (
    AuthenticationError,
    ConfigurationError,
    CursorInvalidError,
    ErrorKind,
    InvalidTransitionError,
    MailConnectionError,
    TokenRefreshError,
    classify,
    describe_for_user,
    is_retryable,
)
from tests.helpers import NOW, make_gmail_account, make_imap_account


class TestAccountSyncState:
    """Sync state machine transitions"""

    def test_successful_pass(self):
        state = AccountSyncState().begin(NOW)
        assert state.status == SyncStatus.IN_PROGRESS
        assert state.last_sync_attempt_at == NOW

        cursor = SyncCursor(folders={"INBOX": FolderCursor(1, 10)}, backfill_complete=True)
        done = state.complete(NOW + timedelta(minutes=1), cursor, emails_added=10, attachments_added=2)

        assert done.status == SyncStatus.COMPLETED
        assert done.last_synced_at == NOW + timedelta(minutes=1)
        assert done.cursor == cursor
        assert done.total_emails_synced == 10
        assert done.total_attachments_synced == 2

    def test_failure_keeps_cursor_and_counts(self):
        cursor = SyncCursor(folders={"INBOX": FolderCursor(1, 10)})
        state = AccountSyncState(status=SyncStatus.COMPLETED, cursor=cursor, last_synced_at=NOW)

        failed = state.begin(NOW).fail("Could not connect")
        failed_again = failed.begin(NOW).fail("Could not connect")

        assert failed_again.status == SyncStatus.FAILED
        assert failed_again.cursor == cursor
        assert failed_again.last_synced_at == NOW
        assert failed_again.consecutive_failures == 2

    def test_success_resets_failures(self):
        state = AccountSyncState(status=SyncStatus.FAILED, consecutive_failures=3, last_sync_error="x")
        done = state.begin(NOW).complete(NOW, SyncCursor())

        assert done.consecutive_failures == 0
        assert done.last_sync_error is None

    def test_cannot_begin_twice(self):
        with pytest.raises(InvalidTransitionError):
            AccountSyncState().begin(NOW).begin(NOW)

    @pytest.mark.parametrize("status", [SyncStatus.IDLE, SyncStatus.COMPLETED, SyncStatus.FAILED])
    def test_terminal_transitions_require_in_progress(self, status):
        state = AccountSyncState(status=status)
        with pytest.raises(InvalidTransitionError):
            state.complete(NOW, SyncCursor())
        with pytest.raises(InvalidTransitionError):
            state.fail("error")
        with pytest.raises(InvalidTransitionError):
            state.interrupt()

    def test_interrupt_returns_to_idle(self):
        cursor = SyncCursor(folders={"INBOX": FolderCursor(1, 4)})
        state = AccountSyncState().begin(NOW).interrupt(cursor, emails_added=4)

        assert state.status == SyncStatus.IDLE
        assert state.cursor == cursor
        assert state.last_synced_at is None
        assert state.total_emails_synced == 4

    def test_reject_credentials(self):
        state = AccountSyncState(status=SyncStatus.COMPLETED).reject_credentials(NOW, "Needs re-authentication")

        assert state.status == SyncStatus.FAILED
        assert state.last_sync_attempt_at == NOW
        assert state.consecutive_failures == 1


class TestSyncCursor:
    """Cursor encoding and bookkeeping"""

    def test_delta_token_round_trip(self):
        folders = {"INBOX": FolderCursor(7, 120), "Sent Items|old:x": FolderCursor(8, 3)}
        token = SyncCursor(folders=folders).delta_token

        assert SyncCursor.parse_delta_token(token) == folders

    def test_empty_cursor_has_no_token(self):
        assert SyncCursor().delta_token is None
        assert SyncCursor.parse_delta_token(None) == {}

    @pytest.mark.parametrize("token", ["INBOX:1", "INBOX:a:b", "INBOX:1:2|broken"])
    def test_malformed_token(self, token):
        with pytest.raises(CursorInvalidError):
            SyncCursor.parse_delta_token(token)

    def test_broken_stored_token_restarts_backfill(self):
        cursor = SyncCursor.from_storage("garbage", NOW, backfill_complete=True)

        assert cursor.folders == {}
        assert cursor.high_water_mark == NOW
        assert cursor.backfill_complete is False

    def test_high_water_mark_only_moves_forward(self):
        cursor = SyncCursor().advance_high_water_mark(NOW)
        assert cursor.advance_high_water_mark(NOW - timedelta(days=1)).high_water_mark == NOW
        assert cursor.advance_high_water_mark(None).high_water_mark == NOW
        assert cursor.advance_high_water_mark(NOW + timedelta(seconds=1)).high_water_mark == NOW + timedelta(seconds=1)

    def test_naive_high_water_mark_is_utc(self):
        cursor = SyncCursor(high_water_mark=datetime(2025, 6, 1, 9, 0))
        assert cursor.high_water_mark == datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


class TestEmailAccount:
    """Account construction rules"""

    def test_interval_is_clamped(self):
        assert make_gmail_account(sync_interval_minutes=0).sync_interval_minutes == 1
        assert make_gmail_account(sync_interval_minutes=5000).sync_interval_minutes == 1440

    def test_address_is_trimmed_and_normalized(self):
        account = make_gmail_account(email_address="  Alice@Gmail.com ")
        assert account.email_address == "Alice@Gmail.com"
        assert account.normalized_email == "alice@gmail.com"
        assert account.display_name == "Alice@Gmail.com"

    def test_oauth_provider_requires_tokens(self):
        with pytest.raises(ConfigurationError):
            EmailAccount(user_id="u", email_address="a@gmail.com", provider=EmailProvider.GMAIL,
                         credentials=ImapCredentials(imap_host="imap.gmail.com"))

    def test_generic_imap_requires_server(self):
        with pytest.raises(ConfigurationError):
            EmailAccount(user_id="u", email_address="a@example.org", provider="generic_imap",
                         credentials=OAuthCredentials("a", "r"))

    def test_credential_accessors(self):
        assert make_gmail_account().imap_credentials is None
        assert make_imap_account().oauth_credentials is None

    def test_token_freshness(self):
        credentials = OAuthCredentials("a", "r", expires_at=NOW + timedelta(seconds=100))
        assert credentials.is_fresh(NOW, margin_seconds=60) is True
        assert credentials.is_fresh(NOW, margin_seconds=120) is False
        assert OAuthCredentials("a", "r").is_fresh(NOW, 0) is False


class TestSyncSettings:

    def test_defaults(self):
        settings = SyncSettings()
        assert settings.history_months == 3
        assert settings.max_emails_per_sync == 1000
        assert settings.folders() == [EmailFolder.INBOX]

    def test_optional_folders_follow_inbox(self):
        settings = SyncSettings(include_sent_folder=True, include_archive_folder=True)
        assert settings.folders() == [EmailFolder.INBOX, EmailFolder.SENT, EmailFolder.ARCHIVE]

    @pytest.mark.parametrize("kwargs", [{"history_months": -1}, {"max_emails_per_sync": 0}])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            SyncSettings(**kwargs)


class TestHelpers:
    """Date helpers, attachment classification and error mapping"""

    def test_subtract_months_clamps_day(self):
        assert subtract_months(datetime(2025, 5, 31, tzinfo=timezone.utc), 3) == datetime(2025, 2, 28, tzinfo=timezone.utc)
        assert subtract_months(datetime(2025, 1, 15, tzinfo=timezone.utc), 2) == datetime(2024, 11, 15, tzinfo=timezone.utc)

    def test_imap_date(self):
        assert imap_date(datetime(2025, 2, 1, 23, 0, tzinfo=timezone.utc)) == "01-Feb-2025"

    @pytest.mark.parametrize("content_type, filename, expected", [
        ("application/pdf", "a.pdf", AttachmentType.PDF),
        ("application/octet-stream", "sheet.xls", AttachmentType.EXCEL),
        ("image/jpeg", "photo.jpg", AttachmentType.IMAGE),
        ("text/calendar", "invite.ics", AttachmentType.CALENDAR),
        ("application/x-unknown", "blob", AttachmentType.OTHER),
    ])
    def test_attachment_type_detection(self, content_type, filename, expected):
        assert AttachmentType.detect(content_type, filename) == expected

    def test_error_classification(self):
        assert classify(AuthenticationError("x")) == ErrorKind.AUTHENTICATION
        assert classify(ValueError("x")) == ErrorKind.UNEXPECTED
        assert is_retryable(MailConnectionError("x")) is True
        assert is_retryable(AuthenticationError("x")) is False
        assert is_retryable(TokenRefreshError("x")) is True

    def test_describe_for_user(self):
        assert describe_for_user(AuthenticationError("revoked")) == "Needs re-authentication: revoked"
        assert describe_for_user(ConfigurationError("no host")) == "Account configuration problem: no host"
        assert describe_for_user(KeyError()) == "Unexpected sync error: KeyError"
