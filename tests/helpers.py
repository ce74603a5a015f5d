"""Shared fakes and builders for the sync engine tests."""

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage as MimeMessage
from email.utils import format_datetime
from typing import Callable, Dict, List, Optional, Tuple

from mailsync.config import Settings
from mailsync.db.repositories import AccountRepository, MessageRepository
from mailsync.domain.email import (
    AccountSyncState,
    EmailAccount,
    EmailFolder,
    EmailMessage,
    EmailProvider,
    ImapCredentials,
    OAuthCredentials,
    normalize_email_address,
)
from mailsync.services.email_connectors.base_connector import FolderInfo, FolderStatus, MailboxConnection, RawEmail
from mailsync.services.email_connectors.connector_factory import strategy_for
from mailsync.utils.errors import AccountNotFoundError, DuplicateAccountError
from mailsync.utils.metrics import SyncMonitor

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_config(**overrides) -> Settings:
    values = {
        "gmail_client_id": "gmail-client",
        "gmail_client_secret": "gmail-secret",
        "outlook_client_id": "outlook-client",
        "outlook_client_secret": "outlook-secret",
        "max_concurrent_syncs": 4,
        "max_consecutive_failures": 5,
        "scheduler_enabled": False,
        "api_key": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_gmail_account(
    *,
    user_id: str = "user-1",
    email_address: str = "alice@gmail.com",
    access_token: Optional[str] = "access-token",
    refresh_token: Optional[str] = "refresh-token",
    expires_at: Optional[datetime] = None,
    **kwargs,
) -> EmailAccount:
    return EmailAccount(
        user_id=user_id,
        email_address=email_address,
        provider=EmailProvider.GMAIL,
        credentials=OAuthCredentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at if expires_at is not None else NOW + timedelta(hours=1),
        ),
        **kwargs,
    )


def make_imap_account(
    *,
    user_id: str = "user-1",
    email_address: str = "bob@example.org",
    imap_host: str = "mail.example.org",
    imap_port: int = 993,
    use_tls: bool = True,
    password: str = "hunter2",
    **kwargs,
) -> EmailAccount:
    return EmailAccount(
        user_id=user_id,
        email_address=email_address,
        provider=EmailProvider.GENERIC_IMAP,
        credentials=ImapCredentials(imap_host=imap_host, imap_port=imap_port, use_tls=use_tls, password=password),
        **kwargs,
    )


def build_raw_email(
    *,
    subject: str = "Hello",
    sender: str = "Carol Sender <carol@example.com>",
    to: str = "alice@gmail.com",
    cc: Optional[str] = None,
    message_id: Optional[str] = "<msg-1@example.com>",
    date: Optional[datetime] = NOW,
    body: str = "Plain body text",
    html: Optional[str] = None,
    references: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    attachments: Tuple[Tuple[str, str, bytes], ...] = (),
) -> bytes:
    """RFC 822 bytes for a message; attachments are (filename, content type, payload)."""
    msg = MimeMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    if message_id:
        msg["Message-ID"] = message_id
    if date is not None:
        msg["Date"] = format_datetime(date)
    if references:
        msg["References"] = references
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    for filename, content_type, payload in attachments:
        maintype, subtype = content_type.split("/", 1)
        msg.add_attachment(payload, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


def make_raw(uid: int, raw: bytes, *, folder: EmailFolder = EmailFolder.INBOX, folder_name: str = "INBOX",
             uid_validity: int = 1, flags: Tuple[str, ...] = (),
             internal_date: Optional[datetime] = NOW) -> RawEmail:
    return RawEmail(uid=uid, folder=folder, folder_name=folder_name, uid_validity=uid_validity, raw=raw,
                    flags=flags, internal_date=internal_date, size_bytes=len(raw))


# Repositories

class InMemoryAccountRepository(AccountRepository):
    """Account store that hands out copies, like the SQL implementation."""

    def __init__(self, accounts: Optional[List[EmailAccount]] = None):
        self._accounts: Dict[str, EmailAccount] = {}
        self.state_writes: List[Tuple[str, AccountSyncState]] = []
        self.credential_writes: List[Tuple[str, object]] = []
        for account in accounts or []:
            self._accounts[account.id] = copy.deepcopy(account)

    def _get(self, account_id: str) -> EmailAccount:
        if account_id not in self._accounts:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)
        return self._accounts[account_id]

    async def get_accounts_needing_sync(self) -> List[EmailAccount]:
        return [copy.deepcopy(a) for a in self._accounts.values() if a.is_active]

    async def get_by_user_id(self, user_id: str) -> List[EmailAccount]:
        return [copy.deepcopy(a) for a in self._accounts.values() if a.user_id == user_id]

    async def get_by_id(self, account_id: str) -> Optional[EmailAccount]:
        account = self._accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def add(self, account: EmailAccount) -> EmailAccount:
        key = (account.user_id, normalize_email_address(account.email_address))
        if any((a.user_id, a.normalized_email) == key for a in self._accounts.values()):
            raise DuplicateAccountError(f"Account {account.email_address} already linked")
        self._accounts[account.id] = copy.deepcopy(account)
        return account

    async def update(self, account: EmailAccount) -> None:
        stored = self._get(account.id)
        stored.display_name = account.display_name
        stored.sync_interval_minutes = account.sync_interval_minutes
        stored.is_primary = account.is_primary
        stored.is_active = account.is_active

    async def update_sync_state(self, account_id: str, state: AccountSyncState) -> None:
        self._get(account_id).sync_state = copy.deepcopy(state)
        self.state_writes.append((account_id, copy.deepcopy(state)))

    async def update_credentials(self, account_id: str, credentials) -> None:
        self._get(account_id).credentials = copy.deepcopy(credentials)
        self.credential_writes.append((account_id, copy.deepcopy(credentials)))

    async def set_active(self, account_id: str, is_active: bool) -> None:
        stored = self._get(account_id)
        stored.is_active = is_active
        if is_active:
            stored.sync_state.consecutive_failures = 0
            stored.sync_state.last_sync_error = None

    def peek(self, account_id: str) -> EmailAccount:
        return self._accounts[account_id]


class InMemoryMessageRepository(MessageRepository):

    def __init__(self):
        self.rows: Dict[Tuple[str, str], EmailMessage] = {}

    async def exists(self, account_id: str, external_id: str) -> bool:
        return (account_id, external_id) in self.rows

    async def add(self, message: EmailMessage) -> bool:
        key = (message.account_id, message.external_id)
        if key in self.rows:
            return False
        self.rows[key] = copy.deepcopy(message)
        return True

    async def get_by_external_id(self, account_id: str, external_id: str) -> Optional[EmailMessage]:
        message = self.rows.get((account_id, external_id))
        return copy.deepcopy(message) if message is not None else None

    async def get_unread_count(self, account_id: Optional[str] = None, user_id: Optional[str] = None) -> int:
        return sum(
            1 for m in self.rows.values()
            if not m.is_read
            and (account_id is None or m.account_id == account_id)
            and (user_id is None or m.user_id == user_id)
        )

    async def count(self, account_id: str) -> int:
        return sum(1 for (aid, _) in self.rows if aid == account_id)

    def for_account(self, account_id: str) -> List[EmailMessage]:
        return [m for (aid, _), m in self.rows.items() if aid == account_id]


# Mailbox fakes

@dataclass
class FakeFolder:
    uid_validity: int = 1
    # uid -> (raw bytes, flags, internal date)
    messages: Dict[int, Tuple[bytes, Tuple[str, ...], datetime]] = field(default_factory=dict)

    def add(self, uid: int, raw: bytes, internal_date: datetime, flags: Tuple[str, ...] = ()) -> None:
        self.messages[uid] = (raw, flags, internal_date)

    @property
    def uid_next(self) -> int:
        return max(self.messages, default=0) + 1


class FakeMailbox:
    """Server-side state shared by every connection to one account."""

    def __init__(self):
        self.folders: Dict[str, FakeFolder] = {"INBOX": FakeFolder()}
        self.fetch_errors: Dict[int, Exception] = {}
        self.searches: List[Tuple[str, Optional[int], Optional[datetime]]] = []

    def folder(self, name: str = "INBOX") -> FakeFolder:
        return self.folders.setdefault(name, FakeFolder())


class FakeConnection(MailboxConnection):

    def __init__(self, mailbox: FakeMailbox, on_fetch: Optional[Callable[[int], None]] = None):
        self.mailbox = mailbox
        self.selected: Optional[str] = None
        self.closed = False
        self.on_fetch = on_fetch

    async def list_folders(self) -> List[FolderInfo]:
        return [FolderInfo(name=name, delimiter="/") for name in self.mailbox.folders]

    async def resolve_folder(self, folder: EmailFolder) -> Optional[str]:
        names = {EmailFolder.INBOX: "INBOX", EmailFolder.SENT: "Sent", EmailFolder.DRAFTS: "Drafts",
                 EmailFolder.ARCHIVE: "Archive"}
        name = names.get(folder)
        return name if name in self.mailbox.folders else None

    async def select_folder(self, name: str) -> FolderStatus:
        folder = self.mailbox.folders[name]
        self.selected = name
        return FolderStatus(name=name, uid_validity=folder.uid_validity, uid_next=folder.uid_next,
                            messages=len(folder.messages))

    async def search_uids(self, since_uid: Optional[int] = None,
                          since_date: Optional[datetime] = None) -> List[int]:
        self.mailbox.searches.append((self.selected, since_uid, since_date))
        folder = self.mailbox.folders[self.selected]
        uids = []
        for uid, (_, _, internal_date) in folder.messages.items():
            if since_uid is not None and uid <= since_uid:
                continue
            # IMAP SINCE compares dates only
            if since_date is not None and internal_date.date() < since_date.date():
                continue
            uids.append(uid)
        return sorted(uids)

    async def fetch_message(self, uid: int, folder: EmailFolder) -> Optional[RawEmail]:
        if uid in self.mailbox.fetch_errors:
            raise self.mailbox.fetch_errors[uid]
        if self.on_fetch is not None:
            self.on_fetch(uid)
        stored = self.mailbox.folders[self.selected].messages.get(uid)
        if stored is None:
            return None
        raw, flags, internal_date = stored
        return make_raw(uid, raw, folder=folder, folder_name=self.selected,
                        uid_validity=self.mailbox.folders[self.selected].uid_validity,
                        flags=flags, internal_date=internal_date)

    async def close(self) -> None:
        self.closed = True


class FakeConnectionManager:
    """Stands in for ConnectionManager; mailboxes are keyed by account id."""

    def __init__(self):
        self.mailboxes: Dict[str, FakeMailbox] = {}
        self.open_errors: Dict[str, Exception] = {}
        self.connections: List[FakeConnection] = []
        self.on_fetch: Optional[Callable[[int], None]] = None

    def mailbox_for(self, account: EmailAccount) -> FakeMailbox:
        return self.mailboxes.setdefault(account.id, FakeMailbox())

    @staticmethod
    def is_delta_capable(account: EmailAccount) -> bool:
        return strategy_for(account.provider).delta_capable

    @asynccontextmanager
    async def connection(self, account: EmailAccount):
        if account.id in self.open_errors:
            raise self.open_errors[account.id]
        conn = FakeConnection(self.mailboxes.setdefault(account.id, FakeMailbox()), on_fetch=self.on_fetch)
        self.connections.append(conn)
        try:
            yield conn
        finally:
            await conn.close()


class RecordingMonitor(SyncMonitor):

    def __init__(self):
        self.passes: List[Tuple[str, str]] = []
        self.messages: List[Tuple[str, str]] = []
        self.token_refreshes: List[Tuple[str, str]] = []
        self.cursor_resets: List[str] = []

    def pass_finished(self, provider: str, outcome: str, duration_seconds: float) -> None:
        self.passes.append((provider, outcome))

    def message_processed(self, provider: str, result: str) -> None:
        self.messages.append((provider, result))

    def token_refreshed(self, provider: str, result: str) -> None:
        self.token_refreshes.append((provider, result))

    def cursor_reset(self, provider: str) -> None:
        self.cursor_resets.append(provider)
