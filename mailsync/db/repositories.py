"""
Account and message repositories.

The abstract interfaces are what the sync engine depends on; the SQLAlchemy
implementations persist through the async session factory. Every call opens
its own short transaction and returns detached domain copies, so concurrent
account workers never share mutable account objects.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mailsync.db.models.email import EmailAccountModel, EmailAttachmentModel, EmailMessageModel
from mailsync.domain.email import (
    AccountSyncState,
    AttachmentType,
    Credentials,
    EmailAccount,
    EmailAttachment,
    EmailFolder,
    EmailMessage,
    EmailProvider,
    ImapCredentials,
    OAuthCredentials,
    SyncCursor,
    SyncStatus,
    normalize_email_address,
)
from mailsync.utils.errors import AccountNotFoundError, DuplicateAccountError
from mailsync.utils.logging import get_logger

logger = get_logger("repositories")

SessionFactory = Callable[[], AsyncSession]


class AccountRepository(ABC):
    """Persistence of accounts, their credentials and sync state."""

    @abstractmethod
    async def get_accounts_needing_sync(self) -> List[EmailAccount]:
        """Active accounts that are candidates for a scheduler tick (including stuck in-progress ones)."""

    @abstractmethod
    async def get_by_user_id(self, user_id: str) -> List[EmailAccount]:
        ...

    @abstractmethod
    async def get_by_id(self, account_id: str) -> Optional[EmailAccount]:
        ...

    @abstractmethod
    async def add(self, account: EmailAccount) -> EmailAccount:
        """Raises DuplicateAccountError when the user already linked the same address."""

    @abstractmethod
    async def update(self, account: EmailAccount) -> None:
        """Write identity and configuration fields (not credentials, not sync state)."""

    @abstractmethod
    async def update_sync_state(self, account_id: str, state: AccountSyncState) -> None:
        ...

    @abstractmethod
    async def update_credentials(self, account_id: str, credentials: Credentials) -> None:
        ...

    @abstractmethod
    async def set_active(self, account_id: str, is_active: bool) -> None:
        ...


class MessageRepository(ABC):
    """Persistence of synchronized messages."""

    @abstractmethod
    async def exists(self, account_id: str, external_id: str) -> bool:
        ...

    @abstractmethod
    async def add(self, message: EmailMessage) -> bool:
        """Insert a message with its attachments. Returns False if the external id was already stored."""

    @abstractmethod
    async def get_by_external_id(self, account_id: str, external_id: str) -> Optional[EmailMessage]:
        """Stored message with its attachments, or None."""

    @abstractmethod
    async def get_unread_count(self, account_id: Optional[str] = None, user_id: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def count(self, account_id: str) -> int:
        ...


# Model <-> domain mapping

def account_from_model(row: EmailAccountModel) -> EmailAccount:
    provider = EmailProvider(row.provider)
    if provider.uses_oauth:
        credentials: Credentials = OAuthCredentials(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.token_expires_at,
            granted_scopes=list(row.granted_scopes or []),
        )
    else:
        credentials = ImapCredentials(
            imap_host=row.imap_host or "",
            imap_port=row.imap_port or 993,
            smtp_host=row.smtp_host,
            smtp_port=row.smtp_port or 587,
            use_tls=bool(row.use_tls),
            password=row.password or "",
            username=row.imap_username,
        )

    state = AccountSyncState(
        status=SyncStatus(row.sync_status),
        last_synced_at=row.last_synced_at,
        last_sync_attempt_at=row.last_sync_attempt_at,
        cursor=SyncCursor.from_storage(row.delta_token, row.high_water_mark, bool(row.backfill_complete)),
        last_sync_error=row.last_sync_error,
        consecutive_failures=row.consecutive_failures or 0,
        total_emails_synced=row.total_emails_synced or 0,
        total_attachments_synced=row.total_attachments_synced or 0,
    )

    return EmailAccount(
        id=row.id,
        user_id=row.user_id,
        email_address=row.email_address,
        provider=provider,
        credentials=credentials,
        display_name=row.display_name,
        sync_interval_minutes=row.sync_interval_minutes,
        is_active=bool(row.is_active),
        is_primary=bool(row.is_primary),
        sync_state=state,
    )


def _credential_values(credentials: Credentials) -> dict:
    if isinstance(credentials, OAuthCredentials):
        return {
            "access_token": credentials.access_token,
            "refresh_token": credentials.refresh_token,
            "token_expires_at": credentials.expires_at,
            "granted_scopes": list(credentials.granted_scopes),
        }
    return {
        "imap_host": credentials.imap_host,
        "imap_port": credentials.imap_port,
        "smtp_host": credentials.smtp_host,
        "smtp_port": credentials.smtp_port,
        "use_tls": credentials.use_tls,
        "password": credentials.password,
        "imap_username": credentials.username,
    }


def _sync_state_values(state: AccountSyncState) -> dict:
    return {
        "sync_status": state.status.value,
        "last_synced_at": state.last_synced_at,
        "last_sync_attempt_at": state.last_sync_attempt_at,
        "last_sync_error": state.last_sync_error,
        "consecutive_failures": state.consecutive_failures,
        "delta_token": state.cursor.delta_token,
        "high_water_mark": state.cursor.high_water_mark,
        "backfill_complete": state.cursor.backfill_complete,
        "total_emails_synced": state.total_emails_synced,
        "total_attachments_synced": state.total_attachments_synced,
    }


def message_from_model(row: EmailMessageModel) -> EmailMessage:
    return EmailMessage(
        id=row.id,
        account_id=row.account_id,
        user_id=row.user_id,
        external_id=row.external_id,
        conversation_id=row.conversation_id,
        subject=row.subject or "",
        from_address=row.from_address or "",
        from_name=row.from_name or "",
        to_recipients=list(row.to_recipients or []),
        cc_recipients=list(row.cc_recipients or []),
        body_text=row.body_text or "",
        body_html=row.body_html,
        preview=row.preview or "",
        sent_at=row.sent_at,
        received_at=row.received_at,
        folder=EmailFolder(row.folder),
        is_read=bool(row.is_read),
        is_flagged=bool(row.is_flagged),
        is_draft=bool(row.is_draft),
        size_bytes=row.size_bytes,
        has_attachments=bool(row.has_attachments),
        attachments=[
            EmailAttachment(
                id=a.id,
                filename=a.filename,
                content_type=a.content_type or "application/octet-stream",
                size_bytes=a.size_bytes or 0,
                storage_path=a.storage_path,
                content_id=a.content_id,
                is_inline=bool(a.is_inline),
                attachment_type=AttachmentType(a.attachment_type or "other"),
            )
            for a in row.attachments
        ],
        attachment_errors=list(row.attachment_errors or []),
    )


# SQLAlchemy implementations

class SqlAlchemyAccountRepository(AccountRepository):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def get_accounts_needing_sync(self) -> List[EmailAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmailAccountModel)
                .where(EmailAccountModel.is_active.is_(True))
                .order_by(EmailAccountModel.last_synced_at.asc().nullsfirst())
            )
            return [account_from_model(row) for row in result.scalars().all()]

    async def get_by_user_id(self, user_id: str) -> List[EmailAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmailAccountModel)
                .where(EmailAccountModel.user_id == user_id)
                .order_by(EmailAccountModel.is_primary.desc(), EmailAccountModel.email_normalized)
            )
            return [account_from_model(row) for row in result.scalars().all()]

    async def get_by_id(self, account_id: str) -> Optional[EmailAccount]:
        async with self._session_factory() as session:
            row = await session.get(EmailAccountModel, account_id)
            return account_from_model(row) if row else None

    async def add(self, account: EmailAccount) -> EmailAccount:
        normalized = normalize_email_address(account.email_address)
        async with self._session_factory() as session:
            existing = await session.execute(
                select(EmailAccountModel.id).where(
                    EmailAccountModel.user_id == account.user_id,
                    EmailAccountModel.email_normalized == normalized,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateAccountError(
                    f"Account {account.email_address} is already linked for user {account.user_id}"
                )

            row = EmailAccountModel(
                id=account.id,
                user_id=account.user_id,
                provider=account.provider.value,
                email_address=account.email_address,
                email_normalized=normalized,
                display_name=account.display_name,
                is_active=account.is_active,
                is_primary=account.is_primary,
                sync_interval_minutes=account.sync_interval_minutes,
                **_credential_values(account.credentials),
                **_sync_state_values(account.sync_state),
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateAccountError(
                    f"Account {account.email_address} is already linked for user {account.user_id}"
                )

        logger.info(f"Linked {account.provider.value} account {account.email_address} for user {account.user_id}")
        return account

    async def _update_columns(self, account_id: str, values: dict) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(EmailAccountModel).where(EmailAccountModel.id == account_id).values(**values)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)
            await session.commit()

    async def update(self, account: EmailAccount) -> None:
        await self._update_columns(account.id, {
            "email_address": account.email_address,
            "email_normalized": normalize_email_address(account.email_address),
            "display_name": account.display_name,
            "sync_interval_minutes": account.sync_interval_minutes,
            "is_primary": account.is_primary,
            "is_active": account.is_active,
        })

    async def update_sync_state(self, account_id: str, state: AccountSyncState) -> None:
        await self._update_columns(account_id, _sync_state_values(state))

    async def update_credentials(self, account_id: str, credentials: Credentials) -> None:
        await self._update_columns(account_id, _credential_values(credentials))

    async def set_active(self, account_id: str, is_active: bool) -> None:
        values = {"is_active": is_active}
        if is_active:
            values.update({"consecutive_failures": 0, "last_sync_error": None})
        await self._update_columns(account_id, values)
        logger.info(f"Account {account_id} {'activated' if is_active else 'deactivated'}")


class SqlAlchemyMessageRepository(MessageRepository):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def exists(self, account_id: str, external_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmailMessageModel.id).where(
                    EmailMessageModel.account_id == account_id,
                    EmailMessageModel.external_id == external_id,
                ).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def add(self, message: EmailMessage) -> bool:
        row = EmailMessageModel(
            id=message.id,
            account_id=message.account_id,
            user_id=message.user_id,
            external_id=message.external_id,
            conversation_id=message.conversation_id,
            subject=message.subject,
            body_text=message.body_text,
            body_html=message.body_html,
            preview=message.preview,
            from_address=message.from_address,
            from_name=message.from_name,
            to_recipients=list(message.to_recipients),
            cc_recipients=list(message.cc_recipients),
            sent_at=message.sent_at,
            received_at=message.received_at,
            folder=message.folder.value,
            size_bytes=message.size_bytes,
            has_attachments=message.has_attachments,
            is_read=message.is_read,
            is_flagged=message.is_flagged,
            is_draft=message.is_draft,
            attachment_errors=list(message.attachment_errors),
            attachments=[
                EmailAttachmentModel(
                    id=a.id,
                    filename=a.filename,
                    content_type=a.content_type,
                    attachment_type=a.attachment_type.value,
                    size_bytes=a.size_bytes,
                    storage_path=a.storage_path,
                    content_id=a.content_id,
                    is_inline=a.is_inline,
                )
                for a in message.attachments
            ],
        )

        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f"Message {message.external_id} already stored for account {message.account_id}")
                return False
        return True

    async def get_unread_count(self, account_id: Optional[str] = None, user_id: Optional[str] = None) -> int:
        query = select(func.count(EmailMessageModel.id)).where(EmailMessageModel.is_read.is_(False))
        if account_id is not None:
            query = query.where(EmailMessageModel.account_id == account_id)
        if user_id is not None:
            query = query.where(EmailMessageModel.user_id == user_id)
        async with self._session_factory() as session:
            return (await session.execute(query)).scalar_one()

    async def count(self, account_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(EmailMessageModel.id)).where(EmailMessageModel.account_id == account_id)
            )
            return result.scalar_one()

    async def get_by_external_id(self, account_id: str, external_id: str) -> Optional[EmailMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmailMessageModel).where(
                    EmailMessageModel.account_id == account_id,
                    EmailMessageModel.external_id == external_id,
                )
            )
            row = result.scalar_one_or_none()
            return message_from_model(row) if row else None
