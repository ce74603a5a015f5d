"""
Email synchronization models.

This module defines SQLAlchemy models for the sync engine:
- Email accounts (credentials, sync configuration and sync state)
- Emails (local message storage, unique per account and external id)
- Email attachments (metadata for files written to attachment storage)
"""

from sqlalchemy import Column, String, Text, Integer, Boolean, TIMESTAMP, ForeignKey, UniqueConstraint, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailsync.db.database import Base
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


class EmailAccountModel(Base):
    """Connected mailbox with its credentials and sync state."""

    __tablename__ = "email_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), nullable=False, index=True)

    # Account configuration
    provider = Column(String(50), nullable=False)  # gmail, outlook, generic_imap
    email_address = Column(String(255), nullable=False)
    email_normalized = Column(String(255), nullable=False)
    display_name = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    sync_interval_minutes = Column(Integer, default=5, nullable=False)

    # OAuth2 credentials
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(TIMESTAMP(timezone=True))
    granted_scopes = Column(JSON, default=list)

    # Server credentials for generic IMAP
    imap_host = Column(String(255))
    imap_port = Column(Integer)
    smtp_host = Column(String(255))
    smtp_port = Column(Integer)
    use_tls = Column(Boolean, default=True)
    imap_username = Column(String(255))  # defaults to email_address
    password = Column(Text)

    # Sync state
    sync_status = Column(String(50), default="idle", nullable=False)
    last_synced_at = Column(TIMESTAMP(timezone=True))
    last_sync_attempt_at = Column(TIMESTAMP(timezone=True))
    last_sync_error = Column(Text)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    delta_token = Column(Text)
    high_water_mark = Column(TIMESTAMP(timezone=True))
    backfill_complete = Column(Boolean, default=False, nullable=False)
    total_emails_synced = Column(Integer, default=0, nullable=False)
    total_attachments_synced = Column(Integer, default=0, nullable=False)

    # Metadata
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    emails = relationship("EmailMessageModel", back_populates="account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "email_normalized", name="uq_user_email"),
        Index("ix_email_accounts_due", "is_active", "sync_status"),
    )


class EmailMessageModel(Base):
    """Local storage of synchronized email content."""

    __tablename__ = "email_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False)

    # Identifiers
    external_id = Column(String(998), nullable=False)
    conversation_id = Column(String(998))

    # Content
    subject = Column(Text)
    body_text = Column(Text)
    body_html = Column(Text)
    preview = Column(String(500))

    # Participants
    from_address = Column(String(255))
    from_name = Column(String(255))
    to_recipients = Column(JSON, default=list)
    cc_recipients = Column(JSON, default=list)

    # Timestamps
    sent_at = Column(TIMESTAMP(timezone=True))
    received_at = Column(TIMESTAMP(timezone=True))

    # Metadata and flags
    folder = Column(String(50), nullable=False, default="inbox")
    size_bytes = Column(Integer)
    has_attachments = Column(Boolean, default=False)
    is_read = Column(Boolean, default=False)
    is_flagged = Column(Boolean, default=False)
    is_draft = Column(Boolean, default=False)
    attachment_errors = Column(JSON, default=list)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    account = relationship("EmailAccountModel", back_populates="emails")
    attachments = relationship("EmailAttachmentModel", back_populates="email", cascade="all, delete-orphan",
                               lazy="selectin")

    __table_args__ = (
        UniqueConstraint("account_id", "external_id", name="uq_account_external_id"),
        Index("ix_email_messages_unread", "user_id", "is_read"),
    )


class EmailAttachmentModel(Base):
    """Attachment metadata; the bytes live under the attachments directory."""

    __tablename__ = "email_attachments"

    id = Column(String(36), primary_key=True, default=_uuid)
    email_id = Column(String(36), ForeignKey("email_messages.id", ondelete="CASCADE"), nullable=False)

    filename = Column(String(500), nullable=False)
    content_type = Column(String(255))
    attachment_type = Column(String(50), default="other")
    size_bytes = Column(Integer, default=0)
    storage_path = Column(Text)
    content_id = Column(String(255))
    is_inline = Column(Boolean, default=False)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    email = relationship("EmailMessageModel", back_populates="attachments")
