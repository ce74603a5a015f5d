"""
Message Materializer

Turns raw RFC 822 bytes fetched from a folder into ``EmailMessage`` records
and writes attachment payloads to attachment storage.

Parsing and storage are separate steps so the sync executor can drop
duplicates and out-of-range messages before anything touches the disk;
``materialize`` runs both for callers that need no such check.
"""

import os
import re
from datetime import datetime
from email import policy
from email.message import EmailMessage as MimeMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
import aiofiles.os

from mailsync.config import settings
from mailsync.domain.email import AttachmentType, EmailAccount, EmailAttachment, EmailFolder, EmailMessage
from mailsync.domain.results import AttachmentPart, MaterializeResult, Materialized, Skipped
from mailsync.services.email_connectors.base_connector import RawEmail
from mailsync.utils.datetime_utils import to_utc, utc_now
from mailsync.utils.errors import MessageParseError
from mailsync.utils.logging import get_logger

logger = get_logger("message_materializer")

PREVIEW_LENGTH = 200

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")
_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def fallback_external_id(raw: RawEmail) -> str:
    """Stable id for messages without a Message-ID header."""
    return f"imap:{raw.folder_name}:{raw.uid_validity}:{raw.uid}"


def safe_filename(name: Optional[str], index: int) -> str:
    cleaned = _UNSAFE_FILENAME.sub("_", os.path.basename(name or "")).strip("._")
    return cleaned[:200] or f"attachment-{index}"


def _header(msg: MimeMessage, name: str) -> str:
    value = msg.get(name)
    return str(value).strip() if value is not None else ""


def _addresses(msg: MimeMessage, name: str) -> List[Tuple[str, str]]:
    values = [str(v) for v in msg.get_all(name, [])]
    return [(display, address) for display, address in getaddresses(values) if address]


def _part_text(part: Optional[MimeMessage]) -> Optional[str]:
    if part is None:
        return None
    try:
        return part.get_content()
    except (LookupError, UnicodeError):
        # Unknown or lying charset declarations
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _conversation_id(msg: MimeMessage, external_id: str) -> str:
    references = _header(msg, "References").split()
    if references:
        return references[0]
    in_reply_to = _header(msg, "In-Reply-To").split()
    if in_reply_to:
        return in_reply_to[0]
    return external_id


def _sent_at(msg: MimeMessage) -> Optional[datetime]:
    date_header = _header(msg, "Date")
    if not date_header:
        return None
    try:
        return to_utc(parsedate_to_datetime(date_header))
    except (TypeError, ValueError, IndexError):
        return None


def _make_preview(body_text: str, body_html: Optional[str]) -> str:
    source = body_text if body_text.strip() else _HTML_TAG.sub(" ", body_html or "")
    return _WHITESPACE.sub(" ", source).strip()[:PREVIEW_LENGTH]


def _attachment_parts(msg: MimeMessage) -> List[AttachmentPart]:
    parts = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        # Inline parts without a filename are body alternatives, not attachments
        if disposition != "attachment" and not (disposition == "inline" and filename):
            continue
        parts.append(AttachmentPart(
            filename=filename or "",
            content_type=part.get_content_type(),
            payload=part.get_payload(decode=True) or b"",
            content_id=(part.get("Content-ID") or "").strip("<> ") or None,
            is_inline=disposition == "inline",
        ))
    return parts


class MessageMaterializer:
    """Parses raw messages and stores their attachments."""

    def __init__(self, attachments_dir: Optional[str] = None, clock=utc_now):
        self.attachments_dir = Path(attachments_dir or settings.attachments_dir)
        self.clock = clock

    def parse(self, raw: RawEmail, account: EmailAccount) -> MaterializeResult:
        """Build the message record without writing anything."""
        if not raw.raw or not raw.raw.strip():
            logger.warning(f"Skipping empty message UID {raw.uid} in {raw.folder_name}")
            return Skipped(external_id=None, reason="empty_payload")

        try:
            message, parts = self._decode(raw, account)
        except MessageParseError as e:
            logger.warning(f"Skipping unparseable message UID {raw.uid} in {raw.folder_name}: {e}")
            return Skipped(external_id=None, reason="parse_error")

        message.has_attachments = bool(parts)
        return Materialized(message=message, parts=parts)

    def _decode(self, raw: RawEmail, account: EmailAccount) -> Tuple[EmailMessage, List[AttachmentPart]]:
        try:
            msg = BytesParser(policy=policy.default).parsebytes(raw.raw)
            return self._build_message(msg, raw, account), _attachment_parts(msg)
        except Exception as e:
            raise MessageParseError(str(e) or type(e).__name__, account_id=account.id) from e

    def _build_message(self, msg: MimeMessage, raw: RawEmail, account: EmailAccount) -> EmailMessage:
        external_id = _header(msg, "Message-ID") or fallback_external_id(raw)
        senders = _addresses(msg, "From")
        from_name, from_address = senders[0] if senders else ("", "")

        body_text = _part_text(msg.get_body(preferencelist=("plain",))) or ""
        body_html = _part_text(msg.get_body(preferencelist=("html",)))

        flags = {flag.lower() for flag in raw.flags}
        sent_at = _sent_at(msg)

        return EmailMessage(
            account_id=account.id,
            user_id=account.user_id,
            external_id=external_id,
            conversation_id=_conversation_id(msg, external_id),
            subject=_header(msg, "Subject"),
            from_address=from_address,
            from_name=from_name,
            to_recipients=[address for _, address in _addresses(msg, "To")],
            cc_recipients=[address for _, address in _addresses(msg, "Cc")],
            body_text=body_text,
            body_html=body_html,
            preview=_make_preview(body_text, body_html),
            sent_at=sent_at,
            received_at=raw.internal_date or sent_at or self.clock(),
            folder=raw.folder,
            is_read="\\seen" in flags,
            is_flagged="\\flagged" in flags,
            is_draft="\\draft" in flags or raw.folder == EmailFolder.DRAFTS,
            size_bytes=raw.size_bytes or len(raw.raw),
        )

    async def save_attachments(self, materialized: Materialized, max_attachment_size_mb: int) -> int:
        """
        Write attachment payloads and attach their metadata to the message.

        Oversized or unwritable attachments are recorded in
        ``message.attachment_errors``; they never fail the message.

        Returns:
            Number of attachments written.
        """
        message = materialized.message
        if not materialized.parts:
            return 0

        limit = max_attachment_size_mb * 1024 * 1024
        target_dir = self.attachments_dir / message.account_id / message.id
        used_names = set()
        saved = 0

        for index, part in enumerate(materialized.parts, start=1):
            filename = safe_filename(part.filename, index)
            if filename in used_names:
                filename = f"{index}-{filename}"
            used_names.add(filename)

            attachment = EmailAttachment(
                filename=part.filename or filename,
                content_type=part.content_type,
                size_bytes=len(part.payload),
                content_id=part.content_id,
                is_inline=part.is_inline,
                attachment_type=AttachmentType.detect(part.content_type, part.filename),
            )
            message.attachments.append(attachment)

            if len(part.payload) > limit:
                message.attachment_errors.append(
                    f"{attachment.filename}: {len(part.payload)} bytes exceeds the {max_attachment_size_mb} MB limit"
                )
                continue

            path = target_dir / filename
            try:
                await aiofiles.os.makedirs(target_dir, exist_ok=True)
                async with aiofiles.open(path, "wb") as f:
                    await f.write(part.payload)
            except OSError as e:
                logger.warning(f"Failed to store attachment {attachment.filename} of {message.external_id}: {e}")
                message.attachment_errors.append(f"{attachment.filename}: {e}")
                continue

            attachment.storage_path = str(path)
            saved += 1

        materialized.attachments_saved = saved
        return saved

    async def discard_attachments(self, message: EmailMessage) -> None:
        """Remove files written for a message that was not stored."""
        for attachment in message.attachments:
            if not attachment.storage_path:
                continue
            try:
                await aiofiles.os.remove(attachment.storage_path)
            except FileNotFoundError:
                continue
            attachment.storage_path = None

    async def materialize(self, raw: RawEmail, account: EmailAccount, download_attachments: bool = True,
                          max_attachment_size_mb: Optional[int] = None) -> MaterializeResult:
        result = self.parse(raw, account)
        if isinstance(result, Materialized) and download_attachments:
            limit = max_attachment_size_mb or settings.email_sync_max_attachment_size_mb
            await self.save_attachments(result, limit)
        return result
