"""
Tests for MessageMaterializer
"""

import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from mailsync.domain.email import AttachmentType, EmailFolder
from mailsync.domain.results import Materialized, Skipped
from mailsync.services.message_materializer import MessageMaterializer, fallback_external_id, safe_filename
from tests.helpers import NOW, FixedClock, build_raw_email, make_gmail_account, make_raw

PDF_BYTES = b"%PDF-1.4 fake document"


class TestMessageMaterializer:
    """Test cases for MessageMaterializer"""

    @pytest.fixture
    def account(self):
        return make_gmail_account()

    @pytest.fixture
    def materializer(self, tmp_path):
        return MessageMaterializer(str(tmp_path), clock=FixedClock(NOW))

    def test_parse_headers_and_body(self, materializer, account):
        raw = build_raw_email(
            subject="=?utf-8?q?Caf=C3=A9_menu?=",
            sender='"Dana Example" <dana@example.com>',
            to="alice@gmail.com, Bob <bob@example.org>",
            cc="carol@example.com",
            message_id="<abc@example.com>",
            date=datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc),
            body="Lunch is served at noon.",
        )

        result = materializer.parse(make_raw(7, raw, flags=("\\Seen",)), account)

        assert isinstance(result, Materialized)
        message = result.message
        assert message.external_id == "<abc@example.com>"
        assert message.subject == "Café menu"
        assert message.from_address == "dana@example.com"
        assert message.from_name == "Dana Example"
        assert message.to_recipients == ["alice@gmail.com", "bob@example.org"]
        assert message.cc_recipients == ["carol@example.com"]
        assert message.body_text.strip() == "Lunch is served at noon."
        assert message.preview == "Lunch is served at noon."
        assert message.sent_at == datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)
        assert message.received_at == NOW
        assert message.is_read is True
        assert message.is_flagged is False
        assert message.account_id == account.id
        assert message.user_id == account.user_id
        assert message.has_attachments is False

    def test_conversation_id_from_references(self, materializer, account):
        raw = build_raw_email(references="<root@example.com> <parent@example.com>",
                              in_reply_to="<parent@example.com>")
        result = materializer.parse(make_raw(1, raw), account)
        assert result.message.conversation_id == "<root@example.com>"

    def test_conversation_id_from_in_reply_to(self, materializer, account):
        raw = build_raw_email(in_reply_to="<parent@example.com>")
        result = materializer.parse(make_raw(1, raw), account)
        assert result.message.conversation_id == "<parent@example.com>"

    def test_missing_message_id_uses_folder_position(self, materializer, account):
        raw = build_raw_email(message_id=None)
        result = materializer.parse(make_raw(12, raw, uid_validity=99), account)

        assert result.message.external_id == "imap:INBOX:99:12"
        assert result.message.conversation_id == "imap:INBOX:99:12"

    def test_received_at_falls_back_to_clock(self, materializer, account):
        raw = build_raw_email(date=None)
        result = materializer.parse(make_raw(1, raw, internal_date=None), account)

        assert result.message.sent_at is None
        assert result.message.received_at == NOW

    def test_html_only_preview(self, materializer, account):
        raw = build_raw_email(body="", html="<p>Quarterly   <b>report</b></p>")
        result = materializer.parse(make_raw(1, raw), account)

        assert "<b>report</b>" in result.message.body_html
        assert result.message.preview == "Quarterly report"

    def test_draft_folder_marks_draft(self, materializer, account):
        result = materializer.parse(make_raw(1, build_raw_email(), folder=EmailFolder.DRAFTS), account)
        assert result.message.is_draft is True

    def test_empty_payload_is_skipped(self, materializer, account):
        result = materializer.parse(make_raw(1, b"  \r\n"), account)

        assert isinstance(result, Skipped)
        assert result.reason == "empty_payload"

    def test_parser_failure_is_skipped(self, materializer, account):
        with patch("mailsync.services.message_materializer.BytesParser") as parser:
            parser.return_value.parsebytes.side_effect = ValueError("bad MIME")
            result = materializer.parse(make_raw(1, build_raw_email()), account)

        assert isinstance(result, Skipped)
        assert result.reason == "parse_error"

    @pytest.mark.asyncio
    async def test_attachments_written_to_storage(self, materializer, account, tmp_path):
        raw = build_raw_email(attachments=(("report.pdf", "application/pdf", PDF_BYTES),))

        result = await materializer.materialize(make_raw(1, raw), account, max_attachment_size_mb=1)

        message = result.message
        assert message.has_attachments is True
        assert result.attachments_saved == 1
        attachment = message.attachments[0]
        assert attachment.filename == "report.pdf"
        assert attachment.attachment_type == AttachmentType.PDF
        assert attachment.size_bytes == len(PDF_BYTES)
        assert attachment.storage_path == str(tmp_path / account.id / message.id / "report.pdf")
        with open(attachment.storage_path, "rb") as f:
            assert f.read() == PDF_BYTES

    @pytest.mark.asyncio
    async def test_oversized_attachment_is_recorded_not_stored(self, materializer, account):
        payload = b"x" * (1024 * 1024 + 1)
        raw = build_raw_email(attachments=(("big.bin", "application/octet-stream", payload),))

        result = await materializer.materialize(make_raw(1, raw), account, max_attachment_size_mb=1)

        message = result.message
        assert result.attachments_saved == 0
        assert message.attachments[0].storage_path is None
        assert len(message.attachment_errors) == 1
        assert "exceeds the 1 MB limit" in message.attachment_errors[0]

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_fail_message(self, materializer, account):
        raw = build_raw_email(attachments=(("notes.txt", "text/plain", b"hello"),))

        with patch("mailsync.services.message_materializer.aiofiles.open", side_effect=OSError("disk full")):
            result = await materializer.materialize(make_raw(1, raw), account)

        assert isinstance(result, Materialized)
        assert result.attachments_saved == 0
        assert result.message.attachments[0].filename == "notes.txt"
        assert result.message.attachment_errors == ["notes.txt: disk full"]

    @pytest.mark.asyncio
    async def test_download_disabled(self, materializer, account, tmp_path):
        raw = build_raw_email(attachments=(("report.pdf", "application/pdf", PDF_BYTES),))

        result = await materializer.materialize(make_raw(1, raw), account, download_attachments=False)

        assert result.message.has_attachments is True
        assert result.message.attachments == []
        assert not (tmp_path / account.id).exists()

    @pytest.mark.asyncio
    async def test_discard_attachments(self, materializer, account):
        raw = build_raw_email(attachments=(("report.pdf", "application/pdf", PDF_BYTES),))
        result = await materializer.materialize(make_raw(1, raw), account)
        path = result.message.attachments[0].storage_path

        await materializer.discard_attachments(result.message)

        assert not os.path.exists(path)
        assert result.message.attachments[0].storage_path is None

    @pytest.mark.asyncio
    async def test_duplicate_filenames_kept_apart(self, materializer, account):
        raw = build_raw_email(attachments=(
            ("scan.png", "image/png", b"one"),
            ("scan.png", "image/png", b"two"),
        ))

        result = await materializer.materialize(make_raw(1, raw), account)

        paths = [a.storage_path for a in result.message.attachments]
        assert len(set(paths)) == 2
        assert result.attachments_saved == 2


class TestFilenameHelpers:

    def test_safe_filename_strips_paths(self):
        assert safe_filename("../../etc/passwd", 1) == "passwd"
        assert safe_filename("my report (final).pdf", 1) == "my_report_final_.pdf"

    def test_safe_filename_empty(self):
        assert safe_filename(None, 3) == "attachment-3"
        assert safe_filename("...", 4) == "attachment-4"

    def test_fallback_external_id(self):
        raw = make_raw(5, b"x", folder_name="Sent", uid_validity=7)
        assert fallback_external_id(raw) == "imap:Sent:7:5"
