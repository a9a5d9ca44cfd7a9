"""
Unit Tests — IngestionService
══════════════════════════════
Tests for every branch of the upload pipeline.

All tests:
  • Use mock_registry, mock_storage, mock_orchestrator from conftest.py
  • Never touch real PostgreSQL, real S3, or a real broker

Coverage targets:
  ✅ Valid PDF   → 201 body {id, status=uploaded}, OCR triggered
  ✅ Valid PNG   → accepted
  ✅ No file     → 400 MISSING_FILE
  ✅ Empty file  → 400 MISSING_FILE
  ✅ Oversized   → 413 FILE_TOO_LARGE
  ✅ Bad type    → 415 UNSUPPORTED_FILE_TYPE (magic bytes, not the client header)
  ✅ Duplicate   → 409 DUPLICATE_DOCUMENT + existingId, no blob write
  ✅ Lost race   → 409 with the winner's id, our blob removed
  ✅ S3 failure  → 500 STORAGE_ERROR, no row
  ✅ DB failure  → blob removed, error propagates
  ✅ Storage path → documents/<sha256>/<sanitized filename>
"""

from __future__ import annotations

import hashlib
import io
import uuid
from unittest.mock import patch

import pytest
from fastapi import HTTPException, UploadFile

from dms.core.errors import DuplicateContentError
from dms.services.ingestion import IngestionService, detect_mime_type
from dms.workers.orchestrator import PipelineStage


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_upload_file(filename: str, content: bytes) -> UploadFile:
    """Build a FastAPI UploadFile backed by an in-memory BytesIO buffer."""
    return UploadFile(filename=filename, file=io.BytesIO(content), size=len(content))


# ─────────────────────────────────────────────────────────────────────────────
# Fixture: IngestionService factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_service(mock_registry, mock_storage, mock_orchestrator):
    """Factory: build an IngestionService with injected mocks."""
    def _build():
        return IngestionService(mock_registry, mock_storage, mock_orchestrator)
    return _build


@pytest.fixture
def created(mock_registry, make_document):
    """registry.create echoes a row built from its kwargs."""
    async def _create(**kwargs):
        return make_document(id=uuid.uuid4(), status="uploaded", **kwargs)
    mock_registry.create.side_effect = _create
    return mock_registry.create


# ─────────────────────────────────────────────────────────────────────────────
# MIME detection
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestDetectMimeType:

    @pytest.mark.parametrize("head, expected", [
        (b"%PDF-1.7\n", "application/pdf"),
        (b"\x89PNG\r\n\x1a\n\x00\x00", "image/png"),
        (b"\xff\xd8\xff\xe0\x00\x10JFIF", "image/jpeg"),
        (b"GIF89a\x01\x00", "image/gif"),
        (b"II*\x00\x08\x00", "image/tiff"),
        (b"RIFF\x24\x00\x00\x00WEBP", "image/webp"),
        (b"RIFF\x24\x00\x00\x00WAVE", "application/octet-stream"),
        (b"MZ\x90\x00", "application/octet-stream"),
    ])
    def test_signatures(self, head, expected):
        assert detect_mime_type(head) == expected


# ─────────────────────────────────────────────────────────────────────────────
# Happy path tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestIngestionServiceHappyPath:

    async def test_valid_pdf(self, make_service, created, mock_storage, mock_orchestrator,
                             sample_pdf_bytes):
        """Full happy path: blob written, row created, OCR triggered."""
        resp = await make_service().ingest(_make_upload_file("Rechnung März.pdf", sample_pdf_bytes))

        sha = hashlib.sha256(sample_pdf_bytes).hexdigest()
        expected_path = f"documents/{sha}/Rechnung_März.pdf"

        assert resp.status == "uploaded"
        mock_storage.put.assert_awaited_once_with(expected_path, sample_pdf_bytes, "application/pdf")
        kwargs = created.await_args.kwargs
        assert kwargs["sha256"] == sha
        assert kwargs["storage_path"] == expected_path
        assert kwargs["original_filename"] == "Rechnung März.pdf"
        assert kwargs["mime_type"] == "application/pdf"
        assert kwargs["file_size"] == len(sample_pdf_bytes)
        mock_orchestrator.trigger.assert_called_once_with(PipelineStage.OCR, resp.id)

    async def test_valid_png(self, make_service, created, sample_png_bytes):
        resp = await make_service().ingest(_make_upload_file("scan.png", sample_png_bytes))

        assert resp.status == "uploaded"
        assert created.await_args.kwargs["mime_type"] == "image/png"

    async def test_client_filename_path_is_stripped(self, make_service, created, sample_pdf_bytes):
        await make_service().ingest(_make_upload_file("../../etc/passwd.pdf", sample_pdf_bytes))

        assert created.await_args.kwargs["storage_path"].endswith("/passwd.pdf")


# ─────────────────────────────────────────────────────────────────────────────
# Validation errors
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestIngestionServiceValidation:

    async def test_no_file(self, make_service, mock_storage):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(None)

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "MISSING_FILE"
        mock_storage.put.assert_not_awaited()

    async def test_empty_file(self, make_service):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("empty.pdf", b""))

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error"] == "No file provided"

    async def test_oversized_file(self, make_service, mock_storage):
        with patch("dms.services.ingestion.settings.max_upload_bytes", 1024):
            with pytest.raises(HTTPException) as exc_info:
                await make_service().ingest(_make_upload_file("big.pdf", b"%PDF" + b"x" * 2048))

        assert exc_info.value.status_code == 413
        assert exc_info.value.detail["error_code"] == "FILE_TOO_LARGE"
        mock_storage.put.assert_not_awaited()

    async def test_unsupported_type(self, make_service, mock_registry, exe_bytes):
        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("invoice.pdf", exe_bytes))

        assert exc_info.value.status_code == 415
        assert exc_info.value.detail["error_code"] == "UNSUPPORTED_FILE_TYPE"
        mock_registry.find_by_sha256.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Duplicates
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestIngestionServiceDuplicates:

    async def test_existing_content_is_409_without_writes(
        self, make_service, mock_registry, mock_storage, mock_orchestrator,
        make_document, sample_pdf_bytes
    ):
        existing = make_document(id=uuid.uuid4())
        mock_registry.find_by_sha256.return_value = existing

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("copy.pdf", sample_pdf_bytes))

        assert exc_info.value.status_code == 409
        assert exc_info.value.detail["error"] == "Document already exists"
        assert exc_info.value.detail["existingId"] == str(existing.id)
        mock_storage.put.assert_not_awaited()
        mock_registry.create.assert_not_awaited()
        mock_orchestrator.trigger.assert_not_called()

    async def test_lost_race_with_other_filename_discards_our_blob(
        self, make_service, mock_registry, mock_storage, make_document, sample_pdf_bytes
    ):
        winner = make_document(id=uuid.uuid4(), storage_path="documents/x/other-name.pdf")
        mock_registry.find_by_sha256.side_effect = [None, winner]
        mock_registry.create.side_effect = DuplicateContentError(winner.id, "x")

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("mine.pdf", sample_pdf_bytes))

        assert exc_info.value.status_code == 409
        assert exc_info.value.detail["existingId"] == str(winner.id)
        our_path = mock_storage.put.await_args.args[0]
        mock_storage.delete.assert_awaited_once_with(our_path)

    async def test_lost_race_on_the_same_path_keeps_the_blob(
        self, make_service, mock_registry, mock_storage, make_document, sample_pdf_bytes
    ):
        sha = hashlib.sha256(sample_pdf_bytes).hexdigest()
        winner = make_document(id=uuid.uuid4(), storage_path=f"documents/{sha}/same.pdf")
        mock_registry.find_by_sha256.side_effect = [None, winner]
        mock_registry.create.side_effect = DuplicateContentError(winner.id, sha)

        with pytest.raises(HTTPException):
            await make_service().ingest(_make_upload_file("same.pdf", sample_pdf_bytes))

        mock_storage.delete.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Infrastructure failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestIngestionServiceFailures:

    async def test_storage_failure_is_500_without_row(
        self, make_service, mock_registry, mock_storage, mock_orchestrator, sample_pdf_bytes
    ):
        mock_storage.put.side_effect = ConnectionError("S3 unreachable")

        with pytest.raises(HTTPException) as exc_info:
            await make_service().ingest(_make_upload_file("a.pdf", sample_pdf_bytes))

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail["error_code"] == "STORAGE_ERROR"
        mock_registry.create.assert_not_awaited()
        mock_orchestrator.trigger.assert_not_called()

    async def test_registry_failure_removes_blob_and_propagates(
        self, make_service, mock_registry, mock_storage, mock_orchestrator, sample_pdf_bytes
    ):
        mock_registry.create.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError):
            await make_service().ingest(_make_upload_file("a.pdf", sample_pdf_bytes))

        mock_storage.delete.assert_awaited_once()
        mock_orchestrator.trigger.assert_not_called()

    async def test_blob_cleanup_failure_does_not_mask_the_error(
        self, make_service, mock_registry, mock_storage, sample_pdf_bytes
    ):
        mock_registry.create.side_effect = RuntimeError("db down")
        mock_storage.delete.side_effect = RuntimeError("s3 down too")

        with pytest.raises(RuntimeError, match="db down"):
            await make_service().ingest(_make_upload_file("a.pdf", sample_pdf_bytes))
