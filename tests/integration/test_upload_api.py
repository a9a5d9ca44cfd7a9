"""
Integration Tests — POST /api/v1/documents/upload
══════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart form parsing
  - Dependency injection chain (registry, blob store, orchestrator mocked)
  - Response status codes and body schemas
  - Header assertions (X-Document-ID, Location, X-Request-ID)

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, request parsing, Pydantic schema validation,
           IngestionService pipeline logic, MIME detection, error handlers
  🔲 Mock: PostgreSQL   (mock_registry fixture)
  🔲 Mock: S3 storage   (mock_storage fixture)
  🔲 Mock: pipeline     (mock_orchestrator fixture)

How to run
──────────
  pytest -m integration tests/integration/test_upload_api.py -v
"""

from __future__ import annotations

import uuid

import pytest

from dms.workers.orchestrator import PipelineStage

UPLOAD_URL = "/api/v1/documents/upload"


@pytest.fixture
def registry_creates(mock_registry, make_document):
    new_id = uuid.uuid4()

    async def _create(**kwargs):
        return make_document(id=new_id, status="uploaded", **kwargs)

    mock_registry.create.side_effect = _create
    return new_id


# ─────────────────────────────────────────────────────────────────────────────
# Success
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadSuccess:

    async def test_pdf_upload_returns_201(self, async_client, registry_creates,
                                          mock_orchestrator, sample_pdf_bytes):
        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("rechnung.pdf", sample_pdf_bytes, "application/pdf")},
        )

        assert response.status_code == 201
        body = response.json()
        assert body == {"id": str(registry_creates), "status": "uploaded"}
        assert response.headers["X-Document-ID"] == str(registry_creates)
        assert response.headers["Location"] == f"/api/v1/documents/{registry_creates}/status"
        assert "X-Request-ID" in response.headers
        mock_orchestrator.trigger.assert_called_once_with(PipelineStage.OCR, registry_creates)

    async def test_request_id_is_echoed(self, async_client, registry_creates, sample_pdf_bytes):
        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("rechnung.pdf", sample_pdf_bytes, "application/pdf")},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"

    async def test_client_content_type_is_ignored(self, async_client, registry_creates,
                                                  mock_registry, sample_png_bytes):
        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("scan.png", sample_png_bytes, "application/pdf")},
        )

        assert response.status_code == 201
        assert mock_registry.create.await_args.kwargs["mime_type"] == "image/png"


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadErrors:

    async def test_missing_file_is_400(self, async_client, mock_storage):
        response = await async_client.post(UPLOAD_URL, data={"note": "no file"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "No file provided"
        assert body["error_code"] == "MISSING_FILE"
        mock_storage.put.assert_not_awaited()

    async def test_duplicate_is_409_with_existing_id(self, async_client, mock_registry,
                                                     mock_storage, make_document, sample_pdf_bytes):
        existing = make_document(id=uuid.uuid4())
        mock_registry.find_by_sha256.return_value = existing

        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("kopie.pdf", sample_pdf_bytes, "application/pdf")},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "Document already exists"
        assert body["existingId"] == str(existing.id)
        mock_storage.put.assert_not_awaited()

    async def test_unsupported_type_is_415(self, async_client, exe_bytes):
        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("tool.pdf", exe_bytes, "application/pdf")},
        )

        assert response.status_code == 415
        assert response.json()["error_code"] == "UNSUPPORTED_FILE_TYPE"

    async def test_storage_failure_is_500(self, async_client, mock_storage, mock_registry,
                                          sample_pdf_bytes):
        mock_storage.put.side_effect = ConnectionError("S3 unreachable")

        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("rechnung.pdf", sample_pdf_bytes, "application/pdf")},
        )

        assert response.status_code == 500
        assert response.json()["error_code"] == "STORAGE_ERROR"
        mock_registry.create.assert_not_awaited()

    async def test_unexpected_failure_is_structured_500(self, async_client, mock_registry,
                                                        mock_storage, sample_pdf_bytes):
        mock_registry.find_by_sha256.side_effect = RuntimeError("pool exhausted")

        response = await async_client.post(
            UPLOAD_URL,
            files={"file": ("rechnung.pdf", sample_pdf_bytes, "application/pdf")},
            headers={"X-Request-ID": "req-500"},
        )

        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == "INTERNAL_ERROR"
        assert body["request_id"] == "req-500"
        assert "pool exhausted" not in response.text
