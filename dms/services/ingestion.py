"""
Document Ingestion Service — the deduplication gate

Orchestrates the upload pipeline:
  1. Read the upload with a hard size ceiling           → 400 / 413
  2. Detect the MIME type from magic bytes              → 415
  3. Compute the SHA-256 digest
  4. Registry lookup by digest                          → 409 {existingId}
     (nothing is written for a duplicate: no blob, no row)
  5. Write the blob to documents/<sha256>/<filename>    → 500 on failure, no row
  6. Insert the registry row (status=uploaded)
     UNIQUE(sha256) is the final arbiter; a lost race   → 409 {existingId}
  7. Trigger process-ocr (fire-and-forget)              → 201 {id, status}

Invariants enforced here:
  - The blob is written BEFORE the row, so a row never references a
    missing blob.
  - MIME type is detected from file magic bytes, not the client's Content-Type.
  - The storage path is built server-side from the digest and a sanitized
    filename.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import HTTPException, UploadFile, status

from dms.core.addressing import build_storage_path, compute_sha256
from dms.core.config import settings
from dms.core.errors import DuplicateContentError
from dms.schemas.documents import ApiErrors, DocumentUploadResponse
from dms.services.registry import DocumentRegistry
from dms.storage.s3 import BlobStore
from dms.workers.orchestrator import PipelineOrchestrator, PipelineStage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type detection
# ---------------------------------------------------------------------------

# Magic byte signatures, checked against the first 12 bytes of the file
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":              "application/pdf",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"\xff\xd8\xff":      "image/jpeg",
    b"GIF87a":            "image/gif",
    b"GIF89a":            "image/gif",
    b"II*\x00":           "image/tiff",
    b"MM\x00*":           "image/tiff",
}


def detect_mime_type(file_head: bytes) -> str:
    """
    Detect MIME type from magic bytes. Never trusts the client-supplied
    Content-Type.
    """
    for magic, mime in _MAGIC_BYTES.items():
        if file_head.startswith(magic):
            return mime
    # RIFF container: WEBP carries its fourcc at offset 8
    if file_head[:4] == b"RIFF" and file_head[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


# ---------------------------------------------------------------------------
# Core ingestion
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Stateless service object, one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        registry:     DocumentRegistry,
        storage:      BlobStore,
        orchestrator: PipelineOrchestrator,
    ) -> None:
        self._registry     = registry
        self._storage      = storage
        self._orchestrator = orchestrator

    async def ingest(self, file: Optional[UploadFile]) -> DocumentUploadResponse:
        """
        Full ingestion pipeline. Returns the 201 body on success.
        Raises HTTPException with a structured ErrorResponse on all error cases.
        """
        # ---- Step 1: Read file into memory (with size guard) -----------
        data = await self._read_upload(file)
        filename = (file.filename or "upload").strip() or "upload"

        # ---- Step 2: Detect MIME type -----------------------------------
        detected_mime = detect_mime_type(data[:12])
        if detected_mime not in settings.allowed_mime_types:
            raise HTTPException(
                status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                detail=ApiErrors.unsupported_file_type(filename, detected_mime).to_body(),
            )

        # ---- Step 3: Digest ---------------------------------------------
        sha256 = compute_sha256(data)
        storage_path = build_storage_path(sha256, filename)

        logger.info(
            "Ingest start | file=%s size=%d mime=%s sha256=%s",
            filename, len(data), detected_mime, sha256,
        )

        # ---- Step 4: Duplicate check ------------------------------------
        existing = await self._registry.find_by_sha256(sha256)
        if existing is not None:
            logger.info("Duplicate rejected | sha256=%s existing=%s", sha256, existing.id)
            raise self._duplicate(sha256, existing.id)

        # ---- Step 5: Blob first -----------------------------------------
        try:
            await self._storage.put(storage_path, data, detected_mime)
        except Exception as exc:
            logger.exception("Blob write failed | path=%s", storage_path)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=ApiErrors.storage_error(str(exc)).to_body(),
            )

        # ---- Step 6: Registry row ---------------------------------------
        try:
            doc = await self._registry.create(
                sha256=sha256,
                storage_path=storage_path,
                original_filename=filename,
                mime_type=detected_mime,
                file_size=len(data),
            )
        except DuplicateContentError as exc:
            # Lost the race. The winner owns the blob at its own path; only
            # remove ours when it is a different object.
            winner = await self._registry.find_by_sha256(sha256)
            if winner is None or winner.storage_path != storage_path:
                await self._discard_blob(storage_path)
            raise self._duplicate(sha256, exc.existing_id)
        except Exception:
            await self._discard_blob(storage_path)
            raise

        logger.info("Ingest ok | doc=%s path=%s", doc.id, storage_path)

        # ---- Step 7: Continue the pipeline ------------------------------
        self._orchestrator.trigger(PipelineStage.OCR, doc.id)

        return DocumentUploadResponse(id=doc.id, status=doc.status)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _read_upload(self, file: Optional[UploadFile]) -> bytes:
        """
        Read the upload into memory with a hard size ceiling.
        Raises 400/413 if the file is missing, empty or too large.
        """
        if file is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ApiErrors.missing_file().to_body(),
            )

        data = await file.read(settings.max_upload_bytes + 1)

        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ApiErrors.missing_file().to_body(),
            )

        if len(data) > settings.max_upload_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=ApiErrors.file_too_large(file.size or len(data)).to_body(),
            )

        return data

    async def _discard_blob(self, path: str) -> None:
        try:
            await self._storage.delete(path)
        except Exception:
            logger.exception("Orphan blob cleanup failed | path=%s", path)

    @staticmethod
    def _duplicate(sha256: str, existing_id) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ApiErrors.duplicate_document(sha256, existing_id).to_body(),
        )
