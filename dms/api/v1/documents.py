"""
Document API Router

  POST   /documents/upload                     ingest (dedup gate) → 201
  GET    /documents                            list, newest first
  GET    /documents/{id}                       detail with tags + fields
  GET    /documents/{id}/status                pipeline status poll
  PATCH  /documents/{id}                       title / document_type
  DELETE /documents/{id}                       row (+ cascade) and blob → 204
  POST   /documents/{id}/reprocess             ready|error → uploaded → OCR
  POST   /documents/{id}/tags                  attach tag (source=manual)
  DELETE /documents/{id}/tags/{tag_id}         detach tag
  POST   /documents/{id}/fields                add field (source=manual)
  PATCH  /documents/{id}/fields/{field_id}     edit value (→ manual)
  DELETE /documents/{id}/fields/{field_id}     delete field

Upload lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. File present / non-empty / ≤ max size  (400 / 413)   │
  │ 2. Magic-byte MIME check                  (415)         │
  │ 3. SHA-256 + duplicate check              (409)         │
  │ 4. Blob write under documents/<sha256>/   (500)         │
  │ 5. Registry insert (status=uploaded)      (409 on race) │
  │ 6. process-ocr triggered → returns 201                  │
  └─────────────────────────────────────────────────────────┘

Domain errors raised by the catalog (NotFoundError, ConflictError, …) are
mapped to status codes by the handlers in dms.main.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from dms.api.deps import Catalog, Ingestion
from dms.schemas.documents import (
    ApiErrors,
    DocumentDetail,
    DocumentFieldRead,
    DocumentListResponse,
    DocumentStatusResponse,
    DocumentTagAttachRequest,
    DocumentTagRead,
    DocumentUpdateRequest,
    DocumentUploadResponse,
    ErrorResponse,
    FieldCreateRequest,
    FieldUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a document",
    description=(
        "Accepts PDF and common image formats. Returns 201 once the file is "
        "stored and registered; OCR, classification and embedding continue "
        "asynchronously. Poll GET /documents/{id}/status for progress."
    ),
    responses={
        201: {"model": DocumentUploadResponse, "description": "Stored and registered"},
        400: {"model": ErrorResponse, "description": "No file or empty file"},
        409: {"model": ErrorResponse, "description": "Identical content already exists (existingId)"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        415: {"model": ErrorResponse, "description": "Unsupported file type"},
        500: {"model": ErrorResponse, "description": "Storage or internal failure"},
    },
)
async def upload_document(
    request: Request,
    service: Ingestion,
    file: Optional[UploadFile] = File(None, description="PDF or image file"),
) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

    try:
        result = await service.ingest(file)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled ingestion error | request_id=%s", request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).to_body(),
            headers={"X-Request-ID": request_id},
        )

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Request-ID":  request_id,
            "X-Document-ID": str(result.id),
            "Location":      f"/api/v1/documents/{result.id}/status",
        },
    )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.get("", response_model=DocumentListResponse, summary="List documents")
async def list_documents(
    catalog: Catalog,
    status_filter: Optional[str] = Query(None, alias="status"),
    document_type: Optional[str] = None,
    tag: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> DocumentListResponse:
    return await catalog.list_documents(
        status=status_filter,
        document_type=document_type,
        tag=tag,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{document_id}",
    response_model=DocumentDetail,
    responses={404: {"model": ErrorResponse}},
)
async def get_document(document_id: UUID, catalog: Catalog) -> DocumentDetail:
    return await catalog.get_document(document_id)


@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll pipeline status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(document_id: UUID, catalog: Catalog) -> DocumentStatusResponse:
    return await catalog.get_status(document_id)


@router.patch(
    "/{document_id}",
    response_model=DocumentDetail,
    responses={404: {"model": ErrorResponse}},
)
async def update_document(
    document_id: UUID,
    body: DocumentUpdateRequest,
    catalog: Catalog,
) -> DocumentDetail:
    return await catalog.update_document(document_id, **body.model_dump(exclude_unset=True))


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_document(document_id: UUID, catalog: Catalog) -> Response:
    await catalog.delete_document(document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{document_id}/reprocess",
    response_model=DocumentStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run the pipeline again",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reprocess_document(document_id: UUID, catalog: Catalog) -> DocumentStatusResponse:
    return await catalog.reprocess(document_id)


# ---------------------------------------------------------------------------
# Document tags
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/tags",
    response_model=DocumentTagRead,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
)
async def attach_tag(
    document_id: UUID,
    body: DocumentTagAttachRequest,
    catalog: Catalog,
) -> DocumentTagRead:
    return await catalog.add_document_tag(document_id, body.name, body.color)


@router.delete(
    "/{document_id}/tags/{tag_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def detach_tag(document_id: UUID, tag_id: UUID, catalog: Catalog) -> Response:
    await catalog.remove_document_tag(document_id, tag_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Document fields
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/fields",
    response_model=DocumentFieldRead,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
)
async def add_field(
    document_id: UUID,
    body: FieldCreateRequest,
    catalog: Catalog,
) -> DocumentFieldRead:
    return await catalog.add_field(document_id, body.field_name, body.field_value, body.field_type)


@router.patch(
    "/{document_id}/fields/{field_id}",
    response_model=DocumentFieldRead,
    responses={404: {"model": ErrorResponse}},
)
async def update_field(
    document_id: UUID,
    field_id: UUID,
    body: FieldUpdateRequest,
    catalog: Catalog,
) -> DocumentFieldRead:
    return await catalog.update_field(document_id, field_id, body.field_value)


@router.delete(
    "/{document_id}/fields/{field_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_field(document_id: UUID, field_id: UUID, catalog: Catalog) -> Response:
    await catalog.delete_field(document_id, field_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
