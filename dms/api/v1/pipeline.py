"""
Pipeline Stage Router (internal)

  POST /pipeline/process-ocr     {"documentId"} → 200 {status, pageCount, method}
  POST /pipeline/extract-data    {"documentId"} → 200 {status, documentType, title, tags, fields, warnings}
  POST /pipeline/generate-embed  {"documentId"} → 200 {status, chunks}

Every failure answers 500 {error, error_code}, including a missing or
malformed documentId:

  STAGE_FAILED         the stage ran and wrote status=error + error_message
  STAGE_REJECTED       the stage did not start (unknown id, wrong status)
  MISSING_DOCUMENT_ID  no usable documentId in the body

These endpoints are what the HTTP dispatcher calls (PIPELINE_DISPATCH=http)
and can be used to re-run a single stage by hand.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status

from dms.api.deps import EmbedRunner, ExtractRunner, OcrRunner
from dms.core.errors import StageFailedError
from dms.schemas.documents import (
    ApiErrors,
    EmbedStageResponse,
    ErrorResponse,
    ExtractStageResponse,
    OcrStageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/pipeline",
    tags=["Pipeline"],
)

_ERROR_RESPONSES = {500: {"model": ErrorResponse, "description": "Stage failed or was rejected"}}


async def _document_id(request: Request) -> UUID:
    """Read documentId from the JSON body; any problem is a 500 naming documentId."""
    try:
        body = await request.json()
    except ValueError:
        body = None

    raw = body.get("documentId") if isinstance(body, dict) else None
    if not raw:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=ApiErrors.missing_document_id().to_body(),
        )
    try:
        return UUID(str(raw))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=ApiErrors.validation("documentId is not a valid UUID", "documentId").to_body(),
        )


def _stage_error(exc: StageFailedError) -> HTTPException:
    body = ApiErrors.stage_failed(exc.message) if exc.recorded else ApiErrors.stage_rejected(exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=body.to_body())


@router.post("/process-ocr", response_model=OcrStageResponse, responses=_ERROR_RESPONSES)
async def process_ocr(request: Request, stage: OcrRunner) -> OcrStageResponse:
    document_id = await _document_id(request)
    try:
        result = await stage.run(document_id)
    except StageFailedError as exc:
        raise _stage_error(exc)
    return OcrStageResponse(page_count=result.page_count, method=result.method)


@router.post("/extract-data", response_model=ExtractStageResponse, responses=_ERROR_RESPONSES)
async def extract_data(request: Request, stage: ExtractRunner) -> ExtractStageResponse:
    document_id = await _document_id(request)
    try:
        result = await stage.run(document_id)
    except StageFailedError as exc:
        raise _stage_error(exc)
    return ExtractStageResponse(
        document_type=result.document_type,
        title=result.title,
        tags=result.tags,
        fields=result.fields,
        warnings=result.warnings,
    )


@router.post("/generate-embed", response_model=EmbedStageResponse, responses=_ERROR_RESPONSES)
async def generate_embed(request: Request, stage: EmbedRunner) -> EmbedStageResponse:
    document_id = await _document_id(request)
    try:
        result = await stage.run(document_id)
    except StageFailedError as exc:
        raise _stage_error(exc)
    return EmbedStageResponse(chunks=result.chunks)
