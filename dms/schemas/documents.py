"""
Document API — Pydantic Request/Response Schemas

Covers:
  - POST /api/v1/documents/upload (201 / 400 / 409 / 413 / 415 / 500)
  - Stage trigger endpoints under /api/v1/pipeline/*
  - Curation endpoints (documents, tags, fields, schemas)
  - The uniform error envelope returned on every 4xx/5xx

Wire conventions:
  - Keys the web client already consumes are camelCase via aliases
    (existingId, documentId, pageCount, documentType); everything else
    stays snake_case.
  - Every error body carries a human-readable `error` string plus a stable
    `error_code`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dms.core.config import settings


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error; may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    model_config = ConfigDict(populate_by_name=True)

    error:       str               = Field(..., description="Human-readable summary")
    error_code:  str               = Field(..., description="Stable machine-readable code")
    details:     list[ErrorDetail] = Field(default_factory=list)
    request_id:  str | None        = Field(None, description="Trace ID for log correlation")
    existing_id: UUID | None       = Field(
        None,
        alias="existingId",
        description="Id of the document that already holds this content (409 only)",
    )

    def to_body(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class ApiErrors:
    """Factories for every documented error case."""

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error="No file provided",
            error_code="MISSING_FILE",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error=f"File type '{detected_type}' is not supported.",
            error_code="UNSUPPORTED_FILE_TYPE",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"'{filename}' has an unsupported type '{detected_type}'. "
                        f"Allowed: PDF and common image formats."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int) -> ErrorResponse:
        limit = settings.max_upload_bytes
        return ErrorResponse(
            error=f"Uploaded file exceeds the {limit // (1024 * 1024)} MB limit.",
            error_code="FILE_TOO_LARGE",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def duplicate_document(sha256: str, existing_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error="Document already exists",
            error_code="DUPLICATE_DOCUMENT",
            existing_id=existing_id,
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"A document with sha256 '{sha256}' already exists "
                        f"(document_id: {existing_id})."
                    ),
                    code="DUPLICATE_DOCUMENT",
                )
            ],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error="Failed to store the document. Please retry.",
            error_code="STORAGE_ERROR",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def stage_failed(message: str) -> ErrorResponse:
        return ErrorResponse(error=message, error_code="STAGE_FAILED")

    @staticmethod
    def stage_rejected(message: str) -> ErrorResponse:
        """The stage did not start; nothing was written to the document."""
        return ErrorResponse(error=message, error_code="STAGE_REJECTED")

    @staticmethod
    def missing_document_id() -> ErrorResponse:
        return ErrorResponse(
            error="documentId missing",
            error_code="MISSING_DOCUMENT_ID",
            details=[
                ErrorDetail(
                    field="documentId",
                    message="Request body must contain a valid documentId.",
                    code="MISSING_DOCUMENT_ID",
                )
            ],
        )

    @staticmethod
    def validation(message: str, field: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error=message,
            error_code="VALIDATION_ERROR",
            details=[ErrorDetail(field=field, message=message, code="VALIDATION_ERROR")],
        )

    @staticmethod
    def not_found(message: str) -> ErrorResponse:
        return ErrorResponse(error=message, error_code="NOT_FOUND")

    @staticmethod
    def conflict(message: str) -> ErrorResponse:
        return ErrorResponse(error=message, error_code="CONFLICT")

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error="An unexpected error occurred.",
            error_code="INTERNAL_ERROR",
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """HTTP 201: the file is stored; the pipeline continues asynchronously."""
    id:     UUID
    status: str = "uploaded"


# ---------------------------------------------------------------------------
# Stage trigger endpoints
# ---------------------------------------------------------------------------

class OcrStageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status:     str = "ocr_done"
    page_count: int = Field(..., alias="pageCount")
    method:     str = Field(..., description="local | remote")


class ExtractStageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status:        str = "extracted"
    document_type: str = Field(..., alias="documentType")
    title:         str
    tags:          list[str]
    fields:        list[str]
    warnings:      list[str] = Field(default_factory=list)


class EmbedStageResponse(BaseModel):
    status: str = "ready"
    chunks: int


# ---------------------------------------------------------------------------
# Curation: documents
# ---------------------------------------------------------------------------

class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:    UUID
    name:  str
    color: str | None = None


class DocumentTagRead(TagRead):
    source:     str
    confidence: float | None = None


class DocumentFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:          UUID
    field_name:  str
    field_value: str | None
    field_type:  str
    source:      str
    confidence:  float | None = None


class DocumentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                UUID
    original_filename: str
    mime_type:         str
    file_size:         int
    status:            str
    title:             str | None = None
    document_type:     str | None = None
    page_count:        int | None = None
    error_message:     str | None = None
    created_at:        datetime
    updated_at:        datetime


class DocumentDetail(DocumentSummary):
    sha256:       str
    storage_path: str
    schema_id:    UUID | None = None
    ocr_text:     str | None = None
    tags:         list[DocumentTagRead] = Field(default_factory=list)
    fields:       list[DocumentFieldRead] = Field(default_factory=list)


class DocumentListResponse(BaseModel):
    items:  list[DocumentSummary]
    total:  int
    limit:  int
    offset: int


class DocumentStatusResponse(BaseModel):
    """Polled by clients to track pipeline progress."""
    id:            UUID
    status:        str
    error_message: str | None = None
    updated_at:    datetime


class DocumentUpdateRequest(BaseModel):
    title:         str | None = Field(None, min_length=1, max_length=500)
    document_type: str | None = Field(None, min_length=1, max_length=100)


class DocumentTagAttachRequest(BaseModel):
    name:  str = Field(..., min_length=1, max_length=100)
    color: str | None = None

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("tag name must not be blank")
        return value


class FieldCreateRequest(BaseModel):
    field_name:  str = Field(..., min_length=1, max_length=100)
    field_value: str
    field_type:  str = "text"


class FieldUpdateRequest(BaseModel):
    field_value: str


# ---------------------------------------------------------------------------
# Curation: tags & schemas
# ---------------------------------------------------------------------------

class TagCreateRequest(DocumentTagAttachRequest):
    pass


class TagUpdateRequest(BaseModel):
    name:  str | None = Field(None, min_length=1, max_length=100)
    color: str | None = None


class SchemaRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:            UUID
    document_type: str
    name:          str
    description:   str | None = None
    schema_:       dict[str, Any] = Field(..., alias="schema")


class SchemaCreateRequest(BaseModel):
    document_type: str = Field(..., min_length=1, max_length=100)
    name:          str = Field(..., min_length=1, max_length=200)
    description:   str | None = None
    schema_:       dict[str, Any] = Field(default_factory=dict, alias="schema")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("schema_")
    @classmethod
    def _check_properties(cls, value: dict[str, Any]) -> dict[str, Any]:
        props = value.get("properties", {})
        if not isinstance(props, dict):
            raise ValueError("schema.properties must be an object")
        return value


class SchemaUpdateRequest(BaseModel):
    name:        str | None = None
    description: str | None = None
    schema_:     dict[str, Any] | None = Field(None, alias="schema")

    model_config = ConfigDict(populate_by_name=True)
