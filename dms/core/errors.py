"""
Domain exceptions for the document pipeline.

Taxonomy (how each class is surfaced):

  ValidationError            missing/empty input       → 400, never retried
  DuplicateContentError      digest already registered → 409 + existingId
  DocumentNotFoundError      unknown document id       → 404 (curation routes)
  ConflictError              update on unknown id,     → 409
                             duplicate tag/schema name
  InvalidTransitionError     stage cannot start from   → stage failure, row untouched
                             the current status
  TransientCapabilityError   429 / 5xx from a vendor   → retried with backoff
  FatalCapabilityError       any other vendor failure, → status=error, 500
                             decode errors, missing
                             prerequisite data
  PipelineContinuationError  next stage not reachable  → status=error on the
                                                         already-advanced document
  StageFailedError           wrapper raised by a stage after it has recorded
                             status=error; carries the recorded message

The HTTP mapping lives in dms.main (exception handlers) and in the routers.
"""

from __future__ import annotations

from uuid import UUID


class DmsError(Exception):
    """Base class for all domain errors."""

    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DmsError):
    code = "validation_error"


class DuplicateContentError(DmsError):
    code = "duplicate_content"

    def __init__(self, existing_id: UUID, sha256: str) -> None:
        super().__init__("Document already exists")
        self.existing_id = existing_id
        self.sha256 = sha256


class DocumentNotFoundError(DmsError):
    code = "document_not_found"

    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class NotFoundError(DmsError):
    """Generic missing row (tag, field, schema)."""

    code = "not_found"


class ConflictError(DmsError):
    code = "conflict"


class InvalidTransitionError(DmsError):
    code = "invalid_transition"

    def __init__(self, document_id: UUID, current: str, target: str) -> None:
        super().__init__(
            f"Document {document_id} cannot move from '{current}' to '{target}'"
        )
        self.document_id = document_id
        self.current = current
        self.target = target


class CapabilityError(DmsError):
    """Failure reported by an external capability (OCR, completion, embedding)."""

    code = "capability_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientCapabilityError(CapabilityError):
    code = "capability_transient"


class FatalCapabilityError(CapabilityError):
    code = "capability_fatal"


class PipelineContinuationError(DmsError):
    code = "pipeline_trigger_failed"


class StageFailedError(DmsError):
    code = "stage_failed"

    def __init__(self, document_id: UUID | None, message: str, recorded: bool = True) -> None:
        super().__init__(message)
        self.document_id = document_id
        # False when the stage refused to start and left the row untouched
        self.recorded = recorded
