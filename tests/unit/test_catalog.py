"""
Unit Tests — CatalogService and the cascade rules in the schema
════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from dms.core.errors import (
    ConflictError,
    DocumentNotFoundError,
    InvalidTransitionError,
    NotFoundError,
)
from dms.models.documents import (
    Document,
    DocumentEmbedding,
    DocumentField,
    DocumentTag,
    EntrySource,
    Tag,
)
from dms.services.catalog import CatalogService
from dms.workers.orchestrator import PipelineStage


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def session():
    db = MagicMock(spec=AsyncSession)
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=None)
    db.execute = AsyncMock(return_value=result)
    return db


@pytest.fixture
def catalog(mock_registry, mock_storage, mock_orchestrator, session):
    @asynccontextmanager
    async def _scope():
        yield session

    return CatalogService(mock_registry, mock_storage, mock_orchestrator, session_factory=_scope)


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestDocuments:

    async def test_status(self, catalog, mock_registry, make_document, test_document_id):
        mock_registry.get.return_value = make_document(status="error", error_message="OCR failed")

        status = await catalog.get_status(test_document_id)

        assert status.status == "error"
        assert status.error_message == "OCR failed"

    async def test_status_unknown(self, catalog, mock_registry, test_document_id):
        mock_registry.get.side_effect = DocumentNotFoundError(test_document_id)

        with pytest.raises(DocumentNotFoundError):
            await catalog.get_status(test_document_id)

    async def test_update_unknown_is_not_found(self, catalog, mock_registry, test_document_id):
        mock_registry.update.side_effect = ConflictError("Document not found")

        with pytest.raises(DocumentNotFoundError):
            await catalog.update_document(test_document_id, title="Neu")

    async def test_update_drops_none_values(self, catalog, mock_registry, test_document_id):
        catalog.get_document = AsyncMock()

        await catalog.update_document(test_document_id, title="Neu", document_type=None)

        mock_registry.update.assert_awaited_once_with(test_document_id, title="Neu")

    async def test_delete_removes_row_then_blob(self, catalog, session, mock_storage, test_document_id):
        session.execute.return_value.scalar_one_or_none.return_value = "documents/abc/x.pdf"

        await catalog.delete_document(test_document_id)

        mock_storage.delete.assert_awaited_once_with("documents/abc/x.pdf")

    async def test_delete_survives_blob_failure(self, catalog, session, mock_storage, test_document_id):
        session.execute.return_value.scalar_one_or_none.return_value = "documents/abc/x.pdf"
        mock_storage.delete.side_effect = RuntimeError("s3 down")

        await catalog.delete_document(test_document_id)

    async def test_delete_unknown(self, catalog, mock_storage, test_document_id):
        with pytest.raises(DocumentNotFoundError):
            await catalog.delete_document(test_document_id)
        mock_storage.delete.assert_not_awaited()

    async def test_reprocess_resets_and_triggers_ocr(self, catalog, mock_registry, mock_orchestrator,
                                                     make_document, test_document_id):
        mock_registry.get.return_value = make_document(status="uploaded")

        status = await catalog.reprocess(test_document_id)

        mock_registry.reset_for_reprocessing.assert_awaited_once_with(test_document_id)
        mock_orchestrator.trigger.assert_called_once_with(PipelineStage.OCR, test_document_id)
        assert status.status == "uploaded"

    async def test_reprocess_while_running_is_conflict(self, catalog, mock_registry,
                                                       mock_orchestrator, test_document_id):
        mock_registry.reset_for_reprocessing.side_effect = InvalidTransitionError(
            test_document_id, "processing", "uploaded",
        )

        with pytest.raises(ConflictError):
            await catalog.reprocess(test_document_id)
        mock_orchestrator.trigger.assert_not_called()

    async def test_reprocess_unknown(self, catalog, mock_registry, test_document_id):
        mock_registry.reset_for_reprocessing.side_effect = ConflictError("Document not found")

        with pytest.raises(DocumentNotFoundError):
            await catalog.reprocess(test_document_id)


# ─────────────────────────────────────────────────────────────────────────────
# Tags & fields
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTagsAndFields:

    async def test_manual_tag_attach(self, catalog, mock_registry, make_document, test_document_id):
        mock_registry.get.return_value = make_document()
        mock_registry.link_tag.return_value = Tag(id=uuid.uuid4(), name="Steuer", color="#ff0000")

        link = await catalog.add_document_tag(test_document_id, "Steuer", "#ff0000")

        assert link.source == "manual"
        assert link.confidence is None
        assert mock_registry.link_tag.await_args.kwargs["source"] is EntrySource.MANUAL

    async def test_attach_to_unknown_document(self, catalog, mock_registry, test_document_id):
        mock_registry.get.side_effect = DocumentNotFoundError(test_document_id)

        with pytest.raises(DocumentNotFoundError):
            await catalog.add_document_tag(test_document_id, "Steuer")
        mock_registry.link_tag.assert_not_awaited()

    async def test_detach_missing_link(self, catalog, test_document_id):
        with pytest.raises(NotFoundError):
            await catalog.remove_document_tag(test_document_id, uuid.uuid4())

    async def test_delete_missing_field(self, catalog, test_document_id):
        with pytest.raises(NotFoundError):
            await catalog.delete_field(test_document_id, uuid.uuid4())

    async def test_delete_missing_tag(self, catalog):
        with pytest.raises(NotFoundError):
            await catalog.delete_tag(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Schema cascade rules
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCascadeRules:

    @pytest.mark.parametrize("model", [DocumentTag, DocumentField, DocumentEmbedding])
    def test_children_cascade_with_document(self, model):
        fk = next(iter(model.__table__.c.document_id.foreign_keys))
        assert fk.ondelete == "CASCADE"

    def test_tag_links_cascade_with_tag(self):
        fk = next(iter(DocumentTag.__table__.c.tag_id.foreign_keys))
        assert fk.ondelete == "CASCADE"

    def test_schema_delete_nulls_document_schema(self):
        fk = next(iter(Document.__table__.c.schema_id.foreign_keys))
        assert fk.ondelete == "SET NULL"

    def test_sha256_is_unique(self):
        from sqlalchemy import UniqueConstraint

        unique_columns = [
            {c.name for c in constraint.columns}
            for constraint in Document.__table__.constraints
            if isinstance(constraint, UniqueConstraint)
        ]
        assert {"sha256"} in unique_columns
