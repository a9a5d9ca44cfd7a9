"""
Catalog Service — manual curation of documents, tags, fields and schemas

Everything a user does by hand after the pipeline ran:

  documents  list / detail / status / patch title+type / delete / reprocess
  tags       attach (source=manual) / detach; global tag CRUD
  fields     add (source=manual) / edit value (flips source to manual) / delete
  schemas    CRUD for the extraction schemas the classifier chooses from

Manual entries always win over AI ones: the registry's AI upserts only
overwrite rows whose source is still 'ai'.

Errors are domain exceptions (NotFoundError, ConflictError, …); the HTTP
mapping lives in dms.main.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from dms.core.errors import (
    ConflictError,
    DocumentNotFoundError,
    InvalidTransitionError,
    NotFoundError,
)
from dms.db.session import SessionFactory, session_scope
from dms.models.documents import (
    Document,
    DocumentField,
    DocumentSchema,
    DocumentTag,
    EntrySource,
    Tag,
)
from dms.schemas.documents import (
    DocumentDetail,
    DocumentFieldRead,
    DocumentListResponse,
    DocumentStatusResponse,
    DocumentSummary,
    DocumentTagRead,
    SchemaRead,
    TagRead,
)
from dms.services.registry import DocumentRegistry
from dms.storage.s3 import BlobStore
from dms.workers.orchestrator import PipelineOrchestrator, PipelineStage

logger = logging.getLogger(__name__)


def _tag_link_read(link: DocumentTag) -> DocumentTagRead:
    return DocumentTagRead(
        id=link.tag.id,
        name=link.tag.name,
        color=link.tag.color,
        source=link.source,
        confidence=link.confidence,
    )


class CatalogService:

    def __init__(
        self,
        registry:        DocumentRegistry,
        storage:         BlobStore,
        orchestrator:    PipelineOrchestrator | None = None,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self._registry        = registry
        self._storage         = storage
        self._orchestrator    = orchestrator
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def list_documents(
        self,
        *,
        status:        Optional[str] = None,
        document_type: Optional[str] = None,
        tag:           Optional[str] = None,
        limit:         int = 50,
        offset:        int = 0,
    ) -> DocumentListResponse:
        """Newest first. *tag* matches a tag name case-insensitively."""
        stmt = select(Document)
        if status:
            stmt = stmt.where(Document.status == status)
        if document_type:
            stmt = stmt.where(Document.document_type == document_type)
        if tag:
            stmt = stmt.where(
                Document.id.in_(
                    select(DocumentTag.document_id)
                    .join(Tag, Tag.id == DocumentTag.tag_id)
                    .where(func.lower(Tag.name) == tag.strip().lower())
                )
            )

        async with self._session_factory() as db:
            total = (
                await db.execute(select(func.count()).select_from(stmt.subquery()))
            ).scalar_one()
            rows = (
                await db.execute(
                    stmt.order_by(Document.created_at.desc()).limit(limit).offset(offset)
                )
            ).scalars().all()

        return DocumentListResponse(
            items=[DocumentSummary.model_validate(d) for d in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def get_document(self, document_id: UUID) -> DocumentDetail:
        stmt = (
            select(Document)
            .where(Document.id == document_id)
            .options(
                selectinload(Document.tag_links).joinedload(DocumentTag.tag),
                selectinload(Document.fields),
            )
        )
        async with self._session_factory() as db:
            doc = (await db.execute(stmt)).scalars().first()
            if doc is None:
                raise DocumentNotFoundError(document_id)

            summary = DocumentSummary.model_validate(doc).model_dump()
            return DocumentDetail(
                **summary,
                sha256=doc.sha256,
                storage_path=doc.storage_path,
                schema_id=doc.schema_id,
                ocr_text=doc.ocr_text,
                tags=sorted(
                    (_tag_link_read(link) for link in doc.tag_links),
                    key=lambda t: t.name.lower(),
                ),
                fields=[DocumentFieldRead.model_validate(f) for f in doc.fields],
            )

    async def get_status(self, document_id: UUID) -> DocumentStatusResponse:
        doc = await self._registry.get(document_id)
        return DocumentStatusResponse(
            id=doc.id,
            status=doc.status,
            error_message=doc.error_message,
            updated_at=doc.updated_at,
        )

    async def update_document(self, document_id: UUID, **changes: Any) -> DocumentDetail:
        changes = {k: v for k, v in changes.items() if v is not None}
        try:
            await self._registry.update(document_id, **changes)
        except ConflictError as exc:
            raise DocumentNotFoundError(document_id) from exc
        logger.info("Document updated | doc=%s fields=%s", document_id, sorted(changes))
        return await self.get_document(document_id)

    async def delete_document(self, document_id: UUID) -> None:
        """
        Delete the row (tags, fields and embeddings go with it via FK
        cascade), then the blob. A leftover blob is logged, not raised:
        the row is already gone.
        """
        async with self._session_factory() as db:
            storage_path = (
                await db.execute(
                    delete(Document)
                    .where(Document.id == document_id)
                    .returning(Document.storage_path)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
        if storage_path is None:
            raise DocumentNotFoundError(document_id)

        try:
            await self._storage.delete(storage_path)
        except Exception:
            logger.exception("Blob delete failed | doc=%s path=%s", document_id, storage_path)

        logger.info("Document deleted | doc=%s", document_id)

    async def reprocess(self, document_id: UUID) -> DocumentStatusResponse:
        """ready | error → uploaded, then start OCR again."""
        try:
            await self._registry.reset_for_reprocessing(document_id)
        except ConflictError as exc:
            raise DocumentNotFoundError(document_id) from exc
        except InvalidTransitionError as exc:
            raise ConflictError(
                f"Document is '{exc.current}'; only ready or failed documents can be reprocessed"
            ) from exc

        if self._orchestrator is not None:
            self._orchestrator.trigger(PipelineStage.OCR, document_id)
        return await self.get_status(document_id)

    # ------------------------------------------------------------------
    # Document tags
    # ------------------------------------------------------------------

    async def add_document_tag(
        self,
        document_id: UUID,
        name: str,
        color: Optional[str] = None,
    ) -> DocumentTagRead:
        await self._registry.get(document_id)
        tag = await self._registry.link_tag(
            document_id, name, source=EntrySource.MANUAL, color=color,
        )
        logger.info("Tag attached | doc=%s tag=%s", document_id, tag.name)
        return DocumentTagRead(
            id=tag.id, name=tag.name, color=tag.color,
            source=EntrySource.MANUAL.value, confidence=None,
        )

    async def remove_document_tag(self, document_id: UUID, tag_id: UUID) -> None:
        async with self._session_factory() as db:
            removed = (
                await db.execute(
                    delete(DocumentTag)
                    .where(DocumentTag.document_id == document_id, DocumentTag.tag_id == tag_id)
                    .returning(DocumentTag.tag_id)
                )
            ).scalar_one_or_none()
        if removed is None:
            raise NotFoundError(f"Tag {tag_id} is not attached to document {document_id}")

    # ------------------------------------------------------------------
    # Document fields
    # ------------------------------------------------------------------

    async def add_field(
        self,
        document_id: UUID,
        field_name: str,
        field_value: str,
        field_type: str = "text",
    ) -> DocumentFieldRead:
        await self._registry.get(document_id)
        name = field_name.strip()
        await self._registry.upsert_fields(
            document_id,
            [{"field_name": name, "field_value": field_value, "field_type": field_type}],
            source=EntrySource.MANUAL,
        )
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    select(DocumentField).where(
                        DocumentField.document_id == document_id,
                        DocumentField.field_name == name,
                    )
                )
            ).scalars().one()
            return DocumentFieldRead.model_validate(row)

    async def update_field(
        self,
        document_id: UUID,
        field_id: UUID,
        field_value: str,
    ) -> DocumentFieldRead:
        """A user edit makes the field manual, so re-extraction keeps it."""
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    update(DocumentField)
                    .where(DocumentField.id == field_id, DocumentField.document_id == document_id)
                    .values(field_value=field_value, source=EntrySource.MANUAL.value, confidence=None)
                    .returning(DocumentField)
                    .execution_options(synchronize_session=False)
                )
            ).scalars().first()
            if row is None:
                raise NotFoundError(f"Field {field_id} not found on document {document_id}")
            return DocumentFieldRead.model_validate(row)

    async def delete_field(self, document_id: UUID, field_id: UUID) -> None:
        async with self._session_factory() as db:
            removed = (
                await db.execute(
                    delete(DocumentField)
                    .where(DocumentField.id == field_id, DocumentField.document_id == document_id)
                    .returning(DocumentField.id)
                )
            ).scalar_one_or_none()
        if removed is None:
            raise NotFoundError(f"Field {field_id} not found on document {document_id}")

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def list_tags(self) -> list[TagRead]:
        async with self._session_factory() as db:
            rows = (await db.execute(select(Tag).order_by(func.lower(Tag.name)))).scalars().all()
        return [TagRead.model_validate(t) for t in rows]

    async def create_tag(self, name: str, color: Optional[str] = None) -> TagRead:
        name = name.strip()
        try:
            async with self._session_factory() as db:
                await self._ensure_tag_name_free(db, name)
                tag = Tag(name=name, color=color)
                db.add(tag)
                await db.flush()
                result = TagRead.model_validate(tag)
        except IntegrityError as exc:
            raise ConflictError(f"Tag '{name}' already exists") from exc
        logger.info("Tag created | tag=%s", name)
        return result

    async def update_tag(
        self,
        tag_id: UUID,
        *,
        name: Optional[str] = None,
        color: Optional[str] = None,
    ) -> TagRead:
        try:
            async with self._session_factory() as db:
                tag = await db.get(Tag, tag_id)
                if tag is None:
                    raise NotFoundError(f"Tag not found: {tag_id}")
                if name is not None and name.strip().lower() != tag.name.lower():
                    await self._ensure_tag_name_free(db, name.strip())
                if name is not None:
                    tag.name = name.strip()
                if color is not None:
                    tag.color = color
                await db.flush()
                result = TagRead.model_validate(tag)
        except IntegrityError as exc:
            raise ConflictError(f"Tag '{name}' already exists") from exc
        return result

    async def delete_tag(self, tag_id: UUID) -> None:
        async with self._session_factory() as db:
            removed = (
                await db.execute(delete(Tag).where(Tag.id == tag_id).returning(Tag.id))
            ).scalar_one_or_none()
        if removed is None:
            raise NotFoundError(f"Tag not found: {tag_id}")

    @staticmethod
    async def _ensure_tag_name_free(db, name: str) -> None:
        clash = (
            await db.execute(select(Tag.id).where(func.lower(Tag.name) == name.lower()))
        ).scalar_one_or_none()
        if clash is not None:
            raise ConflictError(f"Tag '{name}' already exists")

    # ------------------------------------------------------------------
    # Schemas
    # ------------------------------------------------------------------

    async def list_schemas(self) -> list[SchemaRead]:
        return [SchemaRead.model_validate(s) for s in await self._registry.list_schemas()]

    async def create_schema(
        self,
        *,
        document_type: str,
        name: str,
        description: Optional[str] = None,
        schema: Optional[dict] = None,
    ) -> SchemaRead:
        try:
            async with self._session_factory() as db:
                row = DocumentSchema(
                    document_type=document_type.strip(),
                    name=name,
                    description=description,
                    schema=schema or {},
                )
                db.add(row)
                await db.flush()
                result = SchemaRead.model_validate(row)
        except IntegrityError as exc:
            raise ConflictError(f"Schema for '{document_type}' already exists") from exc
        logger.info("Schema created | type=%s", document_type)
        return result

    async def update_schema(self, schema_id: UUID, **changes: Any) -> SchemaRead:
        async with self._session_factory() as db:
            row = await db.get(DocumentSchema, schema_id)
            if row is None:
                raise NotFoundError(f"Schema not found: {schema_id}")
            for key, value in changes.items():
                if value is not None:
                    setattr(row, key, value)
            await db.flush()
            return SchemaRead.model_validate(row)

    async def delete_schema(self, schema_id: UUID) -> None:
        """Documents keep their document_type; schema_id is nulled by the FK."""
        async with self._session_factory() as db:
            removed = (
                await db.execute(
                    delete(DocumentSchema).where(DocumentSchema.id == schema_id).returning(DocumentSchema.id)
                )
            ).scalar_one_or_none()
        if removed is None:
            raise NotFoundError(f"Schema not found: {schema_id}")
