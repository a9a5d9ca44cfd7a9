"""
Document Registry — the relational record store and its state machine

Every write a pipeline stage makes goes through this class, and every
method runs in its own short transaction (session_scope), so:

  • a status transition and the stage's output columns land in ONE
    UPDATE statement; never observable half-applied;
  • tag linking and field persistence run in separate transactions from the
    extracted transition; a failing tag cannot roll the document back;
  • embeddings are deleted, re-inserted and the document marked ready in a
    single transaction; a document has embeddings iff it is ready.

State machine:

    uploaded ──► processing ──► ocr_done ──► extracted ──► ready
        │             │             │            │
        └─────────────┴──────┬──────┴────────────┘
                             ▼
                           error ──► (re-run: processing / extracted / ready)

    ready | error ──reset_for_reprocessing──► uploaded

Transitions are compare-and-set:
    UPDATE documents SET status=:target, … WHERE id=:id AND status IN (:allowed)
A miss is disambiguated with one SELECT: unknown id → ConflictError,
disallowed current status → InvalidTransitionError.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dms.core.errors import (
    ConflictError,
    DocumentNotFoundError,
    DuplicateContentError,
    InvalidTransitionError,
)
from dms.db.session import SessionFactory, session_scope
from dms.models.documents import (
    Document,
    DocumentEmbedding,
    DocumentField,
    DocumentSchema,
    DocumentStatus,
    DocumentTag,
    EntrySource,
    Tag,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Transition table: target status → statuses it may be entered from
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.UPLOADED, DocumentStatus.ERROR}),
    DocumentStatus.OCR_DONE:   frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.EXTRACTED:  frozenset({DocumentStatus.OCR_DONE, DocumentStatus.ERROR}),
    DocumentStatus.READY:      frozenset({DocumentStatus.EXTRACTED, DocumentStatus.ERROR}),
    DocumentStatus.ERROR:      frozenset({
        DocumentStatus.UPLOADED,
        DocumentStatus.PROCESSING,
        DocumentStatus.OCR_DONE,
        DocumentStatus.EXTRACTED,
        DocumentStatus.ERROR,
    }),
    DocumentStatus.UPLOADED:   frozenset({DocumentStatus.READY, DocumentStatus.ERROR}),
}

# Columns no caller may set through update(); they are owned by the
# state machine or immutable provenance.
_PROTECTED_COLUMNS = frozenset({
    "id", "status", "error_message", "sha256", "storage_path",
    "original_filename", "mime_type", "file_size", "fts",
})

MAX_ERROR_MESSAGE_CHARS = 2000


def can_transition(current: DocumentStatus | str, target: DocumentStatus) -> bool:
    return DocumentStatus(current) in ALLOWED_TRANSITIONS[target]


class DocumentRegistry:
    """
    Stateless repository, safe to share; holds only the session factory.
    Inject a different factory in tests.
    """

    def __init__(self, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: UUID) -> Document:
        async with self._session_factory() as db:
            doc = await db.get(Document, document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    async def find_by_sha256(self, sha256: str) -> Document | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Document).where(Document.sha256 == sha256))
            return result.scalars().first()

    async def list_schemas(self) -> list[DocumentSchema]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(DocumentSchema).order_by(DocumentSchema.document_type)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation (dedup arbiter)
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        sha256: str,
        storage_path: str,
        original_filename: str,
        mime_type: str,
        file_size: int,
    ) -> Document:
        """
        Insert a new document with status=uploaded.

        The UNIQUE(sha256) constraint is the final arbiter for concurrent
        uploads of identical content: the losing INSERT raises
        IntegrityError, which is re-queried and surfaced as
        DuplicateContentError carrying the winner's id.
        """
        doc = Document(
            sha256=sha256,
            storage_path=storage_path,
            original_filename=original_filename,
            mime_type=mime_type,
            file_size=file_size,
            status=DocumentStatus.UPLOADED.value,
        )
        try:
            async with self._session_factory() as db:
                db.add(doc)
                await db.flush()   # assigns id, surfaces the UNIQUE violation
        except IntegrityError:
            existing = await self.find_by_sha256(sha256)
            if existing is None:
                raise
            logger.info(
                "Registry create lost dedup race | sha256=%s existing=%s",
                sha256, existing.id,
            )
            raise DuplicateContentError(existing.id, sha256)

        logger.info("Registry create | doc=%s sha256=%s", doc.id, sha256)
        return doc

    # ------------------------------------------------------------------
    # Generic update (non-status columns)
    # ------------------------------------------------------------------

    async def update(self, document_id: UUID, **fields: Any) -> None:
        """
        Atomically update non-state columns (e.g. title, document_type).
        Raises ConflictError if the id is unknown.
        """
        protected = _PROTECTED_COLUMNS.intersection(fields)
        if protected:
            raise ValueError(f"Columns not updatable here: {sorted(protected)}")
        if not fields:
            return

        stmt = (
            update(Document)
            .where(Document.id == document_id)
            .values(**fields)
            .returning(Document.id)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            if result.scalar_one_or_none() is None:
                raise ConflictError(f"Document not found: {document_id}")

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def transition(
        self,
        document_id: UUID,
        target: DocumentStatus,
        **fields: Any,
    ) -> None:
        """Move to *target* and write *fields* in one statement."""
        async with self._session_factory() as db:
            await self._transition_in(db, document_id, target, **fields)
        logger.info("Registry transition | doc=%s status=%s", document_id, target.value)

    async def mark_failed(self, document_id: UUID, message: str) -> bool:
        """
        Record status=error + error_message.

        Never overwrites a ready document. Returns False when nothing was
        recorded (unknown id or already ready) so callers can log it.
        """
        message = (message or "Unknown error")[:MAX_ERROR_MESSAGE_CHARS]
        allowed = [s.value for s in ALLOWED_TRANSITIONS[DocumentStatus.ERROR]]
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status.in_(allowed))
            .values(status=DocumentStatus.ERROR.value, error_message=message)
            .returning(Document.id)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            recorded = result.scalar_one_or_none() is not None

        if recorded:
            logger.error("Registry mark_failed | doc=%s error=%s", document_id, message)
        else:
            logger.warning(
                "Registry mark_failed skipped (unknown or ready) | doc=%s error=%s",
                document_id, message,
            )
        return recorded

    async def reset_for_reprocessing(self, document_id: UUID) -> None:
        """
        ready | error → uploaded, clearing the previous run's error.

        The document's embeddings are dropped in the same transaction; the
        embed stage of the new run writes a fresh set.
        """
        async with self._session_factory() as db:
            await self._transition_in(db, document_id, DocumentStatus.UPLOADED)
            await db.execute(
                delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id)
            )
        logger.info("Registry reset for reprocessing | doc=%s embeddings=cleared", document_id)

    async def _transition_in(
        self,
        db: AsyncSession,
        document_id: UUID,
        target: DocumentStatus,
        **fields: Any,
    ) -> None:
        allowed = [s.value for s in ALLOWED_TRANSITIONS[target]]
        values: dict[str, Any] = {**fields, "status": target.value}
        if target is not DocumentStatus.ERROR:
            values["error_message"] = None

        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status.in_(allowed))
            .values(**values)
            .returning(Document.id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.scalar_one_or_none() is not None:
            return

        current = (
            await db.execute(select(Document.status).where(Document.id == document_id))
        ).scalar_one_or_none()
        if current is None:
            raise ConflictError(f"Document not found: {document_id}")
        raise InvalidTransitionError(document_id, current, target.value)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def link_tag(
        self,
        document_id: UUID,
        name: str,
        *,
        source: EntrySource = EntrySource.AI,
        confidence: float | None = None,
        color: str | None = None,
    ) -> Tag:
        """
        Find-or-create the tag (case-insensitive) and upsert the link.

        An AI link never downgrades an existing manual link.
        """
        async with self._session_factory() as db:
            tag = await self.find_or_create_tag(db, name, color=color)

            stmt = pg_insert(DocumentTag).values(
                document_id=document_id,
                tag_id=tag.id,
                source=source.value,
                confidence=confidence,
            )
            set_ = {"source": stmt.excluded.source, "confidence": stmt.excluded.confidence}
            if source is EntrySource.AI:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DocumentTag.document_id, DocumentTag.tag_id],
                    set_=set_,
                    where=DocumentTag.__table__.c.source == EntrySource.AI.value,
                )
            else:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DocumentTag.document_id, DocumentTag.tag_id],
                    set_=set_,
                )
            await db.execute(stmt)
        return tag

    @staticmethod
    async def find_or_create_tag(
        db: AsyncSession,
        name: str,
        *,
        color: str | None = None,
    ) -> Tag:
        """
        Case-insensitive lookup; INSERT … ON CONFLICT DO NOTHING so a
        concurrent creator does not fail us; its row is re-read.
        """
        name = name.strip()
        lookup = select(Tag).where(func.lower(Tag.name) == name.lower())

        tag = (await db.execute(lookup)).scalars().first()
        if tag is not None:
            return tag

        created = await db.execute(
            pg_insert(Tag)
            .values(name=name, color=color)
            .on_conflict_do_nothing()
            .returning(Tag.id)
        )
        if created.scalar_one_or_none() is None:
            logger.debug("Tag created concurrently | name=%s", name)

        tag = (await db.execute(lookup)).scalars().first()
        if tag is None:
            raise ConflictError(f"Tag could not be created: {name}")
        return tag

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    async def upsert_fields(
        self,
        document_id: UUID,
        rows: Sequence[dict[str, Any]],
        *,
        source: EntrySource = EntrySource.AI,
    ) -> int:
        """
        Upsert on (document_id, field_name). Re-extraction is idempotent and
        never overwrites a value a user already corrected (source=manual).
        """
        if not rows:
            return 0

        payload = [
            {
                "document_id": document_id,
                "field_name":  row["field_name"],
                "field_value": row.get("field_value"),
                "field_type":  row.get("field_type", "text"),
                "confidence":  row.get("confidence"),
                "source":      source.value,
            }
            for row in rows
        ]
        stmt = pg_insert(DocumentField).values(payload)
        set_ = {
            "field_value": stmt.excluded.field_value,
            "field_type":  stmt.excluded.field_type,
            "confidence":  stmt.excluded.confidence,
            "source":      stmt.excluded.source,
        }
        if source is EntrySource.AI:
            stmt = stmt.on_conflict_do_update(
                index_elements=[DocumentField.document_id, DocumentField.field_name],
                set_=set_,
                where=DocumentField.__table__.c.source == EntrySource.AI.value,
            )
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=[DocumentField.document_id, DocumentField.field_name],
                set_=set_,
            )

        async with self._session_factory() as db:
            await db.execute(stmt)
        return len(payload)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def replace_embeddings(
        self,
        document_id: UUID,
        chunks: Sequence[str],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        """
        Delete all embeddings of the document, insert the new ones and move
        the document to ready, in one transaction.
        """
        if len(chunks) != len(vectors):
            raise ValueError(
                f"chunk/vector count mismatch: {len(chunks)} chunks, {len(vectors)} vectors"
            )

        async with self._session_factory() as db:
            await db.execute(
                delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id)
            )
            if chunks:
                await db.execute(
                    insert(DocumentEmbedding),
                    [
                        {
                            "document_id": document_id,
                            "chunk_index": index,
                            "chunk_text":  text,
                            "embedding":   list(vector),
                        }
                        for index, (text, vector) in enumerate(zip(chunks, vectors))
                    ],
                )
            await self._transition_in(db, document_id, DocumentStatus.READY)

        logger.info(
            "Registry embeddings replaced | doc=%s chunks=%d status=ready",
            document_id, len(chunks),
        )
        return len(chunks)
