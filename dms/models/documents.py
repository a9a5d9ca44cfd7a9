"""
SQLAlchemy ORM Models — Documents, Tags, Fields, Schemas, Embeddings

Using SQLAlchemy mapped classes (2.x style) for full async support.

Table overview:

    documents ──┬── document_tags ──── tags
                ├── document_fields
                ├── document_embeddings   (pgvector)
                └── document_schemas      (via schema_id, SET NULL)

Every child table references documents.id with ON DELETE CASCADE, so
deleting a document removes its tag links, fields and embeddings in the
same statement. The ORM relationships mirror this with
cascade="all, delete-orphan" + passive_deletes=True (the database does
the work; the ORM does not load children just to delete them).

Full-text search: documents.fts is a STORED generated tsvector over
title (weight A) and ocr_text (weight B) using the configured text search
language; application code never writes it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Computed,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from dms.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    UPLOADED   = "uploaded"
    PROCESSING = "processing"
    OCR_DONE   = "ocr_done"
    EXTRACTED  = "extracted"
    READY      = "ready"
    ERROR      = "error"


class EntrySource(str, Enum):
    """Who wrote a tag link or field value."""
    AI     = "ai"
    MANUAL = "manual"


_FTS_LANGUAGE = settings.fulltext_language

_FTS_EXPRESSION = (
    f"setweight(to_tsvector('{_FTS_LANGUAGE}', coalesce(title, '')), 'A') || "
    f"setweight(to_tsvector('{_FTS_LANGUAGE}', coalesce(ocr_text, '')), 'B')"
)


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file, advanced through the pipeline in place.

    State machine (status column):
        uploaded   — blob stored, row created, OCR not started
        processing — OCR stage running
        ocr_done   — ocr_text + page_count persisted
        extracted  — title / document_type / schema_id persisted
        ready      — embeddings persisted; searchable
        error      — a stage failed (see error_message)

    sha256 is UNIQUE: at most one document per distinct content.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploaded', 'processing', 'ocr_done', 'extracted', 'ready', 'error')",
            name="documents_status_check",
        ),
        UniqueConstraint("sha256", name="uq_documents_sha256"),
        Index("idx_documents_status", "status"),
        Index("idx_documents_document_type", "document_type"),
        Index("idx_documents_fts", "fts", postgresql_using="gin"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Provenance: immutable after upload
    sha256: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="SHA-256 hex digest of the raw file bytes",
    )
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Blob key: documents/<sha256>/<filename>",
    )
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Pipeline state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DocumentStatus.UPLOADED.value,
        server_default=DocumentStatus.UPLOADED.value,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )

    # OCR stage output
    ocr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Classify / extract stage output
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schema_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("document_schemas.id", ondelete="SET NULL"),
        nullable=True,
    )

    fts = mapped_column(TSVECTOR, Computed(_FTS_EXPRESSION, persisted=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    tag_links: Mapped[list["DocumentTag"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    fields: Mapped[list["DocumentField"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentField.field_name",
    )
    embeddings: Mapped[list["DocumentEmbedding"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentEmbedding.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"file={self.original_filename!r}>"
        )


# ---------------------------------------------------------------------------
# Tag model: tags
# ---------------------------------------------------------------------------

class Tag(Base):
    """Free-form label. Names are unique case-insensitively."""

    __tablename__ = "tags"
    __table_args__ = (
        Index("uq_tags_name_ci", text("lower(name)"), unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    color: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document_links: Mapped[list["DocumentTag"]] = relationship(
        back_populates="tag",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Tag id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# DocumentTag model: document_tags (composite PK)
# ---------------------------------------------------------------------------

class DocumentTag(Base):
    __tablename__ = "document_tags"
    __table_args__ = (
        CheckConstraint("source IN ('ai', 'manual')", name="document_tags_source_check"),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="document_tags_confidence_check",
        ),
        Index("idx_document_tags_tag_id", "tag_id"),
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    )
    source: Mapped[str] = mapped_column(
        Text, nullable=False, default=EntrySource.AI.value, server_default="ai"
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    document: Mapped[Document] = relationship(back_populates="tag_links")
    tag: Mapped[Tag] = relationship(back_populates="document_links", lazy="joined")


# ---------------------------------------------------------------------------
# DocumentField model: document_fields
# ---------------------------------------------------------------------------

class DocumentField(Base):
    """One extracted key/value pair. Values are always stored as text."""

    __tablename__ = "document_fields"
    __table_args__ = (
        UniqueConstraint("document_id", "field_name", name="uq_document_fields_name"),
        CheckConstraint("source IN ('ai', 'manual')", name="document_fields_source_check"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    field_name: Mapped[str] = mapped_column(Text, nullable=False)
    field_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    field_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="text", server_default="text"
    )
    source: Mapped[str] = mapped_column(
        Text, nullable=False, default=EntrySource.AI.value, server_default="ai"
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="fields")


# ---------------------------------------------------------------------------
# DocumentSchema model: document_schemas
# ---------------------------------------------------------------------------

class DocumentSchema(Base):
    """
    Known document type with its field schema, used to guide extraction.

    schema = {"properties": {"<field>": {"type": "...", "description": "..."}}}
    """

    __tablename__ = "document_schemas"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_type: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schema: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    @property
    def properties(self) -> dict[str, dict]:
        props = (self.schema or {}).get("properties") or {}
        return props if isinstance(props, dict) else {}

    def __repr__(self) -> str:
        return f"<DocumentSchema type={self.document_type!r}>"


# ---------------------------------------------------------------------------
# DocumentEmbedding model: document_embeddings (pgvector)
# ---------------------------------------------------------------------------

class DocumentEmbedding(Base):
    """
    One chunk of ocr_text with its embedding vector.
    Replaced wholesale whenever a document is re-embedded.
    """

    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_embeddings_position"),
        Index(
            "idx_document_embeddings_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(Vector(settings.embedding_dimensions), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="embeddings")
