"""
Hybrid Search — PostgreSQL full-text × pgvector cosine, weighted fusion

  ┌─────────────────────────────────────────────────────────────┐
  │  SearchQuery(text, embedding?, weights, filters)            │
  │       │                                                     │
  │       ├── empty text → ValidationError (before any call)    │
  │       │                                                     │
  │       ├──────────────────────────┐                          │
  │       ▼                          ▼                          │
  │  [1] Full-text rank          [2] Vector rank                │
  │   ts_rank_cd(fts,              best chunk per document:     │
  │     websearch_to_tsquery)       max(1 − cosine_distance)    │
  │   normalised by the best        clamped to [0, 1]           │
  │   rank in the candidate set     all-zero embedding → skip   │
  │       │                          │                          │
  │       └────────────┬─────────────┘                          │
  │                    ▼                                        │
  │  [3] score = wf × fulltext + wv × vector                    │
  │      score = 0 → dropped                                    │
  │                    │                                        │
  │                    ▼                                        │
  │  [4] top match_count, with title / excerpt / type / tags    │
  └─────────────────────────────────────────────────────────────┘

Both candidate queries apply the same filters BEFORE ranking:
  - status = ready
  - document_type = :filter            (optional, exact)
  - carries any of :tags               (optional, case-insensitive)

match_type records which weighted signal contributed: hybrid | fulltext | vector.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import Select, cast, desc, func, select
from sqlalchemy.dialects.postgresql import REGCONFIG

from dms.core.config import settings
from dms.core.errors import ValidationError
from dms.db.session import SessionFactory, session_scope
from dms.llm.client import EmbeddingClient
from dms.models.documents import Document, DocumentEmbedding, DocumentStatus, DocumentTag, Tag

logger = logging.getLogger(__name__)

# Each signal fetches this many candidates per requested result before fusion
CANDIDATE_MULTIPLIER = 3

EMPTY_QUERY_MESSAGE = "Query must not be empty"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class SearchQuery:
    text:            str
    embedding:       Optional[list[float]] = None
    match_count:     int = settings.search_match_count
    fulltext_weight: float = settings.search_fulltext_weight
    vector_weight:   float = settings.search_vector_weight
    document_type:   Optional[str] = None
    tags:            Optional[list[str]] = None


@dataclass
class FusedScore:
    document_id:   UUID
    score:         float
    match_type:    str
    fulltext_rank: float
    vector_rank:   float


@dataclass
class SearchHit:
    id:            UUID
    title:         str
    excerpt:       str
    score:         float
    match_type:    str
    document_type: Optional[str]
    tags:          list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Score fusion (pure)
# ---------------------------------------------------------------------------

def fuse_scores(
    fulltext: dict[UUID, float],
    vector: dict[UUID, float],
    fulltext_weight: float,
    vector_weight: float,
) -> list[FusedScore]:
    """
    Combine raw per-document ranks into one ordered list.

    fulltext ranks are divided by the best one; vector ranks are cosine
    similarities clamped to [0, 1]. Documents with a combined score of 0
    are not returned. Ties are broken by id for a stable order.
    """
    best_fulltext = max((r for r in fulltext.values() if r > 0), default=0.0)

    fused: list[FusedScore] = []
    for document_id in set(fulltext) | set(vector):
        ft = fulltext.get(document_id, 0.0) / best_fulltext if best_fulltext else 0.0
        vec = min(max(vector.get(document_id, 0.0), 0.0), 1.0)

        ft_part = fulltext_weight * ft
        vec_part = vector_weight * vec
        score = ft_part + vec_part
        if score <= 0:
            continue

        if ft_part > 0 and vec_part > 0:
            match_type = "hybrid"
        elif ft_part > 0:
            match_type = "fulltext"
        else:
            match_type = "vector"

        fused.append(FusedScore(document_id, score, match_type, ft, vec))

    fused.sort(key=lambda f: (-f.score, str(f.document_id)))
    return fused


def is_zero_vector(embedding: Optional[Sequence[float]]) -> bool:
    return not embedding or not any(embedding)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class HybridSearchEngine:
    """
    Stateless: instantiate per request or share.

    Without an explicit query embedding the engine asks *embeddings* for
    one; with neither, or with a vector weight of 0, the vector signal is
    skipped and no embedding call is made.
    """

    def __init__(
        self,
        embeddings: EmbeddingClient | None = None,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self._embeddings = embeddings
        self._session_factory = session_factory

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        text = (query.text or "").strip()
        if not text:
            raise ValidationError(EMPTY_QUERY_MESSAGE)
        if query.match_count <= 0:
            return []

        t0 = time.perf_counter()
        use_vector = query.vector_weight > 0
        embedding = query.embedding
        if use_vector and embedding is None and self._embeddings is not None:
            embedding = await self._embeddings.embed_query(text)

        candidates = query.match_count * CANDIDATE_MULTIPLIER
        async with self._session_factory() as db:
            fulltext = await self._fulltext_ranks(db, text, query, candidates)
            if not use_vector or is_zero_vector(embedding):
                vector: dict[UUID, float] = {}
            else:
                vector = await self._vector_ranks(db, embedding, query, candidates)

            fused = fuse_scores(fulltext, vector, query.fulltext_weight, query.vector_weight)
            fused = fused[: query.match_count]
            hits = await self._load_hits(db, fused)

        logger.info(
            "Search | query_len=%d fulltext=%d vector=%d results=%d latency_ms=%.0f",
            len(text), len(fulltext), len(vector), len(hits),
            (time.perf_counter() - t0) * 1000,
        )
        return hits

    # ------------------------------------------------------------------
    # Candidate queries
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_filters(stmt: Select, query: SearchQuery) -> Select:
        stmt = stmt.where(Document.status == DocumentStatus.READY.value)
        if query.document_type:
            stmt = stmt.where(Document.document_type == query.document_type)
        tag_names = [t.strip().lower() for t in (query.tags or []) if t and t.strip()]
        if tag_names:
            stmt = stmt.where(
                Document.id.in_(
                    select(DocumentTag.document_id)
                    .join(Tag, Tag.id == DocumentTag.tag_id)
                    .where(func.lower(Tag.name).in_(tag_names))
                )
            )
        return stmt

    async def _fulltext_ranks(self, db, text: str, query: SearchQuery, limit: int) -> dict[UUID, float]:
        if query.fulltext_weight == 0:
            return {}
        tsquery = func.websearch_to_tsquery(cast(settings.fulltext_language, REGCONFIG), text)
        rank = func.ts_rank_cd(Document.fts, tsquery).label("rank")

        stmt = select(Document.id, rank).where(Document.fts.op("@@")(tsquery))
        stmt = self._apply_filters(stmt, query).order_by(desc("rank")).limit(limit)

        rows = (await db.execute(stmt)).all()
        return {row.id: float(row.rank) for row in rows}

    async def _vector_ranks(
        self, db, embedding: Sequence[float], query: SearchQuery, limit: int
    ) -> dict[UUID, float]:
        similarity = func.max(
            1 - DocumentEmbedding.embedding.cosine_distance(list(embedding))
        ).label("similarity")

        stmt = (
            select(DocumentEmbedding.document_id, similarity)
            .join(Document, Document.id == DocumentEmbedding.document_id)
            .group_by(DocumentEmbedding.document_id)
        )
        stmt = self._apply_filters(stmt, query).order_by(desc("similarity")).limit(limit)

        rows = (await db.execute(stmt)).all()
        return {row.document_id: float(row.similarity or 0.0) for row in rows}

    async def _load_hits(self, db, fused: list[FusedScore]) -> list[SearchHit]:
        if not fused:
            return []
        ids = [f.document_id for f in fused]

        doc_rows = (
            await db.execute(
                select(
                    Document.id,
                    Document.title,
                    Document.original_filename,
                    Document.document_type,
                    func.left(func.coalesce(Document.ocr_text, ""), settings.search_excerpt_chars).label("excerpt"),
                ).where(Document.id.in_(ids))
            )
        ).all()
        docs = {row.id: row for row in doc_rows}

        tag_rows = (
            await db.execute(
                select(DocumentTag.document_id, Tag.name)
                .join(Tag, Tag.id == DocumentTag.tag_id)
                .where(DocumentTag.document_id.in_(ids))
                .order_by(Tag.name)
            )
        ).all()
        tags: dict[UUID, list[str]] = {}
        for row in tag_rows:
            tags.setdefault(row.document_id, []).append(row.name)

        hits: list[SearchHit] = []
        for f in fused:
            row = docs.get(f.document_id)
            if row is None:   # deleted between ranking and loading
                continue
            hits.append(SearchHit(
                id=f.document_id,
                title=row.title or row.original_filename,
                excerpt=row.excerpt or "",
                score=round(f.score, 6),
                match_type=f.match_type,
                document_type=row.document_type,
                tags=tags.get(f.document_id, []),
            ))
        return hits
