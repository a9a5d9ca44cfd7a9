"""
Embed Stage  —  Full-Replace Chunk Embeddings
═════════════════════════════════════════════

  extracted|error ──► chunk ocr_text (1000 / 200)
                  ──► ONE batched embedding request (order-preserving)
                  ──► validate: one vector per chunk, all of EMBEDDING_DIMENSIONS
                  ──► registry.replace_embeddings()   ← delete + insert + ready,
                                                         one transaction
Any failure before the commit leaves the previous embeddings untouched and
records status=error. `ready` is never reached any other way.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from uuid import UUID

from dms.core.config import settings
from dms.core.errors import DocumentNotFoundError, FatalCapabilityError
from dms.llm.client import EmbeddingClient
from dms.models.documents import DocumentStatus
from dms.processing.chunking import chunk_text
from dms.processing.stage import BaseStage
from dms.services.registry import DocumentRegistry, can_transition
from dms.workers.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class EmbedStageResult:
    document_id: UUID
    chunks:      int
    elapsed_ms:  float


def validate_vectors(vectors: list[list[float]], expected_count: int, dimensions: int) -> None:
    if len(vectors) != expected_count:
        raise FatalCapabilityError(
            f"Embedding returned {len(vectors)} vectors for {expected_count} chunks"
        )
    for index, vector in enumerate(vectors):
        if len(vector) != dimensions:
            raise FatalCapabilityError(
                f"Embedding {index} has {len(vector)} dimensions, expected {dimensions}"
            )


class EmbedStage(BaseStage):
    """Terminal stage; it triggers nothing."""

    name = "embed"

    def __init__(
        self,
        registry: DocumentRegistry,
        embeddings: EmbeddingClient,
        orchestrator: PipelineOrchestrator | None = None,
    ) -> None:
        super().__init__(registry, orchestrator)
        self._embeddings = embeddings

    async def run(self, document_id: UUID) -> EmbedStageResult:
        try:
            doc = await self._registry.get(document_id)
        except DocumentNotFoundError as exc:
            raise self._entry_failure(document_id, exc) from exc
        if not can_transition(doc.status, DocumentStatus.READY):
            raise self._entry_failure(
                document_id,
                FatalCapabilityError(f"Document is '{doc.status}', expected extracted"),
            )

        t0 = time.monotonic()
        try:
            if not doc.ocr_text:
                raise FatalCapabilityError("No OCR text available")

            chunks = chunk_text(doc.ocr_text)
            texts = [c.text for c in chunks]

            vectors = await self._embeddings.embed_documents(texts)
            validate_vectors(vectors, len(texts), settings.embedding_dimensions)

            count = await self._registry.replace_embeddings(document_id, texts, vectors)
        except Exception as exc:
            raise await self._record_failure(document_id, exc) from exc

        elapsed = (time.monotonic() - t0) * 1000
        logger.info("Embed done | doc=%s chunks=%d elapsed_ms=%.0f", document_id, count, elapsed)
        return EmbedStageResult(document_id=document_id, chunks=count, elapsed_ms=elapsed)
