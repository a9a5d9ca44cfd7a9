"""
Composed FastAPI Dependencies

Single wiring point for everything a route needs. Route handlers import the
Annotated aliases from here; tests replace the provider functions through
app.dependency_overrides.

The orchestrator lives on app.state (created in the lifespan) so its
background trigger tasks outlive the request that scheduled them and are
drained on shutdown.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request

from dms.llm.client import CompletionClient, EmbeddingClient
from dms.processing.classify import ClassifyExtractStage
from dms.processing.embeddings import EmbedStage
from dms.processing.ocr import OcrStage
from dms.rag.chat import ChatRetriever
from dms.rag.hybrid_search import HybridSearchEngine
from dms.services.catalog import CatalogService
from dms.services.ingestion import IngestionService
from dms.services.registry import DocumentRegistry
from dms.storage.s3 import BlobStore, S3BlobStore
from dms.workers.orchestrator import PipelineOrchestrator


# ---------------------------------------------------------------------------
# Leaf providers
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_registry() -> DocumentRegistry:
    return DocumentRegistry()


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    return S3BlobStore()


@lru_cache(maxsize=1)
def get_completion_client() -> CompletionClient:
    return CompletionClient()


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    return EmbeddingClient()


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


Registry     = Annotated[DocumentRegistry,     Depends(get_registry)]
Blobs        = Annotated[BlobStore,            Depends(get_blob_store)]
Completion   = Annotated[CompletionClient,     Depends(get_completion_client)]
Embeddings   = Annotated[EmbeddingClient,      Depends(get_embedding_client)]
Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]


# ---------------------------------------------------------------------------
# Services and stages
# ---------------------------------------------------------------------------

def get_ingestion_service(
    registry: Registry, storage: Blobs, orchestrator: Orchestrator
) -> IngestionService:
    return IngestionService(registry, storage, orchestrator)


def get_catalog_service(
    registry: Registry, storage: Blobs, orchestrator: Orchestrator
) -> CatalogService:
    return CatalogService(registry, storage, orchestrator)


def get_ocr_stage(registry: Registry, storage: Blobs, orchestrator: Orchestrator) -> OcrStage:
    return OcrStage(registry, storage, orchestrator)


def get_extract_stage(
    registry: Registry, completion: Completion, orchestrator: Orchestrator
) -> ClassifyExtractStage:
    return ClassifyExtractStage(registry, completion, orchestrator)


def get_embed_stage(registry: Registry, embeddings: Embeddings) -> EmbedStage:
    return EmbedStage(registry, embeddings)


def get_search_engine(embeddings: Embeddings) -> HybridSearchEngine:
    return HybridSearchEngine(embeddings)


def get_chat_retriever(
    search: Annotated[HybridSearchEngine, Depends(get_search_engine)],
    embeddings: Embeddings,
    completion: Completion,
) -> ChatRetriever:
    return ChatRetriever(search, embeddings, completion)


Ingestion     = Annotated[IngestionService,     Depends(get_ingestion_service)]
Catalog       = Annotated[CatalogService,       Depends(get_catalog_service)]
OcrRunner     = Annotated[OcrStage,             Depends(get_ocr_stage)]
ExtractRunner = Annotated[ClassifyExtractStage, Depends(get_extract_stage)]
EmbedRunner   = Annotated[EmbedStage,           Depends(get_embed_stage)]
Search        = Annotated[HybridSearchEngine,   Depends(get_search_engine)]
Chat          = Annotated[ChatRetriever,        Depends(get_chat_retriever)]
