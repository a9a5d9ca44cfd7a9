"""
Celery Tasks — one task per pipeline stage

  dms.workers.tasks.ocr_stage      → OcrStage.run            → triggers extract
  dms.workers.tasks.extract_stage  → ClassifyExtractStage.run → triggers embed
  dms.workers.tasks.embed_stage    → EmbedStage.run           (terminal)

Each task builds its own registry / orchestrator on a fresh event loop,
runs the stage, then drains the orchestrator so the next stage's dispatch
(and any failure write-back) completes before the loop closes.

A stage failure is NOT a Celery retry: the stage has already written
status=error + error_message, and transient capability errors were retried
inside the stage. The task returns {"status": "error", "error": …} instead.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task

from dms.core.errors import StageFailedError
from dms.workers.celery_app import celery_app
from dms.workers.orchestrator import PipelineStage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Stage tasks
# ---------------------------------------------------------------------------

_TASK_OPTIONS: dict[str, Any] = {
    "bind": True,
    "acks_late": True,
    "reject_on_worker_lost": True,
}


@celery_app.task(name=PipelineStage.OCR.task_name, **_TASK_OPTIONS)
def ocr_stage(self: Task, *, document_id: str) -> dict[str, Any]:
    return run_async(run_stage(PipelineStage.OCR, uuid.UUID(document_id)))


@celery_app.task(name=PipelineStage.EXTRACT.task_name, **_TASK_OPTIONS)
def extract_stage(self: Task, *, document_id: str) -> dict[str, Any]:
    return run_async(run_stage(PipelineStage.EXTRACT, uuid.UUID(document_id)))


@celery_app.task(name=PipelineStage.EMBED.task_name, **_TASK_OPTIONS)
def embed_stage(self: Task, *, document_id: str) -> dict[str, Any]:
    return run_async(run_stage(PipelineStage.EMBED, uuid.UUID(document_id)))


async def run_stage(stage: PipelineStage, document_id: uuid.UUID) -> dict[str, Any]:
    """Async body shared by the three tasks."""
    from dms.db.session import engine
    from dms.llm.client import CompletionClient, EmbeddingClient
    from dms.processing.classify import ClassifyExtractStage
    from dms.processing.embeddings import EmbedStage
    from dms.processing.ocr import OcrStage
    from dms.services.registry import DocumentRegistry
    from dms.storage.s3 import S3BlobStore
    from dms.workers.orchestrator import PipelineOrchestrator, build_dispatcher

    registry = DocumentRegistry()
    orchestrator = PipelineOrchestrator(build_dispatcher(), registry)

    try:
        if stage is PipelineStage.OCR:
            ocr = await OcrStage(registry, S3BlobStore(), orchestrator).run(document_id)
            return {"status": "ocr_done", "pageCount": ocr.page_count, "method": ocr.method}

        if stage is PipelineStage.EXTRACT:
            extracted = await ClassifyExtractStage(registry, CompletionClient(), orchestrator).run(document_id)
            return {
                "status":       "extracted",
                "documentType": extracted.document_type,
                "title":        extracted.title,
                "tags":         extracted.tags,
                "fields":       extracted.fields,
                "warnings":     extracted.warnings,
            }

        embedded = await EmbedStage(registry, EmbeddingClient(), orchestrator).run(document_id)
        return {"status": "ready", "chunks": embedded.chunks}

    except StageFailedError as exc:
        logger.warning("Stage task failed | stage=%s doc=%s error=%s", stage.value, document_id, exc.message)
        return {"status": "error", "documentId": str(document_id), "error": exc.message}

    finally:
        await orchestrator.drain()
        # asyncpg connections are bound to this loop; the next task runs on a new one
        await engine.dispose()
