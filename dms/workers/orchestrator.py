"""
Pipeline Orchestrator — stage-to-stage triggering with failure capture

    upload ──► process-ocr ──► extract-data ──► generate-embed
         trigger         trigger           trigger

Each stage, after its own successful persist, asks the orchestrator to
start the next one. trigger() returns immediately (the triggering stage
does not wait for the next stage); the dispatch runs as a background
asyncio task whose ONLY job besides dispatching is to catch a failed
dispatch and write it back to the same document:

    status = error
    error_message = "Pipeline trigger failed: <cause>"

So a stalled pipeline is always diagnosable from the registry even though
the triggering stage already returned success.

Dispatch transports (settings.pipeline_dispatch):
  celery — publish the stage task to the broker (default; durable delivery)
  http   — POST {"documentId": …} to the stage endpoint of
           settings.pipeline_base_url

Long-lived processes (the API) keep the background tasks alive on their
own loop; short-lived ones (a Celery task's run_async loop) must
`await orchestrator.drain()` before returning.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from uuid import UUID

import httpx

from dms.core.config import settings
from dms.core.errors import PipelineContinuationError
from dms.services.registry import DocumentRegistry

logger = logging.getLogger(__name__)

TRIGGER_FAILED_PREFIX = "Pipeline trigger failed"


class PipelineStage(str, Enum):
    """Stage names double as the endpoint path under /api/v1/pipeline/."""
    OCR     = "process-ocr"
    EXTRACT = "extract-data"
    EMBED   = "generate-embed"

    @property
    def task_name(self) -> str:
        return f"dms.workers.tasks.{self.name.lower()}_stage"


# ---------------------------------------------------------------------------
# Dispatch transports
# ---------------------------------------------------------------------------

class StageDispatcher(ABC):
    """Starts a stage for a document somewhere else. Raises on failure."""

    @abstractmethod
    async def dispatch(self, stage: PipelineStage, document_id: UUID) -> None:
        ...


class CeleryStageDispatcher(StageDispatcher):
    """
    Publishes the stage task to the Celery broker.
    Runs in a thread executor to avoid blocking the async event loop.
    """

    async def dispatch(self, stage: PipelineStage, document_id: UUID) -> None:
        from dms.workers.celery_app import celery_app

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: celery_app.send_task(
                stage.task_name,
                kwargs={"document_id": str(document_id)},
            ),
        )
        logger.info("Stage task published | stage=%s doc=%s", stage.value, document_id)


class HttpStageDispatcher(StageDispatcher):
    """
    POSTs to the stage endpoint and waits for its answer.

    A 500 carrying error_code=STAGE_FAILED means the next stage ran and
    recorded its own failure on the document; that is not a continuation
    failure and must not overwrite the stage's more precise message.
    STAGE_REJECTED means the stage refused to start because the document is
    gone or another run owns it; recording an error would clobber that run.
    """

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.pipeline_base_url).rstrip("/")
        self._transport = transport
        self._timeout = httpx.Timeout(
            settings.pipeline_stage_timeout_seconds,
            connect=settings.pipeline_trigger_timeout_seconds,
        )

    async def dispatch(self, stage: PipelineStage, document_id: UUID) -> None:
        url = f"{self._base_url}/api/v1/pipeline/{stage.value}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(url, json={"documentId": str(document_id)})

        if response.is_success:
            logger.info(
                "Stage call ok | stage=%s doc=%s status=%d",
                stage.value, document_id, response.status_code,
            )
            return

        if _is_handled_stage_failure(response):
            logger.warning(
                "Stage reported its own failure | stage=%s doc=%s",
                stage.value, document_id,
            )
            return

        raise PipelineContinuationError(
            f"{stage.value} returned HTTP {response.status_code}: {response.text[:200]}"
        )


_HANDLED_STAGE_CODES = frozenset({"STAGE_FAILED", "STAGE_REJECTED"})


def _is_handled_stage_failure(response: httpx.Response) -> bool:
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("error_code") in _HANDLED_STAGE_CODES


def build_dispatcher() -> StageDispatcher:
    if settings.pipeline_dispatch == "http":
        return HttpStageDispatcher()
    return CeleryStageDispatcher()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    """Fire-and-forget stage triggering with its own failure channel."""

    def __init__(
        self,
        dispatcher: StageDispatcher,
        registry: DocumentRegistry,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._pending: set[asyncio.Task] = set()

    def trigger(self, stage: PipelineStage, document_id: UUID) -> asyncio.Task:
        """Schedule the dispatch and return immediately."""
        task = asyncio.create_task(
            self._dispatch_and_capture(stage, document_id),
            name=f"trigger:{stage.value}:{document_id}",
        )
        # Keep a strong reference until done; the loop only holds weak ones
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding dispatch (and its failure capture)."""
        while self._pending:
            batch = list(self._pending)
            await asyncio.gather(*batch, return_exceptions=True)
            self._pending.difference_update(batch)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _dispatch_and_capture(self, stage: PipelineStage, document_id: UUID) -> bool:
        try:
            await self._dispatcher.dispatch(stage, document_id)
            return True
        except Exception as exc:
            message = f"{TRIGGER_FAILED_PREFIX}: {str(exc) or type(exc).__name__}"
            logger.error(
                "Trigger failed | stage=%s doc=%s error=%s",
                stage.value, document_id, exc,
            )
            try:
                await self._registry.mark_failed(document_id, message)
            except Exception:
                logger.exception(
                    "Could not record trigger failure | stage=%s doc=%s",
                    stage.value, document_id,
                )
            return False
