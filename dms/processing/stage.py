"""
Common plumbing for pipeline stages.

A stage has three phases:

  enter    compare-and-set transition into its working status (or just a
           precondition check). Failures here leave the row untouched:
           the document is unknown, or another run owns it.
  work     everything else. Any exception is logged, written to the
           registry as status=error + error_message, and re-raised as
           StageFailedError so the caller can answer 500 {error}.
  trigger  only after the final persist succeeded; fire-and-forget via
           the orchestrator (its failures are captured there).
"""

from __future__ import annotations

import logging
from uuid import UUID

from dms.core.errors import StageFailedError
from dms.services.registry import DocumentRegistry
from dms.workers.orchestrator import PipelineOrchestrator, PipelineStage

logger = logging.getLogger(__name__)


class BaseStage:
    name: str = "stage"

    def __init__(
        self,
        registry: DocumentRegistry,
        orchestrator: PipelineOrchestrator | None,
    ) -> None:
        self._registry = registry
        self._orchestrator = orchestrator

    async def _record_failure(self, document_id: UUID, exc: Exception) -> StageFailedError:
        message = str(exc) or type(exc).__name__
        logger.error(
            "%s failed | doc=%s error=%s: %s",
            self.name, document_id, type(exc).__name__, message,
            exc_info=exc,
        )
        await self._registry.mark_failed(document_id, message)
        return StageFailedError(document_id, message)

    def _trigger_next(self, stage: PipelineStage, document_id: UUID) -> None:
        if self._orchestrator is None:
            logger.info("No orchestrator; pipeline stops | next=%s doc=%s", stage.value, document_id)
            return
        self._orchestrator.trigger(stage, document_id)

    @staticmethod
    def _entry_failure(document_id: UUID, exc: Exception) -> StageFailedError:
        logger.warning("Stage entry rejected | doc=%s reason=%s", document_id, exc)
        return StageFailedError(document_id, str(exc), recorded=False)
