"""
Unit Tests — Celery stage tasks
════════════════════════════════
run_stage() is exercised directly with the stage classes patched; the
Celery wrappers only add run_async + UUID parsing.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dms.core.errors import StageFailedError
from dms.processing.embeddings import EmbedStageResult
from dms.processing.ocr import OcrStageResult
from dms.workers.orchestrator import PipelineStage
from dms.workers.tasks import run_stage


@pytest.fixture
def engine():
    fake = MagicMock()
    fake.dispose = AsyncMock()
    with patch("dms.db.session.engine", fake):
        yield fake


@pytest.mark.unit
class TestRunStage:

    async def test_ocr_result_shape(self, engine, test_document_id):
        stage = MagicMock()
        stage.run = AsyncMock(return_value=OcrStageResult(test_document_id, 3, "local", 900))

        with patch("dms.processing.ocr.OcrStage", return_value=stage), \
             patch("dms.storage.s3.S3BlobStore"):
            result = await run_stage(PipelineStage.OCR, test_document_id)

        assert result == {"status": "ocr_done", "pageCount": 3, "method": "local"}
        engine.dispose.assert_awaited_once()

    async def test_embed_result_shape(self, engine, test_document_id):
        stage = MagicMock()
        stage.run = AsyncMock(return_value=EmbedStageResult(test_document_id, 5, 12.0))

        with patch("dms.processing.embeddings.EmbedStage", return_value=stage), \
             patch("dms.llm.client.EmbeddingClient"):
            result = await run_stage(PipelineStage.EMBED, test_document_id)

        assert result == {"status": "ready", "chunks": 5}

    async def test_stage_failure_is_returned_not_raised(self, engine, test_document_id):
        stage = MagicMock()
        stage.run = AsyncMock(side_effect=StageFailedError(test_document_id, "No OCR text available"))

        with patch("dms.processing.classify.ClassifyExtractStage", return_value=stage), \
             patch("dms.llm.client.CompletionClient"):
            result = await run_stage(PipelineStage.EXTRACT, test_document_id)

        assert result == {
            "status": "error",
            "documentId": str(test_document_id),
            "error": "No OCR text available",
        }
        engine.dispose.assert_awaited_once()
