"""
Document Processing Package
════════════════════════════

The three pipeline stages that follow an upload:

  OCR → Classify & Extract → Chunk & Embed

Modules
───────
  stage.py        BaseStage: entry checks, failure recording, next-stage trigger
  ocr.py          Local PyMuPDF text layer first, remote OCR for scans and images
  classify.py     Document type, title and tags, then schema-driven field extraction
  chunking.py     Fixed-size character windows with overlap
  embeddings.py   Chunk embedding and atomic replacement of a document's chunks

Design principles
─────────────────
  • Each stage takes its collaborators (registry, storage, capability clients,
    orchestrator) in its constructor; nothing is looked up globally.
  • A stage either advances the document's status or records status=error.
  • Stages run in the API process (http dispatch) or in a Celery worker.
"""

from dms.processing.chunking import TextChunk, chunk_text
from dms.processing.classify import ClassifyExtractStage, ExtractStageResult
from dms.processing.embeddings import EmbedStage, EmbedStageResult
from dms.processing.ocr import OcrPolicy, OcrStage, OcrStageResult

__all__ = [
    "TextChunk",
    "chunk_text",
    "ClassifyExtractStage",
    "ExtractStageResult",
    "EmbedStage",
    "EmbedStageResult",
    "OcrPolicy",
    "OcrStage",
    "OcrStageResult",
]
