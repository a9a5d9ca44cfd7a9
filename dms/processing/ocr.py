"""
OCR Stage  —  Local Extraction First, Remote OCR Fallback
══════════════════════════════════════════════════════════

Design: Strategy + decision policy
──────────────────────────────────
  Strategy 1: PyMuPDF (fitz)
    - Native PDF text layer extraction (microseconds per page)
    - Zero API calls: runs entirely in-process, deterministic
    - Returns near-empty pages for scanned PDFs

  Strategy 2: Remote OCR (Mistral OCR compatible endpoint)
    - Layout-aware OCR returning per-page markdown
    - Tables come back separately and are spliced into the page markdown
      at their placeholder token:  [tbl-0.md](tbl-0.md)  →  | a | b | …
    - Costs an API call; retried on 429 / 5xx

Selection logic (OcrPolicy.extract()):
  image/*          → always remote OCR
  application/pdf  → PyMuPDF; accept when
                       avg chars per page ≥ MIN_CHARS_PER_PAGE_THRESHOLD (50)
                     otherwise remote OCR on the ORIGINAL pdf bytes
  anything else    → FatalCapabilityError

Stage flow (OcrStage.run()):
  uploaded|error ──► processing ──► fetch blob ──► policy ──► ocr_done
                                        │             │
                                        └──── any failure ──► error
  then trigger extract-data (fire-and-forget)
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

import httpx

from dms.core.config import settings
from dms.core.errors import (
    ConflictError,
    FatalCapabilityError,
    InvalidTransitionError,
    TransientCapabilityError,
)
from dms.core.retry import with_retry
from dms.models.documents import DocumentStatus
from dms.processing.stage import BaseStage
from dms.services.registry import DocumentRegistry
from dms.storage.s3 import BlobStore
from dms.workers.orchestrator import PipelineOrchestrator, PipelineStage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# If average extracted chars per page is below this threshold,
# the document is classified as scanned / image-based.
MIN_CHARS_PER_PAGE_THRESHOLD = settings.ocr_min_chars_per_page

PAGE_SEPARATOR = "\n\n"

PDF_MIME_TYPE = "application/pdf"


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number       : 1-based page index
    text              : extracted text / markdown (may be empty)
    extraction_method : "pymupdf" | "remote_ocr"
    """
    page_number:       int
    text:              str
    extraction_method: str = "unknown"


@dataclass
class ExtractionStrategyResult:
    """
    Full result from a single strategy run.

    pages         : list of PageText (one per page, in order)
    total_chars   : sum of len(p.text) for all pages
    strategy_name : which strategy produced this result
    elapsed_ms    : wall-clock time for the strategy (ms)
    used_ocr      : True if the remote OCR capability was invoked
    """
    pages:         list[PageText]
    total_chars:   int
    strategy_name: str
    elapsed_ms:    float
    used_ocr:      bool = False

    @property
    def full_text(self) -> str:
        """Page texts joined with a blank line."""
        return PAGE_SEPARATOR.join(p.text for p in self.pages)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def avg_chars_per_page(self) -> float:
        if not self.pages:
            return 0.0
        return self.total_chars / len(self.pages)

    def is_likely_scanned(self, threshold: float = MIN_CHARS_PER_PAGE_THRESHOLD) -> bool:
        """Return True if the document appears to be image-based."""
        return self.avg_chars_per_page < threshold


def _result(pages: list[PageText], strategy: str, used_ocr: bool) -> ExtractionStrategyResult:
    return ExtractionStrategyResult(
        pages=pages,
        total_chars=sum(len(p.text) for p in pages),
        strategy_name=strategy,
        elapsed_ms=0.0,
        used_ocr=used_ocr,
    )


# ---------------------------------------------------------------------------
# Table splicing
# ---------------------------------------------------------------------------

def splice_tables(markdown: str, tables: list[dict] | None) -> str:
    """
    Replace each table placeholder ``[<id>](<id>)`` with the table content.
    Only the first occurrence of each placeholder is replaced.
    """
    for table in tables or []:
        table_id = table.get("id")
        if not table_id:
            continue
        markdown = markdown.replace(f"[{table_id}]({table_id})", table.get("content") or "", 1)
    return markdown


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for text extraction strategies.
    Implementations accept raw bytes, never a file path.
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        ...


# ---------------------------------------------------------------------------
# Strategy 1: PyMuPDF (fitz)
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(BaseTextExtractor):
    """
    Fastest strategy: uses PyMuPDF to read the native PDF text layer.

    Limitations:
      - Cannot OCR image-only pages (returns empty string for those)
      - Encrypted PDFs return empty

    Never raises: a broken PDF yields an empty result so the policy falls
    through to remote OCR.
    """

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    async def extract(self, data: bytes, mime_type: str = PDF_MIME_TYPE) -> ExtractionStrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            result = await loop.run_in_executor(None, self._extract_sync, data)
        except Exception as exc:
            logger.warning("PyMuPDF extraction failed: %s", exc)
            result = _result([], self.strategy_name, used_ocr=False)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "PyMuPDF | pages=%d total_chars=%d avg_chars_per_page=%.0f elapsed_ms=%.0f",
            len(result.pages), result.total_chars,
            result.avg_chars_per_page, result.elapsed_ms,
        )
        return result

    def _extract_sync(self, data: bytes) -> ExtractionStrategyResult:
        """Blocking extraction, runs in thread executor."""
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(
                    page_number=page_num,
                    text=raw.strip(),
                    extraction_method=self.strategy_name,
                ))
        return _result(pages, self.strategy_name, used_ocr=False)


# ---------------------------------------------------------------------------
# Strategy 2: Remote OCR
# ---------------------------------------------------------------------------

class RemoteOcrExtractor(BaseTextExtractor):
    """
    Remote OCR over HTTP (Mistral OCR wire format).

    Request:
        {"model": …, "table_format": "markdown",
         "document": {"type": "document_url", "document_url": "data:application/pdf;base64,…"}}
      or, for images,
         "document": {"type": "image_url", "image_url": "data:<mime>;base64,…"}

    Response:
        {"pages": [{"markdown": "…", "tables": [{"id": "…", "content": "…"}]}], "model": "…"}

    429 / 5xx → TransientCapabilityError (retried by with_retry)
    other non-2xx, undecodable body → FatalCapabilityError
    """

    def __init__(
        self,
        api_key: str | None = None,
        url: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.ai_api_key
        self._url = url or settings.ocr_url
        self._model = model or settings.ocr_model
        self._transport = transport

    @property
    def strategy_name(self) -> str:
        return "remote_ocr"

    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        t0 = time.monotonic()
        payload = self._build_payload(data, mime_type)

        body = await with_retry(lambda: self._post(payload), label="ocr")
        pages = self._parse_pages(body)

        result = _result(pages, self.strategy_name, used_ocr=True)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Remote OCR | model=%s pages=%d total_chars=%d elapsed_ms=%.0f",
            body.get("model", self._model), len(pages), result.total_chars, result.elapsed_ms,
        )
        return result

    def _build_payload(self, data: bytes, mime_type: str) -> dict:
        encoded = base64.b64encode(data).decode("ascii")
        if mime_type == PDF_MIME_TYPE:
            document = {
                "type": "document_url",
                "document_url": f"data:{PDF_MIME_TYPE};base64,{encoded}",
            }
        else:
            document = {
                "type": "image_url",
                "image_url": f"data:{mime_type};base64,{encoded}",
            }
        return {"model": self._model, "document": document, "table_format": "markdown"}

    async def _post(self, payload: dict) -> dict:
        async with httpx.AsyncClient(
            timeout=settings.capability_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(
                self._url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCapabilityError(
                f"OCR request failed ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise FatalCapabilityError(
                f"OCR request failed ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise FatalCapabilityError(f"OCR response is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise FatalCapabilityError("OCR response must be a JSON object")
        return body

    def _parse_pages(self, body: dict) -> list[PageText]:
        raw_pages = body.get("pages") or []
        if not isinstance(raw_pages, list):
            raise FatalCapabilityError("OCR response field 'pages' must be a list")

        pages: list[PageText] = []
        for index, raw in enumerate(raw_pages, start=1):
            raw = raw if isinstance(raw, dict) else {}
            markdown = splice_tables(raw.get("markdown") or "", raw.get("tables"))
            pages.append(PageText(
                page_number=index,
                text=markdown,
                extraction_method=self.strategy_name,
            ))
        return pages


# ---------------------------------------------------------------------------
# Decision policy
# ---------------------------------------------------------------------------

class OcrPolicy:
    """
    Chooses the strategy for a document by mime type and, for PDFs, by the
    density of the native text layer.
    """

    def __init__(
        self,
        local: BaseTextExtractor | None = None,
        remote: BaseTextExtractor | None = None,
        min_chars_per_page: float = MIN_CHARS_PER_PAGE_THRESHOLD,
    ) -> None:
        self._local = local or PyMuPDFExtractor()
        self._remote = remote or RemoteOcrExtractor()
        self._threshold = min_chars_per_page

    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        if mime_type.startswith("image/"):
            logger.info("OCR policy | mime=%s path=remote reason=image", mime_type)
            return await self._remote.extract(data, mime_type)

        if mime_type != PDF_MIME_TYPE:
            raise FatalCapabilityError(f"Unsupported mime type for OCR: {mime_type}")

        local = await self._local.extract(data, mime_type)
        if local.pages and not local.is_likely_scanned(self._threshold):
            logger.info(
                "OCR policy | path=local pages=%d avg_chars_per_page=%.0f",
                local.page_count, local.avg_chars_per_page,
            )
            return local

        logger.info(
            "OCR policy | path=remote reason=scanned pages=%d avg_chars_per_page=%.0f threshold=%s",
            local.page_count, local.avg_chars_per_page, self._threshold,
        )
        return await self._remote.extract(data, mime_type)


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------

@dataclass
class OcrStageResult:
    document_id: UUID
    page_count:  int
    method:      str      # "local" | "remote"
    total_chars: int


class OcrStage(BaseStage):
    name = "ocr"

    def __init__(
        self,
        registry: DocumentRegistry,
        storage: BlobStore,
        orchestrator: PipelineOrchestrator | None,
        policy: OcrPolicy | None = None,
    ) -> None:
        super().__init__(registry, orchestrator)
        self._storage = storage
        self._policy = policy or OcrPolicy()

    async def run(self, document_id: UUID) -> OcrStageResult:
        # ── Enter: uploaded | error → processing ──
        try:
            await self._registry.transition(document_id, DocumentStatus.PROCESSING)
        except (ConflictError, InvalidTransitionError) as exc:
            raise self._entry_failure(document_id, exc) from exc

        logger.info("OCR start | doc=%s", document_id)

        try:
            # ── Step 1: load row + blob ──
            doc = await self._registry.get(document_id)
            data = await self._storage.get(doc.storage_path)

            # ── Step 2: local-first / remote-fallback ──
            extraction = await self._policy.extract(data, doc.mime_type)

            # ── Step 3: persist text + page count atomically with ocr_done ──
            await self._registry.transition(
                document_id,
                DocumentStatus.OCR_DONE,
                ocr_text=extraction.full_text,
                page_count=extraction.page_count,
            )
        except Exception as exc:
            raise await self._record_failure(document_id, exc) from exc

        method = "remote" if extraction.used_ocr else "local"
        logger.info(
            "OCR done | doc=%s method=%s pages=%d chars=%d",
            document_id, method, extraction.page_count, extraction.total_chars,
        )

        # ── Step 4: continue the pipeline ──
        self._trigger_next(PipelineStage.EXTRACT, document_id)

        return OcrStageResult(
            document_id=document_id,
            page_count=extraction.page_count,
            method=method,
            total_chars=extraction.total_chars,
        )
