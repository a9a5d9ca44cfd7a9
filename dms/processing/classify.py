"""
Classify / Extract Stage
════════════════════════

  ocr_done|error ──► [1] load schemas
                     [2] classify      → {document_type, title, tags}      (fatal on failure)
                     [3] match schema  by exact document_type
                     [4] extract       schema-guided  (known type)
                                       free-form ≤10  (other / unknown)   (best-effort)
                     [5] transition    extracted + title, document_type, schema_id
                     [6] link tags     one transaction per tag            (best-effort)
                     [7] upsert fields source=ai, keyed on field_name      (best-effort)
                     [8] trigger generate-embed

Steps 6 and 7 run after the extracted transition has committed, each in its
own transaction: a failing tag is recorded as a warning and the remaining
tags, the fields and the trigger still run.

Completion outputs are untrusted JSON. They are validated here:
  • tags are cleaned to a list of strings (blank entries dropped, deduplicated,
    any other shape becomes [])
  • document_type defaults to "other"
  • fields must be a flat object of scalars; nested values are dropped,
    schema-guided results are restricted to the schema's property names
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ValidationError, field_validator

from dms.core.config import settings
from dms.core.errors import DocumentNotFoundError, FatalCapabilityError
from dms.llm.client import CompletionClient
from dms.models.documents import DocumentSchema, DocumentStatus, EntrySource
from dms.processing.stage import BaseStage
from dms.services.registry import DocumentRegistry, can_transition
from dms.workers.orchestrator import PipelineOrchestrator, PipelineStage

logger = logging.getLogger(__name__)

OTHER_DOCUMENT_TYPE = "other"

_SCALAR_TYPES = (str, int, float, bool)


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------

class ClassificationPayload(BaseModel):
    document_type: str = OTHER_DOCUMENT_TYPE
    title: Optional[str] = None
    tags: list[str] = []

    @field_validator("document_type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return OTHER_DOCUMENT_TYPE
        return value.strip()

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []

        seen: set[str] = set()
        tags: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            name = item.strip()
            if name and name.lower() not in seen:
                seen.add(name.lower())
                tags.append(name)
        return tags


def parse_json_object(content: str, what: str) -> dict:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise FatalCapabilityError(f"{what} response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise FatalCapabilityError(f"{what} response must be a JSON object")
    return payload


def parse_classification(content: str) -> ClassificationPayload:
    payload = parse_json_object(content, "Classification")
    try:
        return ClassificationPayload.model_validate(payload)
    except ValidationError as exc:
        raise FatalCapabilityError(f"Classification response has an unexpected shape: {exc}") from exc


def to_snake_case(name: str) -> str:
    name = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name.strip())
    return re.sub(r"\W+", "_", name.lower()).strip("_")


def _field_type(value: Any, declared: Optional[str]) -> str:
    if declared:
        return declared
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return "number"
    return "text"


def _field_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def normalize_fields(
    raw: dict,
    properties: Optional[dict[str, dict]] = None,
    max_fields: Optional[int] = None,
) -> list[dict]:
    """
    Flatten a completion's field object into registry rows.

    With *properties* (schema-guided) only declared names survive and the
    declared type wins. Without (free-form) names are snake_cased and the
    result is capped at *max_fields*.
    """
    rows: list[dict] = []
    seen: set[str] = set()

    for key, value in raw.items():
        if value is None or not isinstance(value, _SCALAR_TYPES):
            continue

        if properties is not None:
            if key not in properties:
                continue
            name = key
            declared = (properties.get(key) or {}).get("type")
        else:
            name = to_snake_case(str(key))
            declared = None

        text = _field_value(value)
        if not name or not text or name in seen:
            continue

        seen.add(name)
        rows.append({
            "field_name":  name,
            "field_value": text,
            "field_type":  _field_type(value, declared),
        })
        if max_fields is not None and len(rows) >= max_fields:
            break
    return rows


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def render_schema_list(schemas: list[DocumentSchema]) -> str:
    lines = [f"- {s.document_type}: {s.description or s.name}" for s in schemas]
    lines.append(f"- {OTHER_DOCUMENT_TYPE}: Unknown or unlisted document type")
    return "\n".join(lines)


def build_classification_prompt(schemas: list[DocumentSchema]) -> str:
    return (
        "You are a document classifier. Analyse the text and determine the document type.\n"
        "Known types:\n"
        f"{render_schema_list(schemas)}\n\n"
        'Answer as JSON: {"document_type": "...", "title": "...", "tags": ["tag1", "tag2"]}\n'
        "- document_type: one of the known types above\n"
        "- title: short descriptive title in the document's language\n"
        "- tags: 2-5 relevant tags"
    )


def build_schema_extraction_prompt(schema: DocumentSchema) -> str:
    return (
        "Extract the following fields from the document as a flat JSON object.\n"
        f"Fields: {', '.join(schema.properties)}\n"
        f"Schema: {json.dumps(schema.schema, ensure_ascii=False)}\n"
        "Return only these fields. Use null for fields that are not present."
    )


def build_freeform_extraction_prompt(max_fields: int) -> str:
    return (
        "Extract the most important key-value pairs from this document as a flat JSON object.\n"
        'Example: {"sender": "Max Mustermann", "date": "2024-01-15", "amount": "123.45"}\n'
        f"At most {max_fields} fields. Use snake_case field names in the document's language."
    )


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------

@dataclass
class ExtractStageResult:
    document_id:   UUID
    document_type: str
    title:         str
    tags:          list[str] = field(default_factory=list)
    fields:        list[str] = field(default_factory=list)
    warnings:      list[str] = field(default_factory=list)


class ClassifyExtractStage(BaseStage):
    name = "extract"

    def __init__(
        self,
        registry: DocumentRegistry,
        completion: CompletionClient,
        orchestrator: PipelineOrchestrator | None,
    ) -> None:
        super().__init__(registry, orchestrator)
        self._completion = completion

    async def run(self, document_id: UUID) -> ExtractStageResult:
        # ── Enter: the row must exist and be ready for extraction ──
        try:
            doc = await self._registry.get(document_id)
        except DocumentNotFoundError as exc:
            raise self._entry_failure(document_id, exc) from exc
        if not can_transition(doc.status, DocumentStatus.EXTRACTED):
            raise self._entry_failure(
                document_id,
                FatalCapabilityError(f"Document is '{doc.status}', expected ocr_done"),
            )

        logger.info("Extract start | doc=%s", document_id)
        warnings: list[str] = []

        try:
            if not doc.ocr_text:
                raise FatalCapabilityError("No OCR text available")

            # ── Steps 1-3: classify against the known schemas ──
            schemas = await self._registry.list_schemas()
            classification = await self._classify(doc.ocr_text, schemas)
            schema = next(
                (s for s in schemas if s.document_type == classification.document_type),
                None,
            )

            # ── Step 4: extraction is best-effort ──
            try:
                rows = await self._extract(doc.ocr_text, schema)
            except Exception as exc:
                logger.warning("Field extraction failed | doc=%s error=%s", document_id, exc)
                warnings.append(f"Field extraction failed: {exc}")
                rows = []

            # ── Step 5: the stage's own atomic persist ──
            title = classification.title or doc.original_filename
            await self._registry.transition(
                document_id,
                DocumentStatus.EXTRACTED,
                title=title,
                document_type=classification.document_type,
                schema_id=schema.id if schema else None,
            )
        except Exception as exc:
            raise await self._record_failure(document_id, exc) from exc

        # ── Step 6: tags, each isolated ──
        linked: list[str] = []
        for name in classification.tags:
            try:
                await self._registry.link_tag(document_id, name, source=EntrySource.AI)
                linked.append(name)
            except Exception as exc:
                logger.warning("Tag link failed | doc=%s tag=%s error=%s", document_id, name, exc)
                warnings.append(f"Tag '{name}' could not be linked: {exc}")

        # ── Step 7: fields ──
        persisted: list[str] = []
        if rows:
            try:
                await self._registry.upsert_fields(document_id, rows, source=EntrySource.AI)
                persisted = [row["field_name"] for row in rows]
            except Exception as exc:
                logger.warning("Field persist failed | doc=%s error=%s", document_id, exc)
                warnings.append(f"Fields could not be saved: {exc}")

        logger.info(
            "Extract done | doc=%s type=%s schema=%s tags=%d fields=%d warnings=%d",
            document_id, classification.document_type, schema.id if schema else None,
            len(linked), len(persisted), len(warnings),
        )

        # ── Step 8 ──
        self._trigger_next(PipelineStage.EMBED, document_id)

        return ExtractStageResult(
            document_id=document_id,
            document_type=classification.document_type,
            title=title,
            tags=linked,
            fields=persisted,
            warnings=warnings,
        )

    async def _classify(self, text: str, schemas: list[DocumentSchema]) -> ClassificationPayload:
        content = await self._completion.complete(
            build_classification_prompt(schemas),
            text[: settings.classify_text_limit],
            json_mode=True,
        )
        return parse_classification(content)

    async def _extract(self, text: str, schema: DocumentSchema | None) -> list[dict]:
        excerpt = text[: settings.extract_text_limit]
        if schema is not None:
            content = await self._completion.complete(
                build_schema_extraction_prompt(schema), excerpt, json_mode=True,
            )
            return normalize_fields(parse_json_object(content, "Extraction"), schema.properties)

        content = await self._completion.complete(
            build_freeform_extraction_prompt(settings.freeform_max_fields), excerpt, json_mode=True,
        )
        return normalize_fields(
            parse_json_object(content, "Extraction"),
            max_fields=settings.freeform_max_fields,
        )
