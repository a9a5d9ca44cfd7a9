"""
Search & Chat API — Pydantic Request/Response Schemas

Request keys are camelCase (the web client's convention) via aliases;
snake_case is accepted as well.
"""

from __future__ import annotations

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dms.core.config import settings


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query:                str = ""
    match_count:          int = Field(settings.search_match_count, alias="matchCount", ge=1, le=100)
    fulltext_weight:      float = Field(settings.search_fulltext_weight, alias="fulltextWeight", ge=0.0, le=1.0)
    vector_weight:        float = Field(settings.search_vector_weight, alias="vectorWeight", ge=0.0, le=1.0)
    filter_document_type: Optional[str] = Field(None, alias="filterDocumentType")
    filter_tags:          Optional[list[str]] = Field(None, alias="filterTags")


class SearchResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:            UUID
    title:         str
    excerpt:       str
    score:         float
    match_type:    str
    document_type: Optional[str] = None
    tags:          list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    results: list[SearchResult]
    query:   str


class ChatHistoryItem(BaseModel):
    role:    Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message:              str = ""
    history:              list[ChatHistoryItem] = Field(default_factory=list)
    filter_document_type: Optional[str] = Field(None, alias="filterDocumentType")


class ChatSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id:            UUID
    title:         str
    document_type: Optional[str] = Field(None, alias="documentType")
    score:         float


class ChatResponse(BaseModel):
    reply:   str
    sources: list[ChatSource]
