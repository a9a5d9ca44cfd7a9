"""
Search & Chat Router

  POST /search  {query, matchCount?, fulltextWeight?, vectorWeight?,
                 filterDocumentType?, filterTags?}    → 200 {results, query}
  POST /chat    {message, history?, filterDocumentType?} → 200 {reply, sources}

An empty query / message is rejected with 400 before any embedding or
completion call is made.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from dms.api.deps import Chat, Search
from dms.core.errors import ValidationError
from dms.rag.chat import ChatTurn
from dms.rag.hybrid_search import SearchQuery
from dms.schemas.documents import ApiErrors, ErrorResponse
from dms.schemas.search import (
    ChatRequest,
    ChatResponse,
    ChatSource,
    SearchRequest,
    SearchResponse,
    SearchResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Hybrid full-text + semantic search",
    responses={400: {"model": ErrorResponse, "description": "Empty query"}},
)
async def search_documents(body: SearchRequest, engine: Search) -> SearchResponse:
    try:
        hits = await engine.search(SearchQuery(
            text=body.query,
            match_count=body.match_count,
            fulltext_weight=body.fulltext_weight,
            vector_weight=body.vector_weight,
            document_type=body.filter_document_type,
            tags=body.filter_tags,
        ))
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ApiErrors.validation(exc.message, "query").to_body(),
        )

    return SearchResponse(
        results=[SearchResult.model_validate(hit) for hit in hits],
        query=body.query,
    )


@router.post(
    "/chat",
    response_model=ChatResponse,
    summary="Answer a question grounded in the documents",
    responses={400: {"model": ErrorResponse, "description": "Empty message"}},
)
async def chat(body: ChatRequest, retriever: Chat) -> ChatResponse:
    try:
        answer = await retriever.answer(
            body.message,
            history=[ChatTurn(role=h.role, content=h.content) for h in body.history],
            filter_document_type=body.filter_document_type,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ApiErrors.validation(exc.message, "message").to_body(),
        )

    return ChatResponse(
        reply=answer.reply,
        sources=[
            ChatSource(id=s.id, title=s.title, document_type=s.document_type, score=s.score)
            for s in answer.sources
        ],
    )
