"""
Grounded chat over the document collection.

  message ──► embed ──► hybrid search (0.3 / 0.7, top 5, optional type filter)
          ──► system prompt with numbered excerpts
          ──► last N history turns + message ──► completion
          ──► {reply, sources}

Sources are exactly the search hits that went into the prompt; the model
cannot add to them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from dms.core.config import settings
from dms.core.errors import ValidationError
from dms.llm.client import CompletionClient, EmbeddingClient
from dms.rag.hybrid_search import HybridSearchEngine, SearchHit, SearchQuery

logger = logging.getLogger(__name__)

EMPTY_MESSAGE = "Message must not be empty"
NO_CONTEXT = "No relevant documents found."

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant for a document management system.
Answer questions using only the document excerpts provided below.
If the excerpts do not contain the relevant information, say so honestly.
Cite the document titles you draw information from.
Answer in the language of the question.

Available document excerpts:
{context}"""


@dataclass
class ChatTurn:
    role:    str     # "user" | "assistant"
    content: str


@dataclass
class ChatAnswer:
    reply:   str
    sources: list[SearchHit] = field(default_factory=list)


def build_context(hits: Sequence[SearchHit]) -> str:
    if not hits:
        return NO_CONTEXT
    return "\n\n".join(
        f'[Document {i}: "{hit.title}" ({hit.document_type or "unknown"})]\n{hit.excerpt}'
        for i, hit in enumerate(hits, start=1)
    )


class ChatRetriever:

    def __init__(
        self,
        search: HybridSearchEngine,
        embeddings: EmbeddingClient,
        completion: CompletionClient,
    ) -> None:
        self._search = search
        self._embeddings = embeddings
        self._completion = completion

    async def answer(
        self,
        message: str,
        history: Sequence[ChatTurn] = (),
        filter_document_type: Optional[str] = None,
    ) -> ChatAnswer:
        message = (message or "").strip()
        if not message:
            raise ValidationError(EMPTY_MESSAGE)

        embedding = await self._embeddings.embed_query(message)
        hits = await self._search.search(SearchQuery(
            text=message,
            embedding=embedding,
            match_count=settings.chat_match_count,
            fulltext_weight=settings.chat_fulltext_weight,
            vector_weight=settings.chat_vector_weight,
            document_type=filter_document_type,
        ))

        window = list(history)[-settings.chat_history_window:] if settings.chat_history_window else []
        reply = await self._completion.complete(
            SYSTEM_PROMPT_TEMPLATE.format(context=build_context(hits)),
            message,
            history=[(turn.role, turn.content) for turn in window],
        )

        logger.info(
            "Chat | message_len=%d history=%d sources=%d reply_len=%d",
            len(message), len(window), len(hits), len(reply),
        )
        return ChatAnswer(reply=reply, sources=hits)
