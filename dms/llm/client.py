"""
Capability clients — text completion and embeddings

Both talk to an OpenAI-compatible endpoint (Mistral by default) through
langchain-openai, and both wrap every call in with_retry so throttling and
short outages are absorbed here rather than in the stages:

  CompletionClient.complete(system, user, history=…, json_mode=…)  → str
  EmbeddingClient.embed_documents([text, …])                      → [[float]]
  EmbeddingClient.embed_query(text)                               → [float]

json_mode asks the endpoint for a JSON object response
(response_format={"type": "json_object"}); the caller still validates it.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from dms.core.config import settings
from dms.core.errors import FatalCapabilityError
from dms.core.retry import with_retry

logger = logging.getLogger(__name__)


def build_chat_model() -> ChatOpenAI:
    return ChatOpenAI(
        model=settings.chat_model,
        api_key=settings.ai_api_key,
        base_url=settings.ai_base_url,
        temperature=settings.chat_temperature,
        max_tokens=settings.chat_max_tokens,
        timeout=settings.capability_timeout_seconds,
        max_retries=0,   # with_retry owns the retry policy
    )


def build_embedding_model() -> OpenAIEmbeddings:
    """
    mistral-embed → 1024 dims. The endpoint does not accept a `dimensions`
    parameter, and tokenising with tiktoken would send token ids instead of
    text, so both are turned off.
    """
    return OpenAIEmbeddings(
        model=settings.embedding_model,
        api_key=settings.ai_api_key,
        base_url=settings.ai_base_url,
        check_embedding_ctx_length=False,
        timeout=settings.capability_timeout_seconds,
        max_retries=0,
    )


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

class CompletionClient:

    def __init__(self, model: BaseChatModel | None = None) -> None:
        self._model = model or build_chat_model()

    async def complete(
        self,
        system: str,
        user: str,
        *,
        history: Sequence[tuple[str, str]] = (),
        json_mode: bool = False,
    ) -> str:
        """
        Run one completion. *history* is a sequence of (role, content) pairs
        with role "user" or "assistant", placed between system and user.
        """
        messages: list[BaseMessage] = [SystemMessage(content=system)]
        for role, content in history:
            if role == "assistant":
                messages.append(AIMessage(content=content))
            else:
                messages.append(HumanMessage(content=content))
        messages.append(HumanMessage(content=user))

        runnable = self._model
        if json_mode:
            runnable = self._model.bind(response_format={"type": "json_object"})

        t0 = time.perf_counter()
        response = await with_retry(lambda: runnable.ainvoke(messages), label="completion")
        latency = (time.perf_counter() - t0) * 1000

        content = response.content if isinstance(response.content, str) else ""
        if not content.strip():
            raise FatalCapabilityError("Completion returned no content")

        logger.info(
            "Completion ok | messages=%d json_mode=%s chars=%d latency_ms=%.0f",
            len(messages), json_mode, len(content), latency,
        )
        return content


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class EmbeddingClient:

    def __init__(self, model: Embeddings | None = None) -> None:
        self._model = model or build_embedding_model()

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        """One batched request for all *texts*; order is preserved."""
        if not texts:
            return []
        vectors = await with_retry(
            lambda: self._model.aembed_documents(list(texts)),
            label="embedding",
        )
        logger.info("Embedding ok | inputs=%d vectors=%d", len(texts), len(vectors))
        return [list(v) for v in vectors]

    async def embed_query(self, text: str) -> list[float]:
        vector = await with_retry(lambda: self._model.aembed_query(text), label="embedding")
        return list(vector)
