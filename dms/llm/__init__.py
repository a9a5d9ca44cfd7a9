"""
Capability clients over an OpenAI-compatible endpoint (Mistral by default).

Public API::

    from dms.llm import CompletionClient, EmbeddingClient

    reply = await CompletionClient().complete(system_prompt, user_prompt, json_mode=True)
    vectors = await EmbeddingClient().embed_documents(chunks)
"""

from dms.llm.client import CompletionClient, EmbeddingClient

__all__ = [
    "CompletionClient",
    "EmbeddingClient",
]
