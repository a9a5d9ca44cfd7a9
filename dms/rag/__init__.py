"""
Retrieval package — hybrid search and grounded chat.

    from dms.rag import HybridSearchEngine, SearchQuery, ChatRetriever

fuse_scores is a pure function and can be imported without a database.
"""

from dms.rag.chat import ChatAnswer, ChatRetriever, ChatTurn
from dms.rag.hybrid_search import HybridSearchEngine, SearchHit, SearchQuery, fuse_scores

__all__ = [
    "ChatAnswer",
    "ChatRetriever",
    "ChatTurn",
    "HybridSearchEngine",
    "SearchHit",
    "SearchQuery",
    "fuse_scores",
]
