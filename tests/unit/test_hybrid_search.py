"""
Unit Tests — hybrid search
═══════════════════════════
fuse_scores is pure and tested exhaustively; the engine is tested with its
SQL helpers replaced, which pins down validation, embedding, signal
skipping and truncation.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from dms.core.errors import TransientCapabilityError, ValidationError
from dms.rag.hybrid_search import (
    CANDIDATE_MULTIPLIER,
    EMPTY_QUERY_MESSAGE,
    HybridSearchEngine,
    SearchHit,
    SearchQuery,
    fuse_scores,
    is_zero_vector,
)

A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
B = uuid.UUID("00000000-0000-0000-0000-00000000000b")
C = uuid.UUID("00000000-0000-0000-0000-00000000000c")


# ─────────────────────────────────────────────────────────────────────────────
# fuse_scores
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestFuseScores:

    def test_fulltext_is_normalised_by_best_rank(self):
        fused = fuse_scores({A: 0.2, B: 0.1}, {}, 1.0, 0.0)

        assert [f.document_id for f in fused] == [A, B]
        assert fused[0].score == pytest.approx(1.0)
        assert fused[1].score == pytest.approx(0.5)
        assert all(f.match_type == "fulltext" for f in fused)

    def test_weighted_combination_and_match_types(self):
        fused = fuse_scores({A: 0.4, B: 0.2}, {A: 0.5, C: 0.9}, 0.4, 0.6)
        by_id = {f.document_id: f for f in fused}

        assert by_id[A].score == pytest.approx(0.4 * 1.0 + 0.6 * 0.5)
        assert by_id[A].match_type == "hybrid"
        assert by_id[B].score == pytest.approx(0.4 * 0.5)
        assert by_id[B].match_type == "fulltext"
        assert by_id[C].score == pytest.approx(0.6 * 0.9)
        assert by_id[C].match_type == "vector"
        assert [f.document_id for f in fused] == [A, C, B]

    def test_vector_similarity_is_clamped(self):
        fused = fuse_scores({}, {A: 1.3, B: -0.2}, 0.0, 1.0)

        assert [f.document_id for f in fused] == [A]
        assert fused[0].vector_rank == 1.0

    def test_zero_weight_signal_does_not_set_match_type(self):
        fused = fuse_scores({A: 0.3}, {A: 0.8}, 0.0, 1.0)
        assert fused[0].match_type == "vector"

    def test_zero_scores_dropped(self):
        assert fuse_scores({A: 0.0}, {B: 0.0}, 0.5, 0.5) == []

    def test_ties_broken_by_id(self):
        fused = fuse_scores({}, {C: 0.5, A: 0.5, B: 0.5}, 0.0, 1.0)
        assert [f.document_id for f in fused] == [A, B, C]

    def test_empty(self):
        assert fuse_scores({}, {}, 0.4, 0.6) == []


@pytest.mark.unit
class TestIsZeroVector:

    def test_cases(self):
        assert is_zero_vector(None)
        assert is_zero_vector([])
        assert is_zero_vector([0.0, 0.0])
        assert not is_zero_vector([0.0, 0.1])


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

def _hits_for(db, fused):
    return [
        SearchHit(id=f.document_id, title=str(f.document_id), excerpt="", score=f.score,
                  match_type=f.match_type, document_type=None)
        for f in fused
    ]


@pytest.fixture
def engine(fake_embeddings):
    @asynccontextmanager
    async def _scope():
        yield MagicMock()

    engine = HybridSearchEngine(fake_embeddings, session_factory=_scope)
    engine._fulltext_ranks = AsyncMock(return_value={A: 0.3, B: 0.1})
    engine._vector_ranks = AsyncMock(return_value={B: 0.9, C: 0.4})
    engine._load_hits = AsyncMock(side_effect=_hits_for)
    return engine


@pytest.mark.unit
class TestHybridSearchEngine:

    @pytest.mark.parametrize("text", ["", "   ", None])
    async def test_empty_query_rejected_before_embedding(self, engine, fake_embeddings, text):
        with pytest.raises(ValidationError) as exc_info:
            await engine.search(SearchQuery(text=text))

        assert exc_info.value.message == EMPTY_QUERY_MESSAGE
        fake_embeddings.embed_query.assert_not_awaited()

    async def test_non_positive_match_count_returns_nothing(self, engine, fake_embeddings):
        assert await engine.search(SearchQuery(text="rechnung", match_count=0)) == []
        fake_embeddings.embed_query.assert_not_awaited()

    async def test_embeds_query_and_fuses_both_signals(self, engine, fake_embeddings):
        hits = await engine.search(SearchQuery(
            text="  stromrechnung  ", match_count=10, fulltext_weight=0.4, vector_weight=0.6,
        ))

        fake_embeddings.embed_query.assert_awaited_once_with("stromrechnung")
        assert {h.id for h in hits} == {A, B, C}
        assert hits[0].id == B      # 0.4 * 1/3 + 0.6 * 0.9 beats 0.4 * 1.0
        assert next(h for h in hits if h.id == B).match_type == "hybrid"

    async def test_candidate_pool_is_a_multiple_of_match_count(self, engine):
        await engine.search(SearchQuery(text="x", match_count=4))

        assert engine._fulltext_ranks.await_args.args[-1] == 4 * CANDIDATE_MULTIPLIER
        assert engine._vector_ranks.await_args.args[-1] == 4 * CANDIDATE_MULTIPLIER

    async def test_result_truncated_to_match_count(self, engine):
        hits = await engine.search(SearchQuery(text="x", match_count=2))
        assert len(hits) == 2

    async def test_given_embedding_is_used(self, engine, fake_embeddings):
        await engine.search(SearchQuery(text="x", embedding=[0.1, 0.2]))

        fake_embeddings.embed_query.assert_not_awaited()
        assert engine._vector_ranks.await_args.args[1] == [0.1, 0.2]

    async def test_zero_vector_skips_vector_signal(self, engine):
        hits = await engine.search(SearchQuery(text="x", embedding=[0.0, 0.0]))

        engine._vector_ranks.assert_not_awaited()
        assert all(h.match_type == "fulltext" for h in hits)

    async def test_zero_vector_weight_skips_vector_signal(self, engine):
        await engine.search(SearchQuery(text="x", vector_weight=0.0))
        engine._vector_ranks.assert_not_awaited()

    async def test_fulltext_only_search_survives_embedding_outage(self, engine, fake_embeddings):
        fake_embeddings.embed_query.side_effect = TransientCapabilityError("429 rate limit", status_code=429)

        hits = await engine.search(SearchQuery(text="rechnung", fulltext_weight=1.0, vector_weight=0.0))

        fake_embeddings.embed_query.assert_not_awaited()
        assert [h.id for h in hits] == [A, B]
        assert all(h.match_type == "fulltext" for h in hits)

    async def test_without_embedding_client_vector_is_skipped(self):
        @asynccontextmanager
        async def _scope():
            yield MagicMock()

        engine = HybridSearchEngine(None, session_factory=_scope)
        engine._fulltext_ranks = AsyncMock(return_value={A: 1.0})
        engine._vector_ranks = AsyncMock()
        engine._load_hits = AsyncMock(side_effect=_hits_for)

        hits = await engine.search(SearchQuery(text="x"))

        engine._vector_ranks.assert_not_awaited()
        assert [h.id for h in hits] == [A]
