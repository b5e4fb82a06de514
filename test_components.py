"""
Unit tests for the engine's building blocks: embeddings, compression, scoring,
feedback and the record store.

Run with: pytest test_components.py -v
"""

import math
from datetime import datetime, timedelta

import numpy as np
import pytest
import requests

from context_memory.compression import CompressionEngine, compress_text, estimate_tokens
from context_memory.config import CONFIG, Config
from context_memory.context import pack_memories, token_savings
from context_memory.embeddings import (
    FallbackEmbeddingProvider,
    LexicalEmbeddingProvider,
    OllamaEmbeddingProvider,
    cosine_similarity,
    fit_and_normalize,
    get_embedding_provider,
)
from context_memory.errors import EmbeddingProviderError
from context_memory.feedback import wilson_lower_bound
from context_memory.models import Feedback, Memory
from context_memory.ranking import composite_score, feedback_boost, recency_boost
from context_memory.store import MemoryRecordStore, default_importance

NOW = datetime(2026, 1, 15, 9, 0, 0)


def make_memory(memory_id: str, content: str = "note", importance: float = 0.5, **fields) -> Memory:
    return Memory(
        id=memory_id,
        content=content,
        compressed_content=fields.pop("compressed_content", None),
        scope=fields.pop("scope", "user"),
        type=fields.pop("type", "fact"),
        embedding=LexicalEmbeddingProvider(CONFIG.embedding_dim).embed(content),
        importance=importance,
        last_accessed=NOW,
        created_at=NOW,
        updated_at=NOW,
        **fields,
    )


# =============================================================================
# Embeddings
# =============================================================================


class TestEmbeddings:
    """Tests for the provider contract and vector helpers."""

    def test_non_empty_text_is_unit_length(self):
        provider = LexicalEmbeddingProvider(CONFIG.embedding_dim)
        for text in ["hello world", "Meeting with Acme Corp", "   ", "!!!", "42"]:
            embedding = provider.embed(text)
            assert len(embedding) == CONFIG.embedding_dim
            assert abs(np.linalg.norm(embedding) - 1.0) < 1e-9, text

    def test_empty_text_is_zero_vector(self):
        embedding = LexicalEmbeddingProvider(CONFIG.embedding_dim).embed("")
        assert len(embedding) == CONFIG.embedding_dim
        assert not any(embedding)

    def test_deterministic(self):
        assert LexicalEmbeddingProvider(64).embed("same text") == LexicalEmbeddingProvider(64).embed("same text")

    def test_case_insensitive(self):
        provider = LexicalEmbeddingProvider(64)
        assert provider.embed("Acme Corp") == pytest.approx(provider.embed("acme corp"))

    def test_near_duplicates_are_close(self):
        provider = LexicalEmbeddingProvider(CONFIG.embedding_dim)
        a = provider.embed("Meeting with Acme Corp about renewal")
        b = provider.embed("Meeting with Acme Corp regarding contract renewal")
        assert cosine_similarity(a, b) > CONFIG.consolidation_threshold

    def test_cosine_bounds(self):
        rng = np.random.default_rng(7)
        for _ in range(20):
            a, b = rng.normal(size=16), rng.normal(size=16)
            assert -1.0 <= cosine_similarity(a, b) <= 1.0
            assert cosine_similarity(a, a) == pytest.approx(1.0)
            assert cosine_similarity(a, -a) == pytest.approx(-1.0)

    def test_cosine_degenerate_inputs(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_fit_and_normalize(self):
        assert fit_and_normalize([3.0, 4.0], 4) == pytest.approx([0.6, 0.8, 0.0, 0.0])
        assert fit_and_normalize([1.0, 0.0, 0.0, 5.0], 2) == pytest.approx([1.0, 0.0])
        assert fit_and_normalize([0.0, 0.0], 2) == [0.0, 0.0]


class _BrokenProvider:
    name = "broken"

    def __init__(self, dim: int):
        self.dim = dim

    def embed(self, text: str) -> list[float]:
        raise EmbeddingProviderError("down", provider=self.name)


class TestProviderChain:
    """Tests for fallback and provider selection."""

    def test_fallback_uses_next_provider(self):
        chain = FallbackEmbeddingProvider([_BrokenProvider(32), LexicalEmbeddingProvider(32)])
        assert chain.embed("hello") == LexicalEmbeddingProvider(32).embed("hello")

    def test_fallback_raises_when_all_fail(self):
        chain = FallbackEmbeddingProvider([_BrokenProvider(32), _BrokenProvider(32)])
        with pytest.raises(EmbeddingProviderError) as exc_info:
            chain.embed("hello")
        assert exc_info.value.retryable

    def test_fallback_rejects_mixed_dimensions(self):
        with pytest.raises(ValueError):
            FallbackEmbeddingProvider([LexicalEmbeddingProvider(16), LexicalEmbeddingProvider(32)])

    def test_provider_selection(self):
        assert isinstance(get_embedding_provider(Config(embedding_provider="lexical")), LexicalEmbeddingProvider)
        chain = get_embedding_provider(Config(embedding_provider="ollama"))
        assert [p.name for p in chain.providers] == ["ollama", "google", "lexical"]
        chain = get_embedding_provider(Config(embedding_provider="google"))
        assert [p.name for p in chain.providers] == ["google", "lexical"]
        with pytest.raises(ValueError):
            get_embedding_provider(Config(embedding_provider="word2vec"))

    def test_ollama_pads_and_normalizes(self, monkeypatch):
        class FakeResponse:
            def raise_for_status(self):
                pass

            def json(self):
                return {"embedding": [3.0, 4.0]}

        monkeypatch.setattr(requests, "post", lambda *args, **kwargs: FakeResponse())
        provider = OllamaEmbeddingProvider(dim=4, base_url="http://ollama.test")
        assert provider.embed("hello") == pytest.approx([0.6, 0.8, 0.0, 0.0])

    def test_ollama_failure_is_provider_error(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.ConnectionError("connection refused")

        monkeypatch.setattr(requests, "post", refuse)
        with pytest.raises(EmbeddingProviderError):
            OllamaEmbeddingProvider(dim=4).embed("hello")


# =============================================================================
# Compression
# =============================================================================


class TestCompression:
    """Tests for sentence-level compression and its cache."""

    def test_empty_input(self):
        assert compress_text("") == ""
        assert CompressionEngine().compress("") == ""

    def test_short_sentences_kept(self):
        assert compress_text("Likes dark mode. Uses vim!") == "Likes dark mode. Uses vim"

    def test_long_sentence_reduced(self):
        text = "The team decided to migrate the billing service to Postgres next quarter."
        assert compress_text(text) == "The decided migrate billing service Postgres quarter"

    def test_keeps_first_three_sentences(self):
        assert compress_text("One. Two. Three. Four.") == "One. Two. Three"

    def test_never_larger_than_original(self):
        samples = [
            "aaa.bbbb",
            "a.b.c.d",
            "Wait?! Really... yes.",
            "Short one. Another short one! And a much longer sentence with several extra words in it?",
        ]
        for text in samples:
            assert estimate_tokens(compress_text(text)) <= estimate_tokens(text), text
        assert compress_text("aaa.bbbb") == "aaa.bbbb"

    def test_cache_hit_returns_identical_string(self):
        engine = CompressionEngine()
        text = "The team decided to migrate the billing service to Postgres next quarter."
        first = engine.compress(text)
        second = engine.compress(text)
        assert first == second
        assert engine.hits == 1
        assert engine.misses == 1

    def test_cache_keyed_by_prefix(self):
        engine = CompressionEngine(key_chars=10)
        engine.compress("Quarterly planning notes. Budget approved.")
        engine.compress("Quarterly planning notes. Hiring paused for now.")
        assert len(engine) == 1
        assert engine.hits == 1

    def test_cache_is_bounded_lru(self):
        engine = CompressionEngine(key_chars=100, maxsize=2)
        engine.compress("first note")
        engine.compress("second note")
        engine.compress("first note")
        engine.compress("third note")

        assert len(engine) == 2
        engine.compress("first note")
        assert engine.hits == 2
        engine.compress("second note")
        assert engine.misses == 4

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


# =============================================================================
# Scoring
# =============================================================================


class TestScoring:
    """Tests for the composite ranking components."""

    def test_recency_decays_linearly_over_a_week(self):
        assert recency_boost(NOW, NOW) == 1.0
        assert recency_boost(NOW - timedelta(hours=84), NOW) == pytest.approx(0.5)
        assert recency_boost(NOW - timedelta(hours=200), NOW) == 0.0

    def test_recency_never_increases_with_age(self):
        boosts = [recency_boost(NOW - timedelta(hours=h), NOW) for h in range(0, 240, 6)]
        assert all(a >= b for a, b in zip(boosts, boosts[1:]))

    def test_importance_never_lowers_score(self):
        scores = [composite_score(0.7, i / 10, 0.5, 0.5) for i in range(11)]
        assert all(a <= b for a, b in zip(scores, scores[1:]))

    def test_score_bounds(self):
        assert composite_score(1.0, 1.0, 1.0, 1.0) == pytest.approx(1.0)
        assert composite_score(-1.0, 0.0, 0.0, 0.0) == 0.0

    def test_feedback_boost(self):
        assert feedback_boost(make_memory("a")) == 0.5
        memory = make_memory("b", feedback=Feedback(helpful=3, not_helpful=0, score=0.6))
        assert feedback_boost(memory) == pytest.approx(0.8)


class TestWilsonScore:
    """Tests for the Wilson lower bound."""

    def test_no_votes_is_neutral(self):
        assert wilson_lower_bound(0, 0) == 0.5

    def test_single_vote_is_conservative(self):
        assert wilson_lower_bound(1, 0) == pytest.approx(1 / (1 + 1.96**2))

    def test_helpful_votes_rise_toward_one(self):
        scores = [wilson_lower_bound(n, 0) for n in range(1, 60)]
        assert all(a < b for a, b in zip(scores, scores[1:]))
        assert all(s < 1.0 for s in scores)

    def test_unhelpful_votes_fall_toward_zero(self):
        scores = [wilson_lower_bound(1, n) for n in range(0, 60)]
        assert all(a > b for a, b in zip(scores, scores[1:]))
        assert all(s > 0.0 for s in scores)

    def test_only_unhelpful_votes_bottom_out(self):
        assert wilson_lower_bound(0, 5) == pytest.approx(0.0, abs=1e-12)

    def test_bounds(self):
        for helpful in range(0, 20):
            for not_helpful in range(0, 20):
                assert 0.0 <= wilson_lower_bound(helpful, not_helpful) <= 1.0


# =============================================================================
# Store
# =============================================================================


class TestDefaultImportance:
    """Tests for type weights and content nudges."""

    def test_type_weights(self):
        assert default_importance("likes dark mode", "preference") == pytest.approx(0.8)
        assert default_importance("went to lunch", "conversation") == pytest.approx(0.4)
        assert default_importance("can deploy", "skill") == pytest.approx(0.9)

    def test_content_nudges(self):
        assert default_importance("Budget is 5000", "fact") == pytest.approx(0.75)
        assert default_importance("This is critical", "conversation") == pytest.approx(0.5)
        assert default_importance("x" * 201, "context") == pytest.approx(0.65)

    def test_capped_at_one(self):
        assert default_importance("Key point: 42 " + "x" * 200, "skill") == 1.0


class TestRecordStore:
    """Tests for the record table and owner indices."""

    def test_add_indexes_every_owner(self):
        store = MemoryRecordStore()
        store.add(make_memory("m1", user_id="u1", session_id="s1", agent_id="a1", workspace_id="w1"))
        assert store.index_ids("user_id", "u1") == ["m1"]
        assert store.index_ids("session_id", "s1") == ["m1"]
        assert store.index_ids("agent_id", "a1") == ["m1"]
        assert store.index_ids("workspace_id", "w1") == ["m1"]

    def test_duplicate_id_rejected(self):
        store = MemoryRecordStore()
        store.add(make_memory("m1"))
        with pytest.raises(KeyError):
            store.add(make_memory("m1"))
        assert len(store) == 1

    def test_remove_clears_indices(self):
        store = MemoryRecordStore()
        store.add(make_memory("m1", user_id="u1", session_id="s1"))
        store.add(make_memory("m2", user_id="u1"))
        assert store.remove("m1") is not None
        assert store.remove("m1") is None
        assert store.index_ids("user_id", "u1") == ["m2"]
        assert store.index_ids("session_id", "s1") == []
        assert store.dangling_index_entries() == []

    def test_owned_by_intersects_owners(self):
        store = MemoryRecordStore()
        store.add(make_memory("m1", user_id="u1", session_id="s1"))
        store.add(make_memory("m2", user_id="u1", session_id="s2"))
        store.add(make_memory("m3", user_id="u2", session_id="s1"))
        assert [m.id for m in store.owned_by(user_id="u1")] == ["m1", "m2"]
        assert [m.id for m in store.owned_by(user_id="u1", session_id="s1")] == ["m1"]
        assert [m.id for m in store.owned_by(user_id="nobody")] == []
        assert len(store.owned_by()) == 3

    def test_find_by_prefix(self):
        store = MemoryRecordStore()
        store.add(make_memory("abc1"))
        store.add(make_memory("abc2"))
        store.add(make_memory("xyz1"))
        assert {m.id for m in store.find_by_prefix("abc", limit=10)} == {"abc1", "abc2"}
        assert len(store.find_by_prefix("abc", limit=1)) == 1


# =============================================================================
# Context packing
# =============================================================================


class TestPacking:
    """Tests for greedy budget packing."""

    def test_stops_at_first_overflow(self):
        memories = [
            make_memory("a", "Uses vim"),
            make_memory("b", "x" * 80),
            make_memory("c", "Tabs"),
        ]
        included, used = pack_memories(memories, max_tokens=10)
        assert [m.id for m in included] == ["a"]
        assert used == 2

    def test_prefers_compressed_content(self):
        memory = make_memory("a", "x" * 40, compressed_content="xxxx")
        included, used = pack_memories([memory], max_tokens=1)
        assert included == [memory]
        assert used == 1

    def test_savings(self):
        assert token_savings(0, 0) == 0.0
        assert token_savings(200, 50) == pytest.approx(75.0)
        assert math.isclose(token_savings(23, 2), 21 / 23 * 100)
