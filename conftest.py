"""Shared fixtures: an isolated engine on the deterministic lexical embedder."""

from datetime import datetime, timedelta

import pytest

from context_memory.config import CONFIG
from context_memory.embeddings import LexicalEmbeddingProvider
from context_memory.engine import MemoryEngine
from context_memory.errors import EmbeddingProviderError


class FakeClock:
    """Settable clock so recency and expiry can be tested without sleeping."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 9, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FlakyProvider:
    """Lexical embeddings that can be switched into failure mode."""

    name = "flaky"

    def __init__(self, dim: int = CONFIG.embedding_dim):
        self.dim = dim
        self.fail = False
        self.calls = 0
        self._inner = LexicalEmbeddingProvider(dim)

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise EmbeddingProviderError("embedding backend unavailable", provider=self.name)
        return self._inner.embed(text)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return MemoryEngine(CONFIG, embedder=LexicalEmbeddingProvider(CONFIG.embedding_dim), clock=clock)


@pytest.fixture
def flaky():
    return FlakyProvider()


@pytest.fixture
def flaky_engine(flaky, clock):
    return MemoryEngine(CONFIG, embedder=flaky, clock=clock)
