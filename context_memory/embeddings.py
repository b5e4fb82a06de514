"""Embedding providers.

The engine only relies on the provider contract: ``embed(text)`` returns a
fixed-length list of floats, deterministic for identical input, unit length for
non-empty text and all zeros for empty text. Remote providers (Ollama, Google
GenAI) are chained with the offline lexical provider as last resort.
"""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Sequence

import numpy as np

from context_memory.config import CONFIG, LOG_PREFIX, Config
from context_memory.errors import EmbeddingProviderError

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient


class EmbeddingProvider(Protocol):
    name: str
    dim: int

    def embed(self, text: str) -> list[float]: ...


# =============================================================================
# Vector helpers
# =============================================================================


def zero_vector(dim: int) -> list[float]:
    return [0.0] * dim


def fit_and_normalize(values: Sequence[float], dim: int) -> list[float]:
    """Truncate or zero-pad to ``dim`` and scale to unit length."""
    embedding = np.asarray(values, dtype=np.float64)
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])

    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 for zero or mismatched vectors."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        return 0.0
    magnitude = np.linalg.norm(va) * np.linalg.norm(vb)
    if magnitude == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / magnitude, -1.0, 1.0))


# =============================================================================
# Providers
# =============================================================================


class LexicalEmbeddingProvider:
    """Deterministic character-frequency embedding.

    No semantic understanding, but stable across processes and needs no
    network, so it backs tests and offline use. Characters are case-folded and
    hashed into buckets by code point; whitespace only counts when the text has
    nothing else.
    """

    name = "lexical"

    def __init__(self, dim: int = CONFIG.embedding_dim):
        self.dim = dim

    def embed(self, text: str) -> list[float]:
        if not text:
            return zero_vector(self.dim)

        folded = text.lower()
        chars = [c for c in folded if not c.isspace()] or list(folded)
        counts = np.zeros(self.dim)
        for c in chars:
            counts[ord(c) % self.dim] += 1.0
        return fit_and_normalize(counts, self.dim)


class OllamaEmbeddingProvider:
    """Embeddings from a local Ollama server."""

    name = "ollama"

    def __init__(
        self,
        model: str = CONFIG.embedding_model,
        base_url: str = CONFIG.ollama_base_url,
        dim: int = CONFIG.embedding_dim,
        timeout: float = CONFIG.ollama_timeout,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.dim = dim
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        if not text:
            return zero_vector(self.dim)
        import requests

        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
            values = response.json().get("embedding", [])
        except (requests.RequestException, ValueError) as e:
            raise EmbeddingProviderError(f"Ollama embedding error: {e}", provider=self.name) from e

        if not values:
            raise EmbeddingProviderError("Ollama returned an empty embedding", provider=self.name)
        return fit_and_normalize(values, self.dim)


_lock = threading.RLock()
_genai_client: GenAIClient | None = None


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise EmbeddingProviderError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY",
        provider="google",
    )


def get_genai_client() -> GenAIClient:
    """Get or create the GenAI client singleton (thread-safe)."""
    global _genai_client
    if _genai_client is None:
        with _lock:
            if _genai_client is None:  # Double-check after acquiring lock
                from google import genai

                _genai_client = genai.Client(api_key=_get_api_key())
    return _genai_client


class GoogleEmbeddingProvider:
    """Embeddings from the Google GenAI API."""

    name = "google"

    def __init__(
        self,
        model: str = "gemini-embedding-001",
        dim: int = CONFIG.embedding_dim,
        task_type: str = "SEMANTIC_SIMILARITY",
    ):
        self.model = model
        self.dim = dim
        self.task_type = task_type

    def embed(self, text: str) -> list[float]:
        if not text:
            return zero_vector(self.dim)
        from google.genai import types

        client = get_genai_client()
        try:
            response = client.models.embed_content(
                model=self.model,
                contents=text,
                config=types.EmbedContentConfig(
                    task_type=self.task_type, output_dimensionality=self.dim
                ),
            )
        except Exception as e:  # network and API failures alike
            raise EmbeddingProviderError(f"Google embedding error: {e}", provider=self.name) from e
        return fit_and_normalize(response.embeddings[0].values, self.dim)


class FallbackEmbeddingProvider:
    """Try providers in order, moving on when one raises EmbeddingProviderError."""

    name = "fallback"

    def __init__(self, providers: Sequence[EmbeddingProvider]):
        if not providers:
            raise ValueError("at least one provider is required")
        dims = {p.dim for p in providers}
        if len(dims) != 1:
            raise ValueError(f"providers disagree on dimension: {sorted(dims)}")
        self.providers = list(providers)
        self.dim = dims.pop()

    def embed(self, text: str) -> list[float]:
        last_error: EmbeddingProviderError | None = None
        for provider in self.providers:
            try:
                return provider.embed(text)
            except EmbeddingProviderError as e:
                print(f"{LOG_PREFIX} {provider.name} failed, trying next provider: {e}", file=sys.stderr)
                last_error = e
        raise EmbeddingProviderError(f"all embedding providers failed: {last_error}", provider=self.name)


def get_embedding_provider(config: Config = CONFIG) -> EmbeddingProvider:
    """Build the provider chain named by ``config.embedding_provider``."""
    lexical = LexicalEmbeddingProvider(config.embedding_dim)
    google = GoogleEmbeddingProvider(dim=config.embedding_dim)
    kind = config.embedding_provider.lower()

    if kind == "lexical":
        return lexical
    if kind == "ollama":
        ollama = OllamaEmbeddingProvider(
            model=config.embedding_model,
            base_url=config.ollama_base_url,
            dim=config.embedding_dim,
            timeout=config.ollama_timeout,
        )
        return FallbackEmbeddingProvider([ollama, google, lexical])
    if kind == "google":
        return FallbackEmbeddingProvider([google, lexical])
    raise ValueError(f"Unknown embedding provider '{config.embedding_provider}'")
