"""Engine configuration and validation vocabularies."""

from __future__ import annotations

import os
from dataclasses import dataclass

# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class Config:
    """Engine configuration with sensible defaults."""

    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "1024"))
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "lexical")  # lexical | ollama | google
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b")
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_timeout: float = 30.0
    embedding_cache_size: int = 128
    default_limit: int = 10
    max_limit: int = 100
    default_threshold: float = 0.5
    max_context_tokens: int = int(os.environ.get("MAX_CONTEXT_TOKENS", "8000"))
    consolidation_threshold: float = 0.9
    summary_limit: int = 100
    recent_context_limit: int = 5
    compression_cache_key_chars: int = 100
    recency_window_hours: float = 24 * 7
    cleanup_interval_hours: int = 24
    expiry_sweep_enabled: bool = os.environ.get("EXPIRY_SWEEP_ENABLED", "").lower() in ("1", "true", "yes")
    compression_cache_size: int = 1024
    degrade_on_provider_error: bool = True


CONFIG = Config()

SCOPES = ("user", "session", "agent", "workspace", "global")
MEMORY_TYPES = ("fact", "preference", "context", "skill", "conversation", "workflow", "decision", "feedback")
VALID_SCOPES = frozenset(SCOPES)
VALID_TYPES = frozenset(MEMORY_TYPES)
VALID_SORT_KEYS = frozenset({"relevance", "recency", "importance", "access_count"})

# Default importance per memory type, before content adjustments
TYPE_IMPORTANCE = {
    "skill": 0.9,
    "decision": 0.85,
    "preference": 0.8,
    "workflow": 0.75,
    "fact": 0.7,
    "feedback": 0.7,
    "context": 0.6,
    "conversation": 0.4,
}

# Composite ranking weights (similarity, importance, recency, feedback)
SIMILARITY_WEIGHT = 0.5
IMPORTANCE_WEIGHT = 0.2
RECENCY_WEIGHT = 0.15
FEEDBACK_WEIGHT = 0.15

LOG_PREFIX = "[context-memory]"
