"""MemoryEngine: the public API over store, ranker, compression and maintenance.

Only the embedding call awaits (in a worker thread); everything else runs to
completion under the store lock, so on a single event loop no caller can
observe a half-applied mutation.
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from collections.abc import Callable, Collection, Iterable
from contextlib import nullcontext
from datetime import datetime, timedelta
from functools import lru_cache
from numbers import Real
from typing import Any

import pyarrow as pa
import pyarrow.compute as pc

from context_memory.compression import CompressionEngine, estimate_tokens
from context_memory.config import (
    CONFIG,
    LOG_PREFIX,
    MEMORY_TYPES,
    SCOPES,
    VALID_SCOPES,
    VALID_SORT_KEYS,
    VALID_TYPES,
    Config,
)
from context_memory.consolidation import ConsolidationEngine
from context_memory.context import ContextAssembler
from context_memory.embeddings import EmbeddingProvider, get_embedding_provider, zero_vector
from context_memory.errors import EmbeddingProviderError, MemoryValidationError
from context_memory.feedback import apply_feedback
from context_memory.models import Memory, MemorySummary, SessionContext
from context_memory.ranking import RankedMemory, RelevanceRanker
from context_memory.store import MemoryRecordStore, default_importance
from context_memory.summarizer import Summarizer

ID_PREFIX_MATCH_LIMIT = 100

# =============================================================================
# Validation
# =============================================================================


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MemoryValidationError(f"{name} is required")
    return value


def _validate_choice(name: str, value: Any, valid: frozenset[str]) -> str:
    if not isinstance(value, str) or value.lower() not in valid:
        raise MemoryValidationError(f"Invalid {name} '{value}'. Valid: {sorted(valid)}")
    return value.lower()


def _validate_choices(name: str, values: Iterable[str] | None, valid: frozenset[str]) -> set[str] | None:
    if values is None:
        return None
    if isinstance(values, str):
        values = [values]
    return {_validate_choice(name, v, valid) for v in values} or None


def _validate_importance(importance: Any) -> float | None:
    if importance is None:
        return None
    if isinstance(importance, bool) or not isinstance(importance, Real) or not 0 <= importance <= 1:
        raise MemoryValidationError(f"importance must be a number in [0, 1], got {importance!r}")
    return float(importance)


def _validate_expiry(expires_in: Any) -> timedelta | None:
    if expires_in is None:
        return None
    if isinstance(expires_in, timedelta):
        delta = expires_in
    elif isinstance(expires_in, Real) and not isinstance(expires_in, bool):
        delta = timedelta(seconds=float(expires_in))
    else:
        raise MemoryValidationError(f"expires_in must be seconds or a timedelta, got {expires_in!r}")
    if delta <= timedelta(0):
        raise MemoryValidationError("expires_in must be positive")
    return delta


def _validate_tags(tags: Any) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str) or not all(isinstance(t, str) for t in tags):
        raise MemoryValidationError("tags must be a list of strings")
    return list(dict.fromkeys(tags))


def _validate_metadata(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise MemoryValidationError("metadata must be a mapping")
    return dict(metadata)


# =============================================================================
# Engine
# =============================================================================


class MemoryEngine:
    """Scoped memory store with ranked retrieval, context packing and maintenance."""

    def __init__(
        self,
        config: Config = CONFIG,
        embedder: EmbeddingProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.embedder = embedder or get_embedding_provider(config)
        if self.embedder.dim != CONFIG.embedding_dim:
            raise ValueError(
                f"Embedding provider dimension {self.embedder.dim} does not match the memory "
                f"schema dimension {CONFIG.embedding_dim}, which is read from the EMBEDDING_DIM "
                "environment variable at import time (Config.embedding_dim on a custom Config "
                "does not change it)"
            )
        self._clock = clock or datetime.now
        self._embed_cached = lru_cache(maxsize=config.embedding_cache_size)(self._embed_sync)

        self.records = MemoryRecordStore()
        self.compression = CompressionEngine(config.compression_cache_key_chars, config.compression_cache_size)
        self.ranker = RelevanceRanker(self.records, config)
        self.contexts = ContextAssembler(self.ranker, config)
        self.consolidation = ConsolidationEngine(self.ranker, config)
        self.summarizer = Summarizer(self.ranker, config)

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Embedding
    # -------------------------------------------------------------------------

    def _embed_sync(self, text: str) -> tuple[float, ...]:
        return tuple(self.embedder.embed(text))

    async def embed(self, text: str) -> list[float]:
        """Embed off the event loop, with an LRU cache in front of the provider."""
        if not text:
            return zero_vector(self.embedder.dim)
        return list(await asyncio.to_thread(self._embed_cached, text))

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def store(
        self,
        content: str,
        *,
        scope: str,
        memory_type: str,
        user_id: str | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
        workspace_id: str | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        importance: float | None = None,
        expires_in: float | timedelta | None = None,
        parent_id: str | None = None,
    ) -> Memory:
        """Embed, compress and index a new memory.

        Either the record and all its index entries exist afterwards, or
        nothing does: validation and embedding happen before anything is
        written.
        """
        content = _require_text("content", content)
        scope = _validate_choice("scope", scope, VALID_SCOPES)
        memory_type = _validate_choice("type", memory_type, VALID_TYPES)
        importance = _validate_importance(importance)
        expiry = _validate_expiry(expires_in)
        tags = _validate_tags(tags)
        metadata = _validate_metadata(metadata)

        embedding = await self.embed(content)
        compressed = self.compression.compress(content)

        now = self.now()
        memory = Memory(
            id=uuid.uuid4().hex,
            content=content,
            compressed_content=compressed or None,
            scope=scope,
            type=memory_type,
            user_id=user_id,
            session_id=session_id,
            agent_id=agent_id,
            workspace_id=workspace_id,
            parent_id=parent_id,
            embedding=embedding,
            importance=importance if importance is not None else default_importance(content, memory_type),
            last_accessed=now,
            created_at=now,
            updated_at=now,
            expires_at=now + expiry if expiry else None,
            tags=tags,
            metadata=metadata,
        )

        with self.records.user_section(user_id) if user_id else nullcontext():
            self.records.add(memory)

        preview = content[:50] + ("..." if len(content) > 50 else "")
        print(f"{LOG_PREFIX} Stored [{scope}/{memory_type}] {memory.id[:8]}: {preview}", file=sys.stderr)
        return memory.model_copy(deep=True)

    async def update_memory(
        self,
        memory_id: str,
        *,
        content: str | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        importance: float | None = None,
    ) -> Memory | None:
        """Replace content (re-embedding it), tags, metadata or importance. None if unknown."""
        if self.records.get(memory_id) is None:
            return None
        if content is not None:
            content = _require_text("content", content)
        importance = _validate_importance(importance)
        new_tags = _validate_tags(tags) if tags is not None else None
        new_metadata = _validate_metadata(metadata) if metadata is not None else None

        embedding = await self.embed(content) if content is not None else None

        with self.records.lock:
            memory = self.records.get(memory_id)
            if memory is None:  # deleted while embedding
                return None
            if content is not None:
                memory.content = content
                memory.embedding = embedding
                memory.compressed_content = self.compression.compress(content) or None
            if new_tags is not None:
                memory.tags = new_tags
            if new_metadata is not None:
                memory.metadata = new_metadata
            if importance is not None:
                memory.importance = importance
            memory.touch(self.now())
            return memory.model_copy(deep=True)

    def get_memory(self, memory_id: str) -> Memory | None:
        memory = self.records.get(memory_id)
        return memory.model_copy(deep=True) if memory else None

    def find_memories(self, id_prefix: str, limit: int = ID_PREFIX_MATCH_LIMIT) -> list[Memory]:
        """Memories whose id starts with ``id_prefix`` (at most ``limit``)."""
        return [m.model_copy(deep=True) for m in self.records.find_by_prefix(id_prefix, limit)]

    def delete_memory(self, memory_id: str) -> bool:
        return self.records.remove(memory_id) is not None

    def clear_user_memories(self, user_id: str) -> int:
        user_id = _require_text("user_id", user_id)
        with self.records.user_section(user_id):
            removed = self.records.remove_where(lambda m: m.user_id == user_id)
        self.records.drop_user_section(user_id)
        return len(removed)

    def clear_session(self, session_id: str) -> None:
        """Drop session-scoped memories for ``session_id`` and its cached context.

        Records in other scopes that merely reference the session are kept.
        """
        session_id = _require_text("session_id", session_id)
        self.records.remove_where(lambda m: m.scope == "session" and m.session_id == session_id)
        self.contexts.drop(session_id)

    def purge_expired(self) -> int:
        now = self.now()
        removed = self.records.remove_where(lambda m: m.is_expired(now))
        if removed:
            print(f"{LOG_PREFIX} Purged {len(removed)} expired memories", file=sys.stderr)
        return len(removed)

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    async def rank(
        self,
        query: str = "",
        *,
        scopes: Collection[str] | None = None,
        types: Collection[str] | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
        workspace_id: str | None = None,
        limit: int | None = None,
        threshold: float | None = None,
        include_expired: bool = False,
        sort_by: str = "relevance",
    ) -> list[RankedMemory]:
        """Search, keeping the composite score and raw similarity of each hit."""
        if query is None or not isinstance(query, str):
            raise MemoryValidationError("query must be a string")
        scopes = _validate_choices("scope", scopes, VALID_SCOPES)
        types = _validate_choices("type", types, VALID_TYPES)
        sort_by = _validate_choice("sort_by", sort_by, VALID_SORT_KEYS)
        if limit is not None:
            if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
                raise MemoryValidationError(f"limit must be positive, got {limit}")
        if threshold is not None and (isinstance(threshold, bool) or not isinstance(threshold, Real)):
            raise MemoryValidationError(f"threshold must be a number, got {threshold!r}")

        apply_threshold = True
        try:
            query_embedding = await self.embed(query)
        except EmbeddingProviderError as e:
            if not self.config.degrade_on_provider_error:
                raise
            print(f"{LOG_PREFIX} Embedding failed, ranking by importance/recency only: {e}", file=sys.stderr)
            query_embedding = zero_vector(self.embedder.dim)
            apply_threshold = False

        return self.ranker.rank(
            query_embedding,
            scopes=scopes,
            types=types,
            user_id=user_id,
            session_id=session_id,
            agent_id=agent_id,
            workspace_id=workspace_id,
            limit=limit,
            threshold=threshold,
            include_expired=include_expired,
            sort_by=sort_by,
            apply_threshold=apply_threshold,
            now=self.now(),
        )

    async def search(self, query: str = "", **options: Any) -> list[Memory]:
        """Ranked memories for ``query``; see ``rank`` for the options.

        Every returned memory has its access count and last-access time bumped.
        """
        return [result.memory for result in await self.rank(query, **options)]

    def get_session_context(
        self,
        session_id: str,
        *,
        user_id: str | None = None,
        agent_id: str | None = None,
        workspace_id: str | None = None,
        max_tokens: int | None = None,
    ) -> SessionContext:
        session_id = _require_text("session_id", session_id)
        if max_tokens is not None and (
            isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens < 0
        ):
            raise MemoryValidationError(f"max_tokens must be a non-negative integer, got {max_tokens!r}")
        return self.contexts.assemble(
            session_id,
            user_id=user_id,
            agent_id=agent_id,
            workspace_id=workspace_id,
            max_tokens=max_tokens,
            now=self.now(),
        )

    def add_conversation_turn(self, session_id: str, role: str, content: str) -> SessionContext:
        session_id = _require_text("session_id", session_id)
        role = _require_text("role", role)
        if not isinstance(content, str):
            raise MemoryValidationError("content must be a string")
        return self.contexts.add_turn(session_id, role, content)

    def get_summarized_memories(
        self,
        user_id: str,
        *,
        agent_id: str | None = None,
        workspace_id: str | None = None,
    ) -> MemorySummary:
        user_id = _require_text("user_id", user_id)
        return self.summarizer.summarize(
            user_id, agent_id=agent_id, workspace_id=workspace_id, now=self.now()
        )

    # -------------------------------------------------------------------------
    # Feedback & maintenance
    # -------------------------------------------------------------------------

    def provide_feedback(self, memory_id: str, helpful: bool) -> None:
        """Record a helpfulness vote. Unknown ids are ignored."""
        if not isinstance(helpful, bool):
            raise MemoryValidationError(f"helpful must be a boolean, got {helpful!r}")
        with self.records.lock:
            memory = self.records.get(memory_id)
            if memory is None:
                return
            apply_feedback(memory, helpful, self.now())

    def consolidate_memories(self, user_id: str) -> dict[str, int]:
        user_id = _require_text("user_id", user_id)
        result = self.consolidation.consolidate(user_id, now=self.now())
        if result["merged"]:
            print(
                f"{LOG_PREFIX} Consolidated {result['merged']} duplicate memories for user {user_id}",
                file=sys.stderr,
            )
        return result

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Counts by scope and type, mean importance and compression totals."""
        records = self.records.all()
        table = pa.table(
            {
                "scope": pa.array([m.scope for m in records], type=pa.string()),
                "type": pa.array([m.type for m in records], type=pa.string()),
                "importance": pa.array([m.importance for m in records], type=pa.float64()),
                "original_tokens": pa.array([estimate_tokens(m.content) for m in records], type=pa.int64()),
                "compressed_tokens": pa.array(
                    [estimate_tokens(m.display_content) for m in records], type=pa.int64()
                ),
            }
        )

        by_scope = dict.fromkeys(SCOPES, 0)
        for entry in pc.value_counts(table["scope"]).to_pylist():
            by_scope[entry["values"]] = entry["counts"]
        by_type = dict.fromkeys(MEMORY_TYPES, 0)
        for entry in pc.value_counts(table["type"]).to_pylist():
            by_type[entry["values"]] = entry["counts"]

        total = table.num_rows
        original_tokens = pc.sum(table["original_tokens"]).as_py() or 0
        compressed_tokens = pc.sum(table["compressed_tokens"]).as_py() or 0
        return {
            "total_memories": total,
            "by_scope": by_scope,
            "by_type": by_type,
            "avg_importance": pc.mean(table["importance"]).as_py() if total else 0.0,
            "compression_stats": {
                "original_tokens": original_tokens,
                "compressed_tokens": compressed_tokens,
                "savings_percent": (
                    (original_tokens - compressed_tokens) / original_tokens * 100 if original_tokens else 0.0
                ),
                "memories_compressed": total,
            },
        }

    def get_health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "memory_count": len(self.records),
            "session_count": len(self.contexts),
        }
