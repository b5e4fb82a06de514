"""Composite relevance scoring and filtered retrieval over the record store."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from datetime import datetime
from typing import NamedTuple

from context_memory.config import (
    CONFIG,
    FEEDBACK_WEIGHT,
    IMPORTANCE_WEIGHT,
    RECENCY_WEIGHT,
    SIMILARITY_WEIGHT,
    Config,
)
from context_memory.embeddings import cosine_similarity
from context_memory.models import Memory
from context_memory.store import MemoryRecordStore

NEUTRAL_FEEDBACK = 0.5


class RankedMemory(NamedTuple):
    memory: Memory
    score: float
    similarity: float


def recency_boost(
    last_accessed: datetime, now: datetime, window_hours: float = CONFIG.recency_window_hours
) -> float:
    """Linear decay from 1 at access time to 0 after ``window_hours``."""
    hours = (now - last_accessed).total_seconds() / 3600
    return min(1.0, max(0.0, 1 - hours / window_hours))


def feedback_boost(memory: Memory) -> float:
    if memory.feedback is None:
        return NEUTRAL_FEEDBACK
    return (memory.feedback.score + 1) / 2


def composite_score(similarity: float, importance: float, recency: float, feedback: float) -> float:
    score = (
        SIMILARITY_WEIGHT * similarity
        + IMPORTANCE_WEIGHT * importance
        + RECENCY_WEIGHT * recency
        + FEEDBACK_WEIGHT * feedback
    )
    return min(1.0, max(0.0, score))


def _sort_key(sort_by: str):
    if sort_by == "recency":
        return lambda r: r.memory.last_accessed
    if sort_by == "importance":
        return lambda r: r.memory.importance
    if sort_by == "access_count":
        return lambda r: r.memory.access_count
    return lambda r: r.score


class RelevanceRanker:
    """Filters, scores and orders store records for a query embedding."""

    def __init__(self, store: MemoryRecordStore, config: Config = CONFIG):
        self.store = store
        self.config = config

    def select(
        self,
        *,
        scopes: Collection[str] | None = None,
        types: Collection[str] | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
        workspace_id: str | None = None,
        include_expired: bool = False,
        now: datetime,
    ) -> list[Memory]:
        """Live records passing the scope, type, owner and expiry filters. No side effects."""
        candidates = self.store.owned_by(
            user_id=user_id, session_id=session_id, agent_id=agent_id, workspace_id=workspace_id
        )
        return [
            m
            for m in candidates
            if (not scopes or m.scope in scopes)
            and (not types or m.type in types)
            and (include_expired or not m.is_expired(now))
        ]

    def rank(
        self,
        query_embedding: Sequence[float],
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
        apply_threshold: bool = True,
        now: datetime,
    ) -> list[RankedMemory]:
        """Score and order matching records, then reinforce the ones returned.

        Returned memories are copies taken after their access counters were
        bumped; mutating them does not touch the store.
        """
        limit = self.config.default_limit if limit is None else limit
        threshold = self.config.default_threshold if threshold is None else threshold

        with self.store.lock:
            ranked = []
            for memory in self.select(
                scopes=scopes,
                types=types,
                user_id=user_id,
                session_id=session_id,
                agent_id=agent_id,
                workspace_id=workspace_id,
                include_expired=include_expired,
                now=now,
            ):
                similarity = cosine_similarity(query_embedding, memory.embedding)
                if apply_threshold and similarity < threshold:
                    continue
                score = composite_score(
                    similarity,
                    memory.importance,
                    recency_boost(memory.last_accessed, now, self.config.recency_window_hours),
                    feedback_boost(memory),
                )
                ranked.append(RankedMemory(memory, score, similarity))

            ranked.sort(key=_sort_key(sort_by), reverse=True)
            top = ranked[:limit]

            for result in top:
                result.memory.access_count += 1
                result.memory.last_accessed = now

            return [r._replace(memory=r.memory.model_copy(deep=True)) for r in top]
