"""Near-duplicate detection and merging."""

from __future__ import annotations

from datetime import datetime

from context_memory.config import CONFIG, Config
from context_memory.embeddings import cosine_similarity
from context_memory.models import Memory
from context_memory.ranking import RelevanceRanker


def merge_into(primary: Memory, secondary: Memory, now: datetime) -> None:
    """Fold ``secondary`` into ``primary`` in place. Caller deletes ``secondary``."""
    primary.access_count += secondary.access_count
    for key, value in secondary.metadata.items():
        primary.metadata.setdefault(key, value)
    primary.touch(now)


class ConsolidationEngine:
    """Pairwise scan of one user's memories, merging pairs above the similarity threshold.

    O(n^2) in the user's memory count, which is fine for hundreds of records.
    """

    def __init__(self, ranker: RelevanceRanker, config: Config = CONFIG):
        self.ranker = ranker
        self.config = config

    def consolidate(self, user_id: str, *, now: datetime) -> dict[str, int]:
        store = self.ranker.store
        threshold = self.config.consolidation_threshold

        with store.user_section(user_id), store.lock:
            memories = self.ranker.select(user_id=user_id, now=now)
            merged: set[str] = set()

            for i, first in enumerate(memories):
                if first.id in merged:
                    continue
                for second in memories[i + 1 :]:
                    if second.id in merged:
                        continue
                    if cosine_similarity(first.embedding, second.embedding) <= threshold:
                        continue

                    # Ties keep the earlier record
                    if second.importance > first.importance:
                        primary, secondary = second, first
                    else:
                        primary, secondary = first, second
                    merge_into(primary, secondary, now)
                    merged.add(secondary.id)
                    if secondary is first:
                        break

            deleted = sum(1 for memory_id in merged if store.remove(memory_id) is not None)

        return {"merged": len(merged), "deleted": deleted}
