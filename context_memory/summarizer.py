"""Category-bucketed digest of a user's memories."""

from __future__ import annotations

from datetime import datetime

from context_memory.config import CONFIG, Config
from context_memory.models import MemorySummary
from context_memory.ranking import RelevanceRanker


class Summarizer:
    def __init__(self, ranker: RelevanceRanker, config: Config = CONFIG):
        self.ranker = ranker
        self.config = config

    def summarize(
        self,
        user_id: str,
        *,
        agent_id: str | None = None,
        workspace_id: str | None = None,
        now: datetime,
    ) -> MemorySummary:
        """Bucket the user's most important memories by type. Read-only."""
        with self.ranker.store.lock:
            memories = self.ranker.select(
                user_id=user_id, agent_id=agent_id, workspace_id=workspace_id, now=now
            )
            memories.sort(key=lambda m: m.importance, reverse=True)

            summary = MemorySummary()
            for memory in memories[: self.config.summary_limit]:
                text = memory.display_content
                if memory.type == "preference":
                    summary.user_preferences.append(text)
                elif memory.type in ("context", "conversation"):
                    if len(summary.recent_context) < self.config.recent_context_limit:
                        summary.recent_context.append(text)
                elif memory.type == "fact":
                    summary.key_facts.append(text)
                elif memory.type == "workflow":
                    summary.workflow_state[memory.id] = dict(memory.metadata)
                elif memory.type == "skill":
                    summary.agent_knowledge.append(text)
            return summary
