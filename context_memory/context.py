"""Budget-constrained packing of session memories."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import datetime

from context_memory.compression import estimate_tokens
from context_memory.config import CONFIG, Config
from context_memory.models import ConversationTurn, Memory, SessionContext
from context_memory.ranking import RelevanceRanker


def pack_memories(memories: Sequence[Memory], max_tokens: int) -> tuple[list[Memory], int]:
    """Take memories in order until the next one would overflow ``max_tokens``.

    Memories are never split; packing stops at the first one that does not fit.
    Returns the included memories and the tokens they use.
    """
    included: list[Memory] = []
    used = 0
    for memory in memories:
        tokens = estimate_tokens(memory.display_content)
        if used + tokens > max_tokens:
            break
        included.append(memory)
        used += tokens
    return included, used


def token_savings(original_tokens: int, compressed_tokens: int) -> float:
    if original_tokens == 0:
        return 0.0
    return (original_tokens - compressed_tokens) / original_tokens * 100


class ContextAssembler:
    """Builds and caches one SessionContext per session id (last writer wins)."""

    def __init__(self, ranker: RelevanceRanker, config: Config = CONFIG):
        self.ranker = ranker
        self.config = config
        self._contexts: dict[str, SessionContext] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._contexts)

    def get(self, session_id: str) -> SessionContext | None:
        return self._contexts.get(session_id)

    def drop(self, session_id: str) -> None:
        with self._lock:
            self._contexts.pop(session_id, None)

    def assemble(
        self,
        session_id: str,
        *,
        user_id: str | None = None,
        agent_id: str | None = None,
        workspace_id: str | None = None,
        max_tokens: int | None = None,
        now: datetime,
    ) -> SessionContext:
        max_tokens = self.config.max_context_tokens if max_tokens is None else max_tokens

        with self.ranker.store.lock:
            candidates = [
                m.model_copy(deep=True)
                for m in self.ranker.select(
                    user_id=user_id,
                    session_id=session_id,
                    agent_id=agent_id,
                    workspace_id=workspace_id,
                    now=now,
                )
            ]
        candidates.sort(key=lambda m: m.importance, reverse=True)

        original_tokens = sum(estimate_tokens(m.content) for m in candidates)
        included, compressed_tokens = pack_memories(candidates, max_tokens)

        with self._lock:
            previous = self._contexts.get(session_id)
            context = SessionContext(
                session_id=session_id,
                user_id=user_id,
                agent_id=agent_id,
                workspace_id=workspace_id,
                conversation_history=list(previous.conversation_history) if previous else [],
                relevant_memories=included,
                total_tokens=original_tokens,
                compressed_tokens=compressed_tokens,
                token_savings=token_savings(original_tokens, compressed_tokens),
            )
            self._contexts[session_id] = context
        return context

    def add_turn(self, session_id: str, role: str, content: str) -> SessionContext:
        with self._lock:
            context = self._contexts.get(session_id)
            if context is None:
                context = SessionContext(session_id=session_id)
                self._contexts[session_id] = context
            context.conversation_history.append(ConversationTurn(role=role, content=content))
            return context
