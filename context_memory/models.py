"""Shared data models for context-memory."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, Field

from context_memory.config import CONFIG

Scope = Literal["user", "session", "agent", "workspace", "global"]
MemoryType = Literal[
    "fact", "preference", "context", "skill", "conversation", "workflow", "decision", "feedback"
]


class Feedback(BaseModel):
    """Helpfulness votes and the reliability score derived from them."""

    helpful: int = 0
    not_helpful: int = 0
    score: float = 0.5


class Memory(LanceModel):
    """Memory record schema.

    The embedding dimension is fixed by CONFIG.embedding_dim at import time, so a
    LanceDB table created from this model stays compatible with the in-memory
    store.
    """

    id: str  # uuid4 hex
    content: str
    compressed_content: str | None = None
    scope: Scope
    type: MemoryType
    user_id: str | None = None
    session_id: str | None = None
    agent_id: str | None = None
    workspace_id: str | None = None
    parent_id: str | None = None
    embedding: Vector(CONFIG.embedding_dim)  # type: ignore[valid-type]
    importance: float = Field(ge=0.0, le=1.0)
    access_count: int = Field(default=0, ge=0)
    last_accessed: datetime
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    feedback: Feedback | None = None

    @property
    def display_content(self) -> str:
        return self.compressed_content or self.content

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def touch(self, now: datetime) -> None:
        """Record a mutation: bump version and updated_at."""
        self.version += 1
        self.updated_at = now


class ConversationTurn(BaseModel):
    role: str
    content: str


class SessionContext(BaseModel):
    """Budget-packed memories for one session. Derived and cached, never persisted."""

    session_id: str
    user_id: str | None = None
    agent_id: str | None = None
    workspace_id: str | None = None
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    relevant_memories: list[Memory] = Field(default_factory=list)
    total_tokens: int = 0
    compressed_tokens: int = 0
    token_savings: float = 0.0


class MemorySummary(BaseModel):
    """Category-bucketed digest of a user's memories."""

    user_preferences: list[str] = Field(default_factory=list)
    recent_context: list[str] = Field(default_factory=list)
    key_facts: list[str] = Field(default_factory=list)
    workflow_state: dict[str, dict[str, Any]] = Field(default_factory=dict)
    agent_knowledge: list[str] = Field(default_factory=list)
