#!/usr/bin/env python3
"""
Context Memory MCP Server

Exposes the scoped memory engine as MCP tools:
- FastMCP for the tool surface (stdio transport)
- In-process record store with per-owner indices
- Composite ranking (similarity, importance, recency, feedback)
- Token-budgeted session context and category digests
- Wilson-score feedback and near-duplicate consolidation
"""

from __future__ import annotations

import asyncio
import sys
import threading

from mcp.server.fastmcp import FastMCP

from context_memory.config import CONFIG, LOG_PREFIX, Config
from context_memory.engine import MemoryEngine
from context_memory.errors import EmbeddingProviderError, MemoryValidationError
from context_memory.models import Memory

ID_PREFIX_MATCH_LIMIT = 100
FULL_ID_LENGTH = 32

# =============================================================================
# Engine (Lazy Singleton)
# =============================================================================

_lock = threading.RLock()
_engine: MemoryEngine | None = None
_cleanup_task: asyncio.Task | None = None


def get_engine() -> MemoryEngine:
    """Get or create the memory engine (thread-safe)."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:  # Double-check after acquiring lock
                _engine = MemoryEngine(CONFIG)
    return _engine


def _find_memory_by_id(engine: MemoryEngine, memory_id: str) -> tuple[Memory | None, str | None]:
    """Find a memory by full or partial id, with ambiguity detection."""
    if len(memory_id) < FULL_ID_LENGTH:
        results = engine.find_memories(memory_id, limit=ID_PREFIX_MATCH_LIMIT)
        if not results:
            return None, f"Memory {memory_id} not found"
        if len(results) > 1:
            ids = ", ".join(r.id for r in results)
            if len(results) >= ID_PREFIX_MATCH_LIMIT:
                return (
                    None,
                    "Error: Ambiguous ID prefix. Showing first "
                    f"{ID_PREFIX_MATCH_LIMIT} matches: {ids}.... Provide full 32-char ID.",
                )
            return None, f"Error: Ambiguous ID prefix. Matches: {ids}. Provide full 32-char ID."
        return results[0], None

    memory = engine.get_memory(memory_id)
    if memory is None:
        return None, f"Memory {memory_id} not found"
    return memory, None


def _provider_error(e: EmbeddingProviderError) -> str:
    return f"Error: Failed to generate embedding ({e}). The request is safe to retry."


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "context-memory",
    instructions="Scoped agent memory with ranked recall, token-budgeted context and feedback",
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_store(
    content: str,
    scope: str = "user",
    memory_type: str = "fact",
    user_id: str | None = None,
    session_id: str | None = None,
    agent_id: str | None = None,
    workspace_id: str | None = None,
    tags: list[str] | None = None,
    metadata: dict | None = None,
    importance: float | None = None,
    expires_in_seconds: float | None = None,
) -> str:
    """Store a memory with embedding and compressed form.

    Args:
        content: Memory text
        scope: One of user, session, agent, workspace, global
        memory_type: One of fact, preference, context, skill, conversation, workflow, decision, feedback
        user_id: Owning user (set for user scope)
        session_id: Owning session (set for session scope)
        agent_id: Owning agent (set for agent scope)
        workspace_id: Owning workspace (set for workspace scope)
        tags: Optional tags
        metadata: Optional key/value data (workflow state, provenance)
        importance: 0-1; derived from type and content when omitted
        expires_in_seconds: Optional time to live
    """
    try:
        memory = await get_engine().store(
            content,
            scope=scope,
            memory_type=memory_type,
            user_id=user_id,
            session_id=session_id,
            agent_id=agent_id,
            workspace_id=workspace_id,
            tags=tags,
            metadata=metadata,
            importance=importance,
            expires_in=expires_in_seconds,
        )
    except MemoryValidationError as e:
        return f"Error: {e}"
    except EmbeddingProviderError as e:
        return _provider_error(e)

    parts = [f"Stored (ID: {memory.id[:8]}..., {memory.scope}/{memory.type})"]
    parts.append(f"Importance: {memory.importance:.2f}")
    if memory.compressed_content and memory.compressed_content != memory.content:
        parts.append(f"Compressed: {len(memory.content)} → {len(memory.compressed_content)} chars")
    parts.append(f"Tags: {memory.tags}")
    return "\n".join(parts)


@mcp.tool(
    annotations={
        "readOnlyHint": False,  # bumps access counters
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_search(
    query: str,
    scopes: list[str] | None = None,
    types: list[str] | None = None,
    user_id: str | None = None,
    session_id: str | None = None,
    agent_id: str | None = None,
    workspace_id: str | None = None,
    limit: int = CONFIG.default_limit,
    threshold: float = CONFIG.default_threshold,
    include_expired: bool = False,
    sort_by: str = "relevance",
) -> str:
    """Ranked semantic search over memories.

    Args:
        query: Search text
        scopes: Optional scope filter
        types: Optional memory type filter
        user_id: Only memories owned by this user
        session_id: Only memories owned by this session
        agent_id: Only memories owned by this agent
        workspace_id: Only memories owned by this workspace
        limit: Max results (default 10, max 100)
        threshold: Minimum cosine similarity (default 0.5)
        include_expired: Include memories past their expiry
        sort_by: relevance, recency, importance or access_count
    """
    if limit > CONFIG.max_limit:
        return f"Error: limit cannot exceed {CONFIG.max_limit}, got {limit}"

    try:
        results = await get_engine().rank(
            query,
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
        )
    except MemoryValidationError as e:
        return f"Error: {e}"
    except EmbeddingProviderError as e:
        return _provider_error(e)

    if not results:
        return f"No memories found for '{query}'"

    lines = [f"Found {len(results)} memories (sorted by {sort_by}):\n"]
    for i, (memory, score, similarity) in enumerate(results, 1):
        lines.append(f"[{i}] {memory.scope}/{memory.type} (ID: {memory.id[:8]}...)")
        lines.append(f"    {memory.content}")
        if memory.tags:
            lines.append(f"    Tags: {', '.join(memory.tags)}")
        lines.append(f"    Score: {score:.2f} | Similarity: {similarity:.0%} | Accessed: {memory.access_count}x")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_context(
    session_id: str,
    user_id: str | None = None,
    agent_id: str | None = None,
    workspace_id: str | None = None,
    max_tokens: int = CONFIG.max_context_tokens,
) -> str:
    """Assemble the memories for a session that fit a token budget.

    Args:
        session_id: Session to build context for
        user_id: Restrict to this user's memories
        agent_id: Restrict to this agent's memories
        workspace_id: Restrict to this workspace's memories
        max_tokens: Token budget (default 8000)
    """
    try:
        context = get_engine().get_session_context(
            session_id,
            user_id=user_id,
            agent_id=agent_id,
            workspace_id=workspace_id,
            max_tokens=max_tokens,
        )
    except MemoryValidationError as e:
        return f"Error: {e}"

    lines = [
        f"=== Session Context: {session_id} ===",
        f"Memories: {len(context.relevant_memories)}",
        f"Tokens: {context.compressed_tokens} of {context.total_tokens} ({context.token_savings:.1f}% saved)",
        "",
    ]
    for memory in context.relevant_memories:
        lines.append(f"- [{memory.type}] {memory.display_content}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_summary(
    user_id: str,
    agent_id: str | None = None,
    workspace_id: str | None = None,
) -> str:
    """Digest of a user's memories grouped by kind.

    Args:
        user_id: User to summarize
        agent_id: Restrict to this agent's memories
        workspace_id: Restrict to this workspace's memories
    """
    try:
        summary = get_engine().get_summarized_memories(
            user_id, agent_id=agent_id, workspace_id=workspace_id
        )
    except MemoryValidationError as e:
        return f"Error: {e}"

    sections = [
        ("User Preferences", summary.user_preferences),
        ("Recent Context", summary.recent_context),
        ("Key Facts", summary.key_facts),
        ("Agent Knowledge", summary.agent_knowledge),
    ]
    lines = [f"=== Memory Summary: {user_id} ==="]
    for title, items in sections:
        if items:
            lines.append(f"\n{title}:")
            lines.extend(f"  - {item}" for item in items)
    if summary.workflow_state:
        lines.append("\nWorkflow State:")
        for memory_id, state in summary.workflow_state.items():
            lines.append(f"  {memory_id[:8]}...: {state}")
    if len(lines) == 1:
        lines.append("No memories stored yet.")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_feedback(memory_id: str, helpful: bool) -> str:
    """Mark a memory as helpful or not, adjusting its ranking.

    Args:
        memory_id: The ID of the memory (full or partial)
        helpful: True if the memory helped
    """
    engine = get_engine()
    existing, error = _find_memory_by_id(engine, memory_id)
    if error:
        return error
    try:
        engine.provide_feedback(existing.id, helpful)
    except MemoryValidationError as e:
        return f"Error: {e}"
    updated = engine.get_memory(existing.id)
    if updated is None or updated.feedback is None:
        return f"Memory {memory_id} not found"
    return f"Recorded feedback for {existing.id[:8]}... (score {updated.feedback.score:.2f})"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_consolidate(user_id: str) -> str:
    """Merge a user's near-duplicate memories.

    Args:
        user_id: User whose memories to consolidate
    """
    try:
        result = get_engine().consolidate_memories(user_id)
    except MemoryValidationError as e:
        return f"Error: {e}"
    return f"Merged {result['merged']} duplicate memories (deleted {result['deleted']})"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_update(
    memory_id: str,
    content: str | None = None,
    tags: list[str] | None = None,
    metadata: dict | None = None,
    importance: float | None = None,
) -> str:
    """Update an existing memory.

    Args:
        memory_id: The ID of the memory to update (full or partial)
        content: New content (re-embeds if changed)
        tags: New tags (replaces existing)
        metadata: New key/value data (replaces existing)
        importance: New importance (0-1)
    """
    engine = get_engine()
    existing, error = _find_memory_by_id(engine, memory_id)
    if error:
        return error
    try:
        updated = await engine.update_memory(
            existing.id, content=content, tags=tags, metadata=metadata, importance=importance
        )
    except MemoryValidationError as e:
        return f"Error: {e}"
    except EmbeddingProviderError as e:
        return _provider_error(e)
    if updated is None:
        return f"Memory {memory_id} not found"
    return f"Updated memory {updated.id[:8]}... (version {updated.version})"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_delete(memory_id: str) -> str:
    """Delete a memory by ID.

    Args:
        memory_id: The ID of the memory to delete (full or partial)
    """
    engine = get_engine()
    existing, error = _find_memory_by_id(engine, memory_id)
    if error:
        return error
    if not engine.delete_memory(existing.id):
        return f"Memory {memory_id} not found"
    return f"Deleted memory {existing.id[:8]}..."


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_clear_user(user_id: str) -> str:
    """Delete every memory owned by a user.

    Args:
        user_id: User whose memories to delete
    """
    try:
        count = get_engine().clear_user_memories(user_id)
    except MemoryValidationError as e:
        return f"Error: {e}"
    return f"Cleared {count} memories for user {user_id}"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_clear_session(session_id: str) -> str:
    """Delete a session's session-scoped memories and its cached context.

    Args:
        session_id: Session to clear
    """
    try:
        get_engine().clear_session(session_id)
    except MemoryValidationError as e:
        return f"Error: {e}"
    return f"Cleared session {session_id}"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get memory statistics - totals by scope and type, compression savings."""
    stats = get_engine().get_stats()
    if stats["total_memories"] == 0:
        return "No memories stored yet."

    compression = stats["compression_stats"]
    lines = [
        "=== Memory Statistics ===",
        f"Total: {stats['total_memories']} memories",
        f"Average importance: {stats['avg_importance']:.2f}",
        (
            f"Compression: {compression['original_tokens']} → {compression['compressed_tokens']} tokens "
            f"({compression['savings_percent']:.1f}% saved)"
        ),
        "",
        "By Scope:",
    ]
    for scope, count in stats["by_scope"].items():
        if count:
            lines.append(f"  {scope}: {count}")
    lines.append("\nBy Type:")
    for memory_type, count in stats["by_type"].items():
        if count:
            lines.append(f"  {memory_type}: {count}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_health() -> str:
    """Get memory system health status - counts, embedding provider, configuration."""
    engine = get_engine()
    health = engine.get_health()

    lines = [
        "=== Memory Health Status ===",
        f"\nStatus: {health['status']}",
        f"Total memories: {health['memory_count']}",
        f"Cached sessions: {health['session_count']}",
        f"Embedding: {engine.embedder.name} ({engine.embedder.dim}D)",
        f"Embedding cache: LRU (maxsize={CONFIG.embedding_cache_size})",
        f"Context budget: {CONFIG.max_context_tokens} tokens",
    ]

    if _cleanup_task is not None and not _cleanup_task.done():
        lines.append(f"Expiry cleanup: ✓ Active (every {CONFIG.cleanup_interval_hours}h)")
    else:
        lines.append("Expiry cleanup: ✗ Disabled (expired memories are filtered at read time)")

    return "\n".join(lines)


# =============================================================================
# Expiry Cleanup (opt-in via EXPIRY_SWEEP_ENABLED)
# =============================================================================


async def _cleanup_expired_memories():
    """Periodically delete expired memories."""
    while True:
        await asyncio.sleep(CONFIG.cleanup_interval_hours * 3600)
        try:
            get_engine().purge_expired()
        except Exception as e:
            print(f"{LOG_PREFIX} Cleanup error: {e}", file=sys.stderr)


def _start_cleanup_task(config: Config = CONFIG) -> asyncio.Task | None:
    """Schedule the expiry sweep when enabled; must be called inside a running loop."""
    global _cleanup_task
    if not config.expiry_sweep_enabled:
        return None
    _cleanup_task = asyncio.create_task(_cleanup_expired_memories())
    return _cleanup_task


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server, with the expiry sweep if configured."""
    engine = get_engine()
    print(f"{LOG_PREFIX} Server ready (embedding: {engine.embedder.name})", file=sys.stderr)
    _start_cleanup_task()
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
