"""In-memory record table with per-owner indices."""

from __future__ import annotations

import re
import threading
from collections.abc import Callable

from context_memory.config import TYPE_IMPORTANCE
from context_memory.models import Memory

OWNER_FIELDS = ("user_id", "session_id", "agent_id", "workspace_id")

LONG_CONTENT_CHARS = 200
_SALIENT = re.compile(r"important|critical|key|essential", re.IGNORECASE)
_DIGIT = re.compile(r"\d")


def default_importance(content: str, memory_type: str) -> float:
    """Type weight nudged up for long, numeric or explicitly salient content."""
    importance = TYPE_IMPORTANCE.get(memory_type, 0.5)
    if len(content) > LONG_CONTENT_CHARS:
        importance += 0.05
    if _DIGIT.search(content):
        importance += 0.05
    if _SALIENT.search(content):
        importance += 0.1
    return min(importance, 1.0)


class MemoryRecordStore:
    """Owns every record and the owner-id indices that point at them.

    Indices map an owner id to record ids and are only mutated here, so every
    index entry references a live record. ``lock`` serializes all mutations;
    ``user_section`` hands out a per-user lock for operations that must not
    interleave with inserts for that user.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._records: dict[str, Memory] = {}
        self._indices: dict[str, dict[str, list[str]]] = {field: {} for field in OWNER_FIELDS}
        self._user_locks: dict[str, threading.RLock] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._records

    def user_section(self, user_id: str) -> threading.RLock:
        with self.lock:
            return self._user_locks.setdefault(user_id, threading.RLock())

    def drop_user_section(self, user_id: str) -> None:
        """Forget the per-user lock once the user has no records left."""
        with self.lock:
            if not self._indices["user_id"].get(user_id):
                self._user_locks.pop(user_id, None)

    def user_section_count(self) -> int:
        return len(self._user_locks)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add(self, memory: Memory) -> None:
        with self.lock:
            if memory.id in self._records:
                raise KeyError(f"Memory {memory.id} already exists")
            self._records[memory.id] = memory
            for field in OWNER_FIELDS:
                owner = getattr(memory, field)
                if owner:
                    self._indices[field].setdefault(owner, []).append(memory.id)

    def remove(self, memory_id: str) -> Memory | None:
        with self.lock:
            memory = self._records.pop(memory_id, None)
            if memory is None:
                return None
            for field in OWNER_FIELDS:
                owner = getattr(memory, field)
                if not owner:
                    continue
                ids = self._indices[field].get(owner)
                if ids is None:
                    continue
                ids.remove(memory_id)
                if not ids:
                    del self._indices[field][owner]
            return memory

    def remove_where(self, predicate: Callable[[Memory], bool]) -> list[Memory]:
        with self.lock:
            doomed = [m.id for m in self._records.values() if predicate(m)]
            return [m for m in (self.remove(i) for i in doomed) if m is not None]

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, memory_id: str) -> Memory | None:
        return self._records.get(memory_id)

    def all(self) -> list[Memory]:
        with self.lock:
            return list(self._records.values())

    def find_by_prefix(self, prefix: str, limit: int) -> list[Memory]:
        with self.lock:
            matches = []
            for memory_id, memory in self._records.items():
                if memory_id.startswith(prefix):
                    matches.append(memory)
                    if len(matches) >= limit:
                        break
            return matches

    def owned_by(self, **owners: str | None) -> list[Memory]:
        """Records matching every supplied owner id, in insertion order.

        Starts from the smallest relevant index; with no owners given, returns
        every record.
        """
        wanted = {field: value for field, value in owners.items() if value}
        unknown = set(wanted) - set(OWNER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown owner fields: {sorted(unknown)}")

        with self.lock:
            if not wanted:
                return list(self._records.values())
            id_lists = [self._indices[field].get(value, []) for field, value in wanted.items()]
            seed = min(id_lists, key=len)
            return [
                memory
                for memory in (self._records[i] for i in seed)
                if all(getattr(memory, field) == value for field, value in wanted.items())
            ]

    def index_ids(self, field: str, owner: str) -> list[str]:
        with self.lock:
            return list(self._indices[field].get(owner, []))

    def dangling_index_entries(self) -> list[tuple[str, str, str]]:
        """(field, owner, id) for index entries without a live record. Empty when healthy."""
        with self.lock:
            return [
                (field, owner, memory_id)
                for field, index in self._indices.items()
                for owner, ids in index.items()
                for memory_id in ids
                if memory_id not in self._records
            ]
