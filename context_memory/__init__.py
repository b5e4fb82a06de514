"""Scoped memory and context-assembly engine for agent conversations."""

from context_memory.config import CONFIG, Config
from context_memory.engine import MemoryEngine
from context_memory.errors import EmbeddingProviderError, MemoryEngineError, MemoryValidationError
from context_memory.models import Feedback, Memory, MemorySummary, SessionContext

__version__ = "0.1.0"

__all__ = [
    "CONFIG",
    "Config",
    "EmbeddingProviderError",
    "Feedback",
    "Memory",
    "MemoryEngine",
    "MemoryEngineError",
    "MemorySummary",
    "MemoryValidationError",
    "SessionContext",
]
