"""Lossy text compression for token budgeting."""

from __future__ import annotations

import math
import re
import threading
from collections import OrderedDict

from context_memory.config import CONFIG

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_CAPITALIZED = re.compile(r"[A-Z]")

SHORT_SENTENCE_WORDS = 5
LONG_WORD_CHARS = 5
MAX_SENTENCES = 3


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


def _reduce_sentence(sentence: str) -> str:
    words = sentence.split()
    if len(words) <= SHORT_SENTENCE_WORDS:
        return sentence
    last = len(words) - 1
    kept = [
        w
        for i, w in enumerate(words)
        if i == 0 or i == last or len(w) > LONG_WORD_CHARS or _CAPITALIZED.match(w)
    ]
    return " ".join(kept)


def compress_text(content: str) -> str:
    """Keep the first three sentences, stripping short filler words from long ones.

    Never returns something with a larger token estimate than the input.
    """
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(content) if s.strip()]
    compressed = ". ".join(_reduce_sentence(s) for s in sentences[:MAX_SENTENCES])
    # Re-joining pieces like "a.b" as "a. b" can grow the text by a few characters
    if estimate_tokens(compressed) > estimate_tokens(content):
        return content
    return compressed


class CompressionEngine:
    """compress_text with an LRU cache keyed on the leading characters of the input."""

    def __init__(
        self,
        key_chars: int = CONFIG.compression_cache_key_chars,
        maxsize: int = CONFIG.compression_cache_size,
    ):
        self.key_chars = key_chars
        self.maxsize = maxsize
        self._cache: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def compress(self, content: str) -> str:
        if not content:
            return ""
        key = content[: self.key_chars]
        with self._lock:
            cached = self._cache.get(key)
            # Inputs sharing a prefix share an entry; a shorter one must not grow
            if cached is not None and estimate_tokens(cached) <= estimate_tokens(content):
                self._cache.move_to_end(key)
                self.hits += 1
                return cached
            self.misses += 1
        compressed = compress_text(content)
        with self._lock:
            self._cache.setdefault(key, compressed)
            self._cache.move_to_end(key)
            while len(self._cache) > self.maxsize:
                self._cache.popitem(last=False)
        return compressed

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = self.misses = 0

    def __len__(self) -> int:
        return len(self._cache)
