"""Feedback reliability scoring."""

from __future__ import annotations

import math
from datetime import datetime

from context_memory.models import Feedback, Memory

Z_95 = 1.96


def wilson_lower_bound(helpful: int, not_helpful: int, z: float = Z_95) -> float:
    """Lower bound of the Wilson score interval for the helpful proportion.

    Small samples are pulled toward the middle, so a single vote cannot dominate
    ranking. Returns 0.5 when there are no votes.
    """
    n = helpful + not_helpful
    if n <= 0:
        return 0.5
    p = helpful / n
    z2 = z * z
    score = (p + z2 / (2 * n) - z * math.sqrt((p * (1 - p) + z2 / (4 * n)) / n)) / (1 + z2 / n)
    return min(1.0, max(0.0, score))


def apply_feedback(memory: Memory, helpful: bool, now: datetime) -> Feedback:
    """Record one vote on ``memory`` in place and return its updated feedback."""
    if memory.feedback is None:
        memory.feedback = Feedback()
    feedback = memory.feedback
    if helpful:
        feedback.helpful += 1
    else:
        feedback.not_helpful += 1
    feedback.score = wilson_lower_bound(feedback.helpful, feedback.not_helpful)
    memory.touch(now)
    return feedback
