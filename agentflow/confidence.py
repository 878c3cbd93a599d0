"""Two separate confidence scales.

Plan confidence summarizes how much of an execution plan completed. Response
confidence is the coarser scale attached to assembled agent responses. They are
not interchangeable.
"""

from typing import Iterable

from .schemas import PlanStep


SIMPLE_PLAN_CONFIDENCE = 0.8
NO_FAILURE_BONUS = 0.1


def score_steps(steps: Iterable[PlanStep]) -> float:
    steps = list(steps)
    total = len(steps)
    if total == 0:
        return 0.0
    completed = sum(1 for step in steps if step.status == "completed")
    score = completed / total
    if not any(step.status == "failed" for step in steps):
        score += NO_FAILURE_BONUS
    return max(0.0, min(score, 1.0))


def response_confidence(*, used_retrieval: bool, used_multimodal: bool, failed: bool = False) -> float:
    if failed:
        return 0.0
    if used_retrieval:
        return 0.95
    if used_multimodal:
        return 0.9
    return 0.75
