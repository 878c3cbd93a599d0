import pytest

from agentflow.confidence import response_confidence, score_steps
from agentflow.schemas import PlanStep


def steps(*statuses):
    return [PlanStep(id=str(i), type="thought", content="", status=s) for i, s in enumerate(statuses)]


def test_no_steps_scores_zero():
    assert score_steps([]) == 0.0


def test_all_completed_is_clamped_to_one():
    assert score_steps(steps("completed", "completed")) == 1.0


def test_failure_removes_bonus():
    assert score_steps(steps("completed", "failed")) == pytest.approx(0.5)


def test_pending_steps_get_bonus_when_nothing_failed():
    assert score_steps(steps("completed", "pending", "pending", "pending")) == pytest.approx(0.35)


@pytest.mark.parametrize(
    "statuses",
    [("failed",), ("pending",), ("completed",), ("running", "failed", "completed"), ("completed",) * 9 + ("failed",)],
)
def test_score_is_bounded(statuses):
    assert 0.0 <= score_steps(steps(*statuses)) <= 1.0


def test_response_scale():
    assert response_confidence(used_retrieval=True, used_multimodal=True) == 0.95
    assert response_confidence(used_retrieval=False, used_multimodal=True) == 0.9
    assert response_confidence(used_retrieval=False, used_multimodal=False) == 0.75
    assert response_confidence(used_retrieval=True, used_multimodal=False, failed=True) == 0.0
