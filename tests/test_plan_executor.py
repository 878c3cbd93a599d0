import asyncio

import pytest

from agentflow.errors import WorkflowCancelledError
from agentflow.plan_executor import PlanExecutor
from agentflow.schemas import DecomposedStep, ExecutionPlan
from tests.fakes import make_registry


@pytest.mark.asyncio
async def test_item_without_tool_is_just_a_thought():
    plan = ExecutionPlan(original_query="q")
    observations = await PlanExecutor(make_registry()).run([DecomposedStep(reasoning="just think")], plan)
    assert observations == []
    assert [(s.type, s.status) for s in plan.steps] == [("thought", "completed")]
    assert plan.steps[0].tool is None


@pytest.mark.asyncio
async def test_reported_failure_marks_action_failed_without_observation():
    plan = ExecutionPlan(original_query="q")
    await PlanExecutor(make_registry()).run([DecomposedStep(reasoning="ask", tool="refused")], plan)
    assert [s.type for s in plan.steps] == ["thought", "action"]
    assert plan.steps[1].status == "failed"
    assert plan.steps[1].result == "lookup refused"


@pytest.mark.asyncio
async def test_tool_timeout_marks_action_failed():
    plan = ExecutionPlan(original_query="q")
    executor = PlanExecutor(make_registry(slow_seconds=0.5), tool_timeout_s=0.01)
    await executor.run(
        [DecomposedStep(reasoning="wait", tool="slow"), DecomposedStep(reasoning="next", tool="lookup_x", params={"user_id": 7})],
        plan,
    )
    slow_action = next(s for s in plan.steps if s.id == "step-0-action")
    assert slow_action.status == "failed"
    assert "timed out" in slow_action.result
    # Numeric ids from model output are accepted for string params.
    assert next(s for s in plan.steps if s.id == "step-1-obs").result["data"]["user_id"] == "7"


@pytest.mark.asyncio
async def test_results_are_only_set_once_resolved():
    snapshots = []
    plan = ExecutionPlan(original_query="q")
    executor = PlanExecutor(
        make_registry(),
        on_step=lambda step: snapshots.append((step.id, step.status, step.result)),
    )
    await executor.run([DecomposedStep(reasoning="look", tool="lookup_x", params={"user_id": "u"})], plan)
    for step_id, status, result in snapshots:
        if status in ("pending", "running"):
            assert result is None, step_id


@pytest.mark.asyncio
async def test_cancellation_checked_before_tool_call():
    cancel = asyncio.Event()
    cancel.set()
    plan = ExecutionPlan(original_query="q")
    executor = PlanExecutor(make_registry(), cancel_event=cancel)
    with pytest.raises(WorkflowCancelledError):
        await executor.run([DecomposedStep(reasoning="look", tool="lookup_x", params={"user_id": "u"})], plan)
    assert not any(s.type == "action" for s in plan.steps)
