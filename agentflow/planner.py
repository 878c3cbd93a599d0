import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from . import agents
from .confidence import SIMPLE_PLAN_CONFIDENCE, score_steps
from .llm import GenerationOptions
from .model_policy import ModelInvocationPolicy
from .plan_executor import PlanExecutor, StepCallback
from .schemas import Complexity, DecomposedStep, ExecutionPlan, PlanStep
from .tools import ToolRegistry


logger = logging.getLogger("uvicorn.error")

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
HISTORY_TURNS = 3
TOOL_RESULTS_MAX_CHARS = 500

CLASSIFY_OPTIONS = GenerationOptions(temperature=0.0, max_tokens=10)
DECOMPOSE_OPTIONS = GenerationOptions(temperature=0.1, max_tokens=1000)
RESPONSE_OPTIONS = GenerationOptions(temperature=0.7, max_tokens=1024)


@dataclass
class PlanContext:
    user_id: str
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    retrieved_docs: str = ""


def _fallback_decomposition() -> List[DecomposedStep]:
    return [DecomposedStep(reasoning="Direct response", tool=None, params={})]


def parse_decomposition(raw: str) -> List[DecomposedStep]:
    """Parse ``{"steps": [...]}`` out of model text; raises ValueError on anything unusable."""
    match = _JSON_OBJECT_RE.search(raw or "")
    parsed = json.loads(match.group(0) if match else raw)
    if not isinstance(parsed, dict):
        raise ValueError("decomposition is not a JSON object")
    steps = parsed.get("steps") or []
    if not isinstance(steps, list):
        raise ValueError("steps is not a list")
    items: List[DecomposedStep] = []
    for entry in steps:
        if not isinstance(entry, dict):
            raise ValueError("step entry is not an object")
        tool = entry.get("tool")
        if isinstance(tool, str) and tool.strip().lower() in ("", "null", "none"):
            tool = None
        params = entry.get("params")
        try:
            items.append(
                DecomposedStep(
                    reasoning=str(entry.get("reasoning") or ""),
                    tool=tool,
                    params=params if isinstance(params, dict) else {},
                )
            )
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc
    return items


def _history_messages(history: List[Dict[str, Any]], turns: int) -> List[Dict[str, Any]]:
    recent = history[-turns:] if turns > 0 else []
    return [
        {"role": turn.get("role"), "content": turn.get("content")}
        for turn in recent
        if isinstance(turn, dict) and turn.get("role") in ("user", "assistant") and turn.get("content")
    ]


class PlanBuilder:
    """Classifies a query, then either answers directly or decomposes it into tool-backed steps."""

    def __init__(
        self,
        policy: ModelInvocationPolicy,
        tools: ToolRegistry,
        *,
        classification_tier: str = "classification",
        planning_tier: str = "planning",
        tool_timeout_s: Optional[float] = None,
    ) -> None:
        self.policy = policy
        self.tools = tools
        self.classification_tier = classification_tier
        self.planning_tier = planning_tier
        self.tool_timeout_s = tool_timeout_s

    async def classify_complexity(
        self,
        query: str,
        context: PlanContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Complexity:
        messages = [{"role": "user", "content": agents.COMPLEXITY_PROMPT.format(query=query)}]
        result = await self.policy.invoke_tier(
            self.classification_tier, messages, CLASSIFY_OPTIONS, cancel_event=cancel_event
        )
        if not result.ok:
            logger.info("Complexity check failed (%s); defaulting to simple", result.outcome)
            return "simple"
        answer = (result.text or "").strip().lower()
        if "complex" in answer and "simple" not in answer:
            return "complex"
        return "simple"

    async def decompose(
        self,
        query: str,
        context: PlanContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[DecomposedStep]:
        prompt = agents.DECOMPOSE_PROMPT.format(tools=self.tools.describe(), user_id=context.user_id, query=query)
        result = await self.policy.invoke_tier(
            self.planning_tier,
            [{"role": "user", "content": prompt}],
            DECOMPOSE_OPTIONS,
            cancel_event=cancel_event,
        )
        if not result.ok:
            return _fallback_decomposition()
        try:
            return parse_decomposition(result.text or "")
        except ValueError as exc:
            logger.warning("Decomposition unparseable, using direct response: %s", exc)
            return _fallback_decomposition()

    async def direct_response(
        self,
        query: str,
        context: PlanContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        messages = [
            {"role": "system", "content": agents.ASSISTANT_PREAMBLE + (context.retrieved_docs or "")},
            *_history_messages(context.conversation_history, HISTORY_TURNS),
            {"role": "user", "content": query},
        ]
        return await self.policy.generate(
            self.planning_tier,
            messages,
            RESPONSE_OPTIONS,
            fallback=agents.DIRECT_RESPONSE_FALLBACK,
            cancel_event=cancel_event,
        )

    async def synthesize(
        self,
        query: str,
        steps: List[PlanStep],
        tool_results: List[Any],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        transcript = "\n".join(f"- {step.type}: {step.content}" for step in steps)
        results_text = json.dumps(tool_results, default=str)[:TOOL_RESULTS_MAX_CHARS]
        prompt = agents.SYNTHESIS_PROMPT.format(query=query, steps=transcript, tool_results=results_text)
        return await self.policy.generate(
            self.planning_tier,
            [{"role": "user", "content": prompt}],
            RESPONSE_OPTIONS,
            fallback=agents.SYNTHESIS_FALLBACK,
            cancel_event=cancel_event,
        )

    async def build(
        self,
        query: str,
        context: PlanContext,
        on_step: Optional[StepCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionPlan:
        plan = ExecutionPlan(original_query=query)
        logger.info("Creating plan for: %r", query[:80])

        def emit(step: PlanStep) -> None:
            if on_step is not None:
                on_step(step)

        complexity = await self.classify_complexity(query, context, cancel_event)
        if complexity == "simple":
            step = PlanStep(id="1", type="final", content="Direct response to simple query", status="pending")
            plan.steps.append(step)
            emit(step)
            response = await self.direct_response(query, context, cancel_event)
            step.status = "completed"
            step.result = response
            emit(step)
            plan.final_answer = response
            plan.confidence = SIMPLE_PLAN_CONFIDENCE
            return plan

        items = await self.decompose(query, context, cancel_event)
        logger.info("Decomposed into %s steps", len(items))
        executor = PlanExecutor(
            self.tools,
            on_step=on_step,
            tool_timeout_s=self.tool_timeout_s,
            cancel_event=cancel_event,
        )
        observations = await executor.run(items, plan)

        final_step = PlanStep(id="final", type="final", content="Synthesizing final response", status="running")
        plan.steps.append(final_step)
        emit(final_step)
        answer = await self.synthesize(query, plan.steps, observations, cancel_event)
        final_step.status = "completed"
        final_step.result = answer
        emit(final_step)
        plan.final_answer = answer
        plan.confidence = score_steps(plan.steps)
        return plan
