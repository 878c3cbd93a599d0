import asyncio
import logging
from typing import Any, Callable, List, Optional

from .errors import WorkflowCancelledError
from .schemas import DecomposedStep, ExecutionPlan, PlanStep
from .tools import ToolRegistry


logger = logging.getLogger("uvicorn.error")

StepCallback = Callable[[PlanStep], None]


class PlanExecutor:
    """Walks decomposed items in order, running tools and recording thought/action/observation steps.

    A failing tool marks its action step failed and the walk moves on; only
    cancellation stops it early.
    """

    def __init__(
        self,
        tools: ToolRegistry,
        on_step: Optional[StepCallback] = None,
        *,
        tool_timeout_s: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.tools = tools
        self.on_step = on_step
        self.tool_timeout_s = tool_timeout_s
        self.cancel_event = cancel_event

    def _emit(self, step: PlanStep) -> None:
        if self.on_step is not None:
            self.on_step(step)

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise WorkflowCancelledError("Workflow cancelled")

    async def _call_tool(self, name: str, params: dict) -> Any:
        coro = self.tools.execute(name, params)
        if self.tool_timeout_s:
            return await asyncio.wait_for(coro, timeout=self.tool_timeout_s)
        return await coro

    async def run(self, items: List[DecomposedStep], plan: ExecutionPlan) -> List[Any]:
        """Append steps for every item to ``plan`` and return the observation results."""
        observations: List[Any] = []
        for index, item in enumerate(items):
            thought = PlanStep(id=f"step-{index}-thought", type="thought", content=item.reasoning, status="running")
            plan.steps.append(thought)
            self._emit(thought)

            if item.tool:
                self._check_cancelled()
                action = PlanStep(
                    id=f"step-{index}-action",
                    type="action",
                    content=f"Executing {item.tool}",
                    tool=item.tool,
                    tool_params=dict(item.params or {}),
                    status="running",
                )
                plan.steps.append(action)
                self._emit(action)
                try:
                    outcome = await self._call_tool(item.tool, item.params)
                except asyncio.CancelledError:
                    raise
                except asyncio.TimeoutError:
                    logger.warning("Tool %s timed out after %ss", item.tool, self.tool_timeout_s)
                    action.status = "failed"
                    action.result = f"Tool {item.tool} timed out"
                    self._emit(action)
                except Exception as exc:
                    logger.warning("Tool %s failed: %s", item.tool, exc)
                    action.status = "failed"
                    action.result = str(exc)
                    self._emit(action)
                else:
                    raw = outcome.model_dump(exclude_none=True)
                    if not outcome.success:
                        action.status = "failed"
                        action.result = outcome.error or f"Tool {item.tool} reported failure"
                        self._emit(action)
                    else:
                        action.status = "completed"
                        action.result = raw
                        self._emit(action)
                        observation = PlanStep(
                            id=f"step-{index}-obs",
                            type="observation",
                            content="Tool returned data",
                            status="completed",
                            result=raw,
                        )
                        plan.steps.append(observation)
                        self._emit(observation)
                        observations.append(raw)

            thought.status = "completed"
            self._emit(thought)
        return observations
