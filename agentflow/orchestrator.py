import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import (
    DuplicateWorkflowError,
    MultimodalPreprocessingError,
    WorkflowAlreadyRunningError,
    WorkflowCancelledError,
    WorkflowDeadlineError,
    WorkflowFatalError,
    WorkflowNotFoundError,
)
from .events import complete_event, error_event, progress_event, retrieval_event, status_event, step_event
from .planner import PlanBuilder, PlanContext
from .retrieval import Retriever
from .schemas import Event, PlanStep, Workflow, WorkflowContext


logger = logging.getLogger("uvicorn.error")

MULTIMODAL_MESSAGE_TYPES = ("image", "audio", "video")

Emit = Callable[[Event], Awaitable[None]]


class HistoryStore(Protocol):
    async def get_history(self, requester_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        ...


class Preprocessor(Protocol):
    async def preprocess(self, metadata: Dict[str, Any], content: str) -> str:
        ...


@dataclass
class WorkflowEntry:
    workflow: Workflow
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started: bool = False
    running: bool = False


class WorkflowStore:
    """Live workflows keyed by id.

    Terminal ones expire ``ttl_s`` seconds after finishing. Workflows whose
    pipeline never began (not executed, or a run nobody iterated) expire
    ``ttl_s`` seconds after creation.
    """

    def __init__(self, ttl_s: float = 300.0, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: Dict[str, WorkflowEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, workflow_id: object) -> bool:
        return self.get(str(workflow_id)) is not None

    def add(self, workflow: Workflow) -> WorkflowEntry:
        if self.get(workflow.id) is not None:
            raise DuplicateWorkflowError(workflow.id)
        entry = WorkflowEntry(workflow=workflow)
        self._entries[workflow.id] = entry
        return entry

    def is_expired(self, entry: WorkflowEntry, now: Optional[float] = None) -> bool:
        workflow = entry.workflow
        now = self.clock() if now is None else now
        if workflow.finished_at is not None:
            return now - workflow.finished_at >= self.ttl_s
        if not entry.running:
            return now - workflow.created_at >= self.ttl_s
        return False

    def get(self, workflow_id: str) -> Optional[WorkflowEntry]:
        entry = self._entries.get(workflow_id)
        if entry is None:
            return None
        if self.is_expired(entry):
            self.delete_if_present(workflow_id)
            return None
        return entry

    def delete_if_present(self, workflow_id: str) -> bool:
        return self._entries.pop(workflow_id, None) is not None

    def sweep(self) -> int:
        now = self.clock()
        expired = [wid for wid, entry in self._entries.items() if self.is_expired(entry, now)]
        for wid in expired:
            self.delete_if_present(wid)
        return len(expired)


_END = object()


class WorkflowRun:
    """Async iterator over one workflow's events.

    The pipeline runs as a producer task feeding a one-slot queue. Each emit
    waits until the consumer has taken the event, so a stalled consumer holds
    the pipeline at its next emission. Closing the iterator early cancels the
    workflow.
    """

    def __init__(
        self,
        workflow_id: str,
        produce: Callable[[Emit], Awaitable[None]],
        cancel_event: asyncio.Event,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self.workflow_id = workflow_id
        self._produce = produce
        self._cancel_event = cancel_event
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task: Optional[asyncio.Task] = None
        self._error: Optional[BaseException] = None
        self._finished = False

    def __aiter__(self) -> "WorkflowRun":
        return self

    async def _emit(self, event: Event) -> None:
        await self._queue.put(event)
        await self._queue.join()

    async def _run(self) -> None:
        try:
            await self._produce(self._emit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error = exc
        await self._queue.put(_END)

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        item = await self._queue.get()
        self._queue.task_done()
        if item is _END:
            self._finished = True
            await self._task
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._cancel_event.set()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._on_close is not None:
            self._on_close()

    async def collect(self) -> List[Event]:
        """Drain the run into a list."""
        events: List[Event] = []
        try:
            async for event in self:
                events.append(event)
        finally:
            await self.aclose()
        return events


async def _own_timeouts(awaitable: Awaitable[Any]) -> Any:
    # A collaborator's own timeout must not read as the workflow deadline.
    try:
        return await awaitable
    except (asyncio.TimeoutError, TimeoutError) as exc:
        raise WorkflowFatalError(str(exc) or "Operation timed out") from exc


class StageBudget:
    """Time budget for a workflow's work stages.

    Only retrieval, history lookup and plan building draw on it; time spent
    waiting for the consumer to take an event does not count.
    """

    def __init__(self, deadline_s: Optional[float]) -> None:
        self.deadline_s = deadline_s
        self.remaining = deadline_s

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        if self.deadline_s is None or self.remaining is None:
            return await awaitable
        started = time.monotonic()
        try:
            return await asyncio.wait_for(_own_timeouts(awaitable), timeout=max(self.remaining, 0.0))
        except asyncio.TimeoutError as exc:
            raise WorkflowDeadlineError(self.deadline_s) from exc
        finally:
            self.remaining -= time.monotonic() - started


class WorkflowOrchestrator:
    def __init__(
        self,
        planner: PlanBuilder,
        retriever: Retriever,
        history: HistoryStore,
        multimodal: Optional[Preprocessor] = None,
        *,
        workflow_ttl_s: float = 300.0,
        retrieval_top_k: int = 3,
        history_limit: int = 5,
        deadline_s: Optional[float] = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.planner = planner
        self.retriever = retriever
        self.history = history
        self.multimodal = multimodal
        self.retrieval_top_k = retrieval_top_k
        self.history_limit = history_limit
        self.deadline_s = deadline_s
        self.store = WorkflowStore(ttl_s=workflow_ttl_s, clock=clock)

    async def initialize(
        self,
        workflow_id: str,
        requester_id: str,
        channel: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        if self.store.get(workflow_id) is not None:
            raise DuplicateWorkflowError(workflow_id)
        metadata = metadata or {}
        workflow = Workflow(
            id=workflow_id,
            requester_id=requester_id,
            channel=channel,
            context=WorkflowContext(original_text=content),
        )
        has_file = bool(metadata.get("file_id") or metadata.get("file_url"))
        if has_file and metadata.get("message_type") in MULTIMODAL_MESSAGE_TYPES:
            workflow.transition("analyzing")
            await self._preprocess(workflow, metadata, content)
        else:
            workflow.context.processed_text = content
        self.store.add(workflow)
        logger.info("Workflow %s initialized (%s, %s)", workflow_id, channel, workflow.status)
        return workflow

    async def _preprocess(self, workflow: Workflow, metadata: Dict[str, Any], content: str) -> None:
        try:
            if self.multimodal is None:
                raise MultimodalPreprocessingError("no multimodal preprocessor configured")
            processed = await self.multimodal.preprocess(metadata, content)
        except Exception as exc:
            logger.warning("Multimodal processing failed for %s: %s", workflow.id, exc)
            workflow.errors.append(f"Multimodal processing failed: {exc}")
            workflow.context.processed_text = content
            return
        workflow.context.multimodal_data = processed
        workflow.context.processed_text = processed

    def execute(self, workflow_id: str) -> WorkflowRun:
        entry = self.store.get(workflow_id)
        if entry is None:
            raise WorkflowNotFoundError(workflow_id)
        if entry.started:
            raise WorkflowAlreadyRunningError(workflow_id)
        entry.started = True

        async def produce(emit: Emit) -> None:
            await self._pipeline(entry, emit)

        return WorkflowRun(
            workflow_id,
            produce,
            entry.cancel_event,
            on_close=lambda: self._abandon(entry),
        )

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        entry = self.store.get(workflow_id)
        return entry.workflow if entry is not None else None

    def cancel(self, workflow_id: str) -> bool:
        entry = self.store.get(workflow_id)
        if entry is None:
            return False
        entry.cancel_event.set()
        workflow = entry.workflow
        if not workflow.is_terminal:
            workflow.errors.append("Cancelled by user")
            workflow.transition("failed")
            logger.info("Workflow %s cancelled", workflow_id)
        return True

    def sweep(self) -> int:
        removed = self.store.sweep()
        if removed:
            logger.info("Evicted %s expired workflows", removed)
        return removed

    async def run_sweeper(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            self.sweep()

    def _abandon(self, entry: WorkflowEntry) -> None:
        workflow = entry.workflow
        if not workflow.is_terminal:
            workflow.errors.append("Workflow cancelled")
            workflow.transition("failed")

    def _checkpoint(self, entry: WorkflowEntry) -> None:
        if entry.cancel_event.is_set() or entry.workflow.is_terminal:
            raise WorkflowCancelledError(
                entry.workflow.errors[-1] if entry.workflow.errors else "Workflow cancelled"
            )

    def _fail(self, workflow: Workflow, message: str) -> None:
        if workflow.is_terminal:
            return
        workflow.errors.append(message)
        workflow.transition("failed")

    async def _report_failure(self, workflow: Workflow, message: str, emit: Emit) -> None:
        if workflow.status == "completed":
            logger.warning("Workflow %s already completed; not reporting: %s", workflow.id, message)
            return
        self._fail(workflow, message)
        await emit(error_event(message))

    async def _pipeline(self, entry: WorkflowEntry, emit: Emit) -> None:
        workflow = entry.workflow
        entry.running = True
        try:
            await self._stages(entry, emit, StageBudget(self.deadline_s or None))
        except asyncio.CancelledError:
            self._abandon(entry)
            raise
        except WorkflowDeadlineError as exc:
            logger.warning("Workflow %s: %s", workflow.id, exc)
            await self._report_failure(workflow, str(exc), emit)
        except WorkflowCancelledError as exc:
            await self._report_failure(workflow, str(exc), emit)
        except Exception as exc:
            fatal = WorkflowFatalError(str(exc) or exc.__class__.__name__)
            logger.exception("Workflow %s failed", workflow.id)
            await self._report_failure(workflow, str(fatal), emit)
        finally:
            workflow.last_update = time.time()
            if workflow.finished_at is None and workflow.is_terminal:
                workflow.finished_at = workflow.last_update

    async def _stages(self, entry: WorkflowEntry, emit: Emit, budget: StageBudget) -> None:
        workflow = entry.workflow
        text = workflow.context.processed_text or workflow.context.original_text

        self._checkpoint(entry)
        workflow.transition("retrieving")
        await emit(status_event("retrieving", "Searching knowledge base..."))
        docs = await budget.run(self.retriever.retrieve(text, top_k=self.retrieval_top_k))
        self._checkpoint(entry)
        workflow.context.retrieved_docs = list(docs)
        if docs:
            await emit(retrieval_event([doc.source for doc in docs]))

        self._checkpoint(entry)
        workflow.transition("planning")
        await emit(status_event("planning", "Planning approach..."))
        history = await budget.run(self.history.get_history(workflow.requester_id, self.history_limit))
        self._checkpoint(entry)

        step_events: List[Event] = []

        def on_step(step: PlanStep) -> None:
            step_events.append(step_event(step))

        context = PlanContext(
            user_id=workflow.requester_id,
            conversation_history=history,
            retrieved_docs="\n\n".join(doc.text for doc in docs),
        )
        plan = await budget.run(
            self.planner.build(text, context, on_step=on_step, cancel_event=entry.cancel_event)
        )
        self._checkpoint(entry)
        workflow.context.plan = plan
        workflow.set_total_steps(len(plan.steps))
        for event in step_events:
            await emit(event)

        self._checkpoint(entry)
        workflow.transition("executing")
        await emit(status_event("executing", "Executing plan..."))
        total = len(plan.steps)
        for index, step in enumerate(plan.steps):
            self._checkpoint(entry)
            workflow.set_current_step(index + 1)
            await emit(progress_event(index + 1, total, step.content))

        self._checkpoint(entry)
        workflow.results.append(plan.final_answer)
        workflow.transition("completed")
        elapsed_ms = int((time.time() - workflow.created_at) * 1000)
        logger.info("Workflow %s completed in %sms", workflow.id, elapsed_ms)
        await emit(complete_event(plan.final_answer or "", plan.confidence, plan.tools_used, elapsed_ms))
