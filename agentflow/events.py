"""SSE framing for workflow events."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from .schemas import Event, PlanStep, WorkflowStatus


logger = logging.getLogger("uvicorn.error")


def format_sse(event: Event) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.data, default=str)}\n\n"


def connected_event(workflow_id: str) -> Event:
    return Event(type="connected", data={"workflowId": workflow_id})


def status_event(status: WorkflowStatus, message: str) -> Event:
    return Event(type="status", data={"status": status, "message": message})


def retrieval_event(sources: List[str]) -> Event:
    return Event(type="retrieval", data={"sources": list(sources), "count": len(sources)})


def step_event(step: PlanStep) -> Event:
    # Snapshot: later mutation of the step must not leak into an already queued event.
    return Event(type="step", data=step.model_copy(deep=True).to_event_data())


def progress_event(step: int, total: int, description: str) -> Event:
    return Event(type="progress", data={"step": step, "total": total, "description": description})


def complete_event(response: str, confidence: float, tools_used: int, execution_time_ms: int) -> Event:
    return Event(
        type="complete",
        data={
            "response": response,
            "confidence": confidence,
            "toolsUsed": tools_used,
            "executionTime": execution_time_ms,
        },
    )


def error_event(message: str) -> Event:
    return Event(type="error", data={"message": message})


def done_event() -> Event:
    return Event(type="done", data={})


async def relay(workflow_id: str, events: AsyncIterator[Event]) -> AsyncIterator[str]:
    """Frame a workflow's events for the wire: ``connected`` first, ``done`` last.

    Whatever the producer raises is reported as one ``error`` frame; the stream
    then ends normally.
    """
    yield format_sse(connected_event(workflow_id))
    try:
        async for event in events:
            yield format_sse(event)
    except Exception as exc:
        logger.warning("Workflow %s stream failed: %s", workflow_id, exc)
        yield format_sse(error_event(str(exc) or exc.__class__.__name__))
    finally:
        closer = getattr(events, "aclose", None)
        if closer is not None:
            await closer()
    yield format_sse(done_event())


def parse_sse_frame(frame: str) -> Optional[Dict[str, Any]]:
    """Inverse of :func:`format_sse` for a single frame; ``None`` for comments or blanks."""
    event_type: Optional[str] = None
    data_lines: List[str] = []
    for line in frame.splitlines():
        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())
    if event_type is None and not data_lines:
        return None
    data = json.loads("\n".join(data_lines)) if data_lines else {}
    return {"type": event_type or "message", "data": data}
