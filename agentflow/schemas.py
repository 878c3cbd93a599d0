import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError


WorkflowStatus = Literal["initialized", "analyzing", "retrieving", "planning", "executing", "completed", "failed"]
PlanStepType = Literal["thought", "action", "observation", "final"]
PlanStepStatus = Literal["pending", "running", "completed", "failed"]
Complexity = Literal["simple", "complex"]
EventType = Literal["connected", "status", "retrieval", "step", "progress", "complete", "error", "done"]
Channel = Literal["whatsapp", "telegram", "instagram", "linkedin", "snapchat", "web"]

TERMINAL_STATUSES = frozenset({"completed", "failed"})

# Forward edges of the lifecycle; "failed" is reachable from any non-terminal state.
_TRANSITIONS: Dict[str, frozenset] = {
    "initialized": frozenset({"analyzing", "retrieving"}),
    "analyzing": frozenset({"retrieving"}),
    "retrieving": frozenset({"planning"}),
    "planning": frozenset({"executing"}),
    "executing": frozenset({"completed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class PlanStep(BaseModel):
    id: str
    type: PlanStepType
    content: str
    tool: Optional[str] = None
    tool_params: Optional[Dict[str, Any]] = Field(default=None, alias="toolParams")
    result: Any = None
    status: PlanStepStatus = "pending"

    model_config = ConfigDict(populate_by_name=True)

    def to_event_data(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExecutionPlan(BaseModel):
    original_query: str
    steps: List[PlanStep] = Field(default_factory=list)
    final_answer: Optional[str] = None
    confidence: float = 0.0

    @property
    def tools_used(self) -> int:
        return sum(1 for step in self.steps if step.tool)


class DecomposedStep(BaseModel):
    """One item of a decomposition response: why, and optionally which tool with what params."""

    reasoning: str = ""
    tool: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


class RetrievedDoc(BaseModel):
    text: str
    source: str = "Unknown"
    score: float = 0.0


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    count: Optional[int] = None


class WorkflowContext(BaseModel):
    original_text: str
    processed_text: Optional[str] = None
    retrieved_docs: List[RetrievedDoc] = Field(default_factory=list)
    plan: Optional[ExecutionPlan] = None
    multimodal_data: Optional[str] = None


class Workflow(BaseModel):
    id: str
    requester_id: str
    channel: str
    status: WorkflowStatus = "initialized"
    current_step: int = 0
    total_steps: int = 0
    context: WorkflowContext
    results: List[Any] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    last_update: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: WorkflowStatus) -> None:
        if self.status == target:
            return
        if target == "failed" and not self.is_terminal:
            allowed = True
        else:
            allowed = target in _TRANSITIONS.get(self.status, frozenset())
        if not allowed:
            raise InvalidTransitionError(self.status, target)
        self.status = target
        self.last_update = time.time()
        if self.is_terminal:
            self.finished_at = self.last_update

    def set_total_steps(self, total: int) -> None:
        if self.total_steps:
            raise ValueError("total_steps is already set")
        self.total_steps = max(0, int(total))

    def set_current_step(self, index: int) -> None:
        if index > self.total_steps:
            raise ValueError(f"current_step {index} exceeds total_steps {self.total_steps}")
        self.current_step = index
        self.last_update = time.time()


class Event(BaseModel):
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)


class UnifiedMessage(BaseModel):
    platform: str
    user_id: str
    conversation_id: str = ""
    message_id: str
    message_type: Literal["text", "image", "audio", "video"] = "text"
    content: str
    timestamp: float = Field(default_factory=time.time)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    conversation_id: str
    response: str
    sources: Optional[List[str]] = None
    confidence: float
    used_rag: bool


class ChatStreamRequest(BaseModel):
    message: str
    user_id: str = Field(alias="userId")
    platform: str = "web"
    message_id: Optional[str] = Field(default=None, alias="messageId")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class RagQueryRequest(BaseModel):
    query: str = ""
    top_k: int = Field(default=3, alias="topK", ge=1, le=20)

    model_config = ConfigDict(populate_by_name=True)
