from typing import Optional


class AgentflowError(Exception):
    """Base class for all agentflow failures."""


class WorkflowNotFoundError(AgentflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class DuplicateWorkflowError(AgentflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow already exists: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowAlreadyRunningError(AgentflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow already executed: {workflow_id}")
        self.workflow_id = workflow_id


class InvalidTransitionError(AgentflowError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid workflow transition {current} -> {target}")
        self.current = current
        self.target = target


class WorkflowCancelledError(AgentflowError):
    pass


class WorkflowFatalError(AgentflowError):
    """Anything escaping the orchestration pipeline; surfaced only as an error event."""


class ModelUnavailableError(AgentflowError):
    """The candidate model cannot serve requests (withdrawn, unknown, unsupported)."""

    def __init__(self, model: str, reason: str = "", status_code: Optional[int] = None):
        super().__init__(f"Model {model} unavailable: {reason}" if reason else f"Model {model} unavailable")
        self.model = model
        self.reason = reason
        self.status_code = status_code


class ModelHardError(AgentflowError):
    """Any other generation failure; aborts the rest of the candidate list."""

    def __init__(self, model: str, reason: str = "", status_code: Optional[int] = None):
        super().__init__(f"Model {model} failed: {reason}" if reason else f"Model {model} failed")
        self.model = model
        self.reason = reason
        self.status_code = status_code


class ToolExecutionError(AgentflowError):
    pass


class UnknownToolError(ToolExecutionError):
    def __init__(self, name: str):
        super().__init__(f"Tool {name} not found")
        self.name = name


class ToolValidationError(ToolExecutionError):
    pass


class MultimodalPreprocessingError(AgentflowError):
    pass


class WorkflowDeadlineError(AgentflowError):
    def __init__(self, deadline_s: float):
        super().__init__(f"Workflow exceeded deadline of {deadline_s}s")
        self.deadline_s = deadline_s
