from typing import Any, Optional


class AgentError(Exception):
    """Base class for failures raised by the agent network."""


class ValidationError(AgentError):
    """Tool input or message payload does not match its schema."""

    def __init__(self, message: str, errors: Optional[Any] = None):
        super().__init__(message)
        self.errors = errors or []


class DuplicateToolError(AgentError):
    pass


class UnknownToolError(AgentError):
    pass


class ToolExecutionError(AgentError):
    """A tool failed or timed out; reported back to the model, never retried."""


class ProviderError(AgentError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ProviderOverloadedError(ProviderError):
    pass


class ProviderTimeoutError(ProviderError):
    pass


class RunExhaustedError(AgentError):
    def __init__(self, max_turns: int):
        super().__init__(f"run did not finish within {max_turns} turns")
        self.max_turns = max_turns


class StepConflictError(AgentError):
    def __init__(self, step_key: str):
        super().__init__(f"step {step_key!r} is already in flight")
        self.step_key = step_key
