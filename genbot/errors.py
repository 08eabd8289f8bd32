# genbot/errors.py
from typing import Optional


class GenerationError(Exception):
    """Base class for every error a generation request can end with."""

    kind = "backend"
    retryable = False

    def user_message(self) -> str:
        if self.kind == "invalid":
            return f"Your request was invalid: {self}"
        if self.kind == "retry_later":
            return "The image backend is not reachable right now, please try again later."
        if self.kind == "cancelled":
            return "This request was cancelled."
        return f"The image backend failed: {self}"


class InvalidRequest(GenerationError):
    kind = "invalid"


class CapabilityUnsupported(GenerationError):
    kind = "invalid"


class NoPriorResult(GenerationError):
    kind = "invalid"

    def __init__(self, message: str = "there is no previous image to work from yet") -> None:
        super().__init__(message)


class BackendUnavailable(GenerationError):
    kind = "retry_later"
    retryable = True


class BackendTimeout(GenerationError):
    kind = "retry_later"

    def __init__(self, message: str, prompt_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.prompt_id = prompt_id


class BackendRejected(GenerationError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendExecutionError(GenerationError):
    def __init__(self, node: str, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(f"node {node} failed: {message}")
        self.node = node
        self.message = message
        self.node_id = node_id


class BackendProtocolError(GenerationError):
    def user_message(self) -> str:
        return "The image backend returned something unexpected, please try again."


class JobCancelled(GenerationError):
    kind = "cancelled"


class TemplateError(Exception):
    """Workflow template is unusable. Raised at load time, never per request."""
