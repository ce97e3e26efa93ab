"""Exception hierarchy shared by the engine, the worker and the REST API."""

from __future__ import annotations

from http import HTTPStatus


class FlowqueueError(Exception):
    """Base class for errors that map onto an API response."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class NotFoundError(FlowqueueError):
    status_code = HTTPStatus.NOT_FOUND
    code = "NOT_FOUND"


class ValidationError(FlowqueueError):
    status_code = HTTPStatus.BAD_REQUEST
    code = "INVALID_REQUEST"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])

    def to_dict(self) -> dict[str, object]:
        return {"error": self.message, "code": self.code, "errors": self.errors}


class ConsistencyError(FlowqueueError):
    """A request that would violate a lifecycle rule; the store is left unchanged."""

    status_code = HTTPStatus.CONFLICT
    code = "CONFLICT"


class DuplicateSlugError(ConsistencyError):
    code = "DUPLICATE_SLUG"


class InvalidTransitionError(ConsistencyError):
    code = "INVALID_TRANSITION"


class WorkflowInactiveError(ConsistencyError):
    code = "WORKFLOW_INACTIVE"


class WorkflowDeleteError(ConsistencyError):
    code = "WORKFLOW_ACTIVE"


class ActiveVersionRollbackError(ConsistencyError):
    code = "ROLLBACK_TO_ACTIVE_VERSION"


class JobStateError(ConsistencyError):
    code = "INVALID_JOB_STATE"


class TerminalExecutionError(ConsistencyError):
    code = "EXECUTION_TERMINAL"


class AdmissionError(FlowqueueError):
    """Raised before any execution exists; never retried by the engine."""

    status_code = HTTPStatus.TOO_MANY_REQUESTS
    code = "ADMISSION_DENIED"


class QueueFullError(AdmissionError):
    code = "QUEUE_FULL"


class QuotaExceededError(AdmissionError):
    code = "LIMIT_EXCEEDED"

    def __init__(self, message: str, *, current: int, limit: int) -> None:
        super().__init__(message)
        self.current = current
        self.limit = limit


class NodeExecutionError(FlowqueueError):
    """Failure raised by a node handler while a job is running."""

    code = "NODE_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}


class TransientNodeError(NodeExecutionError):
    code = "TRANSIENT_ERROR"
    retryable = True


class PermanentNodeError(NodeExecutionError):
    code = "PERMANENT_ERROR"
    retryable = False


class JobCancelledError(FlowqueueError):
    """Raised inside a worker once its job was cancelled or reclaimed."""

    code = "CANCELLED"


def classify_error(exc: BaseException) -> bool:
    """Return whether ``exc`` describes a transient failure worth retrying."""

    if isinstance(exc, NodeExecutionError):
        return exc.retryable
    if isinstance(exc, FlowqueueError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status >= 500 or status == HTTPStatus.TOO_MANY_REQUESTS
    return isinstance(exc, OSError)
