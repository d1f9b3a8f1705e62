"""Domain error codes for the queue engine."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    INVALID_PRIORITY = "INVALID_PRIORITY"
    INVALID_REQUEST = "INVALID_REQUEST"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    COUNTER_UNSUPPORTED = "COUNTER_UNSUPPORTED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    COUNTER_BUSY = "COUNTER_BUSY"
    COUNTER_UNAVAILABLE = "COUNTER_UNAVAILABLE"
    RACE_LOST = "RACE_LOST"
    SLOT_TAKEN = "SLOT_TAKEN"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    COUNTER_NOT_FOUND = "COUNTER_NOT_FOUND"
    SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
    QUEUE_EMPTY = "QUEUE_EMPTY"
    RESOURCE_BUSY = "RESOURCE_BUSY"


@dataclass(eq=False)
class QueueError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    retryable = False

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(QueueError):
    """Raised when a request is malformed or names something unusable.

    Rejected before any mutation.
    """

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> None:
        super().__init__(code=code, message=message)


class ConflictError(QueueError):
    """Raised when the current state does not allow the requested transition.

    The caller may re-read state and retry.
    """

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_TRANSITION) -> None:
        super().__init__(code=code, message=message)


class NotFoundError(QueueError):
    """Raised when a ticket, counter or service id is unknown."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.TICKET_NOT_FOUND) -> None:
        super().__init__(code=code, message=message)


class ResourceBusyError(QueueError):
    """Raised when a lock or backend could not be acquired in time."""

    retryable = True

    def __init__(self, resource: str) -> None:
        super().__init__(
            code=ErrorCode.RESOURCE_BUSY,
            message=f"Timed out waiting for {resource}",
        )
        self.resource = resource
