"""Error handling module for clawnest.

This module defines error codes, exception classes, and response models.
The status codes are what the API layer returns for each error.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance \"bot1\" not found"
    }
}

Usage:
    from clawnest.errors import ConflictError, InstanceNotFoundError

    raise InstanceNotFoundError()
    raise ConflictError('Instance "bot1" already exists')
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    TIMEOUT = "TIMEOUT"
    ABORTED = "ABORTED"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    BACKEND_ERROR = "BACKEND_ERROR"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class NestError(Exception):
    """Base exception for clawnest.

    Attributes:
        code: The error code from ErrorCode enum.
        message: Human-readable error message.
        status_code: HTTP status code to return.
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class InstanceNotFoundError(NestError):
    """404 Not Found - Unknown instance id."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class ConflictError(NestError):
    """409 Conflict - Instance id already exists."""

    def __init__(self, message: str = "Instance already exists") -> None:
        super().__init__(ErrorCode.CONFLICT, message, 409)


class InvalidArgumentError(NestError):
    """400 Bad Request - Bad instance id, port, or channel."""

    def __init__(self, message: str = "Invalid argument") -> None:
        super().__init__(ErrorCode.INVALID_ARGUMENT, message, 400)


class DeployTimeoutError(NestError):
    """504 Gateway Timeout - Readiness not reached within a phase bound."""

    def __init__(self, message: str = "Timed out") -> None:
        super().__init__(ErrorCode.TIMEOUT, message, 504)


class AbortedError(NestError):
    """499 Client Closed Request - Deploy cancelled."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(ErrorCode.ABORTED, message, 499)


class BackendUnavailableError(NestError):
    """503 Service Unavailable - Runtime API or agent binary unreachable."""

    def __init__(self, message: str = "Backend unavailable") -> None:
        super().__init__(ErrorCode.BACKEND_UNAVAILABLE, message, 503)


class BackendError(NestError):
    """502 Bad Gateway - Runtime returned an error that is not benign."""

    def __init__(self, message: str = "Backend operation failed") -> None:
        super().__init__(ErrorCode.BACKEND_ERROR, message, 502)
