"""
Typed errors for sandbox and chat operations.

Every failure the service reports carries an ErrorCode and an HTTP status.
Adapters translate backend-specific failures (docker exit codes, httpx errors,
malformed JSON) into this taxonomy; the API layer renders them with a single
exception handler.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Error codes for programmatic handling."""

    # Lookup errors
    SANDBOX_NOT_FOUND = "sandbox_not_found"
    SESSION_NOT_FOUND = "session_not_found"
    MESSAGE_NOT_FOUND = "message_not_found"
    IMAGE_NOT_FOUND = "image_not_found"
    NETWORK_NOT_FOUND = "network_not_found"
    NOT_FOUND = "not_found"

    # State errors
    INVALID_STATE = "invalid_state"
    SANDBOX_NOT_RUNNING = "sandbox_not_running"

    # Request errors
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    NOT_PROVISIONABLE = "not_provisionable"

    # Dependency errors
    BACKEND_UNAVAILABLE = "backend_unavailable"
    RUNTIME_UNAVAILABLE = "runtime_unavailable"


class ErrorResponse(BaseModel):
    """Body returned for every CapsuleError."""

    error: str = Field(description="Human-readable message")
    code: ErrorCode = Field(description="Error code for programmatic handling")
    details: Optional[list[Any]] = Field(default=None, description="Extra diagnostic details")


class CapsuleError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: ErrorCode = ErrorCode.BACKEND_UNAVAILABLE

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[list[Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.message, code=self.code, details=self.details)


class NotFoundError(CapsuleError):
    status_code = 404
    code = ErrorCode.NOT_FOUND


class SandboxNotFoundError(NotFoundError):
    code = ErrorCode.SANDBOX_NOT_FOUND

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox not found: {sandbox_id}")
        self.sandbox_id = sandbox_id


class SessionNotFoundError(NotFoundError):
    code = ErrorCode.SESSION_NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class MessageNotFoundError(NotFoundError):
    code = ErrorCode.MESSAGE_NOT_FOUND

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class ImageNotFoundError(NotFoundError):
    code = ErrorCode.IMAGE_NOT_FOUND

    def __init__(self, image: str):
        super().__init__(f"Image not found: {image}")
        self.image = image


class NetworkNotFoundError(NotFoundError):
    code = ErrorCode.NETWORK_NOT_FOUND

    def __init__(self, network: str):
        super().__init__(f"Network not found: {network}")
        self.network = network


class InvalidStateError(CapsuleError):
    """The requested transition is not allowed from the current state."""

    status_code = 400
    code = ErrorCode.INVALID_STATE


class SandboxNotRunningError(InvalidStateError):
    code = ErrorCode.SANDBOX_NOT_RUNNING

    def __init__(self, sandbox_id: str, status: str):
        super().__init__(
            f"Sandbox is not running: {sandbox_id} is '{status}', requires 'running'"
        )
        self.sandbox_id = sandbox_id
        self.status = status


class ValidationError(CapsuleError):
    status_code = 400
    code = ErrorCode.VALIDATION_ERROR


class ConflictError(CapsuleError):
    status_code = 409
    code = ErrorCode.CONFLICT


class NotProvisionableError(CapsuleError):
    """The backend rejected the image or resource request."""

    status_code = 422
    code = ErrorCode.NOT_PROVISIONABLE


class BackendUnavailableError(CapsuleError):
    """The container daemon or agent runtime is unreachable, timed out, or returned garbage."""

    status_code = 503
    code = ErrorCode.BACKEND_UNAVAILABLE


class RuntimeUnavailableError(BackendUnavailableError):
    code = ErrorCode.RUNTIME_UNAVAILABLE
