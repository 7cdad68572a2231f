"""
Error taxonomy for the clip pipeline.

Every variant carries a fixed HTTP status and a short, user-facing message, so
route handlers never inspect error shapes at runtime.
"""
from typing import Optional


class ReeruError(Exception):
    status_code: int = 500
    code: str = "internal"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class InvalidInput(ReeruError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class Unauthorized(ReeruError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"


class InsufficientBalance(ReeruError):
    status_code = 402
    code = "insufficient_balance"
    default_message = "Insufficient tokens"


class JobNotFound(ReeruError):
    status_code = 404
    code = "job_not_found"
    default_message = "Job not found"


class AlreadyProcessing(ReeruError):
    status_code = 429
    code = "already_processing"
    default_message = "Already processing a video"


class Internal(ReeruError):
    pass


class ExternalTaskFailed(ReeruError):
    status_code = 502
    code = "external_task_failed"
    default_message = "Video processing failed"


class ExternalTimeout(ExternalTaskFailed):
    status_code = 504
    code = "external_timeout"
    default_message = "Video processing timed out"


class ExternalProtocolViolation(ReeruError):
    """Provider answered with something other than JSON. Never retried."""

    status_code = 502
    code = "external_protocol_violation"
    default_message = "Video service returned an invalid response"


class ExternalTransient(ReeruError):
    """Network error or non-2xx from the provider. Retried within a polling budget."""

    status_code = 503
    code = "external_transient"
    default_message = "Video service temporarily unavailable"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class DispatchError(ReeruError):
    status_code = 503
    code = "dispatch_failed"
    default_message = "Could not schedule background processing"
