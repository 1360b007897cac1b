"""
Typed failures raised by the versioning workflow.

Every error carries a stable ``code`` (used by API clients to pick a message)
and the HTTP status the JSON API maps it to.
"""
from __future__ import annotations


class WorkflowError(RuntimeError):
    code = "workflow_error"
    http_status = 400

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        out: dict = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(WorkflowError):
    """Caller-supplied data fails a precondition (empty content, empty change notes)."""

    code = "validation_error"
    http_status = 400


class InvalidTransitionError(WorkflowError):
    """The requested event is not legal from the version's current status."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, event: str, status: str, *, version_id: int | None = None, reason: str | None = None) -> None:
        message = f"Cannot {event.replace('_', ' ')} a version in status '{status}'."
        if reason:
            message = f"{message[:-1]}: {reason}."
        details: dict = {"event": event, "status": status, "version_id": version_id}
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details)
        self.event = event
        self.status = status


class SelfReviewError(WorkflowError):
    code = "self_review"
    http_status = 403


class ConflictError(WorkflowError):
    """
    Optimistic-concurrency check failed, or a per-document invariant would be broken.
    Callers reload and retry; the service never retries on its own.
    """

    code = "conflict"
    http_status = 409


class NotFoundError(WorkflowError):
    code = "not_found"
    http_status = 404
