"""Stageflow error hierarchy.

Every domain error carries a stable HTTP status code and a short
machine-readable reason string. Route handlers let these propagate and the
handlers in ``stageflow.api.error_handlers`` turn them into responses.
"""

from typing import Any, Dict, Optional


class StageflowError(Exception):
    """Base error for all Stageflow exceptions."""

    status_code = 500
    reason = "internal_error"

    def __init__(self, message: str, reason: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if reason is not None:
            self.reason = reason
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.reason,
            "message": self.message,
            "details": self.details,
        }


class UnauthorizedError(StageflowError):
    """Missing or invalid caller identity."""

    status_code = 401
    reason = "unauthorized"


class ForbiddenError(StageflowError):
    """Caller is authenticated but lacks a required permission."""

    status_code = 403
    reason = "forbidden"


class NotFoundError(StageflowError):
    """Entity is missing or not owned by the caller."""

    status_code = 404
    reason = "not_found"


class ConflictError(StageflowError):
    """Request collides with the current state of an entity."""

    status_code = 409
    reason = "conflict"


class InvalidInputError(StageflowError):
    """Malformed payload or unsupported value."""

    status_code = 400
    reason = "invalid_input"


class EmptyWorkflowError(InvalidInputError):
    """Workflow has no stages to execute."""

    reason = "empty_workflow"


class StructuralError(StageflowError):
    """Workflow graph references a stage outside the workflow."""

    status_code = 422
    reason = "structural_error"

    def __init__(self, message: str, stage_id: Optional[str] = None, target_id: Optional[str] = None):
        super().__init__(message, details={"stage_id": stage_id, "target_id": target_id})
        self.stage_id = stage_id
        self.target_id = target_id


class InternalError(StageflowError):
    """Unexpected failure, e.g. persistence errors."""

    status_code = 500
    reason = "internal_error"
