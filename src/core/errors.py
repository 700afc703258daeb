"""Typed error taxonomy shared by the workflow, dispatch and scheduling services."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for errors surfaced to callers with a short human message."""

    code = "workflow_error"
    status_code = 400

    def __init__(self, message: str, *, field_errors: Optional[Dict[str, List[str]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field_errors: Dict[str, List[str]] = dict(field_errors or {})

    def to_payload(self) -> dict:
        payload: dict = {"detail": self.message, "code": self.code}
        if self.field_errors:
            payload["field_errors"] = self.field_errors
        return payload


class ValidationError(WorkflowError):
    code = "validation_error"
    status_code = 422

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, field_errors={field: [message]})

    @classmethod
    def from_pydantic(cls, exc: Any, message: str = "Please fix the highlighted fields.") -> "ValidationError":
        """Flatten a pydantic ``ValidationError`` into field-level messages."""

        field_errors: Dict[str, List[str]] = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error.get("loc", ())) or "payload"
            field_errors.setdefault(field, []).append(str(error.get("msg", "invalid value")))
        return cls(message, field_errors=field_errors)


class InvalidTransition(WorkflowError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, state: str, intent: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Cannot {intent} a request in state {state}.")
        self.state = state
        self.intent = intent


class AuthorizationError(WorkflowError):
    code = "authorization_error"
    status_code = 403


class PreconditionFailed(WorkflowError):
    code = "precondition_failed"
    status_code = 409

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class ConfigurationError(WorkflowError):
    code = "configuration_error"
    status_code = 503


class NotFoundError(WorkflowError):
    code = "not_found"
    status_code = 404


class MissingTenantContext(WorkflowError):
    """Raised by the storage layer when tenant-scoped data is touched without a context."""

    code = "missing_tenant_context"
    status_code = 500
