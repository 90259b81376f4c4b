"""
Error taxonomy of the certificate pipeline.

Every error carries a stable machine-readable ``kind`` and a human
message so the UI can drive its state from the response alone. None of
save, verify or export partially applies its effect when one of these
is raised.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from certcanvas.app.schemas.status import ExportBlockReason


class CanvasPipelineError(RuntimeError):
    """Base class for all pipeline errors surfaced to callers."""

    kind = "pipeline_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(CanvasPipelineError):
    """Raised when input has the wrong shape or length."""

    kind = "validation_error"

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, str]]] = None,
    ) -> None:
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(
            f"Validation failed: {message}",
            errors=[{"field": field, "message": message}],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class StaleSaveError(CanvasPipelineError):
    """Raised when the design changed after the SaveRecord was produced."""

    kind = "stale_save"


class AlreadyVerifiedError(CanvasPipelineError):
    """Raised when a conflicting claim targets an already-verified save."""

    kind = "already_verified"


class ExportNotAllowedError(CanvasPipelineError):
    """Raised when an export precondition gate is closed."""

    kind = "export_not_allowed"

    def __init__(self, reason: ExportBlockReason) -> None:
        super().__init__(f"Export disabled. {reason.remediation}")
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class PersistenceError(CanvasPipelineError):
    """Raised when durable storage is unavailable. Safe to retry."""

    kind = "persistence_error"
    retryable = True

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class NotFoundError(CanvasPipelineError):
    kind = "not_found"


class AuthorizationError(CanvasPipelineError):
    """Raised when the caller does not own the session it addresses."""

    kind = "forbidden"


class AuthenticationError(CanvasPipelineError):
    """Raised when a request carries no caller identity."""

    kind = "unauthenticated"


class ExportEncodeError(CanvasPipelineError):
    """Raised when an encoder fails to assemble the export artifact."""

    kind = "export_failed"
