from __future__ import annotations

"""Error taxonomy shared by the chat pipeline and the mutation executor.

Every error carries a machine-readable ``kind`` and, where one exists, the
underlying ``cause`` so callers can decide whether a retry makes sense without
parsing human text.
"""

from typing import Any, Dict, Optional


class ProjectBotError(Exception):
    kind = "error"
    default_message = "Request failed"
    # MutationAttempt snapshot, attached by the mutation executor.
    diagnostic: Optional[Dict[str, Any]] = None

    def __init__(self, message: Optional[str] = None, *, cause: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.cause = cause

    def to_dict(self, *, include_cause: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "detail": self.message}
        if include_cause and self.cause:
            payload["cause"] = self.cause
        return payload


class Unauthorized(ProjectBotError):
    kind = "unauthorized"
    default_message = "Unauthorized"


class InvalidCredentials(Unauthorized):
    # Same message for unknown user and wrong password.
    default_message = "Invalid credentials"

    def __init__(self) -> None:
        super().__init__(self.default_message)


class Forbidden(ProjectBotError):
    kind = "forbidden"
    default_message = "Forbidden"


class NotFound(ProjectBotError):
    kind = "not_found"
    default_message = "Not found"


class ValidationConflict(ProjectBotError):
    kind = "validation_conflict"
    default_message = "Request conflicts with existing data"


class InfrastructureFailure(ProjectBotError):
    kind = "infrastructure_failure"
    default_message = "Storage backend unavailable"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        cause: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.code = code

    def to_dict(self, *, include_cause: bool = True) -> Dict[str, Any]:
        payload = super().to_dict(include_cause=include_cause)
        if include_cause and self.code:
            payload["code"] = self.code
        return payload


class EmergencyPathExhausted(ProjectBotError):
    kind = "emergency_path_exhausted"
    default_message = "Both canonical and emergency write paths failed"

    def __init__(
        self,
        *,
        operation: str,
        canonical_error: ProjectBotError,
        emergency_error: ProjectBotError,
    ) -> None:
        cause = (
            f"canonical: {canonical_error.kind}: {canonical_error.cause or canonical_error.message}; "
            f"emergency: {emergency_error.kind}: {emergency_error.cause or emergency_error.message}"
        )
        super().__init__(f"{operation} failed on both write paths", cause=cause)
        self.operation = operation
        self.canonical_error = canonical_error
        self.emergency_error = emergency_error

    def to_dict(self, *, include_cause: bool = True) -> Dict[str, Any]:
        payload = super().to_dict(include_cause=include_cause)
        if include_cause:
            payload["paths"] = {
                "canonical": self.canonical_error.to_dict(),
                "emergency": self.emergency_error.to_dict(),
            }
        return payload


class UpstreamUnavailable(ProjectBotError):
    kind = "upstream_unavailable"
    default_message = "Reply generation backend unavailable"


class Cancelled(ProjectBotError):
    kind = "cancelled"
    default_message = "Delivery cancelled"
