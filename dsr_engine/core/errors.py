"""Structured results and the error taxonomy of the compliance engine.

Business-rule and validation failures are returned as values rather than
raised, so every public operation of the engine hands back a ``Result``:

    result = await workflow.process_workflow_transition(...)
    if not result.success:
        return error_response(result.error)

Only faults the caller cannot act on (corrupted ledger rows, destroyed
encryption keys, exhausted audit persistence) are raised as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(StrEnum):
    """Failure codes surfaced to callers in structured results."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    IDENTITY_NOT_VERIFIED = "IDENTITY_NOT_VERIFIED"
    CHALLENGE_EXHAUSTED = "CHALLENGE_EXHAUSTED"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    STALE_STATE = "STALE_STATE"
    INSUFFICIENT_APPROVAL = "INSUFFICIENT_APPROVAL"
    BATCH_ITEM_FAILURE = "BATCH_ITEM_FAILURE"
    AUDIT_APPEND_FAILURE = "AUDIT_APPEND_FAILURE"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    EXTERNAL_TIMEOUT = "EXTERNAL_TIMEOUT"


# HTTP status used by the API layer when a failed result reaches a route.
HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.IDENTITY_NOT_VERIFIED: 400,
    ErrorKind.CHALLENGE_EXHAUSTED: 400,
    ErrorKind.ILLEGAL_TRANSITION: 409,
    ErrorKind.STALE_STATE: 409,
    ErrorKind.INSUFFICIENT_APPROVAL: 400,
    ErrorKind.BATCH_ITEM_FAILURE: 500,
    ErrorKind.AUDIT_APPEND_FAILURE: 503,
    ErrorKind.INTEGRITY_VIOLATION: 409,
    ErrorKind.EXTERNAL_TIMEOUT: 503,
}


@dataclass(frozen=True)
class ServiceError:
    """A business failure with a stable code and a caller-safe message."""

    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 400)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "code": self.kind.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class UnwrapError(RuntimeError):
    """Raised when ``Result.unwrap`` is called on a failed result."""

    def __init__(self, error: ServiceError) -> None:
        super().__init__(f"{error.kind}: {error.message}")
        self.error = error


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or ``ServiceError``, never both."""

    value: T | None = None
    error: ServiceError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool = False,
        **details: Any,
    ) -> Result[T]:
        return cls(error=ServiceError(kind=kind, message=message, details=details, retryable=retryable))

    @classmethod
    def from_error(cls, error: ServiceError) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value, raising ``UnwrapError`` on failure."""
        if self.error is not None:
            raise UnwrapError(self.error)
        return self.value  # type: ignore[return-value]


# ------------------------------------------------------------------ #
# Exceptions for faults that are not business outcomes
# ------------------------------------------------------------------ #


class ComplianceEngineError(Exception):
    """Base class for unexpected engine faults."""


class LedgerCorruptionError(ComplianceEngineError):
    """A stored audit event cannot be deserialized or canonicalized."""


class AuditAppendError(ComplianceEngineError):
    """Audit events could not be persisted and the re-queue is saturated."""
