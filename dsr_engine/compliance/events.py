"""Audit event types for the compliance ledger.

Every category has exactly one payload dataclass. The payload class fixes
the category, so an event cannot be logged with a shape that differs from
what the integrity check later canonicalizes.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, ClassVar

from dsr_engine.core.errors import LedgerCorruptionError

GENESIS_HASH = "0" * 64


class EventCategory(StrEnum):
    DATA_SUBJECT_REQUEST = "DATA_SUBJECT_REQUEST"
    IDENTITY_VERIFICATION = "IDENTITY_VERIFICATION"
    WORKFLOW = "WORKFLOW"
    DATA_PROCESSING = "DATA_PROCESSING"
    DATA_LIFECYCLE = "DATA_LIFECYCLE"
    SECURE_DELETION = "SECURE_DELETION"
    CONSENT = "CONSENT"
    GOVERNANCE = "GOVERNANCE"


class EventSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventPayload:
    category: ClassVar[EventCategory]

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _normalize(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class RequestEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.DATA_SUBJECT_REQUEST

    request_id: uuid.UUID
    right_type: str
    status: str
    channel: str | None = None
    subject_ref: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class VerificationEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.IDENTITY_VERIFICATION

    verification_id: uuid.UUID
    status: str
    method: str
    risk_level: str
    request_id: uuid.UUID | None = None
    challenge_id: uuid.UUID | None = None
    attempts: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class WorkflowEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.WORKFLOW

    request_id: uuid.UUID
    from_status: str
    to_status: str
    actor: str
    actor_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DataProcessingEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.DATA_PROCESSING

    request_id: uuid.UUID
    right_type: str
    operation: str
    record_count: int
    subject_ref: str | None = None
    field_names: tuple[str, ...] = ()
    compliance_relevant: bool = True


@dataclass(frozen=True)
class LifecycleEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.DATA_LIFECYCLE

    operation: str
    policy_id: uuid.UUID | None = None
    job_id: uuid.UUID | None = None
    action: str | None = None
    entity_type: str | None = None
    record_count: int = 0
    failed_count: int = 0
    detail: str | None = None


@dataclass(frozen=True)
class DeletionEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.SECURE_DELETION

    deletion_request_id: uuid.UUID
    operation: str
    method: str
    scope: str
    records_deleted: int = 0
    records_failed: int = 0
    certificate_id: uuid.UUID | None = None
    gdpr_request_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ConsentEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.CONSENT

    subject_ref: str
    state: str
    request_id: uuid.UUID | None = None
    purposes: tuple[str, ...] = ()
    compliance_relevant: bool = True


@dataclass(frozen=True)
class GovernanceEvent(EventPayload):
    category: ClassVar[EventCategory] = EventCategory.GOVERNANCE

    subject: str
    outcome: str
    reference: str | None = None
    score: int | None = None
    detail: str | None = None


PAYLOAD_TYPES: dict[EventCategory, type[EventPayload]] = {
    cls.category: cls
    for cls in (
        RequestEvent,
        VerificationEvent,
        WorkflowEvent,
        DataProcessingEvent,
        LifecycleEvent,
        DeletionEvent,
        ConsentEvent,
        GovernanceEvent,
    )
}


# ---------------------------------------------------------------------------
# Stored events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComplianceAuditEvent:
    """A sealed ledger entry. ``hash`` covers every other field."""

    id: uuid.UUID
    business_id: uuid.UUID
    sequence: int
    correlation_id: str | None
    category: EventCategory
    event_type: str
    severity: EventSeverity
    payload: dict[str, Any]
    created_at: datetime
    prev_hash: str
    hash: str
    actor_id: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    def canonical(self) -> str:
        return canonicalize(
            event_id=self.id,
            business_id=self.business_id,
            sequence=self.sequence,
            correlation_id=self.correlation_id,
            category=self.category,
            event_type=self.event_type,
            severity=self.severity,
            payload=self.payload,
            created_at=self.created_at,
            actor_id=self.actor_id,
            tags=self.tags,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "business_id": str(self.business_id),
            "sequence": self.sequence,
            "correlation_id": self.correlation_id,
            "category": self.category.value,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "prev_hash": self.prev_hash,
            "hash": self.hash,
            "actor_id": self.actor_id,
            "tags": list(self.tags),
        }


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    return value


def canonicalize(
    *,
    event_id: uuid.UUID,
    business_id: uuid.UUID,
    sequence: int,
    correlation_id: str | None,
    category: EventCategory,
    event_type: str,
    severity: EventSeverity,
    payload: dict[str, Any],
    created_at: datetime,
    actor_id: str | None,
    tags: tuple[str, ...],
) -> str:
    """Deterministic JSON form of an event, excluding its hashes."""
    document = {
        "id": event_id,
        "business_id": business_id,
        "sequence": sequence,
        "correlation_id": correlation_id,
        "category": category,
        "event_type": event_type,
        "severity": severity,
        "payload": payload,
        "created_at": created_at,
        "actor_id": actor_id,
        "tags": list(tags),
    }
    try:
        return json.dumps(_normalize(document), sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise LedgerCorruptionError(f"Event {event_id} cannot be canonicalized: {exc}") from exc
