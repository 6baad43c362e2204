"""Domain types shared by the DSR compliance services.

These are plain dataclasses; the SQLAlchemy rows in ``dsr_engine.models``
are mapped to and from them by the SQL stores so that the services never
hold ORM objects across await points.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Data subject requests
# ---------------------------------------------------------------------------


class RightType(StrEnum):
    ACCESS = "ACCESS"
    RECTIFICATION = "RECTIFICATION"
    ERASURE = "ERASURE"
    RESTRICT = "RESTRICT"
    PORTABILITY = "PORTABILITY"
    OBJECT = "OBJECT"
    CONSENT_WITHDRAW = "CONSENT_WITHDRAW"


class RequestStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFIED = "VERIFIED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
)


class RequestPriority(StrEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class RequestChannel(StrEnum):
    CUSTOMER_PORTAL = "CUSTOMER_PORTAL"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    ADMIN = "ADMIN"
    API = "API"


class ActorType(StrEnum):
    DATA_SUBJECT = "DATA_SUBJECT"
    SYSTEM = "SYSTEM"
    BUSINESS_ADMIN = "BUSINESS_ADMIN"
    DPO = "DPO"


@dataclass
class IdentityData:
    """Identity claims supplied by the requestor at submission time."""

    first_name: str | None = None
    last_name: str | None = None
    additional_info: dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return bool(self.first_name and self.last_name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> IdentityData:
        data = data or {}
        return cls(
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            additional_info=dict(data.get("additional_info") or {}),
        )


@dataclass
class DataSubjectRequest:
    """A formal exercise of a data-protection right against one business."""

    id: uuid.UUID
    business_id: uuid.UUID
    right_type: RightType
    requestor_email: str
    status: RequestStatus
    due_date: datetime
    created_at: datetime
    updated_at: datetime
    requestor_phone: str | None = None
    identity_data: IdentityData = field(default_factory=IdentityData)
    channel: RequestChannel = RequestChannel.CUSTOMER_PORTAL
    priority: RequestPriority = RequestPriority.NORMAL
    description: str | None = None
    request_data: dict[str, Any] = field(default_factory=dict)
    verification_id: uuid.UUID | None = None
    customer_id: uuid.UUID | None = None
    extended_due_date: datetime | None = None
    extension_reason: str | None = None
    escalated_at: datetime | None = None
    completed_at: datetime | None = None
    rejection_reason: str | None = None
    response_data: dict[str, Any] = field(default_factory=dict)

    @property
    def correlation_id(self) -> str:
        return str(self.id)

    @property
    def effective_due_date(self) -> datetime:
        return self.extended_due_date or self.due_date

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return not self.is_terminal and now > self.effective_due_date


@dataclass(frozen=True)
class WorkflowTransition:
    """One applied status change, kept as the unit of idempotency."""

    id: uuid.UUID
    request_id: uuid.UUID
    business_id: uuid.UUID
    from_status: RequestStatus
    to_status: RequestStatus
    actor: ActorType
    created_at: datetime
    actor_id: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Identity verification
# ---------------------------------------------------------------------------


class VerificationStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class VerificationMethod(StrEnum):
    EMAIL_TOKEN = "EMAIL_TOKEN"
    SMS_CODE = "SMS_CODE"
    MULTI_FACTOR = "MULTI_FACTOR"


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ChallengeType(StrEnum):
    TOKEN = "TOKEN"
    SMS_CODE = "SMS_CODE"
    KNOWLEDGE = "KNOWLEDGE"
    DOCUMENT = "DOCUMENT"


class ChallengeStatus(StrEnum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


@dataclass
class Challenge:
    id: uuid.UUID
    type: ChallengeType
    status: ChallengeStatus
    max_attempts: int
    expires_at: datetime
    attempts: int = 0
    secret_digest: str | None = None
    prompt: str | None = None
    delivery_id: str | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ChallengeStatus.PENDING

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)


@dataclass
class IdentityVerification:
    id: uuid.UUID
    business_id: uuid.UUID
    requestor_email: str
    method: VerificationMethod
    risk_level: RiskLevel
    status: VerificationStatus
    created_at: datetime
    updated_at: datetime
    challenges: list[Challenge] = field(default_factory=list)
    request_id: uuid.UUID | None = None
    requestor_phone: str | None = None
    customer_id: uuid.UUID | None = None
    confidence: int = 0
    risk_score: int = 0
    risk_factors: list[str] = field(default_factory=list)
    completed_at: datetime | None = None
    failure_reason: str | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            VerificationStatus.VERIFIED,
            VerificationStatus.FAILED,
            VerificationStatus.EXPIRED,
        )

    def challenge(self, challenge_id: uuid.UUID) -> Challenge | None:
        return next((c for c in self.challenges if c.id == challenge_id), None)


# ---------------------------------------------------------------------------
# Subject data held by the review platform
# ---------------------------------------------------------------------------


class CustomerStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"
    ANONYMIZED = "ANONYMIZED"
    DELETED = "DELETED"


class ConsentState(StrEnum):
    GRANTED = "GRANTED"
    WITHDRAWN = "WITHDRAWN"


class EntityType(StrEnum):
    CUSTOMER = "customer"
    REVIEW_REQUEST = "review_request"


# PII fields stored encrypted on each record type.
CUSTOMER_PII_FIELDS: tuple[str, ...] = ("email", "phone", "first_name", "last_name", "address")
REVIEW_REQUEST_PII_FIELDS: tuple[str, ...] = ("recipient", "message")


@dataclass
class BusinessRecord:
    id: uuid.UUID
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CustomerRecord:
    """A customer of a business; PII fields are held only as ciphertext."""

    id: uuid.UUID
    business_id: uuid.UUID
    created_at: datetime
    last_activity_at: datetime
    encrypted_fields: dict[str, str] = field(default_factory=dict)
    email_index: str | None = None
    phone_index: str | None = None
    status: CustomerStatus = CustomerStatus.ACTIVE
    consent_state: ConsentState = ConsentState.GRANTED
    consent_updated_at: datetime | None = None
    processing_restricted: bool = False
    restriction_reason: str | None = None
    archived_at: datetime | None = None
    anonymized_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def key_ref(self) -> str:
        return f"{EntityType.CUSTOMER}/{self.id}"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_erased(self) -> bool:
        """Deleted, or anonymized with its data key shredded."""
        return self.deleted_at is not None or self.anonymized_at is not None


@dataclass
class ReviewRequestRecord:
    """A review solicitation sent to a customer."""

    id: uuid.UUID
    business_id: uuid.UUID
    customer_id: uuid.UUID
    channel: str
    status: str
    created_at: datetime
    last_activity_at: datetime
    encrypted_fields: dict[str, str] = field(default_factory=dict)
    archived_at: datetime | None = None
    anonymized_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def key_ref(self) -> str:
        return f"{EntityType.REVIEW_REQUEST}/{self.id}"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class ObjectionRecord:
    id: uuid.UUID
    business_id: uuid.UUID
    customer_id: uuid.UUID
    request_id: uuid.UUID
    processing_purposes: list[str]
    grounds: str | None
    created_at: datetime


@dataclass(frozen=True)
class RecordSummary:
    """Age and status view of a stored record, used by retention scans."""

    entity_type: EntityType
    entity_id: uuid.UUID
    business_id: uuid.UUID
    created_at: datetime
    last_activity_at: datetime
    status: str
    archived: bool = False
    anonymized: bool = False


# ---------------------------------------------------------------------------
# Retention and lifecycle jobs
# ---------------------------------------------------------------------------


class DataCategory(StrEnum):
    CUSTOMER_PII = "CUSTOMER_PII"
    COMMUNICATION_DATA = "COMMUNICATION_DATA"
    TRANSACTION_DATA = "TRANSACTION_DATA"
    AUDIT_LOGS = "AUDIT_LOGS"
    CONSENT_RECORDS = "CONSENT_RECORDS"
    SUPPORT_TICKETS = "SUPPORT_TICKETS"


class RetentionUnit(StrEnum):
    DAYS = "DAYS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"


class RetentionAction(StrEnum):
    DELETE = "DELETE"
    ANONYMIZE = "ANONYMIZE"
    ARCHIVE = "ARCHIVE"
    REVIEW = "REVIEW"
    RETAIN = "RETAIN"


class JobType(StrEnum):
    ARCHIVE = "ARCHIVE"
    ANONYMIZE = "ANONYMIZE"
    DELETE = "DELETE"


class JobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


@dataclass
class RetentionPolicy:
    id: uuid.UUID
    business_id: uuid.UUID
    name: str
    data_category: DataCategory
    entity_types: list[EntityType]
    retention_period: int
    retention_unit: RetentionUnit
    action_after_retention: RetentionAction
    legal_basis: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    jurisdiction: str = "UK"
    auto_apply: bool = False
    requires_approval: bool = True
    priority: int = 0
    is_active: bool = True
    # Optional record filter, e.g. {"customer_statuses": ["INACTIVE"]}
    conditions: dict[str, Any] = field(default_factory=dict)
    # Inactivity age past which customer PII escalates to DELETE;
    # None falls back to the configured default.
    delete_inactive_after_days: int | None = None
    last_executed: datetime | None = None
    next_execution: datetime | None = None


@dataclass
class ArchivalJob:
    """Batch lifecycle job produced by a retention assessment."""

    id: uuid.UUID
    business_id: uuid.UUID
    job_type: JobType
    entity_type: EntityType
    status: JobStatus
    target_entity_ids: list[uuid.UUID]
    batch_size: int
    dedupe_key: str
    created_at: datetime
    updated_at: datetime
    policy_id: uuid.UUID | None = None
    requires_approval: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None
    dry_run: bool = False
    processed_count: int = 0
    failed_count: int = 0
    completed_item_ids: list[uuid.UUID] = field(default_factory=list)
    failed_items: dict[str, str] = field(default_factory=dict)
    heartbeat_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deletion_request_id: uuid.UUID | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def awaiting_approval(self) -> bool:
        return self.requires_approval and self.approved_at is None

    def remaining_ids(self) -> list[uuid.UUID]:
        done = set(self.completed_item_ids) | {uuid.UUID(k) for k in self.failed_items}
        return [i for i in self.target_entity_ids if i not in done]


# ---------------------------------------------------------------------------
# Secure deletion
# ---------------------------------------------------------------------------


class DeletionMethod(StrEnum):
    CRYPTO_SHREDDING = "CRYPTO_SHREDDING"
    SECURE_OVERWRITE = "SECURE_OVERWRITE"
    LOGICAL_DELETE = "LOGICAL_DELETE"
    HYBRID = "HYBRID"
    AUDIT_PRESERVE = "AUDIT_PRESERVE"


class DeletionScope(StrEnum):
    CUSTOMER_COMPLETE = "CUSTOMER_COMPLETE"
    CUSTOMER_PII_ONLY = "CUSTOMER_PII_ONLY"
    COMMUNICATION_DATA = "COMMUNICATION_DATA"
    REVIEW_DATA = "REVIEW_DATA"


class DeletionRequestType(StrEnum):
    GDPR_ERASURE = "GDPR_ERASURE"
    BUSINESS_REQUEST = "BUSINESS_REQUEST"
    RETENTION_POLICY = "RETENTION_POLICY"


class DeletionPriority(StrEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class CertificateVerification(StrEnum):
    VERIFIED = "VERIFIED"
    PARTIAL = "PARTIAL"
    NOT_APPLICABLE = "NOT_APPLICABLE"


@dataclass
class DeletionRequest:
    id: uuid.UUID
    business_id: uuid.UUID
    scope: DeletionScope
    target_entity_type: EntityType
    target_entity_ids: list[uuid.UUID]
    method: DeletionMethod
    legal_basis: str
    priority: DeletionPriority
    request_type: DeletionRequestType
    status: JobStatus
    batch_size: int
    created_at: datetime
    updated_at: datetime
    requested_by: str | None = None
    policy_id: uuid.UUID | None = None
    gdpr_request_id: uuid.UUID | None = None
    requires_approval: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None
    dry_run: bool = False
    processed_count: int = 0
    failed_count: int = 0
    completed_item_ids: list[uuid.UUID] = field(default_factory=list)
    failed_items: dict[str, str] = field(default_factory=dict)
    destroyed_key_refs: list[str] = field(default_factory=list)
    heartbeat_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    certificate_id: uuid.UUID | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def awaiting_approval(self) -> bool:
        return self.requires_approval and self.approved_at is None

    def remaining_ids(self) -> list[uuid.UUID]:
        done = set(self.completed_item_ids) | {uuid.UUID(k) for k in self.failed_items}
        return [i for i in self.target_entity_ids if i not in done]


@dataclass(frozen=True)
class DeletionCertificate:
    """Signed, immutable proof that a deletion request was carried out."""

    id: uuid.UUID
    deletion_request_id: uuid.UUID
    business_id: uuid.UUID
    method: DeletionMethod
    scope: DeletionScope
    records_deleted: int
    records_failed: int
    key_destruction_proof: str
    signature: str
    legal_basis: str
    verification_status: CertificateVerification
    issued_at: datetime
    valid_until: datetime
    gdpr_request_id: uuid.UUID | None = None
