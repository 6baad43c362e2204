"""PostgreSQL store implementations (SQLAlchemy 2.0 async).

Every store method opens its own short transaction from the session
factory; no ORM object outlives the call. Rows are converted to and from
the domain dataclasses by a ``_Codec`` per table, whose column names match
the dataclass field names.

Status changes are conditional UPDATEs (``WHERE status = :expected``), so
the row count tells the caller whether it won the race. Per-item progress
of batch jobs is written under ``SELECT ... FOR UPDATE``.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dsr_engine.compliance.entities import (
    TERMINAL_REQUEST_STATUSES,
    ActorType,
    ArchivalJob,
    BusinessRecord,
    CertificateVerification,
    Challenge,
    ChallengeStatus,
    ChallengeType,
    ConsentState,
    CustomerRecord,
    CustomerStatus,
    DataCategory,
    DataSubjectRequest,
    DeletionCertificate,
    DeletionMethod,
    DeletionPriority,
    DeletionRequest,
    DeletionRequestType,
    DeletionScope,
    EntityType,
    IdentityData,
    IdentityVerification,
    JobStatus,
    JobType,
    ObjectionRecord,
    RecordSummary,
    RequestChannel,
    RequestPriority,
    RequestStatus,
    RetentionAction,
    RetentionPolicy,
    RetentionUnit,
    ReviewRequestRecord,
    RightType,
    RiskLevel,
    VerificationMethod,
    VerificationStatus,
    WorkflowTransition,
)
from dsr_engine.compliance.events import ComplianceAuditEvent, EventCategory, EventSeverity
from dsr_engine.models import (
    ArchivalJobRow,
    BusinessRow,
    ComplianceAuditEventRow,
    CustomerRow,
    DataSubjectRequestRow,
    DeletionCertificateRow,
    DeletionRequestRow,
    EncryptionKeyRow,
    IdentityVerificationRow,
    ObjectionRow,
    RetentionPolicyRow,
    ReviewRequestRow,
    WorkflowTransitionRow,
)
from dsr_engine.store.base import DuplicateRecordError

log = structlog.get_logger(__name__)

E = TypeVar("E")

SessionFactory = async_sessionmaker[AsyncSession]


# ---------------------------------------------------------------------------
# Row <-> dataclass conversion
# ---------------------------------------------------------------------------


def _optional(convert: Callable[[Any], Any]) -> Callable[[Any], Any]:
    return lambda value: None if value is None else convert(value)


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _ids_out(ids: Sequence[uuid.UUID]) -> list[str]:
    return [str(i) for i in ids]


def _ids_in(values: Sequence[str]) -> list[uuid.UUID]:
    return [uuid.UUID(v) for v in values]


def _challenge_out(challenge: Challenge) -> dict[str, Any]:
    return {
        "id": str(challenge.id),
        "type": challenge.type.value,
        "status": challenge.status.value,
        "max_attempts": challenge.max_attempts,
        "expires_at": challenge.expires_at.isoformat(),
        "attempts": challenge.attempts,
        "secret_digest": challenge.secret_digest,
        "prompt": challenge.prompt,
        "delivery_id": challenge.delivery_id,
        "completed_at": challenge.completed_at.isoformat() if challenge.completed_at else None,
    }


def _challenge_in(data: dict[str, Any]) -> Challenge:
    return Challenge(
        id=uuid.UUID(data["id"]),
        type=ChallengeType(data["type"]),
        status=ChallengeStatus(data["status"]),
        max_attempts=data["max_attempts"],
        expires_at=datetime.fromisoformat(data["expires_at"]),
        attempts=data.get("attempts", 0),
        secret_digest=data.get("secret_digest"),
        prompt=data.get("prompt"),
        delivery_id=data.get("delivery_id"),
        completed_at=_optional(datetime.fromisoformat)(data.get("completed_at")),
    )


@dataclass(frozen=True)
class _Codec(Generic[E]):
    entity: type[E]
    model: type[Any]
    encode: dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    decode: dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    # dataclass field -> ORM attribute, where the two differ
    columns: dict[str, str] = field(default_factory=dict)

    def values(self, entity: E) -> dict[str, Any]:
        return self.changes({f.name: getattr(entity, f.name) for f in fields(self.entity)})  # type: ignore[arg-type]

    def changes(self, changes: dict[str, Any]) -> dict[str, Any]:
        return {
            self.columns.get(name, name): self.encode.get(name, _identity)(value)
            for name, value in changes.items()
        }

    def row(self, entity: E) -> Any:
        return self.model(**self.values(entity))

    def load(self, row: Any) -> E:
        return self.entity(
            **{
                f.name: self.decode.get(f.name, _identity)(getattr(row, self.columns.get(f.name, f.name)))
                for f in fields(self.entity)  # type: ignore[arg-type]
            }
        )


def _identity(value: Any) -> Any:
    return value


_BUSINESS = _Codec(BusinessRecord, BusinessRow)

_CUSTOMER = _Codec(
    CustomerRecord,
    CustomerRow,
    encode={"encrypted_fields": dict},
    decode={"encrypted_fields": dict, "status": CustomerStatus, "consent_state": ConsentState},
)

_REVIEW = _Codec(ReviewRequestRecord, ReviewRequestRow, encode={"encrypted_fields": dict}, decode={"encrypted_fields": dict})

_OBJECTION = _Codec(ObjectionRecord, ObjectionRow, encode={"processing_purposes": list}, decode={"processing_purposes": list})

_REQUEST = _Codec(
    DataSubjectRequest,
    DataSubjectRequestRow,
    encode={
        "identity_data": lambda v: v.to_dict(),
        "request_data": _jsonable,
        "response_data": _jsonable,
    },
    decode={
        "right_type": RightType,
        "status": RequestStatus,
        "channel": RequestChannel,
        "priority": RequestPriority,
        "identity_data": IdentityData.from_dict,
        "request_data": dict,
        "response_data": dict,
    },
)

_TRANSITION = _Codec(
    WorkflowTransition,
    WorkflowTransitionRow,
    encode={"metadata": _jsonable},
    decode={"from_status": RequestStatus, "to_status": RequestStatus, "actor": ActorType, "metadata": dict},
    columns={"metadata": "metadata_"},
)

_VERIFICATION = _Codec(
    IdentityVerification,
    IdentityVerificationRow,
    encode={"challenges": lambda cs: [_challenge_out(c) for c in cs], "risk_factors": list},
    decode={
        "method": VerificationMethod,
        "risk_level": RiskLevel,
        "status": VerificationStatus,
        "challenges": lambda cs: [_challenge_in(c) for c in cs],
        "risk_factors": list,
    },
)

_POLICY = _Codec(
    RetentionPolicy,
    RetentionPolicyRow,
    encode={"entity_types": lambda ts: [str(t) for t in ts], "conditions": _jsonable},
    decode={
        "data_category": DataCategory,
        "entity_types": lambda ts: [EntityType(t) for t in ts],
        "retention_unit": RetentionUnit,
        "action_after_retention": RetentionAction,
        "conditions": dict,
    },
)

_JOB = _Codec(
    ArchivalJob,
    ArchivalJobRow,
    encode={"target_entity_ids": _ids_out, "completed_item_ids": _ids_out, "failed_items": dict},
    decode={
        "job_type": JobType,
        "entity_type": EntityType,
        "status": JobStatus,
        "target_entity_ids": _ids_in,
        "completed_item_ids": _ids_in,
        "failed_items": dict,
    },
)

_DELETION = _Codec(
    DeletionRequest,
    DeletionRequestRow,
    encode={
        "target_entity_ids": _ids_out,
        "completed_item_ids": _ids_out,
        "failed_items": dict,
        "destroyed_key_refs": list,
    },
    decode={
        "scope": DeletionScope,
        "target_entity_type": EntityType,
        "method": DeletionMethod,
        "priority": DeletionPriority,
        "request_type": DeletionRequestType,
        "status": JobStatus,
        "target_entity_ids": _ids_in,
        "completed_item_ids": _ids_in,
        "failed_items": dict,
        "destroyed_key_refs": list,
    },
)

_CERTIFICATE = _Codec(
    DeletionCertificate,
    DeletionCertificateRow,
    decode={
        "method": DeletionMethod,
        "scope": DeletionScope,
        "verification_status": CertificateVerification,
    },
)

_EVENT = _Codec(
    ComplianceAuditEvent,
    ComplianceAuditEventRow,
    encode={"tags": list},
    decode={"category": EventCategory, "severity": EventSeverity, "tags": tuple, "payload": dict},
)


class _SqlStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory


def _record_item(
    row: ArchivalJobRow | DeletionRequestRow,
    entity_id: uuid.UUID,
    error: str | None,
    heartbeat_at: datetime,
) -> None:
    key = str(entity_id)
    if error is None:
        if key not in row.completed_item_ids:
            # JSONB columns are only flushed when reassigned
            row.completed_item_ids = [*row.completed_item_ids, key]
            row.processed_count += 1
    elif key not in row.failed_items:
        row.failed_items = {**row.failed_items, key: error}
        row.failed_count += 1
    row.heartbeat_at = heartbeat_at


def _runnable(model: type[ArchivalJobRow] | type[DeletionRequestRow], stale_before: datetime) -> Any:
    return or_(
        and_(
            model.status == JobStatus.PENDING.value,
            or_(model.requires_approval.is_(False), model.approved_at.is_not(None)),
        ),
        and_(
            model.status == JobStatus.RUNNING.value,
            or_(model.heartbeat_at.is_(None), model.heartbeat_at < stale_before),
        ),
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class SqlAuditEventStore(_SqlStore):
    async def append_many(self, events: Sequence[ComplianceAuditEvent]) -> None:
        try:
            async with self._sessions.begin() as session:
                session.add_all([_EVENT.row(e) for e in events])
        except IntegrityError as exc:
            raise DuplicateRecordError("Audit chain position already taken") from exc

    async def last_event(self, business_id: uuid.UUID) -> ComplianceAuditEvent | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(ComplianceAuditEventRow)
                .where(ComplianceAuditEventRow.business_id == business_id)
                .order_by(ComplianceAuditEventRow.sequence.desc())
                .limit(1)
            )
            return _EVENT.load(row) if row else None

    async def list_events(
        self,
        business_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ComplianceAuditEvent]:
        stmt = select(ComplianceAuditEventRow).where(ComplianceAuditEventRow.business_id == business_id)
        if since is not None:
            stmt = stmt.where(ComplianceAuditEventRow.created_at >= since)
        if until is not None:
            stmt = stmt.where(ComplianceAuditEventRow.created_at <= until)
        async with self._sessions() as session:
            rows = await session.scalars(stmt.order_by(ComplianceAuditEventRow.sequence))
            return [_EVENT.load(r) for r in rows]

    async def list_by_correlation(
        self, correlation_id: str, business_id: uuid.UUID | None = None
    ) -> list[ComplianceAuditEvent]:
        stmt = select(ComplianceAuditEventRow).where(ComplianceAuditEventRow.correlation_id == correlation_id)
        if business_id is not None:
            stmt = stmt.where(ComplianceAuditEventRow.business_id == business_id)
        async with self._sessions() as session:
            rows = await session.scalars(
                stmt.order_by(ComplianceAuditEventRow.created_at, ComplianceAuditEventRow.sequence)
            )
            return [_EVENT.load(r) for r in rows]


class SqlRequestStore(_SqlStore):
    async def add(self, request: DataSubjectRequest) -> None:
        try:
            async with self._sessions.begin() as session:
                session.add(_REQUEST.row(request))
        except IntegrityError as exc:
            raise DuplicateRecordError(f"Request {request.id} already exists") from exc

    async def get(self, request_id: uuid.UUID) -> DataSubjectRequest | None:
        async with self._sessions() as session:
            row = await session.get(DataSubjectRequestRow, request_id)
            return _REQUEST.load(row) if row else None

    async def list_for_business(self, business_id: uuid.UUID) -> list[DataSubjectRequest]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(DataSubjectRequestRow)
                .where(DataSubjectRequestRow.business_id == business_id)
                .order_by(DataSubjectRequestRow.created_at)
            )
            return [_REQUEST.load(r) for r in rows]

    async def list_open(self) -> list[DataSubjectRequest]:
        terminal = [s.value for s in TERMINAL_REQUEST_STATUSES]
        async with self._sessions() as session:
            rows = await session.scalars(
                select(DataSubjectRequestRow).where(DataSubjectRequestRow.status.not_in(terminal))
            )
            return [_REQUEST.load(r) for r in rows]

    async def compare_and_set_status(
        self,
        request_id: uuid.UUID,
        expected: RequestStatus,
        new: RequestStatus,
        changes: dict[str, Any],
    ) -> DataSubjectRequest | None:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(DataSubjectRequestRow)
                .where(
                    DataSubjectRequestRow.id == request_id,
                    DataSubjectRequestRow.status == expected.value,
                )
                .values(**_REQUEST.changes({**changes, "status": new}))
            )
            if result.rowcount != 1:
                return None
            row = await session.get(DataSubjectRequestRow, request_id, populate_existing=True)
            return _REQUEST.load(row)

    async def update_fields(self, request_id: uuid.UUID, changes: dict[str, Any]) -> DataSubjectRequest | None:
        if "status" in changes:
            raise ValueError("Status changes must go through compare_and_set_status")
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(DataSubjectRequestRow)
                .where(DataSubjectRequestRow.id == request_id)
                .values(**_REQUEST.changes(changes))
            )
            if result.rowcount != 1:
                return None
            row = await session.get(DataSubjectRequestRow, request_id, populate_existing=True)
            return _REQUEST.load(row)

    async def add_transition(self, transition: WorkflowTransition) -> None:
        async with self._sessions.begin() as session:
            session.add(_TRANSITION.row(transition))

    async def list_transitions(self, request_id: uuid.UUID) -> list[WorkflowTransition]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(WorkflowTransitionRow)
                .where(WorkflowTransitionRow.request_id == request_id)
                .order_by(WorkflowTransitionRow.created_at)
            )
            return [_TRANSITION.load(r) for r in rows]


class SqlVerificationStore(_SqlStore):
    @staticmethod
    def _values(verification: IdentityVerification) -> dict[str, Any]:
        values = _VERIFICATION.values(verification)
        values["secret_digests"] = [c.secret_digest for c in verification.challenges if c.secret_digest]
        return values

    async def add(self, verification: IdentityVerification) -> None:
        async with self._sessions.begin() as session:
            session.add(IdentityVerificationRow(**self._values(verification)))

    async def get(self, verification_id: uuid.UUID) -> IdentityVerification | None:
        async with self._sessions() as session:
            row = await session.get(IdentityVerificationRow, verification_id)
            return _VERIFICATION.load(row) if row else None

    async def save(self, verification: IdentityVerification, expected_version: int) -> bool:
        values = self._values(verification)
        values["version"] = expected_version + 1
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(IdentityVerificationRow)
                .where(
                    IdentityVerificationRow.id == verification.id,
                    IdentityVerificationRow.version == expected_version,
                )
                .values(**values)
            )
        if result.rowcount != 1:
            return False
        verification.version = expected_version + 1
        return True

    async def find_by_secret_digest(self, digest: str) -> IdentityVerification | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(IdentityVerificationRow).where(IdentityVerificationRow.secret_digests.contains([digest]))
            )
            return _VERIFICATION.load(row) if row else None

    async def count_recent(self, business_id: uuid.UUID, requestor_email: str, since: datetime) -> int:
        async with self._sessions() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(IdentityVerificationRow)
                .where(
                    IdentityVerificationRow.business_id == business_id,
                    func.lower(IdentityVerificationRow.requestor_email) == requestor_email.lower(),
                    IdentityVerificationRow.created_at >= since,
                )
            )
            return int(count or 0)

    async def list_open(self) -> list[IdentityVerification]:
        open_statuses = [VerificationStatus.PENDING.value, VerificationStatus.IN_PROGRESS.value]
        async with self._sessions() as session:
            rows = await session.scalars(
                select(IdentityVerificationRow).where(IdentityVerificationRow.status.in_(open_statuses))
            )
            return [_VERIFICATION.load(r) for r in rows]


class SqlSubjectStore(_SqlStore):
    async def add_business(self, business: BusinessRecord) -> None:
        async with self._sessions.begin() as session:
            session.add(_BUSINESS.row(business))

    async def get_business(self, business_id: uuid.UUID) -> BusinessRecord | None:
        async with self._sessions() as session:
            row = await session.get(BusinessRow, business_id)
            return _BUSINESS.load(row) if row else None

    async def add_customer(self, customer: CustomerRecord) -> None:
        async with self._sessions.begin() as session:
            session.add(_CUSTOMER.row(customer))

    async def get_customer(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> CustomerRecord | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(CustomerRow).where(CustomerRow.id == customer_id, CustomerRow.business_id == business_id)
            )
            return _CUSTOMER.load(row) if row else None

    async def find_customers(
        self,
        business_id: uuid.UUID,
        *,
        email_index: str | None,
        phone_index: str | None,
    ) -> list[CustomerRecord]:
        contact_matches = []
        if email_index is not None:
            contact_matches.append(CustomerRow.email_index == email_index)
        if phone_index is not None:
            contact_matches.append(CustomerRow.phone_index == phone_index)
        if not contact_matches:
            return []
        stmt = select(CustomerRow).where(
            and_(
                CustomerRow.business_id == business_id,
                CustomerRow.deleted_at.is_(None),
                or_(*contact_matches),
            )
        )
        async with self._sessions() as session:
            rows = await session.scalars(stmt.order_by(CustomerRow.created_at))
            return [_CUSTOMER.load(r) for r in rows]

    async def save_customer(self, customer: CustomerRecord) -> None:
        async with self._sessions.begin() as session:
            await session.merge(_CUSTOMER.row(customer))

    async def add_review_request(self, review: ReviewRequestRecord) -> None:
        async with self._sessions.begin() as session:
            session.add(_REVIEW.row(review))

    async def get_review_request(self, business_id: uuid.UUID, review_id: uuid.UUID) -> ReviewRequestRecord | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(ReviewRequestRow).where(
                    ReviewRequestRow.id == review_id, ReviewRequestRow.business_id == business_id
                )
            )
            return _REVIEW.load(row) if row else None

    async def list_review_requests(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ReviewRequestRecord]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(ReviewRequestRow)
                .where(
                    ReviewRequestRow.business_id == business_id,
                    ReviewRequestRow.customer_id == customer_id,
                    ReviewRequestRow.deleted_at.is_(None),
                )
                .order_by(ReviewRequestRow.created_at)
            )
            return [_REVIEW.load(r) for r in rows]

    async def save_review_request(self, review: ReviewRequestRecord) -> None:
        async with self._sessions.begin() as session:
            await session.merge(_REVIEW.row(review))

    async def add_objection(self, objection: ObjectionRecord) -> None:
        async with self._sessions.begin() as session:
            session.add(_OBJECTION.row(objection))

    async def list_objections(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ObjectionRecord]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(ObjectionRow)
                .where(ObjectionRow.business_id == business_id, ObjectionRow.customer_id == customer_id)
                .order_by(ObjectionRow.created_at)
            )
            return [_OBJECTION.load(r) for r in rows]

    async def list_records(
        self,
        business_id: uuid.UUID,
        entity_type: EntityType,
        *,
        created_before: datetime | None = None,
    ) -> list[RecordSummary]:
        model: type[CustomerRow] | type[ReviewRequestRow] = (
            CustomerRow if entity_type == EntityType.CUSTOMER else ReviewRequestRow
        )
        stmt = select(model).where(model.business_id == business_id, model.deleted_at.is_(None))
        if created_before is not None:
            stmt = stmt.where(model.created_at < created_before)
        async with self._sessions() as session:
            rows = await session.scalars(stmt.order_by(model.created_at))
            return [
                RecordSummary(
                    entity_type=entity_type,
                    entity_id=r.id,
                    business_id=r.business_id,
                    created_at=r.created_at,
                    last_activity_at=r.last_activity_at,
                    status=r.status,
                    archived=r.archived_at is not None,
                    anonymized=r.anonymized_at is not None,
                )
                for r in rows
            ]


class SqlRetentionStore(_SqlStore):
    async def add_policy(self, policy: RetentionPolicy) -> None:
        async with self._sessions.begin() as session:
            session.add(_POLICY.row(policy))

    async def get_policy(self, policy_id: uuid.UUID) -> RetentionPolicy | None:
        async with self._sessions() as session:
            row = await session.get(RetentionPolicyRow, policy_id)
            return _POLICY.load(row) if row else None

    async def save_policy(self, policy: RetentionPolicy) -> None:
        async with self._sessions.begin() as session:
            await session.merge(_POLICY.row(policy))

    async def list_policies(self, business_id: uuid.UUID) -> list[RetentionPolicy]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(RetentionPolicyRow)
                .where(RetentionPolicyRow.business_id == business_id)
                .order_by(RetentionPolicyRow.priority.desc(), RetentionPolicyRow.created_at)
            )
            return [_POLICY.load(r) for r in rows]

    async def list_due_policies(self, now: datetime) -> list[RetentionPolicy]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(RetentionPolicyRow).where(
                    RetentionPolicyRow.is_active.is_(True),
                    RetentionPolicyRow.auto_apply.is_(True),
                    or_(RetentionPolicyRow.next_execution.is_(None), RetentionPolicyRow.next_execution <= now),
                )
            )
            return [_POLICY.load(r) for r in rows]

    async def add_job(self, job: ArchivalJob) -> None:
        try:
            async with self._sessions.begin() as session:
                session.add(_JOB.row(job))
        except IntegrityError as exc:
            raise DuplicateRecordError(f"Job with key {job.dedupe_key} already exists") from exc

    async def get_job(self, job_id: uuid.UUID) -> ArchivalJob | None:
        async with self._sessions() as session:
            row = await session.get(ArchivalJobRow, job_id)
            return _JOB.load(row) if row else None

    async def list_jobs(self, business_id: uuid.UUID, policy_id: uuid.UUID | None = None) -> list[ArchivalJob]:
        stmt = select(ArchivalJobRow).where(ArchivalJobRow.business_id == business_id)
        if policy_id is not None:
            stmt = stmt.where(ArchivalJobRow.policy_id == policy_id)
        async with self._sessions() as session:
            rows = await session.scalars(stmt.order_by(ArchivalJobRow.created_at))
            return [_JOB.load(r) for r in rows]

    async def covered_entity_ids(self, policy_id: uuid.UUID, entity_type: EntityType) -> set[uuid.UUID]:
        async with self._sessions() as session:
            target_lists = await session.scalars(
                select(ArchivalJobRow.target_entity_ids).where(
                    ArchivalJobRow.policy_id == policy_id,
                    ArchivalJobRow.entity_type == entity_type.value,
                    ArchivalJobRow.status.not_in([JobStatus.FAILED.value, JobStatus.CANCELLED.value]),
                )
            )
            return {uuid.UUID(i) for targets in target_lists for i in targets}

    async def transition_job(
        self,
        job_id: uuid.UUID,
        expected: Collection[JobStatus],
        new: JobStatus,
        changes: dict[str, Any],
    ) -> ArchivalJob | None:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(ArchivalJobRow)
                .where(ArchivalJobRow.id == job_id, ArchivalJobRow.status.in_([s.value for s in expected]))
                .values(**_JOB.changes({**changes, "status": new}))
            )
            if result.rowcount != 1:
                return None
            row = await session.get(ArchivalJobRow, job_id, populate_existing=True)
            return _JOB.load(row)

    async def update_job(self, job_id: uuid.UUID, changes: dict[str, Any]) -> ArchivalJob | None:
        if "status" in changes:
            raise ValueError("Status changes must go through transition_job")
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(ArchivalJobRow).where(ArchivalJobRow.id == job_id).values(**_JOB.changes(changes))
            )
            if result.rowcount != 1:
                return None
            row = await session.get(ArchivalJobRow, job_id, populate_existing=True)
            return _JOB.load(row)

    async def record_job_item(
        self,
        job_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        error: str | None,
        heartbeat_at: datetime,
    ) -> ArchivalJob | None:
        async with self._sessions.begin() as session:
            row = await session.scalar(select(ArchivalJobRow).where(ArchivalJobRow.id == job_id).with_for_update())
            if row is None:
                return None
            _record_item(row, entity_id, error, heartbeat_at)
            await session.flush()
            return _JOB.load(row)

    async def list_runnable_jobs(self, stale_before: datetime, limit: int) -> list[ArchivalJob]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(ArchivalJobRow)
                .where(_runnable(ArchivalJobRow, stale_before))
                .order_by(ArchivalJobRow.created_at)
                .limit(limit)
            )
            return [_JOB.load(r) for r in rows]


class SqlDeletionStore(_SqlStore):
    async def add_request(self, request: DeletionRequest) -> None:
        async with self._sessions.begin() as session:
            session.add(_DELETION.row(request))

    async def get_request(self, deletion_request_id: uuid.UUID) -> DeletionRequest | None:
        async with self._sessions() as session:
            row = await session.get(DeletionRequestRow, deletion_request_id)
            return _DELETION.load(row) if row else None

    async def list_requests(self, business_id: uuid.UUID) -> list[DeletionRequest]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(DeletionRequestRow)
                .where(DeletionRequestRow.business_id == business_id)
                .order_by(DeletionRequestRow.created_at)
            )
            return [_DELETION.load(r) for r in rows]

    async def transition_request(
        self,
        deletion_request_id: uuid.UUID,
        expected: Collection[JobStatus],
        new: JobStatus,
        changes: dict[str, Any],
    ) -> DeletionRequest | None:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(DeletionRequestRow)
                .where(
                    DeletionRequestRow.id == deletion_request_id,
                    DeletionRequestRow.status.in_([s.value for s in expected]),
                )
                .values(**_DELETION.changes({**changes, "status": new}))
            )
            if result.rowcount != 1:
                return None
            row = await session.get(DeletionRequestRow, deletion_request_id, populate_existing=True)
            return _DELETION.load(row)

    async def update_request(self, deletion_request_id: uuid.UUID, changes: dict[str, Any]) -> DeletionRequest | None:
        if "status" in changes:
            raise ValueError("Status changes must go through transition_request")
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(DeletionRequestRow)
                .where(DeletionRequestRow.id == deletion_request_id)
                .values(**_DELETION.changes(changes))
            )
            if result.rowcount != 1:
                return None
            row = await session.get(DeletionRequestRow, deletion_request_id, populate_existing=True)
            return _DELETION.load(row)

    async def record_request_item(
        self,
        deletion_request_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        error: str | None,
        destroyed_key_refs: Sequence[str],
        heartbeat_at: datetime,
    ) -> DeletionRequest | None:
        async with self._sessions.begin() as session:
            row = await session.scalar(
                select(DeletionRequestRow).where(DeletionRequestRow.id == deletion_request_id).with_for_update()
            )
            if row is None:
                return None
            _record_item(row, entity_id, error, heartbeat_at)
            new_refs = [r for r in destroyed_key_refs if r not in row.destroyed_key_refs]
            if new_refs:
                row.destroyed_key_refs = [*row.destroyed_key_refs, *new_refs]
            await session.flush()
            return _DELETION.load(row)

    async def list_runnable_requests(self, stale_before: datetime, limit: int) -> list[DeletionRequest]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(DeletionRequestRow)
                .where(_runnable(DeletionRequestRow, stale_before))
                .order_by(DeletionRequestRow.created_at)
                .limit(limit)
            )
            return [_DELETION.load(r) for r in rows]

    async def add_certificate(self, certificate: DeletionCertificate) -> None:
        try:
            async with self._sessions.begin() as session:
                session.add(_CERTIFICATE.row(certificate))
        except IntegrityError as exc:
            raise DuplicateRecordError(
                f"Deletion request {certificate.deletion_request_id} already has a certificate"
            ) from exc

    async def get_certificate(self, certificate_id: uuid.UUID) -> DeletionCertificate | None:
        async with self._sessions() as session:
            row = await session.get(DeletionCertificateRow, certificate_id)
            return _CERTIFICATE.load(row) if row else None

    async def get_certificate_for_request(self, deletion_request_id: uuid.UUID) -> DeletionCertificate | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(DeletionCertificateRow).where(
                    DeletionCertificateRow.deletion_request_id == deletion_request_id
                )
            )
            return _CERTIFICATE.load(row) if row else None


class SqlKeyStore(_SqlStore):
    async def get(self, key_ref: str) -> bytes | None:
        async with self._sessions() as session:
            return await session.scalar(
                select(EncryptionKeyRow.wrapped_key).where(EncryptionKeyRow.key_ref == key_ref)
            )

    async def put_if_absent(self, key_ref: str, wrapped_key: bytes) -> bytes | None:
        async with self._sessions.begin() as session:
            await session.execute(
                insert(EncryptionKeyRow)
                .values(key_ref=key_ref, wrapped_key=wrapped_key, created_at=datetime.now(UTC))
                .on_conflict_do_nothing(index_elements=[EncryptionKeyRow.key_ref])
            )
            row = await session.get(EncryptionKeyRow, key_ref, populate_existing=True)
            if row is None or row.destroyed_at is not None:
                return None
            return row.wrapped_key

    async def destroy(self, key_ref: str) -> bool:
        now = datetime.now(UTC)
        async with self._sessions.begin() as session:
            row = await session.scalar(
                select(EncryptionKeyRow).where(EncryptionKeyRow.key_ref == key_ref).with_for_update()
            )
            if row is None:
                session.add(EncryptionKeyRow(key_ref=key_ref, wrapped_key=None, created_at=now, destroyed_at=now))
                return False
            existed = row.wrapped_key is not None
            row.wrapped_key = None
            row.destroyed_at = row.destroyed_at or now
        if existed:
            log.info("keystore.key_destroyed", key_ref=key_ref)
        return existed
