"""In-memory store implementations.

Used by the test-suite and by ``USE_IN_MEMORY_STORE=true`` local runs.
Records are deep-copied on the way in and out so callers observe the same
isolation they would get from a database round-trip. Compare-and-set
methods contain no await points, which makes them atomic on the event loop.
"""

from __future__ import annotations

import copy
import dataclasses
import uuid
from collections import defaultdict
from collections.abc import Collection, Sequence
from datetime import datetime
from typing import Any, TypeVar

from dsr_engine.compliance.entities import (
    TERMINAL_REQUEST_STATUSES,
    ArchivalJob,
    BusinessRecord,
    CustomerRecord,
    DataSubjectRequest,
    DeletionCertificate,
    DeletionRequest,
    EntityType,
    IdentityVerification,
    JobStatus,
    ObjectionRecord,
    RecordSummary,
    RequestStatus,
    RetentionPolicy,
    ReviewRequestRecord,
    VerificationStatus,
    WorkflowTransition,
)
from dsr_engine.compliance.events import ComplianceAuditEvent
from dsr_engine.store.base import DuplicateRecordError

T = TypeVar("T")


def _copy(value: T) -> T:
    return copy.deepcopy(value)


def _apply(record: T, changes: dict[str, Any]) -> T:
    return dataclasses.replace(record, **changes)  # type: ignore[type-var]


class InMemoryAuditEventStore:
    """Append-only event list per business."""

    def __init__(self) -> None:
        self._events: dict[uuid.UUID, list[ComplianceAuditEvent]] = defaultdict(list)

    async def append_many(self, events: Sequence[ComplianceAuditEvent]) -> None:
        for event in events:
            self._events[event.business_id].append(event)

    async def last_event(self, business_id: uuid.UUID) -> ComplianceAuditEvent | None:
        chain = self._events.get(business_id)
        return chain[-1] if chain else None

    async def list_events(
        self,
        business_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ComplianceAuditEvent]:
        return [
            e
            for e in sorted(self._events.get(business_id, []), key=lambda e: e.sequence)
            if (since is None or e.created_at >= since) and (until is None or e.created_at <= until)
        ]

    async def list_by_correlation(
        self, correlation_id: str, business_id: uuid.UUID | None = None
    ) -> list[ComplianceAuditEvent]:
        chains = [self._events.get(business_id, [])] if business_id else list(self._events.values())
        matched = [e for chain in chains for e in chain if e.correlation_id == correlation_id]
        return sorted(matched, key=lambda e: (e.created_at, e.sequence))


class InMemoryRequestStore:
    def __init__(self) -> None:
        self._requests: dict[uuid.UUID, DataSubjectRequest] = {}
        self._transitions: dict[uuid.UUID, list[WorkflowTransition]] = defaultdict(list)

    async def add(self, request: DataSubjectRequest) -> None:
        if request.id in self._requests:
            raise DuplicateRecordError(f"Request {request.id} already exists")
        self._requests[request.id] = _copy(request)

    async def get(self, request_id: uuid.UUID) -> DataSubjectRequest | None:
        request = self._requests.get(request_id)
        return _copy(request) if request else None

    async def list_for_business(self, business_id: uuid.UUID) -> list[DataSubjectRequest]:
        matched = [r for r in self._requests.values() if r.business_id == business_id]
        return [_copy(r) for r in sorted(matched, key=lambda r: r.created_at)]

    async def list_open(self) -> list[DataSubjectRequest]:
        return [_copy(r) for r in self._requests.values() if r.status not in TERMINAL_REQUEST_STATUSES]

    async def compare_and_set_status(
        self,
        request_id: uuid.UUID,
        expected: RequestStatus,
        new: RequestStatus,
        changes: dict[str, Any],
    ) -> DataSubjectRequest | None:
        current = self._requests.get(request_id)
        if current is None or current.status != expected:
            return None
        updated = _apply(current, {**changes, "status": new})
        self._requests[request_id] = updated
        return _copy(updated)

    async def update_fields(self, request_id: uuid.UUID, changes: dict[str, Any]) -> DataSubjectRequest | None:
        if "status" in changes:
            raise ValueError("Status changes must go through compare_and_set_status")
        current = self._requests.get(request_id)
        if current is None:
            return None
        updated = _apply(current, changes)
        self._requests[request_id] = updated
        return _copy(updated)

    async def add_transition(self, transition: WorkflowTransition) -> None:
        self._transitions[transition.request_id].append(transition)

    async def list_transitions(self, request_id: uuid.UUID) -> list[WorkflowTransition]:
        return list(self._transitions.get(request_id, []))


class InMemoryVerificationStore:
    def __init__(self) -> None:
        self._verifications: dict[uuid.UUID, IdentityVerification] = {}

    async def add(self, verification: IdentityVerification) -> None:
        self._verifications[verification.id] = _copy(verification)

    async def get(self, verification_id: uuid.UUID) -> IdentityVerification | None:
        verification = self._verifications.get(verification_id)
        return _copy(verification) if verification else None

    async def save(self, verification: IdentityVerification, expected_version: int) -> bool:
        current = self._verifications.get(verification.id)
        if current is None or current.version != expected_version:
            return False
        stored = _copy(verification)
        stored.version = expected_version + 1
        self._verifications[verification.id] = stored
        verification.version = stored.version
        return True

    async def find_by_secret_digest(self, digest: str) -> IdentityVerification | None:
        for verification in self._verifications.values():
            if any(c.secret_digest == digest for c in verification.challenges):
                return _copy(verification)
        return None

    async def count_recent(self, business_id: uuid.UUID, requestor_email: str, since: datetime) -> int:
        email = requestor_email.lower()
        return sum(
            1
            for v in self._verifications.values()
            if v.business_id == business_id and v.requestor_email.lower() == email and v.created_at >= since
        )

    async def list_open(self) -> list[IdentityVerification]:
        return [
            _copy(v)
            for v in self._verifications.values()
            if v.status in (VerificationStatus.PENDING, VerificationStatus.IN_PROGRESS)
        ]


class InMemorySubjectStore:
    def __init__(self) -> None:
        self._businesses: dict[uuid.UUID, BusinessRecord] = {}
        self._customers: dict[uuid.UUID, CustomerRecord] = {}
        self._reviews: dict[uuid.UUID, ReviewRequestRecord] = {}
        self._objections: list[ObjectionRecord] = []

    async def add_business(self, business: BusinessRecord) -> None:
        self._businesses[business.id] = _copy(business)

    async def get_business(self, business_id: uuid.UUID) -> BusinessRecord | None:
        business = self._businesses.get(business_id)
        return _copy(business) if business else None

    async def add_customer(self, customer: CustomerRecord) -> None:
        self._customers[customer.id] = _copy(customer)

    async def get_customer(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> CustomerRecord | None:
        customer = self._customers.get(customer_id)
        if customer is None or customer.business_id != business_id:
            return None
        return _copy(customer)

    async def find_customers(
        self,
        business_id: uuid.UUID,
        *,
        email_index: str | None,
        phone_index: str | None,
    ) -> list[CustomerRecord]:
        if email_index is None and phone_index is None:
            return []
        return [
            _copy(c)
            for c in self._customers.values()
            if c.business_id == business_id
            and not c.is_deleted
            and (
                (email_index is not None and c.email_index == email_index)
                or (phone_index is not None and c.phone_index == phone_index)
            )
        ]

    async def save_customer(self, customer: CustomerRecord) -> None:
        self._customers[customer.id] = _copy(customer)

    async def add_review_request(self, review: ReviewRequestRecord) -> None:
        self._reviews[review.id] = _copy(review)

    async def get_review_request(self, business_id: uuid.UUID, review_id: uuid.UUID) -> ReviewRequestRecord | None:
        review = self._reviews.get(review_id)
        if review is None or review.business_id != business_id:
            return None
        return _copy(review)

    async def list_review_requests(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ReviewRequestRecord]:
        return [
            _copy(r)
            for r in self._reviews.values()
            if r.business_id == business_id and r.customer_id == customer_id and not r.is_deleted
        ]

    async def save_review_request(self, review: ReviewRequestRecord) -> None:
        self._reviews[review.id] = _copy(review)

    async def add_objection(self, objection: ObjectionRecord) -> None:
        self._objections.append(_copy(objection))

    async def list_objections(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ObjectionRecord]:
        return [
            _copy(o) for o in self._objections if o.business_id == business_id and o.customer_id == customer_id
        ]

    async def list_records(
        self,
        business_id: uuid.UUID,
        entity_type: EntityType,
        *,
        created_before: datetime | None = None,
    ) -> list[RecordSummary]:
        records: list[CustomerRecord | ReviewRequestRecord]
        if entity_type == EntityType.CUSTOMER:
            records = list(self._customers.values())
        else:
            records = list(self._reviews.values())
        summaries = [
            RecordSummary(
                entity_type=entity_type,
                entity_id=r.id,
                business_id=r.business_id,
                created_at=r.created_at,
                last_activity_at=r.last_activity_at,
                status=str(r.status),
                archived=r.archived_at is not None,
                anonymized=r.anonymized_at is not None,
            )
            for r in records
            if r.business_id == business_id
            and not r.is_deleted
            and (created_before is None or r.created_at < created_before)
        ]
        return sorted(summaries, key=lambda s: s.created_at)


class InMemoryRetentionStore:
    def __init__(self) -> None:
        self._policies: dict[uuid.UUID, RetentionPolicy] = {}
        self._jobs: dict[uuid.UUID, ArchivalJob] = {}

    async def add_policy(self, policy: RetentionPolicy) -> None:
        self._policies[policy.id] = _copy(policy)

    async def get_policy(self, policy_id: uuid.UUID) -> RetentionPolicy | None:
        policy = self._policies.get(policy_id)
        return _copy(policy) if policy else None

    async def save_policy(self, policy: RetentionPolicy) -> None:
        self._policies[policy.id] = _copy(policy)

    async def list_policies(self, business_id: uuid.UUID) -> list[RetentionPolicy]:
        return [_copy(p) for p in self._policies.values() if p.business_id == business_id]

    async def list_due_policies(self, now: datetime) -> list[RetentionPolicy]:
        return [
            _copy(p)
            for p in self._policies.values()
            if p.is_active and p.auto_apply and (p.next_execution is None or p.next_execution <= now)
        ]

    async def add_job(self, job: ArchivalJob) -> None:
        if any(j.dedupe_key == job.dedupe_key for j in self._jobs.values()):
            raise DuplicateRecordError(f"Job with key {job.dedupe_key} already exists")
        self._jobs[job.id] = _copy(job)

    async def get_job(self, job_id: uuid.UUID) -> ArchivalJob | None:
        job = self._jobs.get(job_id)
        return _copy(job) if job else None

    async def list_jobs(self, business_id: uuid.UUID, policy_id: uuid.UUID | None = None) -> list[ArchivalJob]:
        return [
            _copy(j)
            for j in sorted(self._jobs.values(), key=lambda j: j.created_at)
            if j.business_id == business_id and (policy_id is None or j.policy_id == policy_id)
        ]

    async def covered_entity_ids(self, policy_id: uuid.UUID, entity_type: EntityType) -> set[uuid.UUID]:
        covered: set[uuid.UUID] = set()
        for job in self._jobs.values():
            if job.policy_id != policy_id or job.entity_type != entity_type:
                continue
            if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                continue
            covered.update(job.target_entity_ids)
        return covered

    async def transition_job(
        self,
        job_id: uuid.UUID,
        expected: Collection[JobStatus],
        new: JobStatus,
        changes: dict[str, Any],
    ) -> ArchivalJob | None:
        current = self._jobs.get(job_id)
        if current is None or current.status not in expected:
            return None
        updated = _apply(current, {**changes, "status": new})
        self._jobs[job_id] = updated
        return _copy(updated)

    async def update_job(self, job_id: uuid.UUID, changes: dict[str, Any]) -> ArchivalJob | None:
        if "status" in changes:
            raise ValueError("Status changes must go through transition_job")
        current = self._jobs.get(job_id)
        if current is None:
            return None
        updated = _apply(current, changes)
        self._jobs[job_id] = updated
        return _copy(updated)

    async def record_job_item(
        self,
        job_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        error: str | None,
        heartbeat_at: datetime,
    ) -> ArchivalJob | None:
        current = self._jobs.get(job_id)
        if current is None:
            return None
        job = _copy(current)
        if error is None:
            if entity_id not in job.completed_item_ids:
                job.completed_item_ids.append(entity_id)
                job.processed_count += 1
        elif str(entity_id) not in job.failed_items:
            job.failed_items[str(entity_id)] = error
            job.failed_count += 1
        job.heartbeat_at = heartbeat_at
        self._jobs[job_id] = job
        return _copy(job)

    async def list_runnable_jobs(self, stale_before: datetime, limit: int) -> list[ArchivalJob]:
        runnable = [
            j
            for j in sorted(self._jobs.values(), key=lambda j: j.created_at)
            if (j.status == JobStatus.PENDING and not j.awaiting_approval)
            or (j.status == JobStatus.RUNNING and (j.heartbeat_at is None or j.heartbeat_at < stale_before))
        ]
        return [_copy(j) for j in runnable[:limit]]


class InMemoryDeletionStore:
    def __init__(self) -> None:
        self._requests: dict[uuid.UUID, DeletionRequest] = {}
        self._certificates: dict[uuid.UUID, DeletionCertificate] = {}

    async def add_request(self, request: DeletionRequest) -> None:
        self._requests[request.id] = _copy(request)

    async def get_request(self, deletion_request_id: uuid.UUID) -> DeletionRequest | None:
        request = self._requests.get(deletion_request_id)
        return _copy(request) if request else None

    async def list_requests(self, business_id: uuid.UUID) -> list[DeletionRequest]:
        return [
            _copy(r)
            for r in sorted(self._requests.values(), key=lambda r: r.created_at)
            if r.business_id == business_id
        ]

    async def transition_request(
        self,
        deletion_request_id: uuid.UUID,
        expected: Collection[JobStatus],
        new: JobStatus,
        changes: dict[str, Any],
    ) -> DeletionRequest | None:
        current = self._requests.get(deletion_request_id)
        if current is None or current.status not in expected:
            return None
        updated = _apply(current, {**changes, "status": new})
        self._requests[deletion_request_id] = updated
        return _copy(updated)

    async def update_request(self, deletion_request_id: uuid.UUID, changes: dict[str, Any]) -> DeletionRequest | None:
        if "status" in changes:
            raise ValueError("Status changes must go through transition_request")
        current = self._requests.get(deletion_request_id)
        if current is None:
            return None
        updated = _apply(current, changes)
        self._requests[deletion_request_id] = updated
        return _copy(updated)

    async def record_request_item(
        self,
        deletion_request_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        error: str | None,
        destroyed_key_refs: Sequence[str],
        heartbeat_at: datetime,
    ) -> DeletionRequest | None:
        current = self._requests.get(deletion_request_id)
        if current is None:
            return None
        request = _copy(current)
        if error is None:
            if entity_id not in request.completed_item_ids:
                request.completed_item_ids.append(entity_id)
                request.processed_count += 1
        elif str(entity_id) not in request.failed_items:
            request.failed_items[str(entity_id)] = error
            request.failed_count += 1
        for ref in destroyed_key_refs:
            if ref not in request.destroyed_key_refs:
                request.destroyed_key_refs.append(ref)
        request.heartbeat_at = heartbeat_at
        self._requests[deletion_request_id] = request
        return _copy(request)

    async def list_runnable_requests(self, stale_before: datetime, limit: int) -> list[DeletionRequest]:
        runnable = [
            r
            for r in sorted(self._requests.values(), key=lambda r: r.created_at)
            if (r.status == JobStatus.PENDING and not r.awaiting_approval)
            or (r.status == JobStatus.RUNNING and (r.heartbeat_at is None or r.heartbeat_at < stale_before))
        ]
        return [_copy(r) for r in runnable[:limit]]

    async def add_certificate(self, certificate: DeletionCertificate) -> None:
        if any(c.deletion_request_id == certificate.deletion_request_id for c in self._certificates.values()):
            raise DuplicateRecordError(
                f"Deletion request {certificate.deletion_request_id} already has a certificate"
            )
        self._certificates[certificate.id] = certificate

    async def get_certificate(self, certificate_id: uuid.UUID) -> DeletionCertificate | None:
        return self._certificates.get(certificate_id)

    async def get_certificate_for_request(self, deletion_request_id: uuid.UUID) -> DeletionCertificate | None:
        return next(
            (c for c in self._certificates.values() if c.deletion_request_id == deletion_request_id),
            None,
        )


class InMemoryKeyStore:
    def __init__(self) -> None:
        self._keys: dict[str, bytes] = {}
        self._destroyed: set[str] = set()

    async def get(self, key_ref: str) -> bytes | None:
        return self._keys.get(key_ref)

    async def put_if_absent(self, key_ref: str, wrapped_key: bytes) -> bytes | None:
        if key_ref in self._destroyed:
            return None
        return self._keys.setdefault(key_ref, wrapped_key)

    async def destroy(self, key_ref: str) -> bool:
        self._destroyed.add(key_ref)
        return self._keys.pop(key_ref, None) is not None
