"""Persistence contracts for the compliance engine.

Services depend on these protocols only. Two implementations exist:
``dsr_engine.store.sql`` (PostgreSQL via SQLAlchemy async) and
``dsr_engine.store.memory`` (process-local, used by tests and local dev).

Every query that takes a ``business_id`` must scope by it; a record of
another business is indistinguishable from a missing one.
"""

from __future__ import annotations

import uuid
from collections.abc import Collection, Sequence
from datetime import datetime
from typing import Any, Protocol

from dsr_engine.compliance.entities import (
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
    WorkflowTransition,
)
from dsr_engine.compliance.events import ComplianceAuditEvent


class DuplicateRecordError(Exception):
    """An insert collided with a unique key that must never be reused."""


class RecordNotFoundError(LookupError):
    """A record the caller holds an id for is no longer in the store."""


class AuditEventStore(Protocol):
    async def append_many(self, events: Sequence[ComplianceAuditEvent]) -> None: ...

    async def last_event(self, business_id: uuid.UUID) -> ComplianceAuditEvent | None: ...

    async def list_events(
        self,
        business_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ComplianceAuditEvent]: ...

    async def list_by_correlation(
        self, correlation_id: str, business_id: uuid.UUID | None = None
    ) -> list[ComplianceAuditEvent]: ...


class RequestStore(Protocol):
    async def add(self, request: DataSubjectRequest) -> None: ...

    async def get(self, request_id: uuid.UUID) -> DataSubjectRequest | None: ...

    async def list_for_business(self, business_id: uuid.UUID) -> list[DataSubjectRequest]: ...

    async def list_open(self) -> list[DataSubjectRequest]: ...

    async def compare_and_set_status(
        self,
        request_id: uuid.UUID,
        expected: RequestStatus,
        new: RequestStatus,
        changes: dict[str, Any],
    ) -> DataSubjectRequest | None:
        """Atomically move ``expected`` -> ``new``; None if the status differs."""
        ...

    async def update_fields(self, request_id: uuid.UUID, changes: dict[str, Any]) -> DataSubjectRequest | None:
        """Update non-status fields. ``status`` is rejected here."""
        ...

    async def add_transition(self, transition: WorkflowTransition) -> None: ...

    async def list_transitions(self, request_id: uuid.UUID) -> list[WorkflowTransition]: ...


class VerificationStore(Protocol):
    async def add(self, verification: IdentityVerification) -> None: ...

    async def get(self, verification_id: uuid.UUID) -> IdentityVerification | None: ...

    async def save(self, verification: IdentityVerification, expected_version: int) -> bool:
        """Persist if the stored version still equals ``expected_version``."""
        ...

    async def find_by_secret_digest(self, digest: str) -> IdentityVerification | None: ...

    async def count_recent(self, business_id: uuid.UUID, requestor_email: str, since: datetime) -> int: ...

    async def list_open(self) -> list[IdentityVerification]: ...


class SubjectStore(Protocol):
    """Business, customer and review-request records of the platform."""

    async def add_business(self, business: BusinessRecord) -> None: ...

    async def get_business(self, business_id: uuid.UUID) -> BusinessRecord | None: ...

    async def add_customer(self, customer: CustomerRecord) -> None: ...

    async def get_customer(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> CustomerRecord | None: ...

    async def find_customers(
        self,
        business_id: uuid.UUID,
        *,
        email_index: str | None,
        phone_index: str | None,
    ) -> list[CustomerRecord]:
        """Customers of ``business_id`` matching the email OR the phone index."""
        ...

    async def save_customer(self, customer: CustomerRecord) -> None: ...

    async def add_review_request(self, review: ReviewRequestRecord) -> None: ...

    async def get_review_request(self, business_id: uuid.UUID, review_id: uuid.UUID) -> ReviewRequestRecord | None: ...

    async def list_review_requests(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ReviewRequestRecord]: ...

    async def save_review_request(self, review: ReviewRequestRecord) -> None: ...

    async def add_objection(self, objection: ObjectionRecord) -> None: ...

    async def list_objections(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ObjectionRecord]: ...

    async def list_records(
        self,
        business_id: uuid.UUID,
        entity_type: EntityType,
        *,
        created_before: datetime | None = None,
    ) -> list[RecordSummary]:
        """Non-deleted records of one entity type, oldest first."""
        ...


class RetentionStore(Protocol):
    async def add_policy(self, policy: RetentionPolicy) -> None: ...

    async def get_policy(self, policy_id: uuid.UUID) -> RetentionPolicy | None: ...

    async def save_policy(self, policy: RetentionPolicy) -> None: ...

    async def list_policies(self, business_id: uuid.UUID) -> list[RetentionPolicy]: ...

    async def list_due_policies(self, now: datetime) -> list[RetentionPolicy]: ...

    async def add_job(self, job: ArchivalJob) -> None:
        """Raises DuplicateRecordError when the dedupe key already exists."""
        ...

    async def get_job(self, job_id: uuid.UUID) -> ArchivalJob | None: ...

    async def list_jobs(self, business_id: uuid.UUID, policy_id: uuid.UUID | None = None) -> list[ArchivalJob]: ...

    async def covered_entity_ids(self, policy_id: uuid.UUID, entity_type: EntityType) -> set[uuid.UUID]:
        """Entity ids already targeted by a job of the policy that did not fail or get cancelled."""
        ...

    async def transition_job(
        self,
        job_id: uuid.UUID,
        expected: Collection[JobStatus],
        new: JobStatus,
        changes: dict[str, Any],
    ) -> ArchivalJob | None: ...

    async def update_job(self, job_id: uuid.UUID, changes: dict[str, Any]) -> ArchivalJob | None:
        """Update non-status fields."""
        ...

    async def record_job_item(
        self,
        job_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        error: str | None,
        heartbeat_at: datetime,
    ) -> ArchivalJob | None:
        """Durably mark one item done (or failed) before the next one starts."""
        ...

    async def list_runnable_jobs(self, stale_before: datetime, limit: int) -> list[ArchivalJob]: ...


class DeletionStore(Protocol):
    async def add_request(self, request: DeletionRequest) -> None: ...

    async def get_request(self, deletion_request_id: uuid.UUID) -> DeletionRequest | None: ...

    async def list_requests(self, business_id: uuid.UUID) -> list[DeletionRequest]: ...

    async def transition_request(
        self,
        deletion_request_id: uuid.UUID,
        expected: Collection[JobStatus],
        new: JobStatus,
        changes: dict[str, Any],
    ) -> DeletionRequest | None: ...

    async def update_request(self, deletion_request_id: uuid.UUID, changes: dict[str, Any]) -> DeletionRequest | None: ...

    async def record_request_item(
        self,
        deletion_request_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        error: str | None,
        destroyed_key_refs: Sequence[str],
        heartbeat_at: datetime,
    ) -> DeletionRequest | None: ...

    async def list_runnable_requests(self, stale_before: datetime, limit: int) -> list[DeletionRequest]: ...

    async def add_certificate(self, certificate: DeletionCertificate) -> None:
        """Raises DuplicateRecordError if the request already has a certificate."""
        ...

    async def get_certificate(self, certificate_id: uuid.UUID) -> DeletionCertificate | None: ...

    async def get_certificate_for_request(self, deletion_request_id: uuid.UUID) -> DeletionCertificate | None: ...


class KeyStore(Protocol):
    """Wrapped per-record data keys, with tombstones for destroyed keys."""

    async def get(self, key_ref: str) -> bytes | None: ...

    async def put_if_absent(self, key_ref: str, wrapped_key: bytes) -> bytes | None:
        """Store the key unless one exists; return the stored key, or None if tombstoned."""
        ...

    async def destroy(self, key_ref: str) -> bool: ...
