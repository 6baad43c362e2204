"""Secure Deletion Service - irreversible removal with signed certificates.

Methods:
    CRYPTO_SHREDDING   destroy the record's data key; ciphertext becomes noise
    SECURE_OVERWRITE   clear every encrypted field and lookup index
    LOGICAL_DELETE     flag the record deleted, data left in place
    HYBRID             all of the above
    AUDIT_PRESERVE     shred and clear PII but keep every row, so audit
                       events that reference the record still resolve

Scopes decide which records a target id expands to:
    CUSTOMER_COMPLETE   the customer and every review request sent to them
    CUSTOMER_PII_ONLY   the customer's PII; the row stays as ANONYMIZED
    COMMUNICATION_DATA  every review request sent to the customer
    REVIEW_DATA         the targeted review requests themselves

Execution is batched and resumable. Each item's outcome is written to the
store before the next item starts, so a restarted run skips finished items.
A failing item is retried with exponential backoff (tenacity) up to
``job_item_attempts`` times before it is recorded as failed; a vanished
target is not retried. Key references are collected as each key is
destroyed, so an item that fails halfway still reports the keys it shredded.
Cancellation is checked between batches and never rolls back completed
deletions. On completion a DeletionCertificate is issued once: its proof
hashes the destroyed key references and its signature is an HMAC with the
application secret.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from dsr_engine.config import Settings
from dsr_engine.core.encryption import FieldEncryptionService, KeyNotFoundError, field_ref
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.compliance.entities import (
    CertificateVerification,
    CustomerRecord,
    CustomerStatus,
    DeletionCertificate,
    DeletionMethod,
    DeletionPriority,
    DeletionRequest,
    DeletionRequestType,
    DeletionScope,
    EntityType,
    JobStatus,
    ReviewRequestRecord,
    utcnow,
)
from dsr_engine.compliance.events import DeletionEvent, EventSeverity
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.services.directory import SubjectDirectory
from dsr_engine.store.base import DeletionStore, DuplicateRecordError, RecordNotFoundError

log = structlog.get_logger(__name__)

SCOPE_ENTITY_TYPE: dict[DeletionScope, EntityType] = {
    DeletionScope.CUSTOMER_COMPLETE: EntityType.CUSTOMER,
    DeletionScope.CUSTOMER_PII_ONLY: EntityType.CUSTOMER,
    DeletionScope.COMMUNICATION_DATA: EntityType.CUSTOMER,
    DeletionScope.REVIEW_DATA: EntityType.REVIEW_REQUEST,
}

_SHREDDING_METHODS = frozenset(
    {DeletionMethod.CRYPTO_SHREDDING, DeletionMethod.HYBRID, DeletionMethod.AUDIT_PRESERVE}
)
_OVERWRITE_METHODS = frozenset(
    {DeletionMethod.SECURE_OVERWRITE, DeletionMethod.HYBRID, DeletionMethod.AUDIT_PRESERVE}
)

VERIFICATION_SAMPLE_SIZE = 5


class ItemNotFoundError(LookupError):
    """A deletion target vanished between scheduling and execution."""


def item_retrying(attempts: int, wait: wait_base) -> AsyncRetrying:
    """Retry policy for one job item.

    Any ``Exception`` (timeouts included) is retried; a missing target and
    task cancellation are not.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(ItemNotFoundError),
        stop=stop_after_attempt(attempts),
        wait=wait,
        reraise=True,
    )


@dataclass
class DeletionRun:
    request: DeletionRequest
    certificate: DeletionCertificate | None = None

    def to_dict(self) -> dict[str, Any]:
        request = self.request
        return {
            "deletion_request_id": str(request.id),
            "status": request.status.value,
            "processed": request.processed_count,
            "failed": request.failed_count,
            "failed_items": request.failed_items,
            "dry_run": request.dry_run,
            "certificate": certificate_to_dict(self.certificate) if self.certificate else None,
        }


def certificate_to_dict(certificate: DeletionCertificate) -> dict[str, Any]:
    return {
        "id": str(certificate.id),
        "deletion_request_id": str(certificate.deletion_request_id),
        "business_id": str(certificate.business_id),
        "method": certificate.method.value,
        "scope": certificate.scope.value,
        "records_deleted": certificate.records_deleted,
        "records_failed": certificate.records_failed,
        "key_destruction_proof": certificate.key_destruction_proof,
        "signature": certificate.signature,
        "legal_basis": certificate.legal_basis,
        "verification_status": certificate.verification_status.value,
        "issued_at": certificate.issued_at.isoformat(),
        "valid_until": certificate.valid_until.isoformat(),
        "gdpr_request_id": str(certificate.gdpr_request_id) if certificate.gdpr_request_id else None,
    }


def destruction_proof(
    destroyed_key_refs: list[str], records_deleted: int, deletion_request_id: uuid.UUID, issued_at: datetime
) -> str:
    document = {
        "destroyed_key_refs": sorted(destroyed_key_refs),
        "records_deleted": records_deleted,
        "deletion_request_id": str(deletion_request_id),
        "issued_at": issued_at.isoformat(),
    }
    return hashlib.sha256(json.dumps(document, sort_keys=True, separators=(",", ":")).encode()).hexdigest()


class SecureDeletionService:
    def __init__(
        self,
        store: DeletionStore,
        directory: SubjectDirectory,
        encryption: FieldEncryptionService,
        ledger: ComplianceAuditLedger,
        settings: Settings,
        *,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._encryption = encryption
        self._ledger = ledger
        self._settings = settings
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)

    # ------------------------------------------------------------------ #
    # Scheduling
    # ------------------------------------------------------------------ #

    async def schedule_deletion(
        self,
        business_id: uuid.UUID,
        scope: DeletionScope,
        target_entity_ids: list[uuid.UUID],
        *,
        method: DeletionMethod = DeletionMethod.CRYPTO_SHREDDING,
        legal_basis: str,
        priority: DeletionPriority = DeletionPriority.NORMAL,
        requested_by: str | None = None,
        request_type: DeletionRequestType | None = None,
        gdpr_request_id: uuid.UUID | None = None,
        policy_id: uuid.UUID | None = None,
        requires_approval: bool = False,
        dry_run: bool = False,
        batch_size: int | None = None,
    ) -> Result[DeletionRequest]:
        """Validate and persist a PENDING deletion request.

        Args:
            business_id: Tenant owning every target.
            scope: Decides the entity type of the targets and what each expands to.
            target_entity_ids: Customer or review request ids; duplicates collapse.
            method: How the data is made unrecoverable.
            legal_basis: Recorded on the request and its certificate.
            request_type: Inferred from ``gdpr_request_id``/``policy_id`` when omitted.
            requires_approval: Hold execution until ``approve_deletion``.
            dry_run: Resolve targets without changing them; no certificate.
            batch_size: Items per batch; ``deletion_batch_size`` by default.

        Returns:
            The scheduled request, or VALIDATION_FAILED when a target does not
            belong to the business or the input is incomplete.
        """
        if not target_entity_ids:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "At least one target entity is required")
        if not legal_basis or not legal_basis.strip():
            return Result.fail(ErrorKind.VALIDATION_FAILED, "A legal basis is required for deletion")
        if batch_size is not None and batch_size < 1:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Batch size must be positive")

        entity_type = SCOPE_ENTITY_TYPE[scope]
        targets = list(dict.fromkeys(target_entity_ids))
        missing = [str(i) for i in targets if await self._load(entity_type, business_id, i) is None]
        if missing:
            return Result.fail(
                ErrorKind.VALIDATION_FAILED,
                f"{len(missing)} target {entity_type} record(s) not found for this business",
                missing_ids=missing,
            )

        if request_type is None:
            if gdpr_request_id is not None:
                request_type = DeletionRequestType.GDPR_ERASURE
            elif policy_id is not None:
                request_type = DeletionRequestType.RETENTION_POLICY
            else:
                request_type = DeletionRequestType.BUSINESS_REQUEST

        now = utcnow()
        request = DeletionRequest(
            id=uuid.uuid4(),
            business_id=business_id,
            scope=scope,
            target_entity_type=entity_type,
            target_entity_ids=targets,
            method=method,
            legal_basis=legal_basis.strip(),
            priority=priority,
            request_type=request_type,
            status=JobStatus.PENDING,
            batch_size=batch_size or self._settings.deletion_batch_size,
            created_at=now,
            updated_at=now,
            requested_by=requested_by,
            policy_id=policy_id,
            gdpr_request_id=gdpr_request_id,
            requires_approval=requires_approval,
            dry_run=dry_run,
        )
        await self._store.add_request(request)
        await self._audit(request, "deletion.scheduled", severity=EventSeverity.MEDIUM, actor_id=requested_by)
        log.info(
            "deletion.scheduled",
            deletion_request_id=str(request.id),
            business_id=str(business_id),
            scope=scope,
            method=method,
            targets=len(targets),
            requires_approval=requires_approval,
        )
        return Result.ok(request)

    async def approve_deletion(
        self, deletion_request_id: uuid.UUID, business_id: uuid.UUID, approved_by: str
    ) -> Result[DeletionRequest]:
        request = await self._get(deletion_request_id, business_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Deletion request not found")
        if request.status != JobStatus.PENDING:
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Deletion request is {request.status}")
        if not request.awaiting_approval:
            return Result.ok(request)

        updated = await self._store.update_request(
            deletion_request_id,
            {"approved_by": approved_by, "approved_at": utcnow(), "updated_at": utcnow()},
        )
        await self._audit(updated, "deletion.approved", actor_id=approved_by)  # type: ignore[arg-type]
        return Result.ok(updated)  # type: ignore[arg-type]

    async def cancel_deletion(
        self, deletion_request_id: uuid.UUID, business_id: uuid.UUID, *, cancelled_by: str | None = None
    ) -> Result[DeletionRequest]:
        """Stop further batches. Items already deleted stay deleted."""
        request = await self._get(deletion_request_id, business_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Deletion request not found")
        updated = await self._store.transition_request(
            deletion_request_id,
            {JobStatus.PENDING, JobStatus.RUNNING},
            JobStatus.CANCELLED,
            {"completed_at": utcnow(), "updated_at": utcnow()},
        )
        if updated is None:
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Deletion request is already {request.status}")
        await self._audit(updated, "deletion.cancelled", severity=EventSeverity.MEDIUM, actor_id=cancelled_by)
        log.info("deletion.cancelled", deletion_request_id=str(deletion_request_id))
        return Result.ok(updated)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute_deletion(
        self, deletion_request_id: uuid.UUID, business_id: uuid.UUID | None = None
    ) -> Result[DeletionRun]:
        """Claim the request and process its remaining targets batch by batch.

        Re-running a COMPLETED request is a no-op that returns its
        certificate, issuing it first if the previous run stopped between
        completion and certification. A RUNNING request is only taken over
        once its heartbeat is older than ``job_stale_after_minutes``.

        Args:
            deletion_request_id: Request to execute.
            business_id: Tenant check; ``None`` for the background drain.

        Returns:
            The run outcome. NOT_FOUND, ILLEGAL_TRANSITION for cancelled or
            failed requests, INSUFFICIENT_APPROVAL while approval is pending,
            and a retryable STALE_STATE when another worker holds the request.
        """
        request = await self._get(deletion_request_id, business_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Deletion request not found")

        if request.status == JobStatus.COMPLETED:
            certificate = await self._store.get_certificate_for_request(request.id)
            if certificate is None and not request.dry_run:
                log.warning("deletion.certificate_missing", deletion_request_id=str(request.id))
                certificate = await self._issue_certificate(request)
                request.certificate_id = certificate.id
            return Result.ok(DeletionRun(request, certificate))
        if request.status in (JobStatus.CANCELLED, JobStatus.FAILED):
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Deletion request is {request.status}")
        if request.awaiting_approval:
            return Result.fail(ErrorKind.INSUFFICIENT_APPROVAL, "Deletion request requires approval")

        claimed = await self._claim(request)
        if claimed is None:
            return Result.fail(
                ErrorKind.STALE_STATE,
                "Deletion request is being executed elsewhere",
                retryable=True,
            )
        request = claimed

        log.info(
            "deletion.execution_started",
            deletion_request_id=str(request.id),
            remaining=len(request.remaining_ids()),
            dry_run=request.dry_run,
        )

        remaining = request.remaining_ids()
        for start in range(0, len(remaining), request.batch_size):
            current = await self._store.get_request(request.id)
            if current is None or current.status != JobStatus.RUNNING:
                log.info(
                    "deletion.execution_stopped",
                    deletion_request_id=str(request.id),
                    status=current.status if current else None,
                )
                return Result.ok(DeletionRun(current or request))
            for entity_id in remaining[start : start + request.batch_size]:
                await self._process_item(request, entity_id)

        return Result.ok(await self._finish(request.id))

    async def _claim(self, request: DeletionRequest) -> DeletionRequest | None:
        now = utcnow()
        claimed = await self._store.transition_request(
            request.id,
            {JobStatus.PENDING},
            JobStatus.RUNNING,
            {"started_at": now, "heartbeat_at": now, "updated_at": now},
        )
        if claimed is not None:
            await self._audit(claimed, "deletion.started")
            return claimed

        current = await self._store.get_request(request.id)
        stale_before = now - timedelta(minutes=self._settings.job_stale_after_minutes)
        if (
            current is not None
            and current.status == JobStatus.RUNNING
            and (current.heartbeat_at is None or current.heartbeat_at < stale_before)
        ):
            log.warning("deletion.resuming_stale", deletion_request_id=str(request.id))
            return await self._store.transition_request(
                request.id, {JobStatus.RUNNING}, JobStatus.RUNNING, {"heartbeat_at": now, "updated_at": now}
            )
        return None

    async def _process_item(self, request: DeletionRequest, entity_id: uuid.UUID) -> None:
        error: str | None = None
        destroyed: list[str] = []
        try:
            async for attempt in item_retrying(self._settings.job_item_attempts, self._retry_wait):
                with attempt:
                    await asyncio.wait_for(
                        self._delete_target(request, entity_id, destroyed),
                        timeout=self._settings.external_call_timeout_seconds,
                    )
        except TimeoutError:
            error = "timed out"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"

        if error is not None:
            log.error(
                "deletion.item_failed",
                deletion_request_id=str(request.id),
                entity_id=str(entity_id),
                error=error,
                destroyed_key_refs=len(destroyed),
            )
        await self._store.record_request_item(
            request.id,
            entity_id,
            error=error,
            destroyed_key_refs=destroyed,
            heartbeat_at=utcnow(),
        )

    async def _finish(self, deletion_request_id: uuid.UUID) -> DeletionRun:
        request = await self._store.get_request(deletion_request_id)
        if request is None:
            raise RecordNotFoundError(f"deletion request {deletion_request_id} disappeared during execution")
        now = utcnow()
        failed_everything = request.processed_count == 0 and request.failed_count > 0
        final = await self._store.transition_request(
            request.id,
            {JobStatus.RUNNING},
            JobStatus.FAILED if failed_everything else JobStatus.COMPLETED,
            {
                "completed_at": now,
                "updated_at": now,
                "error": "every target failed" if failed_everything else None,
            },
        )
        if final is None:
            # Cancelled or finished concurrently after the last batch.
            current = await self._store.get_request(deletion_request_id)
            return DeletionRun(current or request, await self._store.get_certificate_for_request(deletion_request_id))

        certificate = None
        if final.status == JobStatus.COMPLETED and not final.dry_run:
            certificate = await self._issue_certificate(final)
            final.certificate_id = certificate.id

        await self._audit(
            final,
            "deletion.completed" if final.status == JobStatus.COMPLETED else "deletion.failed",
            severity=EventSeverity.HIGH,
            certificate_id=certificate.id if certificate else None,
        )
        if final.failed_count:
            log.warning(
                "deletion.completed_with_failures",
                deletion_request_id=str(final.id),
                processed=final.processed_count,
                failed=final.failed_count,
            )
        else:
            log.info("deletion.completed", deletion_request_id=str(final.id), processed=final.processed_count)
        return DeletionRun(final, certificate)

    async def process_pending_deletions(self) -> list[DeletionRun]:
        """Drain runnable deletion requests; used by the periodic job."""
        stale_before = utcnow() - timedelta(minutes=self._settings.job_stale_after_minutes)
        runs: list[DeletionRun] = []
        for request in await self._store.list_runnable_requests(stale_before, self._settings.jobs_per_drain):
            result = await self.execute_deletion(request.id)
            if result.success:
                runs.append(result.unwrap())
            else:
                log.info(
                    "deletion.drain_skipped",
                    deletion_request_id=str(request.id),
                    code=result.error.kind,  # type: ignore[union-attr]
                )
        return runs

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def get_deletion(self, deletion_request_id: uuid.UUID, business_id: uuid.UUID) -> DeletionRequest | None:
        return await self._get(deletion_request_id, business_id)

    async def list_deletions(self, business_id: uuid.UUID) -> list[DeletionRequest]:
        return await self._store.list_requests(business_id)

    async def get_certificate(self, certificate_id: uuid.UUID, business_id: uuid.UUID) -> DeletionCertificate | None:
        certificate = await self._store.get_certificate(certificate_id)
        if certificate is None or certificate.business_id != business_id:
            return None
        return certificate

    def verify_certificate(self, certificate: DeletionCertificate) -> bool:
        """True if the signature matches and the certificate has not lapsed."""
        expected = self._sign(
            certificate.id, certificate.deletion_request_id, certificate.key_destruction_proof, certificate.issued_at
        )
        return hmac.compare_digest(expected, certificate.signature) and utcnow() <= certificate.valid_until

    # ------------------------------------------------------------------ #
    # Record operations
    # ------------------------------------------------------------------ #

    async def _delete_target(self, request: DeletionRequest, entity_id: uuid.UUID, destroyed: list[str]) -> None:
        """Erase one target, appending each shredded key ref to ``destroyed`` as it goes."""
        if request.dry_run:
            if await self._load(request.target_entity_type, request.business_id, entity_id) is None:
                raise ItemNotFoundError(f"{request.target_entity_type} {entity_id} not found")
            return

        business_id = request.business_id
        if request.scope == DeletionScope.REVIEW_DATA:
            review = await self._directory.get_review_request(business_id, entity_id)
            if review is None:
                raise ItemNotFoundError(f"review_request {entity_id} not found")
            await self._erase_review(review, request.method, destroyed)
            return

        customer = await self._directory.get_customer(business_id, entity_id)
        if customer is None:
            raise ItemNotFoundError(f"customer {entity_id} not found")

        if request.scope in (DeletionScope.CUSTOMER_COMPLETE, DeletionScope.COMMUNICATION_DATA):
            for review in await self._directory.list_review_requests(business_id, customer.id):
                await self._erase_review(review, request.method, destroyed)
        if request.scope == DeletionScope.CUSTOMER_COMPLETE:
            keep_record = request.method == DeletionMethod.AUDIT_PRESERVE
            await self._erase_customer(customer, request.method, destroyed, keep_record=keep_record)
        elif request.scope == DeletionScope.CUSTOMER_PII_ONLY:
            await self._erase_customer(customer, request.method, destroyed, keep_record=True)

    async def _shred(self, key_ref: str, destroyed: list[str]) -> None:
        await self._encryption.destroy_key(key_ref)
        if key_ref not in destroyed:
            destroyed.append(key_ref)

    async def _erase_customer(
        self, customer: CustomerRecord, method: DeletionMethod, destroyed: list[str], *, keep_record: bool
    ) -> None:
        now = utcnow()
        if method in _SHREDDING_METHODS:
            await self._shred(customer.key_ref, destroyed)
        if method in _OVERWRITE_METHODS or keep_record:
            customer.encrypted_fields = {}
        if method != DeletionMethod.LOGICAL_DELETE or keep_record:
            customer.email_index = None
            customer.phone_index = None
        if keep_record:
            customer.status = CustomerStatus.ANONYMIZED
            customer.anonymized_at = now
        else:
            customer.status = CustomerStatus.DELETED
            customer.deleted_at = now
        await self._directory.save_customer(customer)

    async def _erase_review(self, review: ReviewRequestRecord, method: DeletionMethod, destroyed: list[str]) -> None:
        if method in _SHREDDING_METHODS:
            await self._shred(review.key_ref, destroyed)
        if method in _OVERWRITE_METHODS:
            review.encrypted_fields = {}
        if method == DeletionMethod.AUDIT_PRESERVE:
            review.anonymized_at = utcnow()
        else:
            review.deleted_at = utcnow()
        await self._directory.save_review_request(review)

    async def anonymize_record(self, entity_type: EntityType, business_id: uuid.UUID, entity_id: uuid.UUID) -> list[str]:
        """Shred and clear a record's PII while keeping the row for statistics.

        Args:
            entity_type: CUSTOMER or REVIEW_REQUEST.
            business_id: Tenant owning the record.
            entity_id: Record to anonymize.

        Returns:
            The key references that were destroyed.

        Raises:
            ItemNotFoundError: The record does not exist for this business.
        """
        destroyed: list[str] = []
        if entity_type == EntityType.CUSTOMER:
            customer = await self._directory.get_customer(business_id, entity_id)
            if customer is None:
                raise ItemNotFoundError(f"customer {entity_id} not found")
            await self._erase_customer(customer, DeletionMethod.HYBRID, destroyed, keep_record=True)
            return destroyed

        review = await self._directory.get_review_request(business_id, entity_id)
        if review is None:
            raise ItemNotFoundError(f"review_request {entity_id} not found")
        await self._shred(review.key_ref, destroyed)
        review.encrypted_fields = {}
        review.anonymized_at = utcnow()
        await self._directory.save_review_request(review)
        return destroyed

    async def _load(
        self, entity_type: EntityType, business_id: uuid.UUID, entity_id: uuid.UUID
    ) -> CustomerRecord | ReviewRequestRecord | None:
        if entity_type == EntityType.CUSTOMER:
            return await self._directory.get_customer(business_id, entity_id)
        return await self._directory.get_review_request(business_id, entity_id)

    # ------------------------------------------------------------------ #
    # Certificates
    # ------------------------------------------------------------------ #

    async def _issue_certificate(self, request: DeletionRequest) -> DeletionCertificate:
        existing = await self._store.get_certificate_for_request(request.id)
        if existing is not None:
            return existing

        issued_at = utcnow()
        certificate_id = uuid.uuid4()
        proof = destruction_proof(request.destroyed_key_refs, request.processed_count, request.id, issued_at)
        certificate = DeletionCertificate(
            id=certificate_id,
            deletion_request_id=request.id,
            business_id=request.business_id,
            method=request.method,
            scope=request.scope,
            records_deleted=request.processed_count,
            records_failed=request.failed_count,
            key_destruction_proof=proof,
            signature=self._sign(certificate_id, request.id, proof, issued_at),
            legal_basis=request.legal_basis,
            verification_status=await self._verify_deleted(request),
            issued_at=issued_at,
            valid_until=issued_at + timedelta(days=self._settings.certificate_validity_days),
            gdpr_request_id=request.gdpr_request_id,
        )
        try:
            await self._store.add_certificate(certificate)
        except DuplicateRecordError:
            existing = await self._store.get_certificate_for_request(request.id)
            if existing is None:
                raise
            return existing
        await self._store.update_request(request.id, {"certificate_id": certificate.id})
        log.info(
            "deletion.certificate_issued",
            certificate_id=str(certificate.id),
            deletion_request_id=str(request.id),
            verification=certificate.verification_status,
        )
        return certificate

    async def _verify_deleted(self, request: DeletionRequest) -> CertificateVerification:
        """Sample deleted targets and confirm their data is unrecoverable."""
        if request.method == DeletionMethod.LOGICAL_DELETE:
            return CertificateVerification.NOT_APPLICABLE

        if request.method in _SHREDDING_METHODS:
            for key_ref in request.destroyed_key_refs[:VERIFICATION_SAMPLE_SIZE]:
                if await self._encryption.has_key(key_ref):
                    return CertificateVerification.PARTIAL
        if request.scope == DeletionScope.COMMUNICATION_DATA:
            # Targets are customers whose own record is left untouched.
            return CertificateVerification.VERIFIED

        for entity_id in request.completed_item_ids[:VERIFICATION_SAMPLE_SIZE]:
            record = await self._load(request.target_entity_type, request.business_id, entity_id)
            if record is None:
                continue
            if request.method in _OVERWRITE_METHODS and record.encrypted_fields:
                return CertificateVerification.PARTIAL
            if await self._still_decryptable(record):
                return CertificateVerification.PARTIAL
        return CertificateVerification.VERIFIED

    async def _still_decryptable(self, record: CustomerRecord | ReviewRequestRecord) -> bool:
        sample = next(iter(record.encrypted_fields.items()), None)
        if sample is None:
            return False
        name, ciphertext = sample
        try:
            await self._encryption.decrypt(field_ref(record.key_ref, name), ciphertext)
        except KeyNotFoundError:
            return False
        return True

    def _sign(self, certificate_id: uuid.UUID, deletion_request_id: uuid.UUID, proof: str, issued_at: datetime) -> str:
        message = f"{certificate_id}|{deletion_request_id}|{proof}|{issued_at.isoformat()}".encode()
        return hmac.new(self._settings.secret_key.get_secret_value().encode(), message, hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    async def _get(self, deletion_request_id: uuid.UUID, business_id: uuid.UUID | None) -> DeletionRequest | None:
        request = await self._store.get_request(deletion_request_id)
        if request is None or (business_id is not None and request.business_id != business_id):
            return None
        return request

    async def _audit(
        self,
        request: DeletionRequest,
        event_type: str,
        *,
        severity: EventSeverity = EventSeverity.LOW,
        actor_id: str | None = None,
        certificate_id: uuid.UUID | None = None,
    ) -> None:
        await self._ledger.log_event(
            request.business_id,
            event_type,
            DeletionEvent(
                deletion_request_id=request.id,
                operation=event_type.split(".", 1)[1],
                method=request.method.value,
                scope=request.scope.value,
                records_deleted=request.processed_count,
                records_failed=request.failed_count,
                certificate_id=certificate_id,
                gdpr_request_id=request.gdpr_request_id,
            ),
            severity=severity,
            correlation_id=str(request.gdpr_request_id) if request.gdpr_request_id else str(request.id),
            actor_id=actor_id,
        )
