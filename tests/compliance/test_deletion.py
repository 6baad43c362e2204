"""Tests for secure deletion and deletion certificates."""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import CUSTOMER_EMAIL

from dsr_engine.compliance.deletion import certificate_to_dict, destruction_proof
from dsr_engine.compliance.entities import (
    CertificateVerification,
    CustomerStatus,
    DeletionMethod,
    DeletionRequestType,
    DeletionScope,
    JobStatus,
    utcnow,
)
from dsr_engine.core.errors import ErrorKind
from dsr_engine.store.base import RecordNotFoundError

BASIS = "GDPR Article 17"


@pytest.fixture
def deletion(registry):
    return registry.deletion


@pytest.fixture
async def review(registry, business, customer):
    return await registry.directory.add_review_request(
        business.id, customer.id, channel="email", recipient=CUSTOMER_EMAIL, message="Tell us how we did"
    )


async def _run(deletion, business_id, scope, ids, **kwargs):
    scheduled = (await deletion.schedule_deletion(business_id, scope, ids, legal_basis=BASIS, **kwargs)).unwrap()
    return (await deletion.execute_deletion(scheduled.id, business_id)).unwrap()


class TestScheduling:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("ids", "legal_basis", "batch_size"),
        [([], BASIS, None), (None, "  ", None), (None, BASIS, 0)],
    )
    async def test_invalid_requests_rejected(self, deletion, business, customer, ids, legal_basis, batch_size):
        """Test that empty targets, a blank legal basis or a bad batch size are refused."""
        result = await deletion.schedule_deletion(
            business.id,
            DeletionScope.CUSTOMER_COMPLETE,
            [customer.id] if ids is None else ids,
            legal_basis=legal_basis,
            batch_size=batch_size,
        )
        assert result.error.kind == ErrorKind.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_missing_targets_listed(self, deletion, business, customer):
        """Test that targets outside the business are reported by id."""
        stranger = uuid.uuid4()

        result = await deletion.schedule_deletion(
            business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id, stranger], legal_basis=BASIS
        )

        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert result.error.details["missing_ids"] == [str(stranger)]

    @pytest.mark.asyncio
    async def test_request_type_inferred(self, deletion, business, customer):
        """Test that the request type follows the originating GDPR request or policy."""
        gdpr = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS, gdpr_request_id=uuid.uuid4()
            )
        ).unwrap()
        policy = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS, policy_id=uuid.uuid4()
            )
        ).unwrap()
        manual = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS)
        ).unwrap()

        assert gdpr.request_type == DeletionRequestType.GDPR_ERASURE
        assert policy.request_type == DeletionRequestType.RETENTION_POLICY
        assert manual.request_type == DeletionRequestType.BUSINESS_REQUEST

    @pytest.mark.asyncio
    async def test_duplicate_targets_collapsed(self, deletion, business, customer):
        """Test that repeated target ids are scheduled once."""
        scheduled = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id, customer.id], legal_basis=BASIS
            )
        ).unwrap()
        assert scheduled.target_entity_ids == [customer.id]
        assert scheduled.batch_size == 50


class TestApprovalAndCancellation:
    @pytest.mark.asyncio
    async def test_approval_gates_execution(self, deletion, registry, business, customer):
        """Test that an approval-gated deletion runs only once approved."""
        scheduled = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS, requires_approval=True
            )
        ).unwrap()

        refused = await deletion.execute_deletion(scheduled.id, business.id)
        assert refused.error.kind == ErrorKind.INSUFFICIENT_APPROVAL
        assert await registry.encryption.has_key(customer.key_ref)

        approved = (await deletion.approve_deletion(scheduled.id, business.id, "dpo@acme.test")).unwrap()
        assert approved.approved_by == "dpo@acme.test"
        run = (await deletion.execute_deletion(scheduled.id, business.id)).unwrap()
        assert run.request.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_deletion_cannot_run(self, deletion, business, customer):
        """Test that a cancelled deletion is terminal."""
        scheduled = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS)
        ).unwrap()

        cancelled = (await deletion.cancel_deletion(scheduled.id, business.id, cancelled_by="admin@acme.test")).unwrap()

        assert cancelled.status == JobStatus.CANCELLED
        assert (await deletion.execute_deletion(scheduled.id, business.id)).error.kind == ErrorKind.ILLEGAL_TRANSITION
        assert (await deletion.cancel_deletion(scheduled.id, business.id)).error.kind == ErrorKind.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_other_business_cannot_touch_deletion(self, deletion, business, customer):
        """Test that deletions are invisible to other businesses."""
        scheduled = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS)
        ).unwrap()
        other = uuid.uuid4()

        assert await deletion.get_deletion(scheduled.id, other) is None
        assert (await deletion.execute_deletion(scheduled.id, other)).error.kind == ErrorKind.NOT_FOUND
        assert (await deletion.approve_deletion(scheduled.id, other, "x")).error.kind == ErrorKind.NOT_FOUND


class TestExecution:
    @pytest.mark.asyncio
    async def test_crypto_shredding_complete_scope(self, deletion, registry, business, customer, review):
        """Test that shredding destroys every key of the customer and their reviews."""
        run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])

        assert run.request.status == JobStatus.COMPLETED
        assert run.request.processed_count == 1
        assert sorted(run.request.destroyed_key_refs) == sorted([customer.key_ref, review.key_ref])
        assert not await registry.encryption.has_key(customer.key_ref)
        assert not await registry.encryption.has_key(review.key_ref)
        erased = await registry.directory.get_customer(business.id, customer.id)
        assert erased.status == CustomerStatus.DELETED
        assert erased.email_index is None
        assert run.certificate.verification_status == CertificateVerification.VERIFIED

    @pytest.mark.asyncio
    async def test_secure_overwrite_clears_fields(self, deletion, registry, business, customer):
        """Test that overwriting removes ciphertext while the key survives."""
        run = await _run(
            deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], method=DeletionMethod.SECURE_OVERWRITE
        )

        erased = await registry.directory.get_customer(business.id, customer.id)
        assert erased.encrypted_fields == {}
        assert await registry.encryption.has_key(customer.key_ref)
        assert run.request.destroyed_key_refs == []
        assert run.certificate.verification_status == CertificateVerification.VERIFIED

    @pytest.mark.asyncio
    async def test_logical_delete_only_marks_record(self, deletion, registry, business, customer):
        """Test that a logical delete leaves the data in place and is not certified as unrecoverable."""
        run = await _run(
            deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], method=DeletionMethod.LOGICAL_DELETE
        )

        erased = await registry.directory.get_customer(business.id, customer.id)
        assert erased.is_deleted
        assert erased.email_index is not None
        assert (await registry.directory.decrypt_profile(erased))["email"] == CUSTOMER_EMAIL
        assert await registry.directory.find_by_contact(business.id, CUSTOMER_EMAIL) == []
        assert run.certificate.verification_status == CertificateVerification.NOT_APPLICABLE

    @pytest.mark.asyncio
    async def test_pii_only_scope_keeps_record(self, deletion, registry, business, customer):
        """Test that PII-only erasure anonymizes the customer instead of deleting it."""
        await _run(deletion, business.id, DeletionScope.CUSTOMER_PII_ONLY, [customer.id])

        kept = await registry.directory.get_customer(business.id, customer.id)
        assert kept.status == CustomerStatus.ANONYMIZED
        assert not kept.is_deleted
        assert kept.encrypted_fields == {}
        assert kept.phone_index is None

    @pytest.mark.asyncio
    async def test_communication_scope_spares_customer(self, deletion, registry, business, customer, review):
        """Test that communication-data erasure deletes reviews but not the customer."""
        await _run(deletion, business.id, DeletionScope.COMMUNICATION_DATA, [customer.id])

        assert await registry.directory.list_review_requests(business.id, customer.id) == []
        assert (await registry.directory.get_review_request(business.id, review.id)).is_deleted
        kept = await registry.directory.get_customer(business.id, customer.id)
        assert kept.status == CustomerStatus.ACTIVE
        assert await registry.encryption.has_key(customer.key_ref)

    @pytest.mark.asyncio
    async def test_review_scope_targets_reviews(self, deletion, registry, business, customer, review):
        """Test that review-data erasure takes review ids."""
        run = await _run(deletion, business.id, DeletionScope.REVIEW_DATA, [review.id])

        assert run.request.processed_count == 1
        assert not await registry.encryption.has_key(review.key_ref)
        assert await registry.encryption.has_key(customer.key_ref)

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, deletion, registry, business, customer):
        """Test that a dry run checks targets without deleting or certifying."""
        run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], dry_run=True)

        assert run.request.status == JobStatus.COMPLETED
        assert run.request.processed_count == 1
        assert run.certificate is None
        assert await registry.encryption.has_key(customer.key_ref)
        assert not (await registry.directory.get_customer(business.id, customer.id)).is_deleted

    @pytest.mark.asyncio
    async def test_vanished_target_fails_only_its_item(self, deletion, registry, business, customer):
        """Test that one missing target does not stop the rest of the batch."""
        other = await registry.directory.register_customer(business.id, email="other@example.com")
        scheduled = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id, other.id], legal_basis=BASIS, batch_size=1
            )
        ).unwrap()
        registry.stores.subjects._customers.pop(other.id)

        run = (await deletion.execute_deletion(scheduled.id, business.id)).unwrap()

        assert run.request.status == JobStatus.COMPLETED
        assert run.request.completed_item_ids == [customer.id]
        assert "not found" in run.request.failed_items[str(other.id)]
        assert run.certificate.records_failed == 1

    @pytest.mark.asyncio
    async def test_every_target_failing_fails_request(self, deletion, registry, business, customer):
        """Test that a deletion with no successful item ends FAILED without a certificate."""
        scheduled = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS)
        ).unwrap()
        registry.stores.subjects._customers.pop(customer.id)

        run = (await deletion.execute_deletion(scheduled.id, business.id)).unwrap()

        assert run.request.status == JobStatus.FAILED
        assert run.certificate is None
        assert (await deletion.execute_deletion(scheduled.id, business.id)).error.kind == ErrorKind.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_completed_deletion_returns_same_certificate(self, deletion, business, customer):
        """Test that executing a completed deletion again is a no-op."""
        first = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])

        again = (await deletion.execute_deletion(first.request.id, business.id)).unwrap()

        assert again.certificate.id == first.certificate.id
        assert again.request.processed_count == 1

    @pytest.mark.asyncio
    async def test_drain_runs_pending_deletions(self, deletion, registry, business, customer):
        """Test that the periodic drain executes only deletions that need no approval."""
        runnable = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_PII_ONLY, [customer.id], legal_basis=BASIS)
        ).unwrap()
        gated = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS, requires_approval=True
            )
        ).unwrap()

        runs = await deletion.process_pending_deletions()

        assert [r.request.id for r in runs] == [runnable.id]
        assert (await deletion.get_deletion(gated.id, business.id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_audit_preserve_keeps_rows_without_pii(self, deletion, registry, business, customer, review):
        """Test that audit-preserving deletion shreds PII but keeps the customer and review rows."""
        run = await _run(
            deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], method=DeletionMethod.AUDIT_PRESERVE
        )

        kept = await registry.directory.get_customer(business.id, customer.id)
        assert kept.status == CustomerStatus.ANONYMIZED
        assert not kept.is_deleted
        assert kept.encrypted_fields == {}
        assert kept.email_index is None
        kept_review = await registry.directory.get_review_request(business.id, review.id)
        assert not kept_review.is_deleted
        assert kept_review.anonymized_at is not None
        assert kept_review.encrypted_fields == {}
        assert sorted(run.request.destroyed_key_refs) == sorted([customer.key_ref, review.key_ref])
        assert run.certificate.method == DeletionMethod.AUDIT_PRESERVE
        assert run.certificate.verification_status == CertificateVerification.VERIFIED


class TestItemRetries:
    @pytest.mark.asyncio
    async def test_transient_error_retried_then_succeeds(self, deletion, registry, business, customer):
        """Test that an item failing once with a transient error is retried and completes."""
        save = registry.directory.save_customer
        calls: list[uuid.UUID] = []

        async def flaky_save(record):
            calls.append(record.id)
            if len(calls) == 1:
                raise ConnectionError("connection reset by peer")
            await save(record)

        with patch.object(registry.directory, "save_customer", side_effect=flaky_save):
            run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])

        assert calls == [customer.id, customer.id]
        assert run.request.status == JobStatus.COMPLETED
        assert run.request.processed_count == 1
        assert run.request.failed_count == 0
        assert run.request.destroyed_key_refs == [customer.key_ref]
        assert (await registry.directory.get_customer(business.id, customer.id)).is_deleted

    @pytest.mark.asyncio
    async def test_persistent_error_recorded_with_shredded_keys(
        self, deletion, registry, fake_settings, business, customer
    ):
        """Test that an item failing after its key was destroyed still reports that key."""
        with patch.object(
            registry.directory, "save_customer", side_effect=ConnectionError("connection reset by peer")
        ) as save:
            run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])

        assert save.await_count == fake_settings.job_item_attempts
        assert run.request.status == JobStatus.FAILED
        assert "ConnectionError" in run.request.failed_items[str(customer.id)]
        assert run.request.destroyed_key_refs == [customer.key_ref]
        assert not await registry.encryption.has_key(customer.key_ref)

    @pytest.mark.asyncio
    async def test_timed_out_item_keeps_destroyed_keys(self, deletion, registry, fake_settings, business, customer):
        """Test that a timeout after shredding records the destroyed key and the timeout."""

        async def hanging_save(record):
            await asyncio.sleep(5)

        with (
            patch.object(fake_settings, "external_call_timeout_seconds", 0.05),
            patch.object(registry.directory, "save_customer", side_effect=hanging_save),
        ):
            run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])

        assert run.request.failed_items[str(customer.id)] == "timed out"
        assert run.request.destroyed_key_refs == [customer.key_ref]

    @pytest.mark.asyncio
    async def test_vanished_target_not_retried(self, deletion, registry, business, customer):
        """Test that a missing target fails on the first attempt."""
        scheduled = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS)
        ).unwrap()
        registry.stores.subjects._customers.pop(customer.id)

        with patch.object(registry.directory, "get_customer", wraps=registry.directory.get_customer) as lookup:
            run = (await deletion.execute_deletion(scheduled.id, business.id)).unwrap()

        assert lookup.await_count == 1
        assert run.request.failed_count == 1


class TestBatchingAndResume:
    @pytest.fixture
    async def customers(self, registry, business, customer):
        others = [
            await registry.directory.register_customer(business.id, email=f"patient{i}@example.com") for i in range(2)
        ]
        return [customer, *others]

    @pytest.mark.asyncio
    async def test_targets_processed_across_batches(self, deletion, registry, business, customers):
        """Test that more targets than the batch size are all processed, in order."""
        run = await _run(
            deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [c.id for c in customers], batch_size=2
        )

        assert run.request.status == JobStatus.COMPLETED
        assert run.request.completed_item_ids == [c.id for c in customers]
        assert run.certificate.records_deleted == 3
        for c in customers:
            assert not await registry.encryption.has_key(c.key_ref)

    @pytest.mark.asyncio
    async def test_cancel_mid_run_stops_later_batches(self, deletion, registry, business, customers):
        """Test that cancelling during a run stops later batches and keeps finished deletions."""
        scheduled = (
            await deletion.schedule_deletion(
                business.id,
                DeletionScope.CUSTOMER_COMPLETE,
                [c.id for c in customers],
                legal_basis=BASIS,
                batch_size=1,
            )
        ).unwrap()
        save = registry.directory.save_customer

        async def save_then_cancel(record):
            await save(record)
            await deletion.cancel_deletion(scheduled.id, business.id, cancelled_by="admin@acme.test")

        with patch.object(registry.directory, "save_customer", side_effect=save_then_cancel):
            run = (await deletion.execute_deletion(scheduled.id, business.id)).unwrap()

        first, *rest = customers
        assert run.request.status == JobStatus.CANCELLED
        assert run.request.completed_item_ids == [first.id]
        assert run.certificate is None
        assert (await registry.directory.get_customer(business.id, first.id)).is_deleted
        assert not await registry.encryption.has_key(first.key_ref)
        for c in rest:
            assert await registry.encryption.has_key(c.key_ref)
            assert not (await registry.directory.get_customer(business.id, c.id)).is_deleted

    @pytest.mark.asyncio
    async def test_stale_running_request_resumed_without_double_counting(
        self, deletion, registry, business, customers
    ):
        """Test that a RUNNING request with an old heartbeat is taken over and skips finished items."""
        scheduled = (
            await deletion.schedule_deletion(
                business.id, DeletionScope.CUSTOMER_COMPLETE, [c.id for c in customers], legal_basis=BASIS
            )
        ).unwrap()
        store = registry.stores.deletions
        stale = utcnow() - timedelta(hours=2)
        first = customers[0]
        # A worker that died after finishing the first target.
        await store.transition_request(
            scheduled.id, {JobStatus.PENDING}, JobStatus.RUNNING, {"started_at": stale, "heartbeat_at": stale}
        )
        await registry.encryption.destroy_key(first.key_ref)
        await store.record_request_item(
            scheduled.id, first.id, error=None, destroyed_key_refs=[first.key_ref], heartbeat_at=stale
        )

        run = (await deletion.execute_deletion(scheduled.id, business.id)).unwrap()

        assert run.request.status == JobStatus.COMPLETED
        assert run.request.processed_count == 3
        assert run.request.completed_item_ids == [c.id for c in customers]
        # Skipped on resume, so the record was never touched again.
        assert not (await registry.directory.get_customer(business.id, first.id)).is_deleted
        assert sorted(run.request.destroyed_key_refs) == sorted(c.key_ref for c in customers)
        assert run.certificate.records_deleted == 3

    @pytest.mark.asyncio
    async def test_fresh_running_request_not_taken_over(self, deletion, registry, business, customer):
        """Test that a RUNNING request with a recent heartbeat is STALE_STATE and retryable."""
        scheduled = (
            await deletion.schedule_deletion(business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id], legal_basis=BASIS)
        ).unwrap()
        now = utcnow()
        await registry.stores.deletions.transition_request(
            scheduled.id, {JobStatus.PENDING}, JobStatus.RUNNING, {"started_at": now, "heartbeat_at": now}
        )

        result = await deletion.execute_deletion(scheduled.id, business.id)

        assert result.error.kind == ErrorKind.STALE_STATE
        assert result.error.retryable
        assert await registry.encryption.has_key(customer.key_ref)


class TestCertificates:
    @pytest.mark.asyncio
    async def test_certificate_verifies(self, deletion, business, customer):
        """Test that an issued certificate carries a valid signature."""
        run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])
        certificate = await deletion.get_certificate(run.certificate.id, business.id)

        assert deletion.verify_certificate(certificate)
        assert certificate.records_deleted == 1
        assert certificate.legal_basis == BASIS
        assert certificate.key_destruction_proof == destruction_proof(
            run.request.destroyed_key_refs, 1, run.request.id, certificate.issued_at
        )

    @pytest.mark.asyncio
    async def test_tampered_or_lapsed_certificate_rejected(self, deletion, business, customer):
        """Test that edited or expired certificates fail verification."""
        certificate = (await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])).certificate

        inflated = dataclasses.replace(certificate, key_destruction_proof="0" * 64)
        lapsed = dataclasses.replace(certificate, valid_until=utcnow() - timedelta(seconds=1))

        assert not deletion.verify_certificate(inflated)
        assert not deletion.verify_certificate(lapsed)

    @pytest.mark.asyncio
    async def test_certificate_scoped_to_business(self, deletion, business, customer):
        """Test that another business cannot fetch a certificate."""
        certificate = (await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])).certificate
        assert await deletion.get_certificate(certificate.id, uuid.uuid4()) is None

    def test_proof_independent_of_key_order(self):
        """Test that the destruction proof does not depend on key order."""
        request_id = uuid.uuid4()
        issued_at = utcnow()
        assert destruction_proof(["a/1", "b/2"], 2, request_id, issued_at) == destruction_proof(
            ["b/2", "a/1"], 2, request_id, issued_at
        )

    @pytest.mark.asyncio
    async def test_certificate_serialization(self, deletion, business, customer):
        """Test that certificates serialize with string identifiers."""
        run = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])

        document = certificate_to_dict(run.certificate)

        assert document["deletion_request_id"] == str(run.request.id)
        assert document["verification_status"] == "VERIFIED"
        assert run.to_dict()["certificate"]["id"] == document["id"]

    @pytest.mark.asyncio
    async def test_completed_request_without_certificate_gets_one(self, deletion, registry, business, customer):
        """Test that re-running a completed request issues a missing certificate."""
        first = await _run(deletion, business.id, DeletionScope.CUSTOMER_COMPLETE, [customer.id])
        registry.stores.deletions._certificates.pop(first.certificate.id)

        rerun = (await deletion.execute_deletion(first.request.id, business.id)).unwrap()

        assert rerun.certificate is not None
        assert rerun.certificate.id != first.certificate.id
        assert rerun.request.certificate_id == rerun.certificate.id
        assert await registry.stores.deletions.get_certificate_for_request(first.request.id) == rerun.certificate
        assert deletion.verify_certificate(rerun.certificate)


class TestStoreInvariants:
    @pytest.mark.asyncio
    async def test_request_vanishing_before_finish_raises(self, deletion):
        """Test that finishing a request missing from the store raises RecordNotFoundError."""
        with pytest.raises(RecordNotFoundError):
            await deletion._finish(uuid.uuid4())
