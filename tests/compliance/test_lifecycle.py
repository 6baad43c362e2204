"""Tests for retention policies, assessment and lifecycle jobs."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from dsr_engine.compliance.entities import (
    CustomerStatus,
    DataCategory,
    DeletionRequestType,
    EntityType,
    JobStatus,
    JobType,
    RetentionAction,
    RetentionUnit,
    utcnow,
)
from dsr_engine.compliance.lifecycle import next_execution, retention_cutoff, subtract_months
from dsr_engine.compliance.tasks import RETENTION_ASSESSMENT
from dsr_engine.core.errors import ErrorKind
from dsr_engine.store.base import RecordNotFoundError


@pytest.fixture
def lifecycle(registry):
    return registry.lifecycle


def _years_ago(years: int) -> datetime:
    return utcnow() - timedelta(days=365 * years + 10)


async def _policy(lifecycle, business_id, **overrides):
    values = {
        "name": "Customer records",
        "data_category": DataCategory.CUSTOMER_PII,
        "entity_types": [EntityType.CUSTOMER],
        "retention_period": 24,
        "retention_unit": RetentionUnit.MONTHS,
        "action_after_retention": RetentionAction.ANONYMIZE,
        "legal_basis": "Legitimate interest - customer service",
        "requires_approval": False,
    }
    values.update(overrides)
    return (await lifecycle.create_retention_policy(business_id, **values)).unwrap()


class TestRetentionArithmetic:
    def test_month_subtraction_clamps_day(self):
        """Test that month arithmetic clamps to the end of shorter months."""
        moment = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)
        assert subtract_months(moment, 1) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
        assert subtract_months(moment, 13) == datetime(2023, 2, 28, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_cutoff_uses_calendar_units(self, lifecycle, business):
        """Test that years and months are calendar based rather than fixed-length."""
        now = datetime(2025, 6, 15, tzinfo=timezone.utc)
        yearly = await _policy(lifecycle, business.id, retention_period=2, retention_unit=RetentionUnit.YEARS)
        daily = await _policy(lifecycle, business.id, retention_period=10, retention_unit=RetentionUnit.DAYS)

        assert retention_cutoff(yearly, now) == datetime(2023, 6, 15, tzinfo=timezone.utc)
        assert retention_cutoff(daily, now) == datetime(2025, 6, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_short_policies_reassessed_more_often(self, lifecycle, business):
        """Test that the next execution depends on the retention period."""
        now = utcnow()
        short = await _policy(lifecycle, business.id, retention_period=7, retention_unit=RetentionUnit.DAYS)
        medium = await _policy(lifecycle, business.id, retention_period=6)
        long = await _policy(lifecycle, business.id, retention_period=5, retention_unit=RetentionUnit.YEARS)

        assert next_execution(short, now) == now + timedelta(days=1)
        assert next_execution(medium, now) == now + timedelta(days=7)
        assert next_execution(long, now) == now + timedelta(days=30)


class TestPolicies:
    @pytest.mark.asyncio
    async def test_invalid_policy_lists_every_problem(self, lifecycle, business):
        """Test that policy validation reports all errors at once."""
        result = await lifecycle.create_retention_policy(
            business.id,
            name=" ",
            data_category=DataCategory.CUSTOMER_PII,
            entity_types=[EntityType.CUSTOMER],
            retention_period=0,
            retention_unit=RetentionUnit.MONTHS,
            action_after_retention=RetentionAction.DELETE,
            legal_basis="",
        )

        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert len(result.error.details["errors"]) == 3

    @pytest.mark.asyncio
    async def test_unknown_business_not_found(self, lifecycle):
        """Test that a policy for an unknown business is NOT_FOUND."""
        result = await lifecycle.create_retention_policy(
            uuid.uuid4(),
            name="Customers",
            data_category=DataCategory.CUSTOMER_PII,
            entity_types=[EntityType.CUSTOMER],
            retention_period=12,
            retention_unit=RetentionUnit.MONTHS,
            action_after_retention=RetentionAction.DELETE,
            legal_basis="Contract",
        )
        assert result.error.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_policy_scoped_to_business(self, lifecycle, business):
        """Test that another business cannot read or deactivate a policy."""
        policy = await _policy(lifecycle, business.id)

        assert await lifecycle.get_policy(policy.id, uuid.uuid4()) is None
        assert (await lifecycle.deactivate_policy(policy.id, uuid.uuid4())).error.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_policy_not_assessed(self, lifecycle, business):
        """Test that a deactivated policy refuses assessment."""
        policy = await _policy(lifecycle, business.id)
        (await lifecycle.deactivate_policy(policy.id, business.id)).unwrap()

        result = await lifecycle.assess_retention_policy(policy.id, business.id)

        assert result.error.kind == ErrorKind.VALIDATION_FAILED


class TestAssessment:
    @pytest.mark.asyncio
    async def test_only_expired_records_affected(self, lifecycle, registry, business):
        """Test that records newer than the cutoff are left alone."""
        old = await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        await registry.directory.register_customer(business.id, email="new@example.com")
        policy = await _policy(lifecycle, business.id)

        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap()

        assert assessment.records_scanned == 1
        assert assessment.affected_records == 1
        [planned] = assessment.actions
        assert planned.action == RetentionAction.ANONYMIZE
        assert planned.entity_ids == [old.id]
        [job] = await lifecycle.list_jobs(business.id, policy.id)
        assert job.id == planned.job_id
        assert job.job_type == JobType.ANONYMIZE

    @pytest.mark.asyncio
    async def test_reassessment_is_idempotent(self, lifecycle, registry, business):
        """Test that re-running an assessment on unchanged data creates no new jobs."""
        await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        policy = await _policy(lifecycle, business.id)
        await lifecycle.assess_retention_policy(policy.id, business.id)

        again = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap()

        assert again.jobs_created == 0
        assert len(await lifecycle.list_jobs(business.id)) == 1

    @pytest.mark.asyncio
    async def test_dry_run_creates_no_jobs(self, lifecycle, registry, business):
        """Test that a dry run reports planned actions without scheduling them."""
        await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        policy = await _policy(lifecycle, business.id)

        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id, dry_run=True)).unwrap()

        assert assessment.affected_records == 1
        assert assessment.jobs_created == 0
        assert await lifecycle.list_jobs(business.id) == []
        assert (await lifecycle.get_policy(policy.id)).last_executed is None

    @pytest.mark.asyncio
    async def test_long_inactive_customers_escalated_to_delete(self, lifecycle, registry, business):
        """Test that ARCHIVE escalates to DELETE for long-inactive customers."""
        inactive = await registry.directory.register_customer(
            business.id,
            email="gone@example.com",
            status=CustomerStatus.INACTIVE,
            created_at=_years_ago(5),
            last_activity_at=_years_ago(4),
        )
        active = await registry.directory.register_customer(
            business.id, email="still@example.com", created_at=_years_ago(5), last_activity_at=_years_ago(4)
        )
        policy = await _policy(lifecycle, business.id, action_after_retention=RetentionAction.ARCHIVE)

        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap()

        by_action = {a.action: a.entity_ids for a in assessment.actions}
        assert by_action[RetentionAction.DELETE] == [inactive.id]
        assert by_action[RetentionAction.ARCHIVE] == [active.id]

    @pytest.mark.asyncio
    async def test_policy_inactivity_threshold_overrides_default(self, lifecycle, registry, business):
        """Test that a policy's own inactivity threshold decides escalation."""
        await registry.directory.register_customer(
            business.id,
            email="gone@example.com",
            status=CustomerStatus.INACTIVE,
            created_at=_years_ago(5),
            last_activity_at=_years_ago(4),
        )
        policy = await _policy(lifecycle, business.id, delete_inactive_after_days=365 * 10)

        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id, dry_run=True)).unwrap()

        assert [a.action for a in assessment.actions] == [RetentionAction.ANONYMIZE]

    @pytest.mark.asyncio
    async def test_review_action_only_reported(self, lifecycle, registry, business):
        """Test that REVIEW policies list records without creating jobs."""
        old = await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        policy = await _policy(lifecycle, business.id, action_after_retention=RetentionAction.REVIEW)

        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap()

        assert assessment.review_required == [old.id]
        assert assessment.actions == []
        assert assessment.affected_records == 1

    @pytest.mark.asyncio
    async def test_status_condition_filters_records(self, lifecycle, registry, business):
        """Test that customer_statuses conditions restrict the scan."""
        await registry.directory.register_customer(business.id, email="a@example.com", created_at=_years_ago(3))
        inactive = await registry.directory.register_customer(
            business.id, email="b@example.com", status=CustomerStatus.INACTIVE, created_at=_years_ago(3)
        )
        policy = await _policy(lifecycle, business.id, conditions={"customer_statuses": ["INACTIVE"]})

        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id, dry_run=True)).unwrap()

        assert [i for a in assessment.actions for i in a.entity_ids] == [inactive.id]

    @pytest.mark.asyncio
    async def test_unknown_condition_status_rejected(self, lifecycle, business):
        """Test that conditions naming unknown statuses are refused."""
        result = await lifecycle.create_retention_policy(
            business.id,
            name="Customers",
            data_category=DataCategory.CUSTOMER_PII,
            entity_types=[EntityType.CUSTOMER],
            retention_period=12,
            retention_unit=RetentionUnit.MONTHS,
            action_after_retention=RetentionAction.DELETE,
            legal_basis="Contract",
            conditions={"customer_statuses": ["DORMANT"]},
        )
        assert result.error.kind == ErrorKind.VALIDATION_FAILED


class TestJobs:
    @pytest.mark.asyncio
    async def test_job_requires_approval(self, lifecycle, registry, business):
        """Test that approval-gated jobs only run once approved."""
        old = await registry.directory.register_customer(
            business.id, email="old@example.com", first_name="Olga", created_at=_years_ago(3)
        )
        policy = await _policy(lifecycle, business.id, requires_approval=True)
        assessment = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap()
        job_id = assessment.actions[0].job_id

        refused = await lifecycle.execute_lifecycle_job(job_id, business.id)
        assert refused.error.kind == ErrorKind.INSUFFICIENT_APPROVAL

        (await lifecycle.approve_job(job_id, business.id, "dpo@acme.test")).unwrap()
        job = (await lifecycle.execute_lifecycle_job(job_id, business.id)).unwrap()

        assert job.status == JobStatus.COMPLETED
        assert job.processed_count == 1
        anonymized = await registry.directory.get_customer(business.id, old.id)
        assert anonymized.status == CustomerStatus.ANONYMIZED
        assert (await registry.directory.decrypt_profile(anonymized))["first_name"] is None

    @pytest.mark.asyncio
    async def test_archive_job_marks_records(self, lifecycle, registry, business):
        """Test that ARCHIVE jobs keep the data and flag the record."""
        old = await registry.directory.register_customer(
            business.id, email="old@example.com", first_name="Olga", created_at=_years_ago(3)
        )
        policy = await _policy(lifecycle, business.id, action_after_retention=RetentionAction.ARCHIVE)
        job_id = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap().actions[0].job_id

        (await lifecycle.execute_lifecycle_job(job_id, business.id)).unwrap()

        archived = await registry.directory.get_customer(business.id, old.id)
        assert archived.status == CustomerStatus.ARCHIVED
        assert archived.archived_at is not None
        assert (await registry.directory.decrypt_profile(archived))["first_name"] == "Olga"

    @pytest.mark.asyncio
    async def test_delete_job_runs_secure_deletion(self, lifecycle, registry, business):
        """Test that DELETE jobs are carried out through a certified secure deletion."""
        old = await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        policy = await _policy(lifecycle, business.id, action_after_retention=RetentionAction.DELETE)
        job_id = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap().actions[0].job_id

        job = (await lifecycle.execute_lifecycle_job(job_id, business.id)).unwrap()

        assert job.status == JobStatus.COMPLETED
        assert job.completed_item_ids == [old.id]
        deletion = await registry.deletion.get_deletion(job.deletion_request_id, business.id)
        assert deletion.request_type == DeletionRequestType.RETENTION_POLICY
        assert deletion.policy_id == policy.id
        assert deletion.certificate_id is not None
        assert (await registry.directory.get_customer(business.id, old.id)).status == CustomerStatus.DELETED

    @pytest.mark.asyncio
    async def test_cancelled_job_cannot_run(self, lifecycle, registry, business):
        """Test that a cancelled job is ILLEGAL_TRANSITION on execution."""
        await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        policy = await _policy(lifecycle, business.id)
        job_id = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap().actions[0].job_id

        cancelled = (await lifecycle.cancel_job(job_id, business.id, cancelled_by="admin@acme.test")).unwrap()

        assert cancelled.status == JobStatus.CANCELLED
        result = await lifecycle.execute_lifecycle_job(job_id, business.id)
        assert result.error.kind == ErrorKind.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_missing_item_recorded_as_failure(self, lifecycle, registry, business):
        """Test that a record deleted after assessment fails only its own item."""
        first = await registry.directory.register_customer(business.id, email="a@example.com", created_at=_years_ago(3))
        second = await registry.directory.register_customer(business.id, email="b@example.com", created_at=_years_ago(3))
        policy = await _policy(lifecycle, business.id, action_after_retention=RetentionAction.ARCHIVE)
        job_id = (await lifecycle.assess_retention_policy(policy.id, business.id)).unwrap().actions[0].job_id
        registry.stores.subjects._customers.pop(second.id)

        job = (await lifecycle.execute_lifecycle_job(job_id, business.id)).unwrap()

        assert job.status == JobStatus.COMPLETED
        assert job.completed_item_ids == [first.id]
        assert list(job.failed_items) == [str(second.id)]

    @pytest.mark.asyncio
    async def test_drain_skips_jobs_awaiting_approval(self, lifecycle, registry, business):
        """Test that the periodic drain only picks runnable jobs."""
        await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        gated = await _policy(lifecycle, business.id, requires_approval=True)
        open_policy = await _policy(
            lifecycle, business.id, name="Archive", action_after_retention=RetentionAction.ARCHIVE
        )
        await lifecycle.assess_retention_policy(gated.id, business.id)
        await lifecycle.assess_retention_policy(open_policy.id, business.id)

        finished = await lifecycle.process_pending_jobs()

        assert [j.policy_id for j in finished] == [open_policy.id]
        [waiting] = await lifecycle.list_jobs(business.id, gated.id)
        assert waiting.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_scheduled_assessment_runs_due_auto_apply_policies(self, lifecycle, registry, scheduler, business):
        """Test that the periodic task assesses due auto-apply policies only."""
        await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        manual = await _policy(lifecycle, business.id)
        automatic = await _policy(lifecycle, business.id, name="Auto", auto_apply=True)
        stored = await registry.stores.retention.get_policy(automatic.id)
        stored.next_execution = utcnow() - timedelta(minutes=1)
        await registry.stores.retention.save_policy(stored)

        assessments = await scheduler.run(RETENTION_ASSESSMENT)

        assert [a.policy_id for a in assessments] == [automatic.id]
        assert await lifecycle.list_jobs(business.id, manual.id) == []


class TestJobExecution:
    @pytest.fixture
    async def old_customers(self, registry, business):
        return [
            await registry.directory.register_customer(
                business.id, email=f"old{i}@example.com", created_at=_years_ago(3)
            )
            for i in range(3)
        ]

    async def _archive_job(self, lifecycle, business_id):
        policy = await _policy(lifecycle, business_id, action_after_retention=RetentionAction.ARCHIVE)
        job_id = (await lifecycle.assess_retention_policy(policy.id, business_id)).unwrap().actions[0].job_id
        return await lifecycle.get_job(job_id, business_id)

    @pytest.mark.asyncio
    async def test_items_processed_across_batches(self, lifecycle, registry, fake_settings, business, old_customers):
        """Test that a job larger than its batch size archives every record."""
        with patch.object(fake_settings, "deletion_batch_size", 2):
            job = await self._archive_job(lifecycle, business.id)

        finished = (await lifecycle.execute_lifecycle_job(job.id, business.id)).unwrap()

        assert job.batch_size == 2
        assert finished.status == JobStatus.COMPLETED
        assert finished.processed_count == 3
        assert sorted(finished.completed_item_ids) == sorted(c.id for c in old_customers)

    @pytest.mark.asyncio
    async def test_cancel_mid_run_stops_later_batches(self, lifecycle, registry, fake_settings, business, old_customers):
        """Test that cancelling a running job leaves later batches untouched."""
        with patch.object(fake_settings, "deletion_batch_size", 1):
            job = await self._archive_job(lifecycle, business.id)
        save = registry.directory.save_customer

        async def save_then_cancel(record):
            await save(record)
            await lifecycle.cancel_job(job.id, business.id, cancelled_by="admin@acme.test")

        with patch.object(registry.directory, "save_customer", side_effect=save_then_cancel):
            stopped = (await lifecycle.execute_lifecycle_job(job.id, business.id)).unwrap()

        first, *rest = job.target_entity_ids
        assert stopped.status == JobStatus.CANCELLED
        assert stopped.completed_item_ids == [first]
        assert (await registry.directory.get_customer(business.id, first)).status == CustomerStatus.ARCHIVED
        for entity_id in rest:
            assert (await registry.directory.get_customer(business.id, entity_id)).status == CustomerStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, lifecycle, registry, business, old_customers):
        """Test that an item failing once with a transient error is retried."""
        job = await self._archive_job(lifecycle, business.id)
        save = registry.directory.save_customer
        failures = {job.target_entity_ids[0]}

        async def flaky_save(record):
            if record.id in failures:
                failures.discard(record.id)
                raise ConnectionError("connection reset by peer")
            await save(record)

        with patch.object(registry.directory, "save_customer", side_effect=flaky_save) as patched:
            finished = (await lifecycle.execute_lifecycle_job(job.id, business.id)).unwrap()

        assert patched.await_count == 4
        assert finished.status == JobStatus.COMPLETED
        assert finished.failed_count == 0
        assert finished.processed_count == 3

    @pytest.mark.asyncio
    async def test_persistent_error_fails_item(self, lifecycle, registry, fake_settings, business, old_customers):
        """Test that an item still failing after every attempt is recorded as failed."""
        job = await self._archive_job(lifecycle, business.id)

        with patch.object(
            registry.directory, "save_customer", side_effect=ConnectionError("connection reset by peer")
        ) as patched:
            finished = (await lifecycle.execute_lifecycle_job(job.id, business.id)).unwrap()

        assert patched.await_count == 3 * fake_settings.job_item_attempts
        assert finished.status == JobStatus.FAILED
        assert finished.failed_count == 3
        assert all(error.startswith("ConnectionError") for error in finished.failed_items.values())

    @pytest.mark.asyncio
    async def test_job_vanishing_before_finish_raises(self, lifecycle):
        """Test that finishing a job missing from the store raises RecordNotFoundError."""
        with pytest.raises(RecordNotFoundError):
            await lifecycle._finish(uuid.uuid4())


class TestInventory:
    @pytest.mark.asyncio
    async def test_empty_business_fully_compliant(self, lifecycle, business):
        """Test that a business without data scores 100."""
        inventory = await lifecycle.generate_data_inventory(business.id)

        assert inventory.compliance_score == 100
        assert inventory.risk_factors == []
        assert set(inventory.categories) == {"CUSTOMER_PII", "COMMUNICATION_DATA", "AUDIT_LOGS"}
        assert inventory.retention_status["total_records"] == 0

    @pytest.mark.asyncio
    async def test_overdue_records_lower_score(self, lifecycle, registry, business, customer):
        """Test that unprocessed records past a DELETE policy are reported as overdue."""
        await registry.directory.register_customer(business.id, email="old@example.com", created_at=_years_ago(3))
        await _policy(lifecycle, business.id, action_after_retention=RetentionAction.DELETE, retention_period=12)

        inventory = await lifecycle.generate_data_inventory(business.id)

        status = inventory.retention_status
        assert status["total_records"] == 2
        assert status["non_compliant_records"] == 1
        assert status["overdue_for_deletion"] == 1
        assert inventory.compliance_score == 50
        assert "Records overdue for deletion" in inventory.risk_factors
        assert inventory.categories["CUSTOMER_PII"]["total_records"] == 2
