"""Data Lifecycle Manager - retention policies, assessment and batch jobs.

Assessment turns a policy into work:

    cutoff   = now - retention_period (calendar months/years, not 30-day blocks)
    records  = non-deleted records of each entity type created before cutoff,
               filtered by the policy conditions, minus records an earlier
               job of the same policy already covers
    action   = policy action, escalated ARCHIVE/ANONYMIZE -> DELETE for
               INACTIVE customer PII whose inactivity exceeds the policy's
               delete_inactive_after_days (settings default otherwise)
    jobs     = one ArchivalJob per (action, entity type); REVIEW is reported
               only and RETAIN does nothing

Jobs carry a deterministic dedupe key, so re-running an assessment on
unchanged data creates no new jobs. DELETE jobs are handed to the Secure
Deletion Service; ARCHIVE and ANONYMIZE jobs run here with the same
per-item, resumable bookkeeping and the same per-item retry policy.
"""

from __future__ import annotations

import asyncio
import calendar
import hashlib
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from tenacity import wait_exponential
from tenacity.wait import wait_base

from dsr_engine.config import Settings
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.compliance.deletion import ItemNotFoundError, SecureDeletionService, item_retrying
from dsr_engine.compliance.entities import (
    ArchivalJob,
    CustomerStatus,
    DataCategory,
    DeletionScope,
    EntityType,
    JobStatus,
    JobType,
    RecordSummary,
    RetentionAction,
    RetentionPolicy,
    RetentionUnit,
    utcnow,
)
from dsr_engine.compliance.events import EventSeverity, LifecycleEvent
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.services.directory import SubjectDirectory
from dsr_engine.store.base import DuplicateRecordError, RecordNotFoundError, RetentionStore

log = structlog.get_logger(__name__)

ESCALATABLE_ACTIONS = frozenset({RetentionAction.ARCHIVE, RetentionAction.ANONYMIZE})

JOB_TYPE_BY_ACTION: dict[RetentionAction, JobType] = {
    RetentionAction.DELETE: JobType.DELETE,
    RetentionAction.ANONYMIZE: JobType.ANONYMIZE,
    RetentionAction.ARCHIVE: JobType.ARCHIVE,
}

# Categories backed by platform records; the rest have no store of their own.
CATEGORY_ENTITY_TYPES: dict[DataCategory, EntityType] = {
    DataCategory.CUSTOMER_PII: EntityType.CUSTOMER,
    DataCategory.COMMUNICATION_DATA: EntityType.REVIEW_REQUEST,
}

DELETION_SCOPE_BY_ENTITY: dict[EntityType, DeletionScope] = {
    EntityType.CUSTOMER: DeletionScope.CUSTOMER_COMPLETE,
    EntityType.REVIEW_REQUEST: DeletionScope.REVIEW_DATA,
}

OVERDUE_DELETION_PENALTY = 20
NON_COMPLIANCE_PENALTY = 30
NON_COMPLIANCE_RATIO = 0.2
OLD_CATEGORY_PENALTY = 10
OLD_CATEGORY_DAYS = 5 * 365


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def retention_cutoff(policy: RetentionPolicy, now: datetime) -> datetime:
    if policy.retention_unit == RetentionUnit.DAYS:
        return now - timedelta(days=policy.retention_period)
    if policy.retention_unit == RetentionUnit.MONTHS:
        return subtract_months(now, policy.retention_period)
    return subtract_months(now, policy.retention_period * 12)


def next_execution(policy: RetentionPolicy, now: datetime) -> datetime:
    """Short retention periods are re-assessed more often than long ones."""
    if policy.retention_unit == RetentionUnit.DAYS and policy.retention_period <= 30:
        return now + timedelta(days=1)
    if policy.retention_unit == RetentionUnit.MONTHS and policy.retention_period <= 12:
        return now + timedelta(days=7)
    return now + timedelta(days=30)


def job_dedupe_key(
    policy_id: uuid.UUID, action: RetentionAction, entity_type: EntityType, entity_ids: list[uuid.UUID]
) -> str:
    ids = ",".join(sorted(str(i) for i in entity_ids))
    return hashlib.sha256(f"{policy_id}|{action}|{entity_type}|{ids}".encode()).hexdigest()


@dataclass
class PlannedAction:
    action: RetentionAction
    entity_type: EntityType
    entity_ids: list[uuid.UUID]
    job_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "record_count": len(self.entity_ids),
            "job_id": str(self.job_id) if self.job_id else None,
        }


@dataclass
class RetentionAssessment:
    policy_id: uuid.UUID
    cutoff: datetime
    records_scanned: int
    affected_records: int
    dry_run: bool = False
    actions: list[PlannedAction] = field(default_factory=list)
    review_required: list[uuid.UUID] = field(default_factory=list)
    duplicate_jobs: int = 0

    @property
    def jobs_created(self) -> int:
        return sum(1 for a in self.actions if a.job_id is not None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": str(self.policy_id),
            "cutoff": self.cutoff.isoformat(),
            "records_scanned": self.records_scanned,
            "affected_records": self.affected_records,
            "dry_run": self.dry_run,
            "jobs_created": self.jobs_created,
            "duplicate_jobs": self.duplicate_jobs,
            "actions": [a.to_dict() for a in self.actions],
            "review_required": [str(i) for i in self.review_required],
        }


@dataclass
class DataInventory:
    business_id: uuid.UUID
    generated_at: datetime
    categories: dict[str, dict[str, Any]]
    retention_status: dict[str, int]
    compliance_score: int
    risk_factors: list[str]
    recommendations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_id": str(self.business_id),
            "generated_at": self.generated_at.isoformat(),
            "categories": self.categories,
            "retention_status": self.retention_status,
            "compliance_score": self.compliance_score,
            "risk_factors": self.risk_factors,
            "recommendations": self.recommendations,
        }


class DataLifecycleManager:
    def __init__(
        self,
        store: RetentionStore,
        directory: SubjectDirectory,
        deletion: SecureDeletionService,
        ledger: ComplianceAuditLedger,
        settings: Settings,
        *,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._deletion = deletion
        self._ledger = ledger
        self._settings = settings
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)

    # ------------------------------------------------------------------ #
    # Policies
    # ------------------------------------------------------------------ #

    async def create_retention_policy(
        self,
        business_id: uuid.UUID,
        *,
        name: str,
        data_category: DataCategory,
        entity_types: list[EntityType],
        retention_period: int,
        retention_unit: RetentionUnit,
        action_after_retention: RetentionAction,
        legal_basis: str,
        description: str | None = None,
        jurisdiction: str = "UK",
        auto_apply: bool = False,
        requires_approval: bool = True,
        priority: int = 0,
        conditions: dict[str, Any] | None = None,
        delete_inactive_after_days: int | None = None,
        created_by: str | None = None,
    ) -> Result[RetentionPolicy]:
        """Validate and persist a retention policy.

        Args:
            business_id: Tenant the policy applies to.
            entity_types: Record types the policy scans.
            retention_period: How long records are kept, counted in ``retention_unit``.
            action_after_retention: What happens to records past the cutoff.
            legal_basis: Required; recorded on every job the policy creates.
            auto_apply: Let the scheduler assess the policy on its own.
            requires_approval: Jobs created by the policy wait for approval.
            conditions: Optional filters, e.g. ``customer_statuses``.
            delete_inactive_after_days: Inactivity age that escalates
                ARCHIVE/ANONYMIZE to DELETE for customer PII.

        Returns:
            The new policy, or VALIDATION_FAILED listing every problem found.
        """
        errors: list[str] = []
        if not name or not name.strip():
            errors.append("name is required")
        if retention_period < 1:
            errors.append("retention_period must be at least 1")
        if not legal_basis or not legal_basis.strip():
            errors.append("legal_basis is required")
        if not entity_types:
            errors.append("at least one entity type is required")
        if delete_inactive_after_days is not None and delete_inactive_after_days < 1:
            errors.append("delete_inactive_after_days must be at least 1")
        unknown_statuses = set((conditions or {}).get("customer_statuses", [])) - set(CustomerStatus)
        if unknown_statuses:
            errors.append(f"unknown customer statuses: {sorted(unknown_statuses)}")
        if errors:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "; ".join(errors), errors=errors)

        if await self._directory.get_business(business_id) is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Business not found")

        now = utcnow()
        policy = RetentionPolicy(
            id=uuid.uuid4(),
            business_id=business_id,
            name=name.strip(),
            data_category=data_category,
            entity_types=list(dict.fromkeys(entity_types)),
            retention_period=retention_period,
            retention_unit=retention_unit,
            action_after_retention=action_after_retention,
            legal_basis=legal_basis.strip(),
            created_at=now,
            updated_at=now,
            description=description,
            jurisdiction=jurisdiction,
            auto_apply=auto_apply,
            requires_approval=requires_approval,
            priority=priority,
            conditions=dict(conditions or {}),
            delete_inactive_after_days=delete_inactive_after_days,
        )
        policy.next_execution = next_execution(policy, now)
        await self._store.add_policy(policy)
        await self._ledger.log_event(
            business_id,
            "retention.policy_created",
            LifecycleEvent(
                operation="policy_created",
                policy_id=policy.id,
                action=policy.action_after_retention.value,
                detail=f"{policy.data_category} after {policy.retention_period} {policy.retention_unit}",
            ),
            severity=EventSeverity.MEDIUM,
            actor_id=created_by,
        )
        log.info("lifecycle.policy_created", policy_id=str(policy.id), business_id=str(business_id))
        return Result.ok(policy)

    async def get_policy(self, policy_id: uuid.UUID, business_id: uuid.UUID | None = None) -> RetentionPolicy | None:
        policy = await self._store.get_policy(policy_id)
        if policy is None or (business_id is not None and policy.business_id != business_id):
            return None
        return policy

    async def list_policies(self, business_id: uuid.UUID) -> list[RetentionPolicy]:
        return await self._store.list_policies(business_id)

    async def deactivate_policy(self, policy_id: uuid.UUID, business_id: uuid.UUID) -> Result[RetentionPolicy]:
        policy = await self.get_policy(policy_id, business_id)
        if policy is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Retention policy not found")
        policy.is_active = False
        policy.updated_at = utcnow()
        await self._store.save_policy(policy)
        return Result.ok(policy)

    # ------------------------------------------------------------------ #
    # Assessment
    # ------------------------------------------------------------------ #

    async def assess_retention_policy(
        self,
        policy_id: uuid.UUID,
        business_id: uuid.UUID | None = None,
        *,
        dry_run: bool = False,
    ) -> Result[RetentionAssessment]:
        """Find records past the policy's cutoff and create jobs for them.

        Args:
            policy_id: Policy to assess.
            business_id: Tenant check; ``None`` for scheduled runs.
            dry_run: Plan the actions without creating jobs or moving the
                policy's next execution.

        Returns:
            The assessment, including the jobs created. Re-assessing unchanged
            data creates no new jobs.
        """
        policy = await self.get_policy(policy_id, business_id)
        if policy is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Retention policy not found")
        if not policy.is_active:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Retention policy is inactive")

        now = utcnow()
        cutoff = retention_cutoff(policy, now)
        scanned = 0
        groups: dict[tuple[RetentionAction, EntityType], list[uuid.UUID]] = defaultdict(list)

        for entity_type in policy.entity_types:
            records = await self._directory.store.list_records(policy.business_id, entity_type, created_before=cutoff)
            covered = await self._store.covered_entity_ids(policy.id, entity_type)
            for record in records:
                if record.entity_id in covered or not self._matches_conditions(policy, record):
                    continue
                scanned += 1
                action = self._resolve_action(policy, record, now)
                if self._already_applied(action, record):
                    continue
                groups[(action, entity_type)].append(record.entity_id)

        assessment = RetentionAssessment(
            policy_id=policy.id,
            cutoff=cutoff,
            records_scanned=scanned,
            affected_records=sum(len(ids) for (action, _), ids in groups.items() if action != RetentionAction.RETAIN),
            dry_run=dry_run,
        )

        for (action, entity_type), entity_ids in sorted(groups.items()):
            if action == RetentionAction.RETAIN:
                continue
            if action == RetentionAction.REVIEW:
                assessment.review_required.extend(entity_ids)
                continue
            planned = PlannedAction(action=action, entity_type=entity_type, entity_ids=entity_ids)
            assessment.actions.append(planned)
            if dry_run:
                continue
            job = self._new_job(policy, action, entity_type, entity_ids, now)
            try:
                await self._store.add_job(job)
            except DuplicateRecordError:
                assessment.duplicate_jobs += 1
                continue
            planned.job_id = job.id
            log.info(
                "lifecycle.job_scheduled",
                job_id=str(job.id),
                policy_id=str(policy.id),
                action=action,
                entity_type=entity_type,
                records=len(entity_ids),
                requires_approval=job.requires_approval,
            )

        if not dry_run:
            policy.last_executed = now
            policy.next_execution = next_execution(policy, now)
            policy.updated_at = now
            await self._store.save_policy(policy)

        await self._ledger.log_event(
            policy.business_id,
            "retention.assessed",
            LifecycleEvent(
                operation="assessment",
                policy_id=policy.id,
                action=policy.action_after_retention.value,
                record_count=assessment.affected_records,
                detail=f"{assessment.jobs_created} job(s) scheduled" + (" (dry run)" if dry_run else ""),
            ),
            severity=EventSeverity.MEDIUM,
        )
        return Result.ok(assessment)

    def _matches_conditions(self, policy: RetentionPolicy, record: RecordSummary) -> bool:
        statuses = policy.conditions.get("customer_statuses")
        if statuses and record.entity_type == EntityType.CUSTOMER and record.status not in statuses:
            return False
        inactive_days = policy.conditions.get("inactive_for_days")
        if inactive_days is not None and record.last_activity_at > utcnow() - timedelta(days=int(inactive_days)):
            return False
        return True

    def _resolve_action(self, policy: RetentionPolicy, record: RecordSummary, now: datetime) -> RetentionAction:
        action = policy.action_after_retention
        if (
            action in ESCALATABLE_ACTIONS
            and policy.data_category == DataCategory.CUSTOMER_PII
            and record.entity_type == EntityType.CUSTOMER
            and record.status == CustomerStatus.INACTIVE
        ):
            threshold = policy.delete_inactive_after_days or self._settings.retention_delete_inactive_after_days
            if (now - record.last_activity_at).days > threshold:
                return RetentionAction.DELETE
        return action

    @staticmethod
    def _already_applied(action: RetentionAction, record: RecordSummary) -> bool:
        if action == RetentionAction.ARCHIVE:
            return record.archived or record.anonymized
        if action == RetentionAction.ANONYMIZE:
            return record.anonymized
        return False

    def _new_job(
        self,
        policy: RetentionPolicy,
        action: RetentionAction,
        entity_type: EntityType,
        entity_ids: list[uuid.UUID],
        now: datetime,
    ) -> ArchivalJob:
        return ArchivalJob(
            id=uuid.uuid4(),
            business_id=policy.business_id,
            job_type=JOB_TYPE_BY_ACTION[action],
            entity_type=entity_type,
            status=JobStatus.PENDING,
            target_entity_ids=list(entity_ids),
            batch_size=self._settings.deletion_batch_size,
            dedupe_key=job_dedupe_key(policy.id, action, entity_type, entity_ids),
            created_at=now,
            updated_at=now,
            policy_id=policy.id,
            requires_approval=policy.requires_approval,
        )

    # ------------------------------------------------------------------ #
    # Jobs
    # ------------------------------------------------------------------ #

    async def get_job(self, job_id: uuid.UUID, business_id: uuid.UUID | None = None) -> ArchivalJob | None:
        job = await self._store.get_job(job_id)
        if job is None or (business_id is not None and job.business_id != business_id):
            return None
        return job

    async def list_jobs(self, business_id: uuid.UUID, policy_id: uuid.UUID | None = None) -> list[ArchivalJob]:
        return await self._store.list_jobs(business_id, policy_id)

    async def approve_job(self, job_id: uuid.UUID, business_id: uuid.UUID, approved_by: str) -> Result[ArchivalJob]:
        job = await self.get_job(job_id, business_id)
        if job is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Lifecycle job not found")
        if job.status != JobStatus.PENDING:
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Job is {job.status}")
        if not job.awaiting_approval:
            return Result.ok(job)
        now = utcnow()
        updated = await self._store.update_job(job_id, {"approved_by": approved_by, "approved_at": now, "updated_at": now})
        await self._audit(updated, "lifecycle.job_approved", actor_id=approved_by)  # type: ignore[arg-type]
        return Result.ok(updated)  # type: ignore[arg-type]

    async def cancel_job(
        self, job_id: uuid.UUID, business_id: uuid.UUID, *, cancelled_by: str | None = None
    ) -> Result[ArchivalJob]:
        job = await self.get_job(job_id, business_id)
        if job is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Lifecycle job not found")
        now = utcnow()
        updated = await self._store.transition_job(
            job_id, {JobStatus.PENDING, JobStatus.RUNNING}, JobStatus.CANCELLED, {"completed_at": now, "updated_at": now}
        )
        if updated is None:
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Job is already {job.status}")
        if updated.deletion_request_id is not None:
            await self._deletion.cancel_deletion(updated.deletion_request_id, business_id, cancelled_by=cancelled_by)
        await self._audit(updated, "lifecycle.job_cancelled", actor_id=cancelled_by)
        return Result.ok(updated)

    async def execute_lifecycle_job(
        self,
        job_id: uuid.UUID,
        business_id: uuid.UUID | None = None,
        *,
        executed_by: str | None = None,
    ) -> Result[ArchivalJob]:
        """Run an approved job; DELETE jobs go through the Secure Deletion Service.

        Args:
            job_id: Job to execute.
            business_id: Tenant check; ``None`` for the background drain.
            executed_by: Actor recorded on the audit events.

        Returns:
            The job after this run. COMPLETED jobs are returned unchanged.
        """
        job = await self.get_job(job_id, business_id)
        if job is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Lifecycle job not found")
        if job.status == JobStatus.COMPLETED:
            return Result.ok(job)
        if job.status in (JobStatus.CANCELLED, JobStatus.FAILED):
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Job is {job.status}")
        if job.awaiting_approval:
            return Result.fail(ErrorKind.INSUFFICIENT_APPROVAL, "Job requires approval before execution")

        claimed = await self._claim(job)
        if claimed is None:
            return Result.fail(ErrorKind.STALE_STATE, "Job is being executed elsewhere", retryable=True)
        job = claimed
        log.info(
            "lifecycle.job_started",
            job_id=str(job.id),
            job_type=job.job_type,
            remaining=len(job.remaining_ids()),
            executed_by=executed_by or "system",
        )

        if job.job_type == JobType.DELETE:
            return await self._run_deletion_job(job, executed_by)

        remaining = job.remaining_ids()
        for start in range(0, len(remaining), job.batch_size):
            current = await self._store.get_job(job.id)
            if current is None or current.status != JobStatus.RUNNING:
                log.info("lifecycle.job_stopped", job_id=str(job.id), status=current.status if current else None)
                return Result.ok(current or job)
            for entity_id in remaining[start : start + job.batch_size]:
                await self._process_item(job, entity_id)

        return Result.ok(await self._finish(job.id))

    async def process_pending_jobs(self) -> list[ArchivalJob]:
        """Run at most ``jobs_per_drain`` runnable jobs that need no approval."""
        stale_before = utcnow() - timedelta(minutes=self._settings.job_stale_after_minutes)
        finished: list[ArchivalJob] = []
        for job in await self._store.list_runnable_jobs(stale_before, self._settings.jobs_per_drain):
            result = await self.execute_lifecycle_job(job.id)
            if result.success:
                finished.append(result.unwrap())
            else:
                log.info("lifecycle.drain_skipped", job_id=str(job.id), code=result.error.kind)  # type: ignore[union-attr]
        return finished

    async def run_scheduled_assessments(self) -> list[RetentionAssessment]:
        """Assess every active auto-apply policy whose next execution is due."""
        assessments: list[RetentionAssessment] = []
        for policy in await self._store.list_due_policies(utcnow()):
            result = await self.assess_retention_policy(policy.id)
            if result.success:
                assessments.append(result.unwrap())
            else:
                log.warning(
                    "lifecycle.scheduled_assessment_failed",
                    policy_id=str(policy.id),
                    code=result.error.kind,  # type: ignore[union-attr]
                )
        return assessments

    async def _claim(self, job: ArchivalJob) -> ArchivalJob | None:
        now = utcnow()
        claimed = await self._store.transition_job(
            job.id, {JobStatus.PENDING}, JobStatus.RUNNING, {"started_at": now, "heartbeat_at": now, "updated_at": now}
        )
        if claimed is not None:
            return claimed
        current = await self._store.get_job(job.id)
        stale_before = now - timedelta(minutes=self._settings.job_stale_after_minutes)
        if (
            current is not None
            and current.status == JobStatus.RUNNING
            and (current.heartbeat_at is None or current.heartbeat_at < stale_before)
        ):
            log.warning("lifecycle.resuming_stale_job", job_id=str(job.id))
            return await self._store.transition_job(
                job.id, {JobStatus.RUNNING}, JobStatus.RUNNING, {"heartbeat_at": now, "updated_at": now}
            )
        return None

    async def _run_deletion_job(self, job: ArchivalJob, executed_by: str | None) -> Result[ArchivalJob]:
        deletion_request_id = job.deletion_request_id
        if deletion_request_id is None:
            policy = await self._store.get_policy(job.policy_id) if job.policy_id else None
            scheduled = await self._deletion.schedule_deletion(
                job.business_id,
                DELETION_SCOPE_BY_ENTITY[job.entity_type],
                job.target_entity_ids,
                legal_basis=policy.legal_basis if policy else "Retention policy",
                requested_by=executed_by or "retention",
                policy_id=job.policy_id,
                dry_run=job.dry_run,
                batch_size=job.batch_size,
            )
            if not scheduled.success:
                await self._fail(job, scheduled.error.message)  # type: ignore[union-attr]
                return Result.from_error(scheduled.error)  # type: ignore[arg-type]
            deletion_request_id = scheduled.unwrap().id
            await self._store.update_job(job.id, {"deletion_request_id": deletion_request_id})

        executed = await self._deletion.execute_deletion(deletion_request_id, job.business_id)
        if not executed.success:
            return Result.from_error(executed.error)  # type: ignore[arg-type]
        deletion = executed.unwrap().request
        if not deletion.is_terminal:
            return Result.ok(await self._store.get_job(job.id))  # type: ignore[arg-type]

        now = utcnow()
        status = JobStatus.COMPLETED if deletion.status == JobStatus.COMPLETED else deletion.status
        finished = await self._store.transition_job(
            job.id,
            {JobStatus.RUNNING},
            status,
            {
                "processed_count": deletion.processed_count,
                "failed_count": deletion.failed_count,
                "completed_item_ids": list(deletion.completed_item_ids),
                "failed_items": dict(deletion.failed_items),
                "completed_at": now,
                "updated_at": now,
                "error": deletion.error,
            },
        )
        final = finished or await self._store.get_job(job.id)
        await self._audit(final, "lifecycle.job_completed", severity=EventSeverity.HIGH)  # type: ignore[arg-type]
        return Result.ok(final)  # type: ignore[arg-type]

    async def _process_item(self, job: ArchivalJob, entity_id: uuid.UUID) -> None:
        error: str | None = None
        try:
            async for attempt in item_retrying(self._settings.job_item_attempts, self._retry_wait):
                with attempt:
                    await asyncio.wait_for(
                        self._apply(job, entity_id),
                        timeout=self._settings.external_call_timeout_seconds,
                    )
        except TimeoutError:
            error = "timed out"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
        if error is not None:
            log.error("lifecycle.item_failed", job_id=str(job.id), entity_id=str(entity_id), error=error)
        await self._store.record_job_item(job.id, entity_id, error=error, heartbeat_at=utcnow())

    async def _apply(self, job: ArchivalJob, entity_id: uuid.UUID) -> None:
        if job.dry_run or job.job_type == JobType.ARCHIVE:
            record = (
                await self._directory.get_customer(job.business_id, entity_id)
                if job.entity_type == EntityType.CUSTOMER
                else await self._directory.get_review_request(job.business_id, entity_id)
            )
            if record is None:
                raise ItemNotFoundError(f"{job.entity_type} {entity_id} not found")
            if job.dry_run:
                return
            record.archived_at = utcnow()
            if job.entity_type == EntityType.CUSTOMER:
                record.status = CustomerStatus.ARCHIVED  # type: ignore[union-attr]
                await self._directory.save_customer(record)  # type: ignore[arg-type]
            else:
                await self._directory.save_review_request(record)  # type: ignore[arg-type]
            return
        await self._deletion.anonymize_record(job.entity_type, job.business_id, entity_id)

    async def _finish(self, job_id: uuid.UUID) -> ArchivalJob:
        job = await self._store.get_job(job_id)
        if job is None:
            raise RecordNotFoundError(f"lifecycle job {job_id} disappeared during execution")
        now = utcnow()
        failed_everything = job.processed_count == 0 and job.failed_count > 0
        finished = await self._store.transition_job(
            job.id,
            {JobStatus.RUNNING},
            JobStatus.FAILED if failed_everything else JobStatus.COMPLETED,
            {
                "completed_at": now,
                "updated_at": now,
                "error": "every item failed" if failed_everything else None,
            },
        )
        if finished is None:
            return await self._store.get_job(job_id) or job
        await self._audit(
            finished,
            "lifecycle.job_completed" if finished.status == JobStatus.COMPLETED else "lifecycle.job_failed",
            severity=EventSeverity.MEDIUM,
        )
        log.info(
            "lifecycle.job_finished",
            job_id=str(job_id),
            status=finished.status,
            processed=finished.processed_count,
            failed=finished.failed_count,
        )
        return finished

    async def _fail(self, job: ArchivalJob, reason: str) -> None:
        now = utcnow()
        failed = await self._store.transition_job(
            job.id, {JobStatus.RUNNING}, JobStatus.FAILED, {"error": reason, "completed_at": now, "updated_at": now}
        )
        if failed is not None:
            await self._audit(failed, "lifecycle.job_failed", severity=EventSeverity.MEDIUM)
            log.error("lifecycle.job_failed", job_id=str(job.id), reason=reason)

    # ------------------------------------------------------------------ #
    # Inventory
    # ------------------------------------------------------------------ #

    async def generate_data_inventory(self, business_id: uuid.UUID) -> DataInventory:
        now = utcnow()
        categories: dict[str, dict[str, Any]] = {}
        for category, entity_type in CATEGORY_ENTITY_TYPES.items():
            records = await self._directory.store.list_records(business_id, entity_type)
            categories[category.value] = self._category_stats(records, now)
        audit_events = await self._ledger.list_events(business_id)
        categories[DataCategory.AUDIT_LOGS.value] = {
            "total_records": len(audit_events),
            "active_records": len(audit_events),
            "inactive_records": 0,
            "archived_records": 0,
            "avg_age_days": (
                sum((now - e.created_at).days for e in audit_events) // len(audit_events) if audit_events else 0
            ),
            "oldest_record": audit_events[0].created_at.isoformat() if audit_events else None,
            "newest_record": audit_events[-1].created_at.isoformat() if audit_events else None,
        }

        retention_status = await self._retention_status(business_id, now)
        score, risks, recommendations = self._assess_compliance(categories, retention_status)
        log.info("lifecycle.inventory_generated", business_id=str(business_id), compliance_score=score)
        return DataInventory(
            business_id=business_id,
            generated_at=now,
            categories=categories,
            retention_status=retention_status,
            compliance_score=score,
            risk_factors=risks,
            recommendations=recommendations,
        )

    @staticmethod
    def _category_stats(records: list[RecordSummary], now: datetime) -> dict[str, Any]:
        if not records:
            return {
                "total_records": 0,
                "active_records": 0,
                "inactive_records": 0,
                "archived_records": 0,
                "avg_age_days": 0,
                "oldest_record": None,
                "newest_record": None,
            }
        active = sum(1 for r in records if not r.archived and r.status in ("ACTIVE", "SENT", "DELIVERED", "CLICKED"))
        return {
            "total_records": len(records),
            "active_records": active,
            "inactive_records": len(records) - active,
            "archived_records": sum(1 for r in records if r.archived),
            "avg_age_days": sum((now - r.created_at).days for r in records) // len(records),
            "oldest_record": records[0].created_at.isoformat(),
            "newest_record": records[-1].created_at.isoformat(),
        }

    async def _retention_status(self, business_id: uuid.UUID, now: datetime) -> dict[str, int]:
        """Classify records against every active policy of the business."""
        non_compliant: set[tuple[EntityType, uuid.UUID]] = set()
        overdue_for_deletion: set[tuple[EntityType, uuid.UUID]] = set()
        scheduled: set[tuple[EntityType, uuid.UUID]] = set()

        for policy in await self._store.list_policies(business_id):
            if not policy.is_active:
                continue
            cutoff = retention_cutoff(policy, now)
            for entity_type in policy.entity_types:
                covered = await self._store.covered_entity_ids(policy.id, entity_type)
                scheduled.update((entity_type, i) for i in covered)
                for record in await self._directory.store.list_records(business_id, entity_type, created_before=cutoff):
                    action = self._resolve_action(policy, record, now)
                    if action in (RetentionAction.RETAIN, RetentionAction.REVIEW):
                        continue
                    if record.entity_id in covered or self._already_applied(action, record):
                        continue
                    key = (entity_type, record.entity_id)
                    non_compliant.add(key)
                    if action == RetentionAction.DELETE:
                        overdue_for_deletion.add(key)

        total = 0
        for entity_type in EntityType:
            total += len(await self._directory.store.list_records(business_id, entity_type))
        return {
            "total_records": total,
            "compliant_records": total - len(non_compliant),
            "non_compliant_records": len(non_compliant),
            "scheduled_for_action": len(scheduled),
            "overdue_for_deletion": len(overdue_for_deletion),
        }

    @staticmethod
    def _assess_compliance(
        categories: dict[str, dict[str, Any]], retention_status: dict[str, int]
    ) -> tuple[int, list[str], list[str]]:
        score = 100
        risks: list[str] = []
        recommendations: list[str] = []

        if retention_status["overdue_for_deletion"] > 0:
            score -= OVERDUE_DELETION_PENALTY
            risks.append("Records overdue for deletion")
            recommendations.append("Review and process overdue retention actions")

        assessed = retention_status["compliant_records"] + retention_status["non_compliant_records"]
        if assessed and retention_status["non_compliant_records"] / assessed > NON_COMPLIANCE_RATIO:
            score -= NON_COMPLIANCE_PENALTY
            risks.append("High rate of non-compliant data retention")
            recommendations.append("Update retention policies and increase automation")

        for name, stats in categories.items():
            if stats["avg_age_days"] > OLD_CATEGORY_DAYS:
                score -= OLD_CATEGORY_PENALTY
                risks.append(f"Very old {name.lower()} data detected")
                recommendations.append(f"Review retention policy for {name.lower()}")

        return max(score, 0), risks, recommendations

    async def _audit(
        self,
        job: ArchivalJob,
        event_type: str,
        *,
        severity: EventSeverity = EventSeverity.LOW,
        actor_id: str | None = None,
    ) -> None:
        await self._ledger.log_event(
            job.business_id,
            event_type,
            LifecycleEvent(
                operation=event_type.split(".", 1)[1],
                policy_id=job.policy_id,
                job_id=job.id,
                action=job.job_type.value,
                entity_type=job.entity_type.value,
                record_count=job.processed_count,
                failed_count=job.failed_count,
            ),
            severity=severity,
            correlation_id=str(job.id),
            actor_id=actor_id,
        )
