"""Periodic compliance tasks.

Registers the engine's background work with a ``Scheduler``:

- retention assessment of due auto-apply policies (daily by default)
- bounded drain of runnable lifecycle jobs and secure deletions (hourly)
- escalation of overdue data-subject requests
- expiry of stale identity verifications
- ledger flush of events left queued after a failed append

The scheduler only decides *when* these run. Each task is an ordinary
coroutine on a service, so tests drive them directly or through a
``ManualScheduler``.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from dsr_engine.config import Settings
from dsr_engine.core.scheduler import ScheduledTask, Scheduler

if TYPE_CHECKING:
    from dsr_engine.services.registry import ServiceRegistry

log = structlog.get_logger(__name__)

RETENTION_ASSESSMENT = "retention_assessment"
LIFECYCLE_JOB_DRAIN = "lifecycle_job_drain"
DELETION_DRAIN = "deletion_drain"
WORKFLOW_ESCALATION = "workflow_escalation"
VERIFICATION_EXPIRY = "verification_expiry"
LEDGER_FLUSH = "ledger_flush"

_LEDGER_FLUSH_INTERVAL = timedelta(minutes=1)


def register_periodic_tasks(
    scheduler: Scheduler,
    registry: ServiceRegistry,
    settings: Settings,
) -> list[ScheduledTask]:
    """Register every periodic task of the engine on ``scheduler``."""
    drain_interval = timedelta(minutes=settings.job_drain_interval_minutes)
    escalation_interval = timedelta(minutes=settings.workflow_escalation_interval_minutes)

    tasks = [
        scheduler.register(
            timedelta(hours=settings.assessment_interval_hours),
            registry.lifecycle.run_scheduled_assessments,
            name=RETENTION_ASSESSMENT,
        ),
        scheduler.register(drain_interval, registry.lifecycle.process_pending_jobs, name=LIFECYCLE_JOB_DRAIN),
        scheduler.register(drain_interval, registry.deletion.process_pending_deletions, name=DELETION_DRAIN),
        scheduler.register(escalation_interval, registry.workflow.process_scheduled_tasks, name=WORKFLOW_ESCALATION),
        scheduler.register(
            escalation_interval,
            registry.verification.expire_stale_verifications,
            name=VERIFICATION_EXPIRY,
        ),
        scheduler.register(_LEDGER_FLUSH_INTERVAL, registry.ledger.flush, name=LEDGER_FLUSH),
    ]
    log.info("tasks.registered", count=len(tasks), names=[t.name for t in tasks])
    return tasks
