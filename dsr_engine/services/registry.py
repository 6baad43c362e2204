"""Service registry - explicit wiring of every engine component.

There are no module-level singletons. ``build_registry`` constructs the
stores, the encryption service, the audit ledger and the compliance
services once, hands each its collaborators through the constructor, and
returns them together. The API keeps one registry on ``app.state``; tests
build their own against in-memory stores.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from tenacity.wait import wait_base

from dsr_engine.compliance.deletion import SecureDeletionService
from dsr_engine.compliance.intake import DSRIntakeService
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.compliance.lifecycle import DataLifecycleManager
from dsr_engine.compliance.reports import ComplianceReportService
from dsr_engine.compliance.rights import RightsFulfillmentService
from dsr_engine.compliance.tasks import register_periodic_tasks
from dsr_engine.compliance.verification import IdentityVerificationEngine
from dsr_engine.compliance.workflow import WorkflowEngine
from dsr_engine.config import Settings
from dsr_engine.core.encryption import FieldEncryptionService
from dsr_engine.core.scheduler import AsyncioScheduler, Scheduler
from dsr_engine.services.directory import SubjectDirectory
from dsr_engine.services.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from dsr_engine.store.base import (
    AuditEventStore,
    DeletionStore,
    KeyStore,
    RequestStore,
    RetentionStore,
    SubjectStore,
    VerificationStore,
)

log = structlog.get_logger(__name__)


@dataclass
class Stores:
    audit: AuditEventStore
    requests: RequestStore
    verifications: VerificationStore
    subjects: SubjectStore
    retention: RetentionStore
    deletions: DeletionStore
    keys: KeyStore


def memory_stores() -> Stores:
    from dsr_engine.store.memory import (
        InMemoryAuditEventStore,
        InMemoryDeletionStore,
        InMemoryKeyStore,
        InMemoryRequestStore,
        InMemoryRetentionStore,
        InMemorySubjectStore,
        InMemoryVerificationStore,
    )

    return Stores(
        audit=InMemoryAuditEventStore(),
        requests=InMemoryRequestStore(),
        verifications=InMemoryVerificationStore(),
        subjects=InMemorySubjectStore(),
        retention=InMemoryRetentionStore(),
        deletions=InMemoryDeletionStore(),
        keys=InMemoryKeyStore(),
    )


def sql_stores() -> Stores:
    """Stores backed by the session factory of ``init_db``."""
    from dsr_engine.database import get_session_factory
    from dsr_engine.store.sql import (
        SqlAuditEventStore,
        SqlDeletionStore,
        SqlKeyStore,
        SqlRequestStore,
        SqlRetentionStore,
        SqlSubjectStore,
        SqlVerificationStore,
    )

    factory = get_session_factory()
    return Stores(
        audit=SqlAuditEventStore(factory),
        requests=SqlRequestStore(factory),
        verifications=SqlVerificationStore(factory),
        subjects=SqlSubjectStore(factory),
        retention=SqlRetentionStore(factory),
        deletions=SqlDeletionStore(factory),
        keys=SqlKeyStore(factory),
    )


@dataclass
class ServiceRegistry:
    settings: Settings
    stores: Stores
    encryption: FieldEncryptionService
    directory: SubjectDirectory
    ledger: ComplianceAuditLedger
    verification: IdentityVerificationEngine
    workflow: WorkflowEngine
    intake: DSRIntakeService
    rights: RightsFulfillmentService
    lifecycle: DataLifecycleManager
    deletion: SecureDeletionService
    reports: ComplianceReportService
    scheduler: Scheduler

    async def close(self) -> None:
        """Stop the scheduler (if it runs its own loops) and flush the ledger."""
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.stop()
        await self.ledger.close()


def default_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            settings.secret_key.get_secret_value(),
            timeout=settings.external_call_timeout_seconds,
        )
    return LoggingNotificationDispatcher()


def build_registry(
    settings: Settings,
    *,
    stores: Stores | None = None,
    dispatcher: NotificationDispatcher | None = None,
    scheduler: Scheduler | None = None,
    retry_wait: wait_base | None = None,
) -> ServiceRegistry:
    """Wire the engine.

    ``stores`` defaults to in-memory stores when ``USE_IN_MEMORY_STORE`` is
    set and to SQL stores otherwise (``init_db`` must have run first).
    """
    if stores is None:
        stores = memory_stores() if settings.use_in_memory_store else sql_stores()
    dispatcher = dispatcher or default_dispatcher(settings)
    scheduler = scheduler or AsyncioScheduler()

    encryption = FieldEncryptionService.from_settings(settings, stores.keys)
    directory = SubjectDirectory(stores.subjects, encryption)
    ledger = ComplianceAuditLedger(stores.audit, settings, retry_wait=retry_wait)
    verification = IdentityVerificationEngine(stores.verifications, directory, dispatcher, ledger, settings)
    workflow = WorkflowEngine(stores.requests, ledger, settings)
    intake = DSRIntakeService(workflow, verification, directory, settings)
    deletion = SecureDeletionService(stores.deletions, directory, encryption, ledger, settings, retry_wait=retry_wait)
    lifecycle = DataLifecycleManager(stores.retention, directory, deletion, ledger, settings, retry_wait=retry_wait)
    rights = RightsFulfillmentService(workflow, directory, deletion, ledger, settings)
    reports = ComplianceReportService(ledger, workflow, settings)

    registry = ServiceRegistry(
        settings=settings,
        stores=stores,
        encryption=encryption,
        directory=directory,
        ledger=ledger,
        verification=verification,
        workflow=workflow,
        intake=intake,
        rights=rights,
        lifecycle=lifecycle,
        deletion=deletion,
        reports=reports,
        scheduler=scheduler,
    )
    register_periodic_tasks(scheduler, registry, settings)
    log.info(
        "registry.built",
        store="memory" if settings.use_in_memory_store else "sql",
        tasks=len(getattr(scheduler, "tasks", [])),
    )
    return registry
