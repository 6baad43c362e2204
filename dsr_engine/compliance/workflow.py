"""Workflow Engine - the DSR state machine.

    SUBMITTED -> PENDING_VERIFICATION -> VERIFIED -> IN_PROGRESS -> COMPLETED
         \\               \\                  \\            \\
          +---------------+------------------+------------+--> REJECTED | WITHDRAWN

Every status change is a compare-and-set against the status the caller
observed. A caller that lost the race gets STALE_STATE; a caller replaying
a transition that already happened gets the recorded result back. Overdue
is computed from the effective due date and is never stored.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from dsr_engine.config import Settings
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.compliance.entities import (
    TERMINAL_REQUEST_STATUSES,
    ActorType,
    DataSubjectRequest,
    RequestPriority,
    RequestStatus,
    RightType,
    WorkflowTransition,
    utcnow,
)
from dsr_engine.compliance.events import EventSeverity, RequestEvent, WorkflowEvent
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.store.base import RequestStore

log = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.SUBMITTED: frozenset(
        {RequestStatus.PENDING_VERIFICATION, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
    ),
    RequestStatus.PENDING_VERIFICATION: frozenset(
        {RequestStatus.VERIFIED, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
    ),
    RequestStatus.VERIFIED: frozenset(
        {RequestStatus.IN_PROGRESS, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
    ),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
    ),
}

PRIORITY_BY_RIGHT: dict[RightType, RequestPriority] = {
    RightType.ERASURE: RequestPriority.HIGH,
    RightType.RESTRICT: RequestPriority.HIGH,
    RightType.PORTABILITY: RequestPriority.LOW,
}


def is_allowed(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


@dataclass
class TransitionContext:
    """Who is moving the request and what else changes with it."""

    actor: ActorType = ActorType.SYSTEM
    actor_id: str | None = None
    reason: str | None = None
    updates: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionResult:
    request: DataSubjectRequest
    transition: WorkflowTransition
    replayed: bool = False


@dataclass
class WorkflowStatus:
    business_id: uuid.UUID
    pending: list[DataSubjectRequest]
    overdue: list[DataSubjectRequest]
    metrics: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        def brief(request: DataSubjectRequest) -> dict[str, Any]:
            return {
                "request_id": str(request.id),
                "right_type": request.right_type.value,
                "status": request.status.value,
                "priority": request.priority.value,
                "due_date": request.effective_due_date.isoformat(),
            }

        return {
            "business_id": str(self.business_id),
            "pending": [brief(r) for r in self.pending],
            "overdue": [brief(r) for r in self.overdue],
            "metrics": self.metrics,
        }


class WorkflowEngine:
    def __init__(self, store: RequestStore, ledger: ComplianceAuditLedger, settings: Settings) -> None:
        self._store = store
        self._ledger = ledger
        self._settings = settings

    # ------------------------------------------------------------------ #
    # Creation and lookup
    # ------------------------------------------------------------------ #

    def calculate_due_date(self, right_type: RightType, submitted_at: datetime) -> datetime:
        return submitted_at + self._settings.statutory_window(right_type)

    @staticmethod
    def priority_for(right_type: RightType) -> RequestPriority:
        return PRIORITY_BY_RIGHT.get(right_type, RequestPriority.NORMAL)

    async def open_request(self, request: DataSubjectRequest) -> DataSubjectRequest:
        """Persist a new SUBMITTED request and log its submission."""
        await self._store.add(request)
        await self._ledger.log_event(
            request.business_id,
            "request.submitted",
            RequestEvent(
                request_id=request.id,
                right_type=request.right_type.value,
                status=request.status.value,
                channel=request.channel.value,
                subject_ref=str(request.customer_id) if request.customer_id else None,
            ),
            severity=EventSeverity.MEDIUM,
            correlation_id=request.correlation_id,
        )
        log.info(
            "workflow.request_opened",
            request_id=str(request.id),
            business_id=str(request.business_id),
            right_type=request.right_type,
            due_date=request.due_date.isoformat(),
        )
        return request

    async def get_request(
        self, request_id: uuid.UUID, business_id: uuid.UUID | None = None
    ) -> DataSubjectRequest | None:
        request = await self._store.get(request_id)
        if request is None or (business_id is not None and request.business_id != business_id):
            return None
        return request

    async def update_request(self, request_id: uuid.UUID, changes: dict[str, Any]) -> DataSubjectRequest | None:
        """Change non-status fields (verification link, response data)."""
        return await self._store.update_fields(request_id, {**changes, "updated_at": utcnow()})

    async def list_transitions(self, request_id: uuid.UUID) -> list[WorkflowTransition]:
        return await self._store.list_transitions(request_id)

    async def list_requests(
        self,
        business_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[DataSubjectRequest]:
        requests = await self._store.list_for_business(business_id)
        return [
            r
            for r in requests
            if (since is None or r.created_at >= since) and (until is None or r.created_at <= until)
        ]

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    async def process_workflow_transition(
        self,
        request_id: uuid.UUID,
        from_status: RequestStatus,
        to_status: RequestStatus,
        context: TransitionContext | None = None,
    ) -> Result[TransitionResult]:
        """Move a request between statuses with a compare-and-set on ``from_status``.

        Args:
            request_id: Request to transition.
            from_status: Status the caller believes the request is in.
            to_status: Target status; must be allowed by the transition table.
            context: Actor, reason and data recorded on the transition.

        Returns:
            The updated request and its transition record. ILLEGAL_TRANSITION
            for a disallowed edge, STALE_STATE when the stored status no
            longer matches ``from_status``.
        """
        context = context or TransitionContext()
        if not is_allowed(from_status, to_status):
            return Result.fail(
                ErrorKind.ILLEGAL_TRANSITION,
                f"Transition {from_status} -> {to_status} is not allowed",
                from_status=from_status.value,
                to_status=to_status.value,
            )

        now = utcnow()
        changes: dict[str, Any] = {**context.updates, "updated_at": now}
        if to_status == RequestStatus.COMPLETED:
            changes.setdefault("completed_at", now)
        elif to_status == RequestStatus.REJECTED and context.reason:
            changes.setdefault("rejection_reason", context.reason)

        updated = await self._store.compare_and_set_status(request_id, from_status, to_status, changes)
        if updated is None:
            return await self._resolve_lost_race(request_id, from_status, to_status)

        transition = WorkflowTransition(
            id=uuid.uuid4(),
            request_id=request_id,
            business_id=updated.business_id,
            from_status=from_status,
            to_status=to_status,
            actor=context.actor,
            created_at=now,
            actor_id=context.actor_id,
            reason=context.reason,
            metadata=dict(context.metadata),
        )
        await self._store.add_transition(transition)
        await self._ledger.log_event(
            updated.business_id,
            "workflow.transition",
            WorkflowEvent(
                request_id=request_id,
                from_status=from_status.value,
                to_status=to_status.value,
                actor=context.actor.value,
                actor_id=context.actor_id,
                reason=context.reason,
            ),
            severity=EventSeverity.MEDIUM if to_status in TERMINAL_REQUEST_STATUSES else EventSeverity.LOW,
            correlation_id=updated.correlation_id,
            actor_id=context.actor_id,
        )
        log.info(
            "workflow.transition_applied",
            request_id=str(request_id),
            from_status=from_status,
            to_status=to_status,
            actor=context.actor,
        )
        return Result.ok(TransitionResult(request=updated, transition=transition))

    async def _resolve_lost_race(
        self,
        request_id: uuid.UUID,
        from_status: RequestStatus,
        to_status: RequestStatus,
    ) -> Result[TransitionResult]:
        current = await self._store.get(request_id)
        if current is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")

        if current.status == to_status:
            transitions = await self._store.list_transitions(request_id)
            applied = next(
                (t for t in reversed(transitions) if t.from_status == from_status and t.to_status == to_status),
                None,
            )
            if applied is not None:
                log.debug("workflow.transition_replayed", request_id=str(request_id), to_status=to_status)
                return Result.ok(TransitionResult(request=current, transition=applied, replayed=True))

        log.info(
            "workflow.stale_transition",
            request_id=str(request_id),
            expected=from_status,
            actual=current.status,
            target=to_status,
        )
        return Result.fail(
            ErrorKind.STALE_STATE,
            f"Request is {current.status}, not {from_status}",
            current_status=current.status.value,
        )

    async def extend_deadline(
        self,
        request_id: uuid.UUID,
        days: int,
        reason: str,
        *,
        actor: ActorType = ActorType.BUSINESS_ADMIN,
        actor_id: str | None = None,
    ) -> Result[DataSubjectRequest]:
        """Push the effective due date out by ``days``. The original due date is kept."""
        if not reason or not reason.strip():
            return Result.fail(ErrorKind.VALIDATION_FAILED, "A reason is required to extend a deadline")
        if days < 1:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Extension must be at least one day")

        request = await self._store.get(request_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")
        if request.is_terminal:
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Request is already {request.status}")

        ceiling = request.due_date + timedelta(days=self._settings.max_deadline_extension_days)
        extended = request.effective_due_date + timedelta(days=days)
        if extended > ceiling:
            return Result.fail(
                ErrorKind.VALIDATION_FAILED,
                f"Deadlines can be extended by at most {self._settings.max_deadline_extension_days} days",
                latest_allowed=ceiling.isoformat(),
            )

        updated = await self._store.update_fields(
            request_id,
            {
                "extended_due_date": extended,
                "extension_reason": reason.strip(),
                "escalated_at": None,
                "updated_at": utcnow(),
            },
        )
        if updated is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")

        await self._ledger.log_event(
            updated.business_id,
            "request.deadline_extended",
            RequestEvent(
                request_id=request_id,
                right_type=updated.right_type.value,
                status=updated.status.value,
                detail=f"extended to {extended.date().isoformat()}: {reason.strip()}",
            ),
            severity=EventSeverity.MEDIUM,
            correlation_id=updated.correlation_id,
            actor_id=actor_id or actor.value,
        )
        log.info("workflow.deadline_extended", request_id=str(request_id), days=days)
        return Result.ok(updated)

    # ------------------------------------------------------------------ #
    # Status, metrics and escalation
    # ------------------------------------------------------------------ #

    async def get_workflow_status(self, business_id: uuid.UUID) -> WorkflowStatus:
        now = utcnow()
        requests = await self._store.list_for_business(business_id)
        open_requests = [r for r in requests if not r.is_terminal]
        overdue = [r for r in open_requests if r.is_overdue(now)]
        pending = [r for r in open_requests if not r.is_overdue(now)]
        return WorkflowStatus(
            business_id=business_id,
            pending=sorted(pending, key=lambda r: r.effective_due_date),
            overdue=sorted(overdue, key=lambda r: r.effective_due_date),
            metrics=self._metrics(requests, now),
        )

    @staticmethod
    def _metrics(requests: list[DataSubjectRequest], now: datetime) -> dict[str, Any]:
        this_month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        last_month_start = (this_month_start - timedelta(days=1)).replace(day=1)
        this_month = sum(1 for r in requests if r.created_at >= this_month_start)
        last_month = sum(1 for r in requests if last_month_start <= r.created_at < this_month_start)
        if last_month:
            growth = round((this_month - last_month) / last_month * 100, 1)
        else:
            growth = 100.0 if this_month else 0.0

        completed = [r for r in requests if r.status == RequestStatus.COMPLETED and r.completed_at]
        hours = [(r.completed_at - r.created_at).total_seconds() / 3600 for r in completed]  # type: ignore[operator]
        on_time = sum(1 for r in completed if r.completed_at <= r.effective_due_date)  # type: ignore[operator]

        return {
            "total_requests": len(requests),
            "open_requests": sum(1 for r in requests if not r.is_terminal),
            "overdue_requests": sum(1 for r in requests if r.is_overdue(now)),
            "by_status": dict(Counter(r.status.value for r in requests)),
            "by_right_type": dict(Counter(r.right_type.value for r in requests)),
            "this_month": this_month,
            "last_month": last_month,
            "growth_rate_percent": growth,
            "average_completion_hours": round(sum(hours) / len(hours), 1) if hours else None,
            "on_time_completion_rate": round(on_time / len(completed) * 100, 1) if completed else None,
        }

    async def process_scheduled_tasks(self) -> list[uuid.UUID]:
        """Escalate overdue requests once per deadline. Deadlines are never moved here.

        A request escalated after its current effective due date is skipped;
        extending the deadline clears the marker, so missing the new deadline
        escalates again.

        Returns:
            Ids of the requests escalated by this run.
        """
        now = utcnow()
        escalated: list[uuid.UUID] = []
        for request in await self._store.list_open():
            if not request.is_overdue(now):
                continue
            if request.escalated_at is not None and request.escalated_at >= request.effective_due_date:
                continue
            days_late = (now - request.effective_due_date).days
            await self._store.update_fields(request.id, {"escalated_at": now, "updated_at": now})
            await self._ledger.log_event(
                request.business_id,
                "request.overdue_escalated",
                RequestEvent(
                    request_id=request.id,
                    right_type=request.right_type.value,
                    status=request.status.value,
                    detail=f"overdue by {days_late} day(s)",
                ),
                severity=EventSeverity.HIGH,
                correlation_id=request.correlation_id,
            )
            log.warning(
                "workflow.request_overdue",
                request_id=str(request.id),
                business_id=str(request.business_id),
                status=request.status,
                days_late=days_late,
            )
            escalated.append(request.id)
        return escalated
