"""Tests for the request workflow state machine."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta

import pytest

from dsr_engine.compliance.entities import (
    ActorType,
    DataSubjectRequest,
    RequestPriority,
    RequestStatus,
    RightType,
    utcnow,
)
from dsr_engine.compliance.workflow import TransitionContext, is_allowed
from dsr_engine.core.errors import ErrorKind


@pytest.fixture
def workflow(registry):
    return registry.workflow


async def _open(
    workflow,
    business_id: uuid.UUID,
    *,
    right_type: RightType = RightType.ACCESS,
    created_at: datetime | None = None,
) -> DataSubjectRequest:
    created = created_at or utcnow()
    request = DataSubjectRequest(
        id=uuid.uuid4(),
        business_id=business_id,
        right_type=right_type,
        requestor_email="jane.doe@example.com",
        status=RequestStatus.SUBMITTED,
        due_date=workflow.calculate_due_date(right_type, created),
        created_at=created,
        updated_at=created,
        priority=workflow.priority_for(right_type),
    )
    return await workflow.open_request(request)


async def _advance(workflow, request_id: uuid.UUID, *statuses: RequestStatus) -> None:
    current = RequestStatus.SUBMITTED
    for status in statuses:
        (await workflow.process_workflow_transition(request_id, current, status)).unwrap()
        current = status


class TestTransitionTable:
    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION),
            (RequestStatus.PENDING_VERIFICATION, RequestStatus.VERIFIED),
            (RequestStatus.VERIFIED, RequestStatus.IN_PROGRESS),
            (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED),
            (RequestStatus.IN_PROGRESS, RequestStatus.WITHDRAWN),
            (RequestStatus.SUBMITTED, RequestStatus.REJECTED),
        ],
    )
    def test_allowed_transitions(self, from_status, to_status):
        """Test that forward and exit transitions are allowed."""
        assert is_allowed(from_status, to_status)

    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (RequestStatus.SUBMITTED, RequestStatus.VERIFIED),
            (RequestStatus.PENDING_VERIFICATION, RequestStatus.IN_PROGRESS),
            (RequestStatus.VERIFIED, RequestStatus.COMPLETED),
            (RequestStatus.COMPLETED, RequestStatus.IN_PROGRESS),
            (RequestStatus.REJECTED, RequestStatus.SUBMITTED),
            (RequestStatus.WITHDRAWN, RequestStatus.REJECTED),
        ],
    )
    def test_skipping_or_leaving_terminal_states_refused(self, from_status, to_status):
        """Test that steps cannot be skipped and terminal states are final."""
        assert not is_allowed(from_status, to_status)


class TestProcessTransition:
    @pytest.mark.asyncio
    async def test_transition_records_history_and_audit(self, workflow, registry, business):
        """Test that an applied transition is stored and logged to the ledger."""
        request = await _open(workflow, business.id)

        result = (
            await workflow.process_workflow_transition(
                request.id,
                RequestStatus.SUBMITTED,
                RequestStatus.PENDING_VERIFICATION,
                TransitionContext(actor=ActorType.SYSTEM, reason="verification issued"),
            )
        ).unwrap()

        assert result.request.status == RequestStatus.PENDING_VERIFICATION
        assert result.replayed is False
        history = await workflow.list_transitions(request.id)
        assert [(t.from_status, t.to_status) for t in history] == [
            (RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION)
        ]
        trail = await registry.ledger.get_correlated_events(str(request.id), business.id)
        assert [e.event_type for e in trail.events] == ["request.submitted", "workflow.transition"]

    @pytest.mark.asyncio
    async def test_illegal_transition_refused(self, workflow, business):
        """Test that a transition outside the table is ILLEGAL_TRANSITION."""
        request = await _open(workflow, business.id)

        result = await workflow.process_workflow_transition(
            request.id, RequestStatus.SUBMITTED, RequestStatus.COMPLETED
        )

        assert result.error.kind == ErrorKind.ILLEGAL_TRANSITION
        assert (await workflow.get_request(request.id)).status == RequestStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_stale_observed_status_refused(self, workflow, business):
        """Test that a caller acting on an outdated status gets STALE_STATE."""
        request = await _open(workflow, business.id)
        await _advance(workflow, request.id, RequestStatus.PENDING_VERIFICATION)

        result = await workflow.process_workflow_transition(
            request.id, RequestStatus.SUBMITTED, RequestStatus.REJECTED
        )

        assert result.error.kind == ErrorKind.STALE_STATE
        assert result.error.details["current_status"] == "PENDING_VERIFICATION"

    @pytest.mark.asyncio
    async def test_replayed_transition_returns_recorded_result(self, workflow, business):
        """Test that repeating an applied transition is idempotent."""
        request = await _open(workflow, business.id)
        first = (
            await workflow.process_workflow_transition(
                request.id, RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION
            )
        ).unwrap()

        second = (
            await workflow.process_workflow_transition(
                request.id, RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION
            )
        ).unwrap()

        assert second.replayed is True
        assert second.transition.id == first.transition.id
        assert len(await workflow.list_transitions(request.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_transitions_have_single_winner(self, workflow, business):
        """Test that only one of two racing transitions is applied."""
        request = await _open(workflow, business.id)

        results = await asyncio.gather(
            workflow.process_workflow_transition(request.id, RequestStatus.SUBMITTED, RequestStatus.REJECTED),
            workflow.process_workflow_transition(request.id, RequestStatus.SUBMITTED, RequestStatus.WITHDRAWN),
        )

        assert sum(1 for r in results if r.success) == 1
        assert [r.error.kind for r in results if not r.success] == [ErrorKind.STALE_STATE]

    @pytest.mark.asyncio
    async def test_unknown_request_not_found(self, workflow):
        """Test that transitions on an unknown request are NOT_FOUND."""
        result = await workflow.process_workflow_transition(
            uuid.uuid4(), RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION
        )
        assert result.error.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_completion_sets_completed_at(self, workflow, business):
        """Test that reaching COMPLETED stamps the completion time."""
        request = await _open(workflow, business.id)
        await _advance(
            workflow,
            request.id,
            RequestStatus.PENDING_VERIFICATION,
            RequestStatus.VERIFIED,
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
        )

        completed = await workflow.get_request(request.id)
        assert completed.completed_at is not None
        assert completed.is_terminal

    @pytest.mark.asyncio
    async def test_rejection_keeps_reason(self, workflow, business):
        """Test that the rejection reason is stored on the request."""
        request = await _open(workflow, business.id)

        result = (
            await workflow.process_workflow_transition(
                request.id,
                RequestStatus.SUBMITTED,
                RequestStatus.REJECTED,
                TransitionContext(actor=ActorType.BUSINESS_ADMIN, reason="duplicate of an earlier request"),
            )
        ).unwrap()

        assert result.request.rejection_reason == "duplicate of an earlier request"

    @pytest.mark.asyncio
    async def test_get_request_scoped_to_business(self, workflow, business):
        """Test that a request is invisible to other businesses."""
        request = await _open(workflow, business.id)
        assert await workflow.get_request(request.id, business.id) is not None
        assert await workflow.get_request(request.id, uuid.uuid4()) is None


class TestDueDates:
    def test_statutory_window_applied(self, workflow):
        """Test that the due date is one statutory window after submission."""
        submitted = datetime(2024, 3, 1, 9, 0)
        assert workflow.calculate_due_date(RightType.ERASURE, submitted) == submitted + timedelta(days=30)

    def test_priority_by_right(self, workflow):
        """Test that erasure is prioritized over portability."""
        assert workflow.priority_for(RightType.ERASURE) == RequestPriority.HIGH
        assert workflow.priority_for(RightType.PORTABILITY) == RequestPriority.LOW
        assert workflow.priority_for(RightType.ACCESS) == RequestPriority.NORMAL

    @pytest.mark.asyncio
    async def test_extension_moves_effective_date_only(self, workflow, business):
        """Test that extending keeps the original due date."""
        request = await _open(workflow, business.id)

        extended = (await workflow.extend_deadline(request.id, 30, "complex request")).unwrap()

        assert extended.due_date == request.due_date
        assert extended.effective_due_date == request.due_date + timedelta(days=30)
        assert extended.extension_reason == "complex request"

    @pytest.mark.asyncio
    async def test_extensions_capped(self, workflow, business):
        """Test that the total extension cannot exceed the configured maximum."""
        request = await _open(workflow, business.id)
        (await workflow.extend_deadline(request.id, 30, "complex request")).unwrap()

        result = await workflow.extend_deadline(request.id, 31, "still complex")

        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert "latest_allowed" in result.error.details

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("days", "reason"), [(0, "valid reason"), (10, "   ")])
    async def test_invalid_extension_refused(self, workflow, business, days, reason):
        """Test that a non-positive extension or blank reason is refused."""
        request = await _open(workflow, business.id)
        result = await workflow.extend_deadline(request.id, days, reason)
        assert result.error.kind == ErrorKind.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_terminal_request_cannot_be_extended(self, workflow, business):
        """Test that a closed request keeps its deadline."""
        request = await _open(workflow, business.id)
        await _advance(workflow, request.id, RequestStatus.REJECTED)

        result = await workflow.extend_deadline(request.id, 5, "late change")

        assert result.error.kind == ErrorKind.ILLEGAL_TRANSITION


class TestStatusAndEscalation:
    @pytest.mark.asyncio
    async def test_workflow_status_splits_pending_and_overdue(self, workflow, business):
        """Test that open requests past their due date are listed as overdue."""
        late = await _open(workflow, business.id, created_at=utcnow() - timedelta(days=45))
        on_time = await _open(workflow, business.id)
        closed = await _open(workflow, business.id, created_at=utcnow() - timedelta(days=45))
        await _advance(workflow, closed.id, RequestStatus.WITHDRAWN)

        status = await workflow.get_workflow_status(business.id)

        assert [r.id for r in status.overdue] == [late.id]
        assert [r.id for r in status.pending] == [on_time.id]
        assert status.metrics["total_requests"] == 3
        assert status.metrics["open_requests"] == 2
        assert status.metrics["overdue_requests"] == 1
        assert status.metrics["by_status"] == {"SUBMITTED": 2, "WITHDRAWN": 1}
        assert status.to_dict()["overdue"][0]["request_id"] == str(late.id)

    @pytest.mark.asyncio
    async def test_extension_clears_overdue(self, workflow, business):
        """Test that overdue is computed from the effective due date."""
        request = await _open(workflow, business.id, created_at=utcnow() - timedelta(days=35))
        (await workflow.extend_deadline(request.id, 30, "awaiting third-party data")).unwrap()

        status = await workflow.get_workflow_status(business.id)

        assert status.overdue == []

    @pytest.mark.asyncio
    async def test_completion_metrics(self, workflow, business):
        """Test that on-time completion rate is computed from completed requests."""
        request = await _open(workflow, business.id)
        await _advance(
            workflow,
            request.id,
            RequestStatus.PENDING_VERIFICATION,
            RequestStatus.VERIFIED,
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
        )

        metrics = (await workflow.get_workflow_status(business.id)).metrics

        assert metrics["on_time_completion_rate"] == 100.0
        assert metrics["average_completion_hours"] is not None

    @pytest.mark.asyncio
    async def test_overdue_requests_escalated_without_moving_deadline(self, workflow, registry, business):
        """Test that the periodic sweep logs overdue requests and leaves deadlines alone."""
        late = await _open(workflow, business.id, created_at=utcnow() - timedelta(days=40))
        await _open(workflow, business.id)

        escalated = await workflow.process_scheduled_tasks()

        assert escalated == [late.id]
        assert (await workflow.get_request(late.id)).due_date == late.due_date
        trail = await registry.ledger.get_correlated_events(str(late.id), business.id)
        assert trail.events[-1].event_type == "request.overdue_escalated"

    @pytest.mark.asyncio
    async def test_overdue_request_escalated_once_per_deadline(self, workflow, registry, business):
        """Test that repeated sweeps do not re-escalate an unchanged overdue request."""
        late = await _open(workflow, business.id, created_at=utcnow() - timedelta(days=40))

        first = await workflow.process_scheduled_tasks()
        second = await workflow.process_scheduled_tasks()

        assert first == [late.id]
        assert second == []
        assert (await workflow.get_request(late.id)).escalated_at is not None
        trail = await registry.ledger.get_correlated_events(str(late.id), business.id)
        assert [e.event_type for e in trail.events].count("request.overdue_escalated") == 1

    @pytest.mark.asyncio
    async def test_missed_extended_deadline_escalates_again(self, workflow, registry, business):
        """Test that an extension resets escalation, so missing the new deadline is escalated too."""
        late = await _open(workflow, business.id, created_at=utcnow() - timedelta(days=40))
        await workflow.process_scheduled_tasks()

        extended = (await workflow.extend_deadline(late.id, 5, "awaiting third-party data")).unwrap()

        assert extended.escalated_at is None
        assert extended.is_overdue()
        assert await workflow.process_scheduled_tasks() == [late.id]
        trail = await registry.ledger.get_correlated_events(str(late.id), business.id)
        assert [e.event_type for e in trail.events].count("request.overdue_escalated") == 2
