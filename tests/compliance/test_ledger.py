"""Tests for the hash-chained compliance audit ledger."""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from collections.abc import Sequence

import pytest
from tenacity import wait_none

from dsr_engine.compliance.events import (
    GENESIS_HASH,
    ComplianceAuditEvent,
    EventCategory,
    EventSeverity,
    GovernanceEvent,
    RequestEvent,
)
from dsr_engine.compliance.ledger import ComplianceAuditLedger, chain_hash
from dsr_engine.config import Environment, Settings
from dsr_engine.core.errors import ErrorKind
from dsr_engine.store.memory import InMemoryAuditEventStore


class FlakyAuditStore(InMemoryAuditEventStore):
    """Fails the first ``failures`` appends."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def append_many(self, events: Sequence[ComplianceAuditEvent]) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        await super().append_many(events)


def _settings(**overrides) -> Settings:
    return Settings(environment=Environment.TEST, use_in_memory_store=True, **overrides)


def _payload(detail: str = "submitted") -> RequestEvent:
    return RequestEvent(request_id=uuid.uuid4(), right_type="ACCESS", status="SUBMITTED", detail=detail)


@pytest.fixture
def store() -> InMemoryAuditEventStore:
    return InMemoryAuditEventStore()


@pytest.fixture
def ledger(store: InMemoryAuditEventStore) -> ComplianceAuditLedger:
    return ComplianceAuditLedger(store, _settings(), retry_wait=wait_none())


@pytest.fixture
def business_id() -> uuid.UUID:
    return uuid.uuid4()


class TestAppend:
    """Sealing events onto the per-business chain."""

    @pytest.mark.asyncio
    async def test_first_event_links_to_genesis(self, ledger, business_id) -> None:
        """Test that the first event of a business chains from the genesis hash."""
        event = (await ledger.log_event(business_id, "request.submitted", _payload())).unwrap()

        assert event.sequence == 1
        assert event.prev_hash == GENESIS_HASH
        assert event.hash == chain_hash(GENESIS_HASH, event.canonical())
        assert event.category == EventCategory.DATA_SUBJECT_REQUEST

    @pytest.mark.asyncio
    async def test_events_form_a_chain(self, ledger, business_id) -> None:
        """Test that every event links to the hash of the previous one."""
        events = [(await ledger.log_event(business_id, "request.submitted", _payload(str(i)))).unwrap() for i in range(5)]

        assert [e.sequence for e in events] == [1, 2, 3, 4, 5]
        for previous, current in zip(events, events[1:]):
            assert current.prev_hash == previous.hash

    @pytest.mark.asyncio
    async def test_businesses_have_independent_chains(self, ledger) -> None:
        """Test that each business starts its own chain."""
        first = (await ledger.log_event(uuid.uuid4(), "request.submitted", _payload())).unwrap()
        second = (await ledger.log_event(uuid.uuid4(), "request.submitted", _payload())).unwrap()

        assert first.sequence == second.sequence == 1
        assert first.prev_hash == second.prev_hash == GENESIS_HASH

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_total_order(self, ledger, store, business_id) -> None:
        """Test that concurrent appends for one business never fork the chain."""
        await asyncio.gather(*(ledger.log_event(business_id, "request.submitted", _payload(str(i))) for i in range(40)))

        events = await ledger.list_events(business_id)
        assert [e.sequence for e in events] == list(range(1, 41))
        assert (await ledger.verify_audit_integrity(business_id, record_result=False)).unwrap().verified

    @pytest.mark.asyncio
    async def test_events_batched_until_batch_size(self, store, business_id) -> None:
        """Test that ordinary events wait in the queue until a batch fills."""
        ledger = ComplianceAuditLedger(store, _settings(audit_batch_size=3), retry_wait=wait_none())

        await ledger.log_event(business_id, "request.submitted", _payload())
        await ledger.log_event(business_id, "request.submitted", _payload())
        assert ledger.pending_count(business_id) == 2
        assert await store.last_event(business_id) is None

        await ledger.log_event(business_id, "request.submitted", _payload())
        assert ledger.pending_count(business_id) == 0
        assert (await store.last_event(business_id)).sequence == 3

    @pytest.mark.asyncio
    async def test_critical_event_flushed_immediately(self, ledger, store, business_id) -> None:
        """Test that CRITICAL events bypass batching."""
        await ledger.log_event(
            business_id,
            "audit.integrity_violation",
            GovernanceEvent(subject="audit_integrity", outcome="VIOLATION"),
            severity=EventSeverity.CRITICAL,
        )
        assert ledger.pending_count(business_id) == 0
        assert (await store.last_event(business_id)).event_type == "audit.integrity_violation"

    @pytest.mark.asyncio
    async def test_chain_resumes_from_stored_head(self, store, business_id) -> None:
        """Test that a new ledger instance continues the persisted chain."""
        first = ComplianceAuditLedger(store, _settings(), retry_wait=wait_none())
        await first.log_event(business_id, "request.submitted", _payload())
        await first.flush()
        head = await store.last_event(business_id)

        second = ComplianceAuditLedger(store, _settings(), retry_wait=wait_none())
        event = (await second.log_event(business_id, "request.submitted", _payload())).unwrap()

        assert event.sequence == head.sequence + 1
        assert event.prev_hash == head.hash


class TestFlushFailures:
    """Retry and re-queue behaviour when persistence fails."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, business_id) -> None:
        """Test that a failed write is retried within one flush."""
        store = FlakyAuditStore(failures=2)
        ledger = ComplianceAuditLedger(store, _settings(audit_flush_attempts=3), retry_wait=wait_none())
        await ledger.log_event(business_id, "request.submitted", _payload())

        assert await ledger.flush(business_id) is True
        assert store.attempts == 3
        assert ledger.pending_count(business_id) == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_keep_events_queued(self, business_id) -> None:
        """Test that events stay queued and intact when every attempt fails."""
        store = FlakyAuditStore(failures=5)
        ledger = ComplianceAuditLedger(store, _settings(audit_flush_attempts=2), retry_wait=wait_none())
        await ledger.log_event(business_id, "request.submitted", _payload())

        assert await ledger.flush(business_id) is False
        assert ledger.pending_count(business_id) == 1

        store.failures = 0
        assert await ledger.flush(business_id) is True
        assert ledger.pending_count(business_id) == 0
        assert (await ledger.verify_audit_integrity(business_id, record_result=False)).unwrap().verified

    @pytest.mark.asyncio
    async def test_saturated_queue_refuses_events(self, business_id) -> None:
        """Test that a full re-queue refuses new events with AUDIT_APPEND_FAILURE."""
        store = FlakyAuditStore(failures=100)
        ledger = ComplianceAuditLedger(
            store,
            _settings(audit_requeue_capacity=2, audit_batch_size=10, audit_flush_attempts=1),
            retry_wait=wait_none(),
        )
        await ledger.log_event(business_id, "request.submitted", _payload())
        await ledger.log_event(business_id, "request.submitted", _payload())

        result = await ledger.log_event(business_id, "request.submitted", _payload())

        assert not result.success
        assert result.error.kind == ErrorKind.AUDIT_APPEND_FAILURE
        assert result.error.retryable is True
        assert ledger.rejected_count(business_id) == 1
        assert ledger.pending_count(business_id) == 2


class TestIntegrity:
    """Recomputing the chain from storage."""

    @pytest.mark.asyncio
    async def test_untouched_chain_verifies(self, ledger, business_id) -> None:
        """Test that an intact chain scores 100."""
        for i in range(3):
            await ledger.log_event(business_id, "request.submitted", _payload(str(i)))

        report = (await ledger.verify_audit_integrity(business_id, record_result=False)).unwrap()

        assert report.verified is True
        assert report.integrity_score == 100
        assert report.total_events == report.passed_events == 3
        assert report.first_divergent_event_id is None
        assert report.code is None

    @pytest.mark.asyncio
    async def test_empty_chain_verifies(self, ledger, business_id) -> None:
        """Test that a business without events is reported as intact."""
        report = (await ledger.verify_audit_integrity(business_id, record_result=False)).unwrap()
        assert report.verified is True
        assert report.total_events == 0
        assert report.integrity_score == 100

    @pytest.mark.asyncio
    async def test_tampered_payload_detected(self, ledger, store, business_id) -> None:
        """Test that editing a stored payload is reported at that event."""
        for i in range(4):
            await ledger.log_event(business_id, "request.submitted", _payload(str(i)))
        await ledger.flush(business_id)
        target = store._events[business_id][1]
        store._events[business_id][1] = dataclasses.replace(target, payload={**target.payload, "detail": "edited"})

        report = (await ledger.verify_audit_integrity(business_id, record_result=False)).unwrap()

        assert report.verified is False
        assert report.code == ErrorKind.INTEGRITY_VIOLATION
        assert report.first_divergent_event_id == target.id
        assert report.first_divergent_sequence == 2
        assert report.corrupt_event_ids == [target.id]
        assert report.integrity_score == 75

    @pytest.mark.asyncio
    async def test_deleted_event_breaks_link(self, ledger, store, business_id) -> None:
        """Test that removing an event is reported as a broken back-link."""
        for i in range(3):
            await ledger.log_event(business_id, "request.submitted", _payload(str(i)))
        await ledger.flush(business_id)
        removed = store._events[business_id].pop(1)
        following = store._events[business_id][1]

        report = (await ledger.verify_audit_integrity(business_id, record_result=False)).unwrap()

        assert report.verified is False
        assert removed.id not in report.broken_link_event_ids
        assert report.broken_link_event_ids == [following.id]
        assert report.first_divergent_event_id == following.id

    @pytest.mark.asyncio
    async def test_verification_result_recorded(self, ledger, business_id) -> None:
        """Test that a verification run is itself logged as a governance event."""
        await ledger.log_event(business_id, "request.submitted", _payload())

        await ledger.verify_audit_integrity(business_id)

        events = await ledger.list_events(business_id)
        assert events[-1].event_type == "audit.integrity_verified"
        assert events[-1].category == EventCategory.GOVERNANCE

    @pytest.mark.asyncio
    async def test_violation_recorded_as_critical(self, ledger, store, business_id) -> None:
        """Test that a detected violation is logged at CRITICAL severity."""
        await ledger.log_event(business_id, "request.submitted", _payload())
        await ledger.flush(business_id)
        target = store._events[business_id][0]
        store._events[business_id][0] = dataclasses.replace(target, event_type="request.edited")

        await ledger.verify_audit_integrity(business_id)

        last = await store.last_event(business_id)
        assert last.event_type == "audit.integrity_violation"
        assert last.severity == EventSeverity.CRITICAL
        assert "manual_review" in last.tags


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_correlated_events_with_timeline(self, ledger, business_id) -> None:
        """Test that events sharing a correlation id are returned oldest first."""
        await ledger.log_event(business_id, "request.submitted", _payload("a"), correlation_id="req-1")
        await ledger.log_event(business_id, "request.submitted", _payload("other"), correlation_id="req-2")
        await ledger.log_event(business_id, "request.submitted", _payload("b"), correlation_id="req-1")

        trail = await ledger.get_correlated_events("req-1", business_id)

        assert [e.payload["detail"] for e in trail.events] == ["a", "b"]
        assert len(trail.timeline) == 2
        assert trail.timeline[0]["elapsed_ms"] == 0
        assert trail.to_dict()["event_count"] == 2

    @pytest.mark.asyncio
    async def test_unknown_correlation_is_empty(self, ledger, business_id) -> None:
        """Test that an unknown correlation id yields an empty trail."""
        trail = await ledger.get_correlated_events("missing", business_id)
        assert trail.events == []
        assert trail.timeline == []
