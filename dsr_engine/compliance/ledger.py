"""Compliance Audit Ledger - append-only, hash-chained event log.

Each business has its own chain. An event's hash is

    sha256(prev_hash || canonical(event))

where ``canonical`` is the sorted-key JSON of every field except the two
hashes. Appends for one business are serialized by a per-business
``asyncio.Lock`` so the chain has a strict total order; appends for
different businesses proceed independently.

Persistence is batched: sealed events wait in a per-business queue and are
written when the queue reaches ``audit_batch_size`` or immediately for
CRITICAL events. A failed write is retried with exponential backoff
(tenacity) and, if still failing, the events stay queued for the next
flush. When a queue grows past ``audit_requeue_capacity`` new events are
refused and an alert is logged at critical level.

Integrity verification recomputes the chain from storage and reports the
first event whose stored hash or back-link does not match. Divergence is
never repaired automatically.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from dsr_engine.config import Settings
from dsr_engine.core.errors import ErrorKind, LedgerCorruptionError, Result
from dsr_engine.compliance.events import (
    GENESIS_HASH,
    ComplianceAuditEvent,
    EventPayload,
    EventSeverity,
    GovernanceEvent,
)
from dsr_engine.store.base import AuditEventStore, DuplicateRecordError

log = structlog.get_logger(__name__)


def chain_hash(prev_hash: str, canonical: str) -> str:
    return hashlib.sha256(f"{prev_hash}{canonical}".encode()).hexdigest()


@dataclass
class IntegrityReport:
    business_id: uuid.UUID
    verified: bool
    integrity_score: int
    total_events: int
    passed_events: int
    verified_at: datetime
    range_start: datetime | None = None
    range_end: datetime | None = None
    first_divergent_event_id: uuid.UUID | None = None
    first_divergent_sequence: int | None = None
    corrupt_event_ids: list[uuid.UUID] = field(default_factory=list)
    broken_link_event_ids: list[uuid.UUID] = field(default_factory=list)
    pending_events: int = 0
    rejected_events: int = 0
    code: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_id": str(self.business_id),
            "verified": self.verified,
            "integrity_score": self.integrity_score,
            "total_events": self.total_events,
            "passed_events": self.passed_events,
            "verified_at": self.verified_at.isoformat(),
            "range_start": self.range_start.isoformat() if self.range_start else None,
            "range_end": self.range_end.isoformat() if self.range_end else None,
            "first_divergent_event_id": (
                str(self.first_divergent_event_id) if self.first_divergent_event_id else None
            ),
            "first_divergent_sequence": self.first_divergent_sequence,
            "corrupt_event_ids": [str(e) for e in self.corrupt_event_ids],
            "broken_link_event_ids": [str(e) for e in self.broken_link_event_ids],
            "pending_events": self.pending_events,
            "rejected_events": self.rejected_events,
            "code": self.code.value if self.code else None,
        }


@dataclass
class CorrelatedTrail:
    correlation_id: str
    events: list[ComplianceAuditEvent]
    timeline: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "event_count": len(self.events),
            "events": [e.to_dict() for e in self.events],
            "timeline": self.timeline,
        }


class ComplianceAuditLedger:
    """Per-business hash chains with batched, retried persistence."""

    def __init__(
        self,
        store: AuditEventStore,
        settings: Settings,
        *,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._store = store
        self._batch_size = settings.audit_batch_size
        self._capacity = settings.audit_requeue_capacity
        self._flush_attempts = settings.audit_flush_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)
        self._locks: dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._heads: dict[uuid.UUID, tuple[int, str]] = {}
        self._pending: dict[uuid.UUID, list[ComplianceAuditEvent]] = defaultdict(list)
        self._rejected: dict[uuid.UUID, int] = defaultdict(int)

    # ------------------------------------------------------------------ #
    # Appending
    # ------------------------------------------------------------------ #

    async def log_event(
        self,
        business_id: uuid.UUID,
        event_type: str,
        payload: EventPayload,
        *,
        severity: EventSeverity = EventSeverity.LOW,
        correlation_id: str | None = None,
        actor_id: str | None = None,
        tags: Sequence[str] = (),
    ) -> Result[ComplianceAuditEvent]:
        """Seal an event onto the business chain and queue it for persistence.

        Args:
            business_id: Chain the event is appended to.
            event_type: Dotted event name, e.g. ``request.submitted``.
            payload: Event body; hashed together with the previous event.
            severity: Severity recorded on the event.
            correlation_id: Groups events of one request or job.

        Returns:
            The sealed event, or a retryable failure when the queue is full.
        """
        async with self._locks[business_id]:
            queue = self._pending[business_id]
            if len(queue) >= self._capacity:
                self._rejected[business_id] += 1
                log.critical(
                    "ledger.queue_saturated",
                    business_id=str(business_id),
                    event_type=event_type,
                    queued=len(queue),
                    rejected_total=self._rejected[business_id],
                )
                return Result.fail(
                    ErrorKind.AUDIT_APPEND_FAILURE,
                    "Audit queue is saturated; event was not recorded",
                    retryable=True,
                    queued=len(queue),
                )

            sequence, prev_hash = await self._head(business_id)
            event = self._seal(
                business_id=business_id,
                sequence=sequence + 1,
                prev_hash=prev_hash,
                event_type=event_type,
                payload=payload,
                severity=severity,
                correlation_id=correlation_id,
                actor_id=actor_id,
                tags=tuple(tags),
            )
            queue.append(event)
            self._heads[business_id] = (event.sequence, event.hash)

            log.debug(
                "ledger.event_appended",
                business_id=str(business_id),
                event_type=event_type,
                sequence=event.sequence,
                severity=severity,
            )

            if severity == EventSeverity.CRITICAL or len(queue) >= self._batch_size:
                await self._flush_locked(business_id)

        return Result.ok(event)

    async def flush(self, business_id: uuid.UUID | None = None) -> bool:
        """Persist queued events. Returns False if anything stayed queued."""
        targets = [business_id] if business_id is not None else list(self._pending)
        ok = True
        for target in targets:
            async with self._locks[target]:
                ok = await self._flush_locked(target) and ok
        return ok

    async def close(self) -> None:
        if not await self.flush():
            log.critical("ledger.unflushed_on_close", pending=self.pending_count())

    def pending_count(self, business_id: uuid.UUID | None = None) -> int:
        if business_id is not None:
            return len(self._pending.get(business_id, []))
        return sum(len(q) for q in self._pending.values())

    def rejected_count(self, business_id: uuid.UUID) -> int:
        return self._rejected.get(business_id, 0)

    # ------------------------------------------------------------------ #
    # Reading
    # ------------------------------------------------------------------ #

    async def verify_audit_integrity(
        self,
        business_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        record_result: bool = True,
    ) -> Result[IntegrityReport]:
        """Recompute the stored chain and report the first divergence."""
        await self.flush(business_id)
        events = await self._store.list_events(business_id, since=since, until=until)

        passed = 0
        corrupt: list[uuid.UUID] = []
        broken: list[uuid.UUID] = []
        first_divergent: ComplianceAuditEvent | None = None

        # A range that starts mid-chain anchors on its first event's back-link.
        expected_prev = GENESIS_HASH if since is None or not events else events[0].prev_hash
        for event in events:
            link_ok = event.prev_hash == expected_prev
            try:
                hash_ok = chain_hash(event.prev_hash, event.canonical()) == event.hash
            except LedgerCorruptionError:
                hash_ok = False
            if link_ok and hash_ok:
                passed += 1
            else:
                if not hash_ok:
                    corrupt.append(event.id)
                if not link_ok:
                    broken.append(event.id)
                if first_divergent is None:
                    first_divergent = event
            expected_prev = event.hash

        total = len(events)
        verified = first_divergent is None
        report = IntegrityReport(
            business_id=business_id,
            verified=verified,
            integrity_score=round(passed / total * 100) if total else 100,
            total_events=total,
            passed_events=passed,
            verified_at=datetime.now(UTC),
            range_start=since,
            range_end=until,
            first_divergent_event_id=first_divergent.id if first_divergent else None,
            first_divergent_sequence=first_divergent.sequence if first_divergent else None,
            corrupt_event_ids=corrupt,
            broken_link_event_ids=broken,
            pending_events=self.pending_count(business_id),
            rejected_events=self.rejected_count(business_id),
            code=None if verified else ErrorKind.INTEGRITY_VIOLATION,
        )

        if verified:
            log.info(
                "ledger.integrity_verified",
                business_id=str(business_id),
                total_events=total,
            )
        else:
            log.critical(
                "ledger.integrity_violation",
                business_id=str(business_id),
                first_divergent_event_id=str(first_divergent.id),  # type: ignore[union-attr]
                first_divergent_sequence=first_divergent.sequence,  # type: ignore[union-attr]
                corrupt_events=len(corrupt),
                broken_links=len(broken),
                integrity_score=report.integrity_score,
            )

        if record_result:
            await self.log_event(
                business_id,
                "audit.integrity_verified" if verified else "audit.integrity_violation",
                GovernanceEvent(
                    subject="audit_integrity",
                    outcome="VERIFIED" if verified else "VIOLATION",
                    reference=str(report.first_divergent_event_id) if not verified else None,
                    score=report.integrity_score,
                ),
                severity=EventSeverity.LOW if verified else EventSeverity.CRITICAL,
                tags=("manual_review",) if not verified else (),
            )

        return Result.ok(report)

    async def get_correlated_events(
        self,
        correlation_id: str,
        business_id: uuid.UUID | None = None,
    ) -> CorrelatedTrail:
        """All events sharing ``correlation_id``, oldest first, with a timeline."""
        await self.flush(business_id)
        events = await self._store.list_by_correlation(correlation_id, business_id)
        timeline: list[dict[str, Any]] = []
        if events:
            started = events[0].created_at
            for event in events:
                timeline.append(
                    {
                        "sequence": event.sequence,
                        "at": event.created_at.isoformat(),
                        "elapsed_ms": int((event.created_at - started).total_seconds() * 1000),
                        "category": event.category.value,
                        "event_type": event.event_type,
                        "severity": event.severity.value,
                    }
                )
        return CorrelatedTrail(correlation_id=correlation_id, events=events, timeline=timeline)

    async def list_events(
        self,
        business_id: uuid.UUID,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ComplianceAuditEvent]:
        await self.flush(business_id)
        return await self._store.list_events(business_id, since=since, until=until)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    async def _head(self, business_id: uuid.UUID) -> tuple[int, str]:
        head = self._heads.get(business_id)
        if head is None:
            last = await self._store.last_event(business_id)
            head = (last.sequence, last.hash) if last else (0, GENESIS_HASH)
            self._heads[business_id] = head
        return head

    @staticmethod
    def _seal(
        *,
        business_id: uuid.UUID,
        sequence: int,
        prev_hash: str,
        event_type: str,
        payload: EventPayload,
        severity: EventSeverity,
        correlation_id: str | None,
        actor_id: str | None,
        tags: tuple[str, ...],
    ) -> ComplianceAuditEvent:
        unsealed = ComplianceAuditEvent(
            id=uuid.uuid4(),
            business_id=business_id,
            sequence=sequence,
            correlation_id=correlation_id,
            category=payload.category,
            event_type=event_type,
            severity=severity,
            payload=payload.to_dict(),
            created_at=datetime.now(UTC),
            prev_hash=prev_hash,
            hash="",
            actor_id=actor_id,
            tags=tags,
        )
        return replace(unsealed, hash=chain_hash(prev_hash, unsealed.canonical()))

    def _reseal_queue(self, business_id: uuid.UUID, head: tuple[int, str]) -> None:
        """Re-chain unpersisted events onto a head written by another process."""
        sequence, prev_hash = head
        resealed: list[ComplianceAuditEvent] = []
        for event in self._pending[business_id]:
            sequence += 1
            moved = replace(event, sequence=sequence, prev_hash=prev_hash, hash="")
            moved = replace(moved, hash=chain_hash(prev_hash, moved.canonical()))
            resealed.append(moved)
            prev_hash = moved.hash
        self._pending[business_id] = resealed
        self._heads[business_id] = (sequence, prev_hash)

    async def _flush_locked(self, business_id: uuid.UUID) -> bool:
        queue = self._pending.get(business_id)
        if not queue:
            return True
        batch = list(queue)
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_not_exception_type((LedgerCorruptionError, DuplicateRecordError)),
                stop=stop_after_attempt(self._flush_attempts),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    await self._store.append_many(batch)
        except DuplicateRecordError:
            last = await self._store.last_event(business_id)
            if last is None:
                raise
            log.warning(
                "ledger.chain_head_moved",
                business_id=str(business_id),
                stored_sequence=last.sequence,
                queued=len(batch),
            )
            self._reseal_queue(business_id, (last.sequence, last.hash))
            return False
        except LedgerCorruptionError:
            raise
        except Exception as exc:
            log.error(
                "ledger.flush_failed",
                business_id=str(business_id),
                queued=len(queue),
                attempts=self._flush_attempts,
                error=str(exc),
            )
            if len(queue) >= self._capacity:
                log.critical(
                    "ledger.requeue_saturated",
                    business_id=str(business_id),
                    queued=len(queue),
                )
            return False

        del queue[: len(batch)]
        log.debug("ledger.flushed", business_id=str(business_id), count=len(batch))
        return True
