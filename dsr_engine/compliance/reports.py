"""Compliance reporting over the audit ledger.

A report covers one business and one period. It is built only from sealed
ledger events and stored requests, and its generation is itself logged as
a GOVERNANCE event.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog

from dsr_engine.config import Settings
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.compliance.entities import RequestStatus, utcnow
from dsr_engine.compliance.events import (
    ComplianceAuditEvent,
    EventCategory,
    EventSeverity,
    GovernanceEvent,
)
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.compliance.workflow import WorkflowEngine

log = structlog.get_logger(__name__)

LOW_CONSENT_RETENTION = 0.7
RECOMMENDED_CONSENT_RETENTION = 0.8
LOW_MINIMIZATION_SCORE = 70
LATE_COMPLETION_RATE = 90.0

_SEVERITY_RANK = {
    EventSeverity.LOW: 0,
    EventSeverity.MEDIUM: 1,
    EventSeverity.HIGH: 2,
    EventSeverity.CRITICAL: 3,
}

# Event types that reduce the personal data held.
_MINIMIZATION_EVENTS = frozenset(
    {
        "deletion.completed",
        "lifecycle.job_completed",
    }
)


class ReportType(StrEnum):
    GDPR_COMPLIANCE = "GDPR_COMPLIANCE"
    PROCESSING_ACTIVITY = "PROCESSING_ACTIVITY"
    CONSENT_AUDIT = "CONSENT_AUDIT"
    DATA_FLOW = "DATA_FLOW"


@dataclass
class IdentifiedRisk:
    risk_type: str
    severity: EventSeverity
    description: str
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_type": self.risk_type,
            "severity": self.severity.value,
            "description": self.description,
            "recommendation": self.recommendation,
        }


@dataclass
class ComplianceReport:
    id: uuid.UUID
    business_id: uuid.UUID
    report_type: ReportType
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    event_count: int
    events_by_category: dict[str, int]
    events_by_severity: dict[str, int]
    data_subjects_affected: int
    processing_activities: list[dict[str, Any]]
    request_metrics: dict[str, Any]
    integrity: dict[str, Any]
    risks: list[IdentifiedRisk]
    executive_summary: str
    recommendations: list[str] = field(default_factory=list)

    @property
    def overall_status(self) -> str:
        if not self.risks:
            return "COMPLIANT"
        if any(_SEVERITY_RANK[r.severity] >= _SEVERITY_RANK[EventSeverity.HIGH] for r in self.risks):
            return "HIGH_RISK"
        return "NEEDS_ATTENTION"

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": str(self.id),
            "business_id": str(self.business_id),
            "report_type": self.report_type.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "generated_at": self.generated_at.isoformat(),
            "overall_status": self.overall_status,
            "event_count": self.event_count,
            "events_by_category": self.events_by_category,
            "events_by_severity": self.events_by_severity,
            "data_subjects_affected": self.data_subjects_affected,
            "processing_activities": self.processing_activities,
            "request_metrics": self.request_metrics,
            "integrity": self.integrity,
            "risks": [r.to_dict() for r in self.risks],
            "executive_summary": self.executive_summary,
            "recommendations": self.recommendations,
        }


def _subject_refs(event: ComplianceAuditEvent) -> set[str]:
    ref = event.payload.get("subject_ref")
    if not ref:
        return set()
    return {part for part in str(ref).split(",") if part}


def processing_activities(events: list[ComplianceAuditEvent]) -> list[dict[str, Any]]:
    """Group DATA_PROCESSING events by operation, keeping the worst severity."""
    activities: dict[str, dict[str, Any]] = {}
    for event in events:
        if event.category != EventCategory.DATA_PROCESSING:
            continue
        operation = event.payload.get("operation", event.event_type)
        activity = activities.setdefault(
            operation,
            {
                "operation": operation,
                "right_types": set(),
                "event_count": 0,
                "record_count": 0,
                "risk_level": EventSeverity.LOW,
            },
        )
        activity["event_count"] += 1
        activity["record_count"] += int(event.payload.get("record_count") or 0)
        if event.payload.get("right_type"):
            activity["right_types"].add(event.payload["right_type"])
        if _SEVERITY_RANK[event.severity] > _SEVERITY_RANK[activity["risk_level"]]:
            activity["risk_level"] = event.severity

    return [
        {
            **activity,
            "right_types": sorted(activity["right_types"]),
            "risk_level": activity["risk_level"].value,
        }
        for activity in sorted(activities.values(), key=lambda a: a["operation"])
    ]


class ComplianceReportService:
    def __init__(self, ledger: ComplianceAuditLedger, workflow: WorkflowEngine, settings: Settings) -> None:
        self._ledger = ledger
        self._workflow = workflow
        self._settings = settings

    async def generate_compliance_report(
        self,
        business_id: uuid.UUID,
        report_type: ReportType,
        period_start: datetime,
        period_end: datetime,
        *,
        include_recommendations: bool = True,
        generated_by: str | None = None,
    ) -> Result[ComplianceReport]:
        if period_end <= period_start:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "period_end must be after period_start")

        events = await self._ledger.list_events(business_id, since=period_start, until=period_end)
        integrity = (
            await self._ledger.verify_audit_integrity(
                business_id, since=period_start, until=period_end, record_result=False
            )
        ).unwrap()
        requests = await self._workflow.list_requests(business_id, since=period_start, until=period_end)

        subjects: set[str] = set()
        for event in events:
            subjects |= _subject_refs(event)

        request_metrics = self._request_metrics(requests, period_end)
        consent = self._consent_metrics(events)
        minimization_score = self._minimization_score(events)
        request_metrics.update(consent)
        request_metrics["data_minimization_score"] = minimization_score

        risks = self._assess_risks(events, integrity.verified, request_metrics)
        report = ComplianceReport(
            id=uuid.uuid4(),
            business_id=business_id,
            report_type=report_type,
            period_start=period_start,
            period_end=period_end,
            generated_at=utcnow(),
            event_count=len(events),
            events_by_category=dict(Counter(e.category.value for e in events)),
            events_by_severity=dict(Counter(e.severity.value for e in events)),
            data_subjects_affected=len(subjects),
            processing_activities=processing_activities(events),
            request_metrics=request_metrics,
            integrity={
                "verified": integrity.verified,
                "integrity_score": integrity.integrity_score,
                "total_events": integrity.total_events,
                "first_divergent_event_id": (
                    str(integrity.first_divergent_event_id) if integrity.first_divergent_event_id else None
                ),
            },
            risks=risks,
            executive_summary="",
        )
        report.executive_summary = (
            f"{report_type} report covering {len(events)} compliance events and "
            f"{len(requests)} data subject requests. Overall status: {report.overall_status}. "
            f"{len(risks)} risk(s) identified."
        )
        if include_recommendations:
            report.recommendations = self._recommendations(risks, request_metrics)

        await self._ledger.log_event(
            business_id,
            "governance.report_generated",
            GovernanceEvent(
                subject="compliance_report",
                outcome=report.overall_status,
                reference=str(report.id),
                score=integrity.integrity_score,
                detail=f"{report_type} {period_start.isoformat()} - {period_end.isoformat()}",
            ),
            severity=EventSeverity.LOW,
            correlation_id=str(report.id),
            actor_id=generated_by,
        )
        log.info(
            "reports.compliance_report_generated",
            business_id=str(business_id),
            report_id=str(report.id),
            report_type=report_type,
            event_count=len(events),
            risks=len(risks),
        )
        return Result.ok(report)

    # ------------------------------------------------------------------ #
    # Metrics
    # ------------------------------------------------------------------ #

    @staticmethod
    def _request_metrics(requests: list[Any], period_end: datetime) -> dict[str, Any]:
        completed = [r for r in requests if r.status == RequestStatus.COMPLETED and r.completed_at]
        on_time = sum(1 for r in completed if r.completed_at <= r.effective_due_date)
        days = [(r.completed_at - r.created_at).total_seconds() / 86400 for r in completed]
        return {
            "total_requests": len(requests),
            "completed_requests": len(completed),
            "open_requests": sum(1 for r in requests if not r.is_terminal),
            "overdue_requests": sum(1 for r in requests if r.is_overdue(max(period_end, utcnow()))),
            "by_right_type": dict(Counter(r.right_type.value for r in requests)),
            "by_status": dict(Counter(r.status.value for r in requests)),
            "average_response_days": round(sum(days) / len(days), 1) if days else None,
            "on_time_completion_rate": round(on_time / len(completed) * 100, 1) if completed else None,
        }

    @staticmethod
    def _consent_metrics(events: list[ComplianceAuditEvent]) -> dict[str, Any]:
        consent = [e for e in events if e.category == EventCategory.CONSENT]
        granted = sum(1 for e in consent if e.payload.get("state") == "GRANTED")
        withdrawn = sum(1 for e in consent if e.payload.get("state") == "WITHDRAWN")
        retention = round((granted - withdrawn) / granted, 2) if granted else None
        return {
            "consent_granted": granted,
            "consent_withdrawn": withdrawn,
            "consent_retention_rate": retention,
        }

    @staticmethod
    def _minimization_score(events: list[ComplianceAuditEvent]) -> int:
        lifecycle = [
            e
            for e in events
            if e.category in (EventCategory.DATA_LIFECYCLE, EventCategory.SECURE_DELETION)
        ]
        if not lifecycle:
            return 100
        reduced = sum(1 for e in lifecycle if e.event_type in _MINIMIZATION_EVENTS)
        failed = sum(int(e.payload.get("records_failed") or e.payload.get("failed_count") or 0) for e in lifecycle)
        score = 100 if reduced else LOW_MINIMIZATION_SCORE
        return max(score - min(failed, 50), 0)

    # ------------------------------------------------------------------ #
    # Risks and recommendations
    # ------------------------------------------------------------------ #

    @staticmethod
    def _assess_risks(
        events: list[ComplianceAuditEvent],
        integrity_verified: bool,
        metrics: dict[str, Any],
    ) -> list[IdentifiedRisk]:
        risks: list[IdentifiedRisk] = []
        if not integrity_verified:
            risks.append(
                IdentifiedRisk(
                    risk_type="AUDIT_INTEGRITY",
                    severity=EventSeverity.CRITICAL,
                    description="The audit chain diverges within the reporting period",
                    recommendation="Investigate the first divergent event before relying on this trail",
                )
            )

        critical = [e for e in events if e.severity == EventSeverity.CRITICAL]
        if critical:
            risks.append(
                IdentifiedRisk(
                    risk_type="CRITICAL_EVENTS",
                    severity=EventSeverity.CRITICAL,
                    description=f"{len(critical)} critical compliance event(s) occurred",
                    recommendation="Review and remediate every critical event",
                )
            )

        if metrics["overdue_requests"]:
            risks.append(
                IdentifiedRisk(
                    risk_type="OVERDUE_REQUESTS",
                    severity=EventSeverity.HIGH,
                    description=f"{metrics['overdue_requests']} request(s) passed their statutory deadline",
                    recommendation="Complete overdue requests or record a deadline extension",
                )
            )

        rate = metrics["on_time_completion_rate"]
        if rate is not None and rate < LATE_COMPLETION_RATE:
            risks.append(
                IdentifiedRisk(
                    risk_type="LATE_COMPLETIONS",
                    severity=EventSeverity.MEDIUM,
                    description=f"Only {rate}% of completed requests met their deadline",
                    recommendation="Review staffing and escalation for data subject requests",
                )
            )

        retention = metrics["consent_retention_rate"]
        if retention is not None and retention < LOW_CONSENT_RETENTION:
            risks.append(
                IdentifiedRisk(
                    risk_type="LOW_CONSENT_RETENTION",
                    severity=EventSeverity.MEDIUM,
                    description="Consent withdrawals are high relative to consents granted",
                    recommendation="Review consent collection mechanisms",
                )
            )
        return risks

    @staticmethod
    def _recommendations(risks: list[IdentifiedRisk], metrics: dict[str, Any]) -> list[str]:
        recommendations = [r.recommendation for r in risks]
        retention = metrics["consent_retention_rate"]
        if retention is not None and retention < RECOMMENDED_CONSENT_RETENTION:
            recommendations.append("Improve consent collection and management processes")
        if metrics["data_minimization_score"] < LOW_MINIMIZATION_SCORE:
            recommendations.append("Apply stricter retention policies to reduce stored personal data")
        # dict.fromkeys keeps order while removing duplicates
        return list(dict.fromkeys(recommendations))
