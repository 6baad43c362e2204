"""Data lifecycle, secure deletion and governance endpoints.

POST /api/v1/business/{business_id}/retention-policies                      - Create policy
GET  /api/v1/business/{business_id}/retention-policies                      - List policies
POST /api/v1/business/{business_id}/retention-policies/{policy_id}/assess   - Assess policy
POST /api/v1/business/{business_id}/retention-policies/{policy_id}/deactivate
GET  /api/v1/business/{business_id}/data-inventory                          - Inventory + compliance score
GET  /api/v1/business/{business_id}/lifecycle-jobs                          - List jobs
POST /api/v1/business/{business_id}/lifecycle-jobs/{job_id}/approve|cancel|execute
POST /api/v1/business/{business_id}/secure-deletion                         - Schedule deletion
GET  /api/v1/business/{business_id}/secure-deletion                         - List deletions
POST /api/v1/business/{business_id}/secure-deletion/{id}/execute|approve|cancel
GET  /api/v1/business/{business_id}/deletion-certificates/{certificate_id}  - Certificate + signature check
POST /api/v1/business/{business_id}/compliance-reports                      - Generate report
POST /api/v1/business/{business_id}/audit-integrity/verify                  - Verify hash chain
GET  /api/v1/business/{business_id}/events/{correlation_id}                 - Correlated audit trail

Approving a deletion or a lifecycle job is reserved to the DPO role.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dsr_engine.api.dependencies import get_registry, not_found, respond
from dsr_engine.auth.dependencies import Operator, OperatorRole, require_business_access, require_role
from dsr_engine.compliance.deletion import certificate_to_dict
from dsr_engine.compliance.entities import (
    DataCategory,
    DeletionMethod,
    DeletionPriority,
    DeletionScope,
    EntityType,
    RetentionAction,
    RetentionUnit,
)
from dsr_engine.compliance.reports import ReportType
from dsr_engine.core.errors import Result
from dsr_engine.services.registry import ServiceRegistry

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/business/{business_id}", tags=["compliance"])


# ------------------------------------------------------------------ #
# Request models
# ------------------------------------------------------------------ #


class RetentionPolicyCreate(BaseModel):
    name: str = Field(..., max_length=200)
    data_category: DataCategory
    entity_types: list[EntityType] = Field(default_factory=lambda: [EntityType.CUSTOMER])
    retention_period: int
    retention_unit: RetentionUnit
    action_after_retention: RetentionAction
    legal_basis: str = Field(..., max_length=1000)
    description: str | None = Field(default=None, max_length=2000)
    jurisdiction: str = Field(default="UK", max_length=16)
    auto_apply: bool = False
    requires_approval: bool = True
    priority: int = 0
    conditions: dict[str, Any] = Field(default_factory=dict)
    delete_inactive_after_days: int | None = Field(default=None, ge=1)


class AssessBody(BaseModel):
    dry_run: bool = False


class SecureDeletionCreate(BaseModel):
    scope: DeletionScope
    target_entity_ids: list[uuid.UUID] = Field(..., min_length=1)
    method: DeletionMethod = DeletionMethod.CRYPTO_SHREDDING
    legal_basis: str = Field(..., max_length=1000)
    priority: DeletionPriority = DeletionPriority.NORMAL
    gdpr_request_id: uuid.UUID | None = None
    requires_approval: bool = False
    dry_run: bool = False
    batch_size: int | None = Field(default=None, ge=1, le=1000)


class ComplianceReportCreate(BaseModel):
    report_type: ReportType = ReportType.GDPR_COMPLIANCE
    period_start: datetime
    period_end: datetime
    include_recommendations: bool = True


class IntegrityVerifyBody(BaseModel):
    since: datetime | None = None
    until: datetime | None = None


# ------------------------------------------------------------------ #
# Retention policies
# ------------------------------------------------------------------ #


@router.post("/retention-policies", status_code=status.HTTP_201_CREATED)
async def create_retention_policy(
    business_id: uuid.UUID,
    body: RetentionPolicyCreate,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.lifecycle.create_retention_policy(
        business_id,
        **body.model_dump(),
        created_by=operator.subject,
    )
    return respond(result, status_code=status.HTTP_201_CREATED)


@router.get("/retention-policies")
async def list_retention_policies(
    business_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    policies = await registry.lifecycle.list_policies(business_id)
    return respond(Result.ok({"policies": policies, "count": len(policies)}))


@router.post("/retention-policies/{policy_id}/assess")
async def assess_retention_policy(
    business_id: uuid.UUID,
    policy_id: uuid.UUID,
    body: AssessBody | None = None,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    dry_run = body.dry_run if body is not None else False
    return respond(await registry.lifecycle.assess_retention_policy(policy_id, business_id, dry_run=dry_run))


@router.post("/retention-policies/{policy_id}/deactivate")
async def deactivate_retention_policy(
    business_id: uuid.UUID,
    policy_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.lifecycle.deactivate_policy(policy_id, business_id))


@router.get("/data-inventory")
async def data_inventory(
    business_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(Result.ok(await registry.lifecycle.generate_data_inventory(business_id)))


# ------------------------------------------------------------------ #
# Lifecycle jobs
# ------------------------------------------------------------------ #


@router.get("/lifecycle-jobs")
async def list_lifecycle_jobs(
    business_id: uuid.UUID,
    policy_id: uuid.UUID | None = None,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    jobs = await registry.lifecycle.list_jobs(business_id, policy_id)
    return respond(Result.ok({"jobs": jobs, "count": len(jobs)}))


@router.post("/lifecycle-jobs/{job_id}/approve")
async def approve_lifecycle_job(
    business_id: uuid.UUID,
    job_id: uuid.UUID,
    operator: Operator = Depends(require_role(OperatorRole.DPO)),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.lifecycle.approve_job(job_id, business_id, operator.subject))


@router.post("/lifecycle-jobs/{job_id}/cancel")
async def cancel_lifecycle_job(
    business_id: uuid.UUID,
    job_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.lifecycle.cancel_job(job_id, business_id, cancelled_by=operator.subject))


@router.post("/lifecycle-jobs/{job_id}/execute")
async def execute_lifecycle_job(
    business_id: uuid.UUID,
    job_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.lifecycle.execute_lifecycle_job(job_id, business_id, executed_by=operator.subject)
    return respond(result)


# ------------------------------------------------------------------ #
# Secure deletion
# ------------------------------------------------------------------ #


@router.post("/secure-deletion", status_code=status.HTTP_201_CREATED)
async def schedule_secure_deletion(
    business_id: uuid.UUID,
    body: SecureDeletionCreate,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.deletion.schedule_deletion(
        business_id,
        body.scope,
        body.target_entity_ids,
        method=body.method,
        legal_basis=body.legal_basis,
        priority=body.priority,
        requested_by=operator.subject,
        gdpr_request_id=body.gdpr_request_id,
        requires_approval=body.requires_approval,
        dry_run=body.dry_run,
        batch_size=body.batch_size,
    )
    return respond(result, status_code=status.HTTP_201_CREATED)


@router.get("/secure-deletion")
async def list_secure_deletions(
    business_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    deletions = await registry.deletion.list_deletions(business_id)
    return respond(Result.ok({"deletions": deletions, "count": len(deletions)}))


@router.post("/secure-deletion/{deletion_request_id}/execute")
async def execute_secure_deletion(
    business_id: uuid.UUID,
    deletion_request_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.deletion.execute_deletion(deletion_request_id, business_id))


@router.post("/secure-deletion/{deletion_request_id}/approve")
async def approve_secure_deletion(
    business_id: uuid.UUID,
    deletion_request_id: uuid.UUID,
    operator: Operator = Depends(require_role(OperatorRole.DPO)),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.deletion.approve_deletion(deletion_request_id, business_id, operator.subject))


@router.post("/secure-deletion/{deletion_request_id}/cancel")
async def cancel_secure_deletion(
    business_id: uuid.UUID,
    deletion_request_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.deletion.cancel_deletion(deletion_request_id, business_id, cancelled_by=operator.subject)
    return respond(result)


@router.get("/deletion-certificates/{certificate_id}")
async def get_deletion_certificate(
    business_id: uuid.UUID,
    certificate_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    certificate = await registry.deletion.get_certificate(certificate_id, business_id)
    if certificate is None:
        return not_found("Deletion certificate not found")
    body = {**certificate_to_dict(certificate), "signature_valid": registry.deletion.verify_certificate(certificate)}
    return respond(Result.ok(body))


# ------------------------------------------------------------------ #
# Governance
# ------------------------------------------------------------------ #


@router.post("/compliance-reports", status_code=status.HTTP_201_CREATED)
async def generate_compliance_report(
    business_id: uuid.UUID,
    body: ComplianceReportCreate,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.reports.generate_compliance_report(
        business_id,
        body.report_type,
        body.period_start,
        body.period_end,
        include_recommendations=body.include_recommendations,
        generated_by=operator.subject,
    )
    return respond(result, status_code=status.HTTP_201_CREATED)


@router.post("/audit-integrity/verify")
async def verify_audit_integrity(
    business_id: uuid.UUID,
    body: IntegrityVerifyBody | None = None,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    body = body or IntegrityVerifyBody()
    result = await registry.ledger.verify_audit_integrity(business_id, since=body.since, until=body.until)
    return respond(result)


@router.get("/events/{correlation_id}")
async def get_correlated_events(
    business_id: uuid.UUID,
    correlation_id: str,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    trail = await registry.ledger.get_correlated_events(correlation_id, business_id)
    return respond(Result.ok(trail))
