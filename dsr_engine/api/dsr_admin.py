"""Business-side DSR endpoints (authenticated, scoped to the token's business).

GET  /api/v1/business/{business_id}/requests                               - List requests
GET  /api/v1/business/{business_id}/requests/{request_id}                  - Request with its transitions
GET  /api/v1/business/{business_id}/workflow-status                        - Pending/overdue + metrics
POST /api/v1/business/{business_id}/requests/{request_id}/process-access
POST /api/v1/business/{business_id}/requests/{request_id}/process-portability
POST /api/v1/business/{business_id}/requests/{request_id}/process-rectification
POST /api/v1/business/{business_id}/requests/{request_id}/process-erasure
POST /api/v1/business/{business_id}/requests/{request_id}/process-restriction
POST /api/v1/business/{business_id}/requests/{request_id}/process-objection
POST /api/v1/business/{business_id}/requests/{request_id}/process-consent-withdrawal
POST /api/v1/business/{business_id}/requests/{request_id}/extend-deadline
POST /api/v1/business/{business_id}/requests/{request_id}/reject
POST /api/v1/business/{business_id}/verification/{verification_id}/challenges/{challenge_id}/review
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dsr_engine.api.dependencies import get_registry, not_found, respond
from dsr_engine.auth.dependencies import Operator, OperatorRole, require_business_access, require_role
from dsr_engine.compliance.entities import (
    ActorType,
    DataSubjectRequest,
    DeletionMethod,
    DeletionScope,
    RequestStatus,
    WorkflowTransition,
)
from dsr_engine.compliance.export import ExportFormat
from dsr_engine.compliance.workflow import TransitionContext
from dsr_engine.core.errors import Result
from dsr_engine.services.registry import ServiceRegistry

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/business/{business_id}", tags=["dsr-admin"])


# ------------------------------------------------------------------ #
# Request models
# ------------------------------------------------------------------ #


class ProcessBody(BaseModel):
    """Common body of every fulfilment call."""

    processed_by: str | None = Field(default=None, max_length=255)
    business_approval: bool = False


class PortabilityBody(ProcessBody):
    export_format: ExportFormat = ExportFormat.JSON


class RectificationBody(ProcessBody):
    corrections: dict[str, Any] = Field(default_factory=dict)


class ErasureBody(ProcessBody):
    cascade_delete: bool = True
    method: DeletionMethod = DeletionMethod.CRYPTO_SHREDDING
    scope: DeletionScope = DeletionScope.CUSTOMER_COMPLETE
    legal_basis: str = Field(default="GDPR Article 17 - right to erasure", max_length=1000)


class RestrictionBody(ProcessBody):
    reason: str | None = Field(default=None, max_length=1000)


class ObjectionBody(ProcessBody):
    processing_purposes: list[str] = Field(default_factory=list)
    grounds: str | None = Field(default=None, max_length=2000)


class ConsentWithdrawalBody(ProcessBody):
    purposes: list[str] | None = None


class ExtendDeadlineBody(BaseModel):
    days: int = Field(..., ge=1)
    reason: str = Field(..., max_length=1000)


class RejectBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class DocumentReviewBody(BaseModel):
    approved: bool


# ------------------------------------------------------------------ #
# Views
# ------------------------------------------------------------------ #


def request_view(request: DataSubjectRequest) -> dict[str, Any]:
    return {
        "request_id": str(request.id),
        "business_id": str(request.business_id),
        "right_type": request.right_type.value,
        "status": request.status.value,
        "priority": request.priority.value,
        "channel": request.channel.value,
        "requestor_email": request.requestor_email,
        "customer_id": str(request.customer_id) if request.customer_id else None,
        "verification_id": str(request.verification_id) if request.verification_id else None,
        "created_at": request.created_at.isoformat(),
        "due_date": request.due_date.isoformat(),
        "extended_due_date": request.extended_due_date.isoformat() if request.extended_due_date else None,
        "extension_reason": request.extension_reason,
        "escalated_at": request.escalated_at.isoformat() if request.escalated_at else None,
        "completed_at": request.completed_at.isoformat() if request.completed_at else None,
        "rejection_reason": request.rejection_reason,
        "response_data": request.response_data,
    }


def transition_view(transition: WorkflowTransition) -> dict[str, Any]:
    return {
        "from_status": transition.from_status.value,
        "to_status": transition.to_status.value,
        "actor": transition.actor.value,
        "actor_id": transition.actor_id,
        "reason": transition.reason,
        "created_at": transition.created_at.isoformat(),
    }


def _actor_type(operator: Operator) -> ActorType:
    return ActorType.DPO if operator.role == OperatorRole.DPO else ActorType.BUSINESS_ADMIN


# ------------------------------------------------------------------ #
# Lookup
# ------------------------------------------------------------------ #


@router.get("/requests")
async def list_requests(
    business_id: uuid.UUID,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    requests = await registry.workflow.list_requests(business_id, since=since, until=until)
    return respond(Result.ok({"requests": [request_view(r) for r in requests], "count": len(requests)}))


@router.get("/requests/{request_id}")
async def get_request(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    request = await registry.workflow.get_request(request_id, business_id)
    if request is None:
        return not_found("Request not found")
    transitions = await registry.workflow.list_transitions(request_id)
    return respond(Result.ok({**request_view(request), "transitions": [transition_view(t) for t in transitions]}))


@router.get("/workflow-status")
async def workflow_status(
    business_id: uuid.UUID,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(Result.ok(await registry.workflow.get_workflow_status(business_id)))


# ------------------------------------------------------------------ #
# Fulfilment
# ------------------------------------------------------------------ #


@router.post("/requests/{request_id}/process-access")
async def process_access(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: ProcessBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_access(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
    )
    return respond(result)


@router.post("/requests/{request_id}/process-portability")
async def process_portability(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: PortabilityBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_portability(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
        export_format=body.export_format,
    )
    return respond(result)


@router.post("/requests/{request_id}/process-rectification")
async def process_rectification(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: RectificationBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_rectification(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
        corrections=body.corrections,
    )
    return respond(result)


@router.post("/requests/{request_id}/process-erasure")
async def process_erasure(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: ErasureBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_erasure(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
        cascade_delete=body.cascade_delete,
        method=body.method,
        scope=body.scope,
        legal_basis=body.legal_basis,
    )
    return respond(result)


@router.post("/requests/{request_id}/process-restriction")
async def process_restriction(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: RestrictionBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_restriction(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
        reason=body.reason,
    )
    return respond(result)


@router.post("/requests/{request_id}/process-objection")
async def process_objection(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: ObjectionBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_objection(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
        processing_purposes=body.processing_purposes,
        grounds=body.grounds,
    )
    return respond(result)


@router.post("/requests/{request_id}/process-consent-withdrawal")
async def process_consent_withdrawal(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: ConsentWithdrawalBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.rights.process_consent_withdrawal(
        business_id,
        request_id,
        processed_by=body.processed_by or operator.subject,
        business_approval=body.business_approval,
        purposes=body.purposes,
    )
    return respond(result)


# ------------------------------------------------------------------ #
# Workflow administration
# ------------------------------------------------------------------ #


@router.post("/requests/{request_id}/extend-deadline")
async def extend_deadline(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: ExtendDeadlineBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    if await registry.workflow.get_request(request_id, business_id) is None:
        return not_found("Request not found")
    result = await registry.workflow.extend_deadline(
        request_id,
        body.days,
        body.reason,
        actor=_actor_type(operator),
        actor_id=operator.subject,
    )
    return respond(result, request_view)


@router.post("/requests/{request_id}/reject")
async def reject_request(
    business_id: uuid.UUID,
    request_id: uuid.UUID,
    body: RejectBody,
    operator: Operator = Depends(require_business_access),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    request = await registry.workflow.get_request(request_id, business_id)
    if request is None:
        return not_found("Request not found")
    result = await registry.workflow.process_workflow_transition(
        request_id,
        request.status,
        RequestStatus.REJECTED,
        TransitionContext(
            actor=_actor_type(operator),
            actor_id=operator.subject,
            reason=body.reason,
            updates={"rejection_reason": body.reason},
        ),
    )
    return respond(result, lambda transitioned: request_view(transitioned.request))


@router.post("/verification/{verification_id}/challenges/{challenge_id}/review")
async def review_document(
    business_id: uuid.UUID,
    verification_id: uuid.UUID,
    challenge_id: uuid.UUID,
    body: DocumentReviewBody,
    operator: Operator = Depends(require_role(OperatorRole.DPO, OperatorRole.BUSINESS_ADMIN)),
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    verification = await registry.verification.get(verification_id)
    if verification is None or verification.business_id != business_id:
        return not_found("Verification not found")
    result = await registry.intake.review_document(
        verification_id,
        challenge_id,
        approved=body.approved,
        reviewer=operator.subject,
    )
    return respond(result)
