"""Public data-subject endpoints.

These routes are called by the data subject (or a portal acting for them)
and are unauthenticated; identity is established through the
verification challenges.

POST /api/v1/requests                                          - Submit a request
POST /api/v1/verify-identity                                   - Consume an emailed token
POST /api/v1/verification/{verification_id}/challenges/{challenge_id} - Answer a challenge
POST /api/v1/requests/{request_id}/restart-verification        - New verification after failure/expiry
POST /api/v1/requests/{request_id}/withdraw                    - Withdraw a request
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dsr_engine.api.dependencies import get_registry, respond
from dsr_engine.compliance.entities import IdentityData, RequestChannel, RightType
from dsr_engine.services.registry import ServiceRegistry

log = structlog.get_logger(__name__)

router = APIRouter(tags=["data-subject-requests"])


# ------------------------------------------------------------------ #
# Request models
# ------------------------------------------------------------------ #


class IdentityDataBody(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    additional_info: dict[str, Any] = Field(default_factory=dict)


class SubmitRequestBody(BaseModel):
    """Body of a new data-subject request.

    ``requestor_email`` is validated by the intake service so a malformed
    address is reported as a VALIDATION_FAILED result like every other
    input problem.
    """

    business_id: uuid.UUID
    right_type: RightType
    requestor_email: str = Field(..., max_length=320)
    requestor_phone: str | None = Field(default=None, max_length=32)
    identity_data: IdentityDataBody = Field(default_factory=IdentityDataBody)
    channel: RequestChannel = RequestChannel.CUSTOMER_PORTAL
    description: str | None = Field(default=None, max_length=5000)
    request_data: dict[str, Any] = Field(default_factory=dict)


class VerifyIdentityBody(BaseModel):
    verification_token: str = Field(..., min_length=1, max_length=256)


class ChallengeResponseBody(BaseModel):
    response: str = Field(..., min_length=1, max_length=1000)


class WithdrawBody(BaseModel):
    requestor_email: str = Field(..., max_length=320)
    reason: str | None = Field(default=None, max_length=1000)


# ------------------------------------------------------------------ #
# Routes
# ------------------------------------------------------------------ #


@router.post("/requests")
async def submit_request(
    body: SubmitRequestBody,
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.intake.submit_request(
        body.business_id,
        body.right_type,
        body.requestor_email,
        IdentityData(
            first_name=body.identity_data.first_name,
            last_name=body.identity_data.last_name,
            additional_info=body.identity_data.additional_info,
        ),
        requestor_phone=body.requestor_phone,
        channel=body.channel,
        description=body.description,
        request_data=body.request_data,
    )
    return respond(result)


@router.post("/verify-identity")
async def verify_identity(
    body: VerifyIdentityBody,
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.intake.verify_identity(body.verification_token))


@router.post("/verification/{verification_id}/challenges/{challenge_id}")
async def answer_challenge(
    verification_id: uuid.UUID,
    challenge_id: uuid.UUID,
    body: ChallengeResponseBody,
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.intake.submit_challenge_response(verification_id, challenge_id, body.response)
    return respond(result)


@router.post("/requests/{request_id}/restart-verification")
async def restart_verification(
    request_id: uuid.UUID,
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    return respond(await registry.intake.restart_verification(request_id))


@router.post("/requests/{request_id}/withdraw")
async def withdraw_request(
    request_id: uuid.UUID,
    body: WithdrawBody,
    registry: ServiceRegistry = Depends(get_registry),
) -> JSONResponse:
    result = await registry.intake.withdraw_request(request_id, body.requestor_email, body.reason)
    return respond(
        result,
        lambda request: {"request_id": str(request.id), "status": request.status.value},
    )
