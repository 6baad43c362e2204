"""Public intake of data subject requests.

Requests arrive unauthenticated. Intake validates the contact details,
fixes the statutory due date, opens the request and gates it behind
identity verification. The request only reaches VERIFIED after every
challenge has passed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from dsr_engine.config import Settings
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.core.input_validation import InputValidator, ValidationError
from dsr_engine.compliance.entities import (
    ActorType,
    ChallengeType,
    DataSubjectRequest,
    IdentityData,
    RequestChannel,
    RequestStatus,
    RightType,
    VerificationStatus,
    utcnow,
)
from dsr_engine.compliance.verification import ChallengeView, IdentityVerificationEngine
from dsr_engine.compliance.workflow import TransitionContext, WorkflowEngine
from dsr_engine.services.directory import SubjectDirectory

log = structlog.get_logger(__name__)

_CHALLENGE_STEPS: dict[ChallengeType, str] = {
    ChallengeType.TOKEN: "Open the verification link sent to your email address",
    ChallengeType.SMS_CODE: "Enter the code sent to your phone",
    ChallengeType.KNOWLEDGE: "Answer the security question about your account",
    ChallengeType.DOCUMENT: "Upload an identity document for manual review",
}


@dataclass
class SubmissionReceipt:
    request_id: uuid.UUID
    verification_id: uuid.UUID
    due_date: datetime
    challenges: list[ChallengeView]
    verification_required: bool = True
    next_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "verification_required": self.verification_required,
            "verification_id": str(self.verification_id),
            "due_date": self.due_date.isoformat(),
            "challenges": [c.to_dict() for c in self.challenges],
            "next_steps": self.next_steps,
        }


@dataclass
class VerificationReceipt:
    request_id: uuid.UUID | None
    verified: bool
    pending_challenges: list[ChallengeView] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": str(self.request_id) if self.request_id else None,
            "verified": self.verified,
            "pending_challenges": [c.to_dict() for c in self.pending_challenges],
            "next_steps": self.next_steps,
        }


def _steps_for(challenges: list[ChallengeView]) -> list[str]:
    return [_CHALLENGE_STEPS[c.type] for c in challenges]


class DSRIntakeService:
    def __init__(
        self,
        workflow: WorkflowEngine,
        verification: IdentityVerificationEngine,
        directory: SubjectDirectory,
        settings: Settings,
    ) -> None:
        self._workflow = workflow
        self._verification = verification
        self._directory = directory
        self._settings = settings

    async def submit_request(
        self,
        business_id: uuid.UUID,
        right_type: RightType,
        requestor_email: str,
        identity_data: IdentityData,
        *,
        requestor_phone: str | None = None,
        channel: RequestChannel = RequestChannel.CUSTOMER_PORTAL,
        description: str | None = None,
        request_data: dict[str, Any] | None = None,
    ) -> Result[SubmissionReceipt]:
        """Validate and open a request, then start identity verification.

        Args:
            business_id: Business the subject is asking.
            right_type: GDPR right being exercised.
            requestor_email: Contact the verification token is sent to.
            identity_data: Claimed identity used for risk scoring.

        Returns:
            A receipt with the request id, due date and verification id.
        """
        try:
            email = InputValidator.validate_email(requestor_email, "requestor_email")
            phone = InputValidator.validate_phone(requestor_phone, "requestor_phone") if requestor_phone else None
            identity = self._validated_identity(identity_data)
            description = InputValidator.validate_text(description, "description") if description else None
        except ValidationError as exc:
            return Result.fail(ErrorKind.VALIDATION_FAILED, str(exc), field=exc.field)

        if await self._directory.get_business(business_id) is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Business not found")

        matches = await self._directory.find_by_contact(business_id, email, phone)
        now = utcnow()
        request = DataSubjectRequest(
            id=uuid.uuid4(),
            business_id=business_id,
            right_type=right_type,
            requestor_email=email,
            requestor_phone=phone,
            identity_data=identity,
            status=RequestStatus.SUBMITTED,
            due_date=self._workflow.calculate_due_date(right_type, now),
            created_at=now,
            updated_at=now,
            channel=channel,
            priority=self._workflow.priority_for(right_type),
            description=description,
            request_data=dict(request_data or {}),
            customer_id=matches[0].id if len(matches) == 1 else None,
        )
        await self._workflow.open_request(request)

        started = await self._start_verification(request)
        if not started.success:
            return Result.from_error(started.error)  # type: ignore[arg-type]
        challenges = started.unwrap()

        log.info(
            "intake.request_submitted",
            request_id=str(request.id),
            business_id=str(business_id),
            right_type=right_type,
            channel=channel,
        )
        return Result.ok(
            SubmissionReceipt(
                request_id=request.id,
                verification_id=request.verification_id,  # type: ignore[arg-type]
                due_date=request.due_date,
                challenges=challenges,
                next_steps=_steps_for(challenges),
            )
        )

    async def verify_identity(self, verification_token: str) -> Result[VerificationReceipt]:
        """Consume an emailed verification token."""
        if not verification_token or not verification_token.strip():
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Verification token is required")
        found = await self._verification.find_by_token(verification_token.strip())
        if found is None:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Invalid or expired verification token")
        verification, challenge = found
        return await self.submit_challenge_response(verification.id, challenge.id, verification_token.strip())

    async def submit_challenge_response(
        self,
        verification_id: uuid.UUID,
        challenge_id: uuid.UUID,
        response: str,
    ) -> Result[VerificationReceipt]:
        outcome = await self._verification.submit_challenge_response(verification_id, challenge_id, response)
        if not outcome.success:
            return Result.from_error(outcome.error)  # type: ignore[arg-type]
        answered = outcome.unwrap()

        verification = await self._verification.get(verification_id)
        request_id = verification.request_id if verification else None
        if not answered.verified:
            return Result.ok(
                VerificationReceipt(
                    request_id=request_id,
                    verified=False,
                    pending_challenges=answered.pending_challenges,
                    next_steps=_steps_for(answered.pending_challenges),
                )
            )

        advanced = await self._advance_verified(verification_id)
        if not advanced.success:
            return Result.from_error(advanced.error)  # type: ignore[arg-type]
        return Result.ok(
            VerificationReceipt(
                request_id=request_id,
                verified=True,
                next_steps=["Your identity is verified; the business will now process your request"],
            )
        )

    async def review_document(
        self,
        verification_id: uuid.UUID,
        challenge_id: uuid.UUID,
        *,
        approved: bool,
        reviewer: str,
    ) -> Result[VerificationReceipt]:
        """Apply a reviewer's decision on an identity document and advance the request."""
        outcome = await self._verification.review_document_challenge(
            verification_id, challenge_id, approved=approved, reviewer=reviewer
        )
        if not outcome.success:
            return Result.from_error(outcome.error)  # type: ignore[arg-type]
        reviewed = outcome.unwrap()

        verification = await self._verification.get(verification_id)
        request_id = verification.request_id if verification else None
        if not reviewed.verified:
            return Result.ok(
                VerificationReceipt(
                    request_id=request_id,
                    verified=False,
                    pending_challenges=reviewed.pending_challenges,
                    next_steps=_steps_for(reviewed.pending_challenges),
                )
            )

        advanced = await self._advance_verified(verification_id)
        if not advanced.success:
            return Result.from_error(advanced.error)  # type: ignore[arg-type]
        return Result.ok(VerificationReceipt(request_id=request_id, verified=True))

    async def restart_verification(self, request_id: uuid.UUID) -> Result[SubmissionReceipt]:
        """Issue a fresh verification after the previous one failed or expired."""
        request = await self._workflow.get_request(request_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")
        if request.status not in (RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION):
            return Result.fail(
                ErrorKind.ILLEGAL_TRANSITION,
                f"Verification cannot be restarted for a {request.status} request",
            )

        if request.verification_id is not None:
            previous = await self._verification.get(request.verification_id)
            if previous is not None and previous.status == VerificationStatus.VERIFIED:
                return Result.fail(ErrorKind.VALIDATION_FAILED, "Identity is already verified")
            await self._verification.supersede(request.verification_id, "restarted by requestor")

        started = await self._start_verification(request)
        if not started.success:
            return Result.from_error(started.error)  # type: ignore[arg-type]
        challenges = started.unwrap()
        log.info("intake.verification_restarted", request_id=str(request_id))
        return Result.ok(
            SubmissionReceipt(
                request_id=request.id,
                verification_id=request.verification_id,  # type: ignore[arg-type]
                due_date=request.due_date,
                challenges=challenges,
                next_steps=_steps_for(challenges),
            )
        )

    async def withdraw_request(
        self,
        request_id: uuid.UUID,
        requestor_email: str,
        reason: str | None = None,
    ) -> Result[DataSubjectRequest]:
        request = await self._workflow.get_request(request_id)
        # A mismatching email is reported as not found.
        if request is None or request.requestor_email != requestor_email.strip().lower():
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")
        if request.is_terminal:
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Request is already {request.status}")

        transitioned = await self._workflow.process_workflow_transition(
            request_id,
            request.status,
            RequestStatus.WITHDRAWN,
            TransitionContext(actor=ActorType.DATA_SUBJECT, reason=reason or "withdrawn by requestor"),
        )
        if not transitioned.success:
            return Result.from_error(transitioned.error)  # type: ignore[arg-type]
        return Result.ok(transitioned.unwrap().request)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @staticmethod
    def _validated_identity(identity_data: IdentityData) -> IdentityData:
        if not identity_data.first_name and not identity_data.last_name:
            raise ValidationError("Identity data must include a first or last name", "identity_data")
        return IdentityData(
            first_name=(
                InputValidator.validate_name(identity_data.first_name, "first_name")
                if identity_data.first_name
                else None
            ),
            last_name=(
                InputValidator.validate_name(identity_data.last_name, "last_name")
                if identity_data.last_name
                else None
            ),
            additional_info=dict(identity_data.additional_info),
        )

    async def _start_verification(self, request: DataSubjectRequest) -> Result[list[ChallengeView]]:
        started = await self._verification.initiate(
            request.business_id,
            request.requestor_email,
            request.identity_data,
            request.right_type,
            requestor_phone=request.requestor_phone,
            request_id=request.id,
        )
        if not started.success:
            # The verification row still exists (FAILED); link it so a restart supersedes it.
            failed_id = started.error.details.get("verification_id")  # type: ignore[union-attr]
            if failed_id:
                await self._workflow.update_request(request.id, {"verification_id": uuid.UUID(failed_id)})
            return Result.from_error(started.error)  # type: ignore[arg-type]

        start = started.unwrap()
        request.verification_id = start.verification_id
        await self._workflow.update_request(request.id, {"verification_id": start.verification_id})

        if request.status == RequestStatus.SUBMITTED:
            moved = await self._workflow.process_workflow_transition(
                request.id,
                RequestStatus.SUBMITTED,
                RequestStatus.PENDING_VERIFICATION,
                TransitionContext(actor=ActorType.SYSTEM, reason=f"verification {start.method} issued"),
            )
            if not moved.success:
                return Result.from_error(moved.error)  # type: ignore[arg-type]
            request.status = RequestStatus.PENDING_VERIFICATION
        return Result.ok(start.challenges)

    async def _advance_verified(self, verification_id: uuid.UUID) -> Result[DataSubjectRequest]:
        completed = await self._verification.complete_verification(verification_id)
        if not completed.success:
            return Result.from_error(completed.error)  # type: ignore[arg-type]
        outcome = completed.unwrap()
        if outcome.request_id is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Verification is not linked to a request")

        request = await self._workflow.get_request(outcome.request_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")
        if request.verification_id != verification_id:
            return Result.fail(ErrorKind.STALE_STATE, "Verification was superseded by a newer one")

        updates: dict[str, Any] = {}
        if outcome.customer_id is not None:
            updates["customer_id"] = outcome.customer_id
        moved = await self._workflow.process_workflow_transition(
            request.id,
            RequestStatus.PENDING_VERIFICATION,
            RequestStatus.VERIFIED,
            TransitionContext(
                actor=ActorType.DATA_SUBJECT,
                reason=f"identity verified via {outcome.method}",
                updates=updates,
                metadata={"verification_id": str(verification_id), "confidence": outcome.confidence},
            ),
        )
        if not moved.success:
            return Result.from_error(moved.error)  # type: ignore[arg-type]
        return Result.ok(moved.unwrap().request)
