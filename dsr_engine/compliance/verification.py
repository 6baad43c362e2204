"""Identity Verification Engine - challenge/response gate for DSR intake.

A verification owns an ordered set of challenges chosen from a risk score:

    score = sensitivity(right) + 30 if no matching customer
                               + 20 if identity data is incomplete
                               + 40 if the contact retried too often
    HIGH >= risk_high_threshold, MEDIUM >= risk_medium_threshold, else LOW

    LOW    -> TOKEN (email link)
    MEDIUM -> TOKEN, plus SMS_CODE when a phone number is known
    HIGH   -> TOKEN + KNOWLEDGE for a known customer,
              TOKEN + DOCUMENT (reviewer decision) otherwise

Secrets are stored only as SHA-256 digests and compared in constant time.
The verification fails closed: a single exhausted or expired challenge
fails the whole verification and the subject has to restart.
"""

from __future__ import annotations

import asyncio
import difflib
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from dsr_engine.config import Settings
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.compliance.entities import (
    Challenge,
    ChallengeStatus,
    ChallengeType,
    CustomerRecord,
    IdentityData,
    IdentityVerification,
    RightType,
    RiskLevel,
    VerificationMethod,
    VerificationStatus,
    utcnow,
)
from dsr_engine.compliance.events import EventSeverity, VerificationEvent
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.services.directory import SubjectDirectory
from dsr_engine.services.notifications import DeliveryChannel, NotificationDispatcher, NotificationError
from dsr_engine.store.base import VerificationStore

log = structlog.get_logger(__name__)

RIGHT_SENSITIVITY: dict[RightType, int] = {
    RightType.ERASURE: 70,
    RightType.PORTABILITY: 40,
    RightType.RECTIFICATION: 40,
    RightType.ACCESS: 20,
    RightType.RESTRICT: 20,
    RightType.OBJECT: 10,
    RightType.CONSENT_WITHDRAW: 0,
}

NO_CUSTOMER_MATCH_RISK = 30
INCOMPLETE_IDENTITY_RISK = 20
REPEATED_ATTEMPTS_RISK = 40


def secret_digest(value: str) -> str:
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def name_similarity(a: str, b: str) -> float:
    return difflib.SequenceMatcher(None, a.strip().lower(), b.strip().lower()).ratio()


@dataclass
class ChallengeView:
    """Challenge details safe to return to the data subject."""

    id: uuid.UUID
    type: ChallengeType
    status: ChallengeStatus
    expires_at: datetime
    max_attempts: int
    remaining_attempts: int
    prompt: str | None = None

    @classmethod
    def of(cls, challenge: Challenge) -> ChallengeView:
        return cls(
            id=challenge.id,
            type=challenge.type,
            status=challenge.status,
            expires_at=challenge.expires_at,
            max_attempts=challenge.max_attempts,
            remaining_attempts=challenge.remaining_attempts,
            prompt=challenge.prompt,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "max_attempts": self.max_attempts,
            "remaining_attempts": self.remaining_attempts,
            "prompt": self.prompt,
        }


@dataclass
class VerificationStart:
    verification_id: uuid.UUID
    method: VerificationMethod
    risk_level: RiskLevel
    status: VerificationStatus
    challenges: list[ChallengeView] = field(default_factory=list)


@dataclass
class ChallengeOutcome:
    verification_id: uuid.UUID
    challenge_id: uuid.UUID
    challenge_status: ChallengeStatus
    verification_status: VerificationStatus
    remaining_attempts: int
    pending_challenges: list[ChallengeView] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED


@dataclass(frozen=True)
class VerificationOutcome:
    """Final result of a verified identity, returned unchanged on re-query."""

    verification_id: uuid.UUID
    request_id: uuid.UUID | None
    customer_id: uuid.UUID | None
    method: VerificationMethod
    risk_level: RiskLevel
    confidence: int
    completed_at: datetime


class IdentityVerificationEngine:
    """Issues challenges and evaluates responses for one business at a time."""

    def __init__(
        self,
        store: VerificationStore,
        directory: SubjectDirectory,
        dispatcher: NotificationDispatcher,
        ledger: ComplianceAuditLedger,
        settings: Settings,
    ) -> None:
        self._store = store
        self._directory = directory
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._settings = settings

    # ------------------------------------------------------------------ #
    # Initiation
    # ------------------------------------------------------------------ #

    async def initiate(
        self,
        business_id: uuid.UUID,
        requestor_email: str,
        identity_data: IdentityData,
        request_type: RightType,
        *,
        requestor_phone: str | None = None,
        request_id: uuid.UUID | None = None,
    ) -> Result[VerificationStart]:
        """Score the request, issue challenges and deliver the secrets."""
        now = utcnow()
        matches = await self._directory.find_by_contact(business_id, requestor_email, requestor_phone)
        customer = matches[0] if matches else None

        risk_score, factors = await self._assess_risk(
            business_id, requestor_email, identity_data, request_type, customer, now
        )
        risk_level = self._risk_level(risk_score)
        confidence = await self._match_confidence(customer, requestor_email, requestor_phone, identity_data)

        issued = await self._build_challenges(risk_level, customer, requestor_phone, now)
        method = self._method_for(issued)

        verification = IdentityVerification(
            id=uuid.uuid4(),
            business_id=business_id,
            requestor_email=requestor_email,
            requestor_phone=requestor_phone,
            method=method,
            risk_level=risk_level,
            status=VerificationStatus.PENDING,
            created_at=now,
            updated_at=now,
            challenges=[challenge for challenge, _ in issued],
            request_id=request_id,
            customer_id=customer.id if customer else None,
            confidence=confidence,
            risk_score=risk_score,
            risk_factors=factors,
        )
        await self._store.add(verification)

        for challenge, plaintext in issued:
            if plaintext is None:
                continue
            channel, contact = (
                (DeliveryChannel.SMS, requestor_phone)
                if challenge.type == ChallengeType.SMS_CODE
                else (DeliveryChannel.EMAIL, requestor_email)
            )
            delivered = await self._deliver(verification, challenge, channel, contact or requestor_email, plaintext)
            if not delivered.success:
                return Result.from_error(delivered.error)  # type: ignore[arg-type]
            challenge.delivery_id = delivered.value

        verification.status = VerificationStatus.IN_PROGRESS
        verification.updated_at = utcnow()
        if not await self._store.save(verification, verification.version):
            return Result.fail(ErrorKind.STALE_STATE, "Verification changed during initiation")

        await self._audit(verification, "verification.initiated", reason=",".join(factors) or None)
        log.info(
            "verification.initiated",
            verification_id=str(verification.id),
            business_id=str(business_id),
            risk_level=risk_level,
            risk_score=risk_score,
            method=method,
            challenge_count=len(issued),
        )
        return Result.ok(
            VerificationStart(
                verification_id=verification.id,
                method=method,
                risk_level=risk_level,
                status=verification.status,
                challenges=[ChallengeView.of(c) for c in verification.challenges],
            )
        )

    # ------------------------------------------------------------------ #
    # Responses
    # ------------------------------------------------------------------ #

    async def submit_challenge_response(
        self,
        verification_id: uuid.UUID,
        challenge_id: uuid.UUID,
        response: str,
    ) -> Result[ChallengeOutcome]:
        verification = await self._store.get(verification_id)
        if verification is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Verification not found")
        challenge = verification.challenge(challenge_id)
        if challenge is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Challenge not found")

        rejection = self._reject_terminal(verification, challenge)
        if rejection is not None:
            return rejection

        now = utcnow()
        expected_version = verification.version

        if now > challenge.expires_at:
            challenge.status = ChallengeStatus.EXPIRED
            challenge.completed_at = now
            verification.status = VerificationStatus.EXPIRED
            verification.failure_reason = f"{challenge.type} challenge expired"
            verification.updated_at = now
            if not await self._store.save(verification, expected_version):
                return self._stale()
            await self._audit(verification, "verification.expired", challenge=challenge, severity=EventSeverity.MEDIUM)
            return Result.fail(
                ErrorKind.IDENTITY_NOT_VERIFIED,
                "Challenge has expired; restart verification",
                restart_required=True,
                remaining_attempts=0,
            )

        if challenge.type == ChallengeType.DOCUMENT:
            return Result.fail(
                ErrorKind.VALIDATION_FAILED,
                "Document challenges are decided by a reviewer",
            )

        challenge.attempts += 1
        correct = challenge.secret_digest is not None and hmac.compare_digest(
            secret_digest(response), challenge.secret_digest
        )
        self._apply_response(verification, challenge, correct, now)

        if not await self._store.save(verification, expected_version):
            return self._stale()

        return await self._after_response(verification, challenge, correct)

    async def review_document_challenge(
        self,
        verification_id: uuid.UUID,
        challenge_id: uuid.UUID,
        *,
        approved: bool,
        reviewer: str,
    ) -> Result[ChallengeOutcome]:
        """Record a reviewer's decision on an uploaded identity document."""
        verification = await self._store.get(verification_id)
        if verification is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Verification not found")
        challenge = verification.challenge(challenge_id)
        if challenge is None or challenge.type != ChallengeType.DOCUMENT:
            return Result.fail(ErrorKind.NOT_FOUND, "Document challenge not found")

        rejection = self._reject_terminal(verification, challenge)
        if rejection is not None:
            return rejection

        now = utcnow()
        expected_version = verification.version
        if now > challenge.expires_at:
            approved = False
        challenge.attempts = challenge.max_attempts if not approved else challenge.attempts + 1
        self._apply_response(verification, challenge, approved, now)
        if not await self._store.save(verification, expected_version):
            return self._stale()

        log.info(
            "verification.document_reviewed",
            verification_id=str(verification_id),
            approved=approved,
            reviewer=reviewer,
        )
        return await self._after_response(verification, challenge, approved)

    async def complete_verification(self, verification_id: uuid.UUID) -> Result[VerificationOutcome]:
        """Return the verified outcome. Re-invoking never re-scores."""
        verification = await self._store.get(verification_id)
        if verification is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Verification not found")

        if verification.status == VerificationStatus.VERIFIED and verification.completed_at is not None:
            return Result.ok(self._outcome(verification))

        if verification.status in (VerificationStatus.FAILED, VerificationStatus.EXPIRED):
            return Result.fail(
                ErrorKind.IDENTITY_NOT_VERIFIED,
                f"Verification {verification.status.value.lower()}; restart verification",
                restart_required=True,
            )

        pending = [c for c in verification.challenges if c.status != ChallengeStatus.PASSED]
        if pending:
            return Result.fail(
                ErrorKind.IDENTITY_NOT_VERIFIED,
                "Verification has unanswered challenges",
                pending_challenges=[str(c.id) for c in pending],
            )

        # All challenges passed but the status write was lost: finish it now.
        expected_version = verification.version
        verification.status = VerificationStatus.VERIFIED
        verification.completed_at = utcnow()
        verification.updated_at = verification.completed_at
        if not await self._store.save(verification, expected_version):
            return self._stale()
        await self._audit(verification, "verification.verified")
        return Result.ok(self._outcome(verification))

    async def find_by_token(self, token: str) -> tuple[IdentityVerification, Challenge] | None:
        """Resolve an emailed verification token to its challenge."""
        digest = secret_digest(token)
        verification = await self._store.find_by_secret_digest(digest)
        if verification is None:
            return None
        challenge = next(
            (c for c in verification.challenges if c.secret_digest == digest and c.type == ChallengeType.TOKEN),
            None,
        )
        if challenge is None:
            return None
        return verification, challenge

    async def get(self, verification_id: uuid.UUID) -> IdentityVerification | None:
        return await self._store.get(verification_id)

    async def supersede(self, verification_id: uuid.UUID, reason: str) -> None:
        """Expire an open verification that is being replaced by a new one."""
        verification = await self._store.get(verification_id)
        if verification is None or verification.is_terminal:
            return
        expected_version = verification.version
        verification.status = VerificationStatus.EXPIRED
        verification.failure_reason = reason
        verification.updated_at = utcnow()
        for challenge in verification.challenges:
            if not challenge.is_terminal:
                challenge.status = ChallengeStatus.EXPIRED
        if await self._store.save(verification, expected_version):
            await self._audit(verification, "verification.superseded", reason=reason)

    async def expire_stale_verifications(self) -> int:
        """Expire open verifications whose pending challenges have all timed out."""
        now = utcnow()
        expired = 0
        for verification in await self._store.list_open():
            pending = [c for c in verification.challenges if c.status == ChallengeStatus.PENDING]
            if not pending or any(c.expires_at >= now for c in pending):
                continue
            expected_version = verification.version
            for challenge in pending:
                challenge.status = ChallengeStatus.EXPIRED
            verification.status = VerificationStatus.EXPIRED
            verification.failure_reason = "Challenges expired without a response"
            verification.updated_at = now
            if await self._store.save(verification, expected_version):
                expired += 1
                await self._audit(verification, "verification.expired", severity=EventSeverity.MEDIUM)
        if expired:
            log.info("verification.stale_expired", count=expired)
        return expired

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _reject_terminal(
        self, verification: IdentityVerification, challenge: Challenge
    ) -> Result[ChallengeOutcome] | None:
        if challenge.status == ChallengeStatus.FAILED or verification.status == VerificationStatus.FAILED:
            return Result.fail(
                ErrorKind.CHALLENGE_EXHAUSTED,
                "Verification failed; restart verification",
                restart_required=True,
                remaining_attempts=0,
            )
        if challenge.status == ChallengeStatus.EXPIRED or verification.status == VerificationStatus.EXPIRED:
            return Result.fail(
                ErrorKind.IDENTITY_NOT_VERIFIED,
                "Verification expired; restart verification",
                restart_required=True,
                remaining_attempts=0,
            )
        if challenge.status == ChallengeStatus.PASSED:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Challenge already completed")
        if challenge.attempts >= challenge.max_attempts:
            return Result.fail(
                ErrorKind.CHALLENGE_EXHAUSTED,
                "No attempts remaining; restart verification",
                restart_required=True,
                remaining_attempts=0,
            )
        return None

    @staticmethod
    def _apply_response(
        verification: IdentityVerification, challenge: Challenge, correct: bool, now: datetime
    ) -> None:
        verification.updated_at = now
        if correct:
            challenge.status = ChallengeStatus.PASSED
            challenge.completed_at = now
            if all(c.status == ChallengeStatus.PASSED for c in verification.challenges):
                verification.status = VerificationStatus.VERIFIED
                verification.completed_at = now
            else:
                verification.status = VerificationStatus.IN_PROGRESS
        elif challenge.attempts >= challenge.max_attempts:
            challenge.status = ChallengeStatus.FAILED
            challenge.completed_at = now
            verification.status = VerificationStatus.FAILED
            verification.failure_reason = f"{challenge.type} challenge exhausted"
        else:
            verification.status = VerificationStatus.IN_PROGRESS

    async def _after_response(
        self, verification: IdentityVerification, challenge: Challenge, correct: bool
    ) -> Result[ChallengeOutcome]:
        if correct:
            await self._audit(verification, "verification.challenge_passed", challenge=challenge)
            if verification.status == VerificationStatus.VERIFIED:
                await self._audit(verification, "verification.verified")
                log.info("verification.verified", verification_id=str(verification.id))
            return Result.ok(
                ChallengeOutcome(
                    verification_id=verification.id,
                    challenge_id=challenge.id,
                    challenge_status=challenge.status,
                    verification_status=verification.status,
                    remaining_attempts=challenge.remaining_attempts,
                    pending_challenges=[
                        ChallengeView.of(c) for c in verification.challenges if c.status == ChallengeStatus.PENDING
                    ],
                )
            )

        if challenge.status == ChallengeStatus.FAILED:
            await self._audit(verification, "verification.failed", challenge=challenge, severity=EventSeverity.MEDIUM)
            log.warning(
                "verification.failed",
                verification_id=str(verification.id),
                challenge_type=challenge.type,
                attempts=challenge.attempts,
            )
            return Result.fail(
                ErrorKind.CHALLENGE_EXHAUSTED,
                "Maximum attempts reached; restart verification",
                restart_required=True,
                remaining_attempts=0,
            )

        await self._audit(verification, "verification.attempt_failed", challenge=challenge)
        return Result.fail(
            ErrorKind.IDENTITY_NOT_VERIFIED,
            "Incorrect response",
            remaining_attempts=challenge.remaining_attempts,
        )

    async def _deliver(
        self,
        verification: IdentityVerification,
        challenge: Challenge,
        channel: DeliveryChannel,
        contact: str,
        secret: str,
    ) -> Result[str]:
        payload = {
            "template": f"dsr_verification_{challenge.type.value.lower()}",
            "verification_id": str(verification.id),
            "challenge_id": str(challenge.id),
            "secret": secret,
            "expires_at": challenge.expires_at.isoformat(),
        }
        try:
            delivery_id = await asyncio.wait_for(
                self._dispatcher.send(channel, contact, payload),
                timeout=self._settings.external_call_timeout_seconds,
            )
        except (TimeoutError, NotificationError) as exc:
            timed_out = isinstance(exc, TimeoutError)
            expected_version = verification.version
            verification.status = VerificationStatus.FAILED
            verification.failure_reason = "delivery timed out" if timed_out else "delivery failed"
            verification.updated_at = utcnow()
            await self._store.save(verification, expected_version)
            await self._audit(
                verification,
                "verification.delivery_failed",
                challenge=challenge,
                severity=EventSeverity.MEDIUM,
                reason=verification.failure_reason,
            )
            log.warning(
                "verification.delivery_failed",
                verification_id=str(verification.id),
                channel=channel,
                timed_out=timed_out,
                error=str(exc),
            )
            return Result.fail(
                ErrorKind.EXTERNAL_TIMEOUT,
                "Verification message could not be delivered; please retry",
                retryable=True,
                verification_id=str(verification.id),
            )
        return Result.ok(delivery_id)

    async def _assess_risk(
        self,
        business_id: uuid.UUID,
        requestor_email: str,
        identity_data: IdentityData,
        request_type: RightType,
        customer: CustomerRecord | None,
        now: datetime,
    ) -> tuple[int, list[str]]:
        factors: list[str] = []
        score = RIGHT_SENSITIVITY.get(request_type, 0)
        if score:
            factors.append(f"right_sensitivity:{request_type.value}")
        if customer is None:
            score += NO_CUSTOMER_MATCH_RISK
            factors.append("no_customer_match")
        if not identity_data.is_complete:
            score += INCOMPLETE_IDENTITY_RISK
            factors.append("incomplete_identity")
        since = now - timedelta(hours=self._settings.verification_rate_window_hours)
        recent = await self._store.count_recent(business_id, requestor_email, since)
        if recent > self._settings.verification_rate_limit:
            score += REPEATED_ATTEMPTS_RISK
            factors.append("repeated_attempts")
        return min(score, 100), factors

    def _risk_level(self, score: int) -> RiskLevel:
        if score >= self._settings.risk_high_threshold:
            return RiskLevel.HIGH
        if score >= self._settings.risk_medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    async def _match_confidence(
        self,
        customer: CustomerRecord | None,
        email: str,
        phone: str | None,
        identity_data: IdentityData,
    ) -> int:
        if customer is None:
            return 0
        profile = await self._directory.decrypt_profile(customer)
        confidence = 0
        if profile["email"] and profile["email"].lower() == email.lower():
            confidence += 40
        if phone and profile["phone"] and customer.phone_index is not None:
            matches = await self._directory.find_by_contact(customer.business_id, None, phone)
            if any(m.id == customer.id for m in matches):
                confidence += 30
        for claimed, stored in (
            (identity_data.first_name, profile["first_name"]),
            (identity_data.last_name, profile["last_name"]),
        ):
            if not claimed or not stored:
                continue
            similarity = name_similarity(claimed, stored)
            if similarity > 0.8:
                confidence += 15
            elif similarity > 0.6:
                confidence += 5
        return min(confidence, 100)

    async def _build_challenges(
        self,
        risk_level: RiskLevel,
        customer: CustomerRecord | None,
        phone: str | None,
        now: datetime,
    ) -> list[tuple[Challenge, str | None]]:
        issued: list[tuple[Challenge, str | None]] = [self._token_challenge(now)]
        if risk_level == RiskLevel.MEDIUM and phone:
            issued.append(self._sms_challenge(now))
        elif risk_level == RiskLevel.HIGH:
            knowledge = await self._knowledge_challenge(customer, now) if customer else None
            issued.append(knowledge or self._document_challenge(now))
        return issued

    @staticmethod
    def _method_for(issued: list[tuple[Challenge, str | None]]) -> VerificationMethod:
        types = {c.type for c, _ in issued}
        if types & {ChallengeType.KNOWLEDGE, ChallengeType.DOCUMENT}:
            return VerificationMethod.MULTI_FACTOR
        if ChallengeType.SMS_CODE in types:
            return VerificationMethod.SMS_CODE
        return VerificationMethod.EMAIL_TOKEN

    def _token_challenge(self, now: datetime) -> tuple[Challenge, str]:
        token = secrets.token_urlsafe(32)
        return (
            Challenge(
                id=uuid.uuid4(),
                type=ChallengeType.TOKEN,
                status=ChallengeStatus.PENDING,
                max_attempts=self._settings.challenge_max_attempts,
                expires_at=now + timedelta(minutes=self._settings.token_expiry_minutes),
                secret_digest=secret_digest(token),
                prompt="Enter the verification token sent to your email address",
            ),
            token,
        )

    def _sms_challenge(self, now: datetime) -> tuple[Challenge, str]:
        code = f"{secrets.randbelow(10**6):06d}"
        return (
            Challenge(
                id=uuid.uuid4(),
                type=ChallengeType.SMS_CODE,
                status=ChallengeStatus.PENDING,
                max_attempts=self._settings.challenge_max_attempts,
                expires_at=now + timedelta(minutes=self._settings.sms_code_expiry_minutes),
                secret_digest=secret_digest(code),
                prompt="Enter the 6-digit code sent to your phone",
            ),
            code,
        )

    async def _knowledge_challenge(self, customer: CustomerRecord, now: datetime) -> tuple[Challenge, None] | None:
        profile = await self._directory.decrypt_profile(customer)
        if profile["phone"] and len(profile["phone"]) >= 4:
            prompt, answer = "Enter the last 4 digits of the phone number we hold for you", profile["phone"][-4:]
        elif profile["last_name"]:
            prompt, answer = "Enter the surname we hold for you", profile["last_name"]
        else:
            return None
        return (
            Challenge(
                id=uuid.uuid4(),
                type=ChallengeType.KNOWLEDGE,
                status=ChallengeStatus.PENDING,
                max_attempts=self._settings.knowledge_max_attempts,
                expires_at=now + timedelta(minutes=self._settings.knowledge_expiry_minutes),
                secret_digest=secret_digest(answer),
                prompt=prompt,
            ),
            None,
        )

    def _document_challenge(self, now: datetime) -> tuple[Challenge, None]:
        return (
            Challenge(
                id=uuid.uuid4(),
                type=ChallengeType.DOCUMENT,
                status=ChallengeStatus.PENDING,
                max_attempts=1,
                expires_at=now + timedelta(minutes=self._settings.document_expiry_minutes),
                prompt="Upload a government-issued identity document for manual review",
            ),
            None,
        )

    @staticmethod
    def _outcome(verification: IdentityVerification) -> VerificationOutcome:
        return VerificationOutcome(
            verification_id=verification.id,
            request_id=verification.request_id,
            customer_id=verification.customer_id,
            method=verification.method,
            risk_level=verification.risk_level,
            confidence=verification.confidence,
            completed_at=verification.completed_at,  # type: ignore[arg-type]
        )

    @staticmethod
    def _stale() -> Result[Any]:
        return Result.fail(
            ErrorKind.STALE_STATE,
            "Verification was updated concurrently; retry the response",
            retryable=True,
        )

    async def _audit(
        self,
        verification: IdentityVerification,
        event_type: str,
        *,
        challenge: Challenge | None = None,
        severity: EventSeverity = EventSeverity.LOW,
        reason: str | None = None,
    ) -> None:
        await self._ledger.log_event(
            verification.business_id,
            event_type,
            VerificationEvent(
                verification_id=verification.id,
                status=verification.status.value,
                method=verification.method.value,
                risk_level=verification.risk_level.value,
                request_id=verification.request_id,
                challenge_id=challenge.id if challenge else None,
                attempts=challenge.attempts if challenge else None,
                reason=reason or verification.failure_reason,
            ),
            severity=severity,
            correlation_id=str(verification.request_id) if verification.request_id else str(verification.id),
        )
