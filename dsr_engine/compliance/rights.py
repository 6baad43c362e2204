"""Rights Fulfillment Handlers.

One handler per GDPR right. Every handler follows the same gate:

1. The request exists for this business and is of the handler's right type
2. Identity is verified (status VERIFIED, or IN_PROGRESS on a retry)
3. The business explicitly approved processing
4. Handler input is validated in full before anything is written

Then the request moves VERIFIED -> IN_PROGRESS, the right is executed and
the request moves to COMPLETED with the response attached. Subject records
are found with AND(business, OR(email, phone)); another business's records
are never visible, so a cross-tenant lookup simply finds nothing.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from dsr_engine.config import Settings
from dsr_engine.core.encryption import KeyNotFoundError
from dsr_engine.core.errors import ErrorKind, Result
from dsr_engine.core.input_validation import (
    MAX_ADDRESS_LENGTH,
    InputValidator,
    ValidationError,
)
from dsr_engine.compliance.deletion import SecureDeletionService
from dsr_engine.compliance.entities import (
    CUSTOMER_PII_FIELDS,
    ActorType,
    ConsentState,
    CustomerRecord,
    DataSubjectRequest,
    DeletionMethod,
    DeletionPriority,
    DeletionScope,
    JobStatus,
    ObjectionRecord,
    RequestStatus,
    RightType,
    utcnow,
)
from dsr_engine.compliance.events import ConsentEvent, DataProcessingEvent, EventSeverity
from dsr_engine.compliance.export import CONTENT_TYPES, ExportFormat, checksum, render_export
from dsr_engine.compliance.ledger import ComplianceAuditLedger
from dsr_engine.compliance.workflow import TransitionContext, WorkflowEngine
from dsr_engine.services.directory import SubjectDirectory

log = structlog.get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0"


@dataclass
class FulfillmentResult:
    request: DataSubjectRequest
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "request_id": str(self.request.id),
            "status": self.request.status.value,
            "data": self.data,
        }


def _validate_correction(name: str, value: Any) -> str:
    if name not in CUSTOMER_PII_FIELDS:
        raise ValidationError(f"Field '{name}' cannot be rectified", name)
    if name == "email":
        return InputValidator.validate_email(value, name)
    if name == "phone":
        return InputValidator.validate_phone(value, name)
    if name in ("first_name", "last_name"):
        return InputValidator.validate_name(value, name)
    return InputValidator.validate_text(value, name, MAX_ADDRESS_LENGTH)


class RightsFulfillmentService:
    def __init__(
        self,
        workflow: WorkflowEngine,
        directory: SubjectDirectory,
        deletion: SecureDeletionService,
        ledger: ComplianceAuditLedger,
        settings: Settings,
    ) -> None:
        self._workflow = workflow
        self._directory = directory
        self._deletion = deletion
        self._ledger = ledger
        self._settings = settings

    # ------------------------------------------------------------------ #
    # Access / portability
    # ------------------------------------------------------------------ #

    async def process_access(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
    ) -> Result[FulfillmentResult]:
        """Compile every record held on the subject and complete the request.

        Args:
            business_id: Tenant owning the request.
            request_id: A VERIFIED (or IN_PROGRESS) ACCESS request.
            processed_by: Actor recorded on the transition and audit events.
            business_approval: Must be True; access is never automatic.

        Returns:
            The completed request with ``export`` and ``record_count`` in
            its response data.
        """
        gate = await self._gate(business_id, request_id, RightType.ACCESS, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()

        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        customers = await self._subject_records(request)
        bundle = {
            "request_id": str(request.id),
            "business_id": str(business_id),
            "generated_at": utcnow().isoformat(),
            "subject": {"email": request.requestor_email, "phone": request.requestor_phone},
            "records": [await self._customer_export(c) for c in customers],
        }
        await self._log_processing(request, "access_export", len(customers), customers, processed_by)
        return await self._complete(request, processed_by, {"export": bundle, "record_count": len(customers)})

    async def process_portability(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
        export_format: ExportFormat = ExportFormat.JSON,
    ) -> Result[FulfillmentResult]:
        """Export the subject's records in a machine-readable format.

        Args:
            business_id: Tenant the request belongs to.
            request_id: A verified PORTABILITY request.
            processed_by: Operator recorded on the transition and audit event.
            business_approval: Must be True.
            export_format: JSON (default), CSV or XML.

        Returns:
            The completed request. ``data["export"]`` is the export document;
            for CSV and XML ``data["content"]`` holds the rendered file.
            ``checksum_sha256`` is always computed over the rendered text.
        """
        gate = await self._gate(business_id, request_id, RightType.PORTABILITY, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()

        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        customers = await self._subject_records(request)
        document = {
            "format": CONTENT_TYPES[export_format],
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": utcnow().isoformat(),
            "business_id": str(business_id),
            "records": [await self._customer_export(c) for c in customers],
        }
        content = render_export(document, export_format)
        response: dict[str, Any] = {
            "export": document,
            "export_format": export_format.value,
            "checksum_sha256": checksum(content),
            "record_count": len(customers),
        }
        if export_format != ExportFormat.JSON:
            response["content"] = content
        await self._log_processing(request, "portability_export", len(customers), customers, processed_by)
        return await self._complete(request, processed_by, response)

    # ------------------------------------------------------------------ #
    # Rectification
    # ------------------------------------------------------------------ #

    async def process_rectification(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
        corrections: dict[str, Any],
    ) -> Result[FulfillmentResult]:
        gate = await self._gate(business_id, request_id, RightType.RECTIFICATION, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()

        if not corrections:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "No corrections supplied")
        validated: dict[str, str] = {}
        try:
            for name, value in corrections.items():
                validated[name] = _validate_correction(name, value)
        except ValidationError as exc:
            return Result.fail(ErrorKind.VALIDATION_FAILED, str(exc), field=exc.field)

        customers = await self._subject_records(request)
        if not customers:
            return Result.fail(ErrorKind.NOT_FOUND, "No customer record matches the requestor")

        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        for customer in customers:
            try:
                await self._directory.update_customer_fields(customer, validated)
            except KeyNotFoundError:
                log.warning("rights.rectification_target_erased", request_id=str(request.id), customer_id=str(customer.id))
                return Result.fail(
                    ErrorKind.NOT_FOUND,
                    "Customer record was erased while rectification was running",
                    customer_id=str(customer.id),
                )
        fields_changed = tuple(sorted(validated))
        await self._log_processing(request, "rectification", len(customers), customers, processed_by, fields_changed)
        return await self._complete(
            request,
            processed_by,
            {"updated_fields": list(fields_changed), "record_count": len(customers)},
        )

    # ------------------------------------------------------------------ #
    # Erasure
    # ------------------------------------------------------------------ #

    async def process_erasure(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
        cascade_delete: bool = True,
        method: DeletionMethod = DeletionMethod.CRYPTO_SHREDDING,
        scope: DeletionScope = DeletionScope.CUSTOMER_COMPLETE,
        legal_basis: str = "GDPR Article 17 - right to erasure",
    ) -> Result[FulfillmentResult]:
        """Schedule (and with ``cascade_delete`` run) the subject's deletion.

        Args:
            business_id: Tenant owning the request.
            request_id: A verified ERASURE request.
            processed_by: Actor recorded on the transition and audit events.
            business_approval: Must be True.
            cascade_delete: Execute the scheduled deletion right away.
            method: Deletion method handed to the Secure Deletion Service.
            scope: Customer scope; REVIEW_DATA is rejected.
            legal_basis: Recorded on the deletion request and certificate.

        Returns:
            The completed request with the deletion request id and, when
            executed, its certificate id.
        """
        gate = await self._gate(business_id, request_id, RightType.ERASURE, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()
        if scope == DeletionScope.REVIEW_DATA:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "Erasure scope must target the customer")

        customers = await self._subject_records(request)
        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        if not customers:
            await self._log_processing(request, "erasure", 0, [], processed_by)
            return await self._complete(request, processed_by, {"records_found": 0, "deletion_request_id": None})

        deletion = await self._existing_deletion(business_id, request.id)
        if deletion is None:
            scheduled = await self._deletion.schedule_deletion(
                business_id,
                scope,
                [c.id for c in customers],
                method=method,
                legal_basis=legal_basis,
                priority=DeletionPriority.HIGH,
                requested_by=processed_by,
                gdpr_request_id=request.id,
            )
            if not scheduled.success:
                return scheduled  # type: ignore[return-value]
            deletion = scheduled.unwrap()

        response: dict[str, Any] = {
            "records_found": len(customers),
            "deletion_request_id": str(deletion.id),
            "cascade_delete": cascade_delete,
        }
        if not cascade_delete:
            response["deletion_status"] = deletion.status.value
            await self._log_processing(request, "erasure_scheduled", len(customers), customers, processed_by)
            return await self._complete(request, processed_by, response)

        executed = await self._deletion.execute_deletion(deletion.id, business_id)
        if not executed.success:
            return executed  # type: ignore[return-value]
        run = executed.unwrap()
        if run.request.status != JobStatus.COMPLETED:
            log.error(
                "rights.erasure_incomplete",
                request_id=str(request.id),
                deletion_request_id=str(deletion.id),
                deletion_status=run.request.status,
            )
            return Result.fail(
                ErrorKind.BATCH_ITEM_FAILURE,
                f"Deletion finished as {run.request.status}; the request stays in progress",
                retryable=run.request.status == JobStatus.RUNNING,
                deletion_request_id=str(deletion.id),
                failed_items=run.request.failed_items,
            )

        response.update(
            {
                "deletion_status": run.request.status.value,
                "records_deleted": run.request.processed_count,
                "records_failed": run.request.failed_count,
                "certificate_id": str(run.certificate.id) if run.certificate else None,
            }
        )
        await self._log_processing(request, "erasure", run.request.processed_count, customers, processed_by)
        return await self._complete(request, processed_by, response)

    async def _existing_deletion(self, business_id: uuid.UUID, request_id: uuid.UUID):
        for deletion in await self._deletion.list_deletions(business_id):
            if deletion.gdpr_request_id == request_id and deletion.status not in (
                JobStatus.CANCELLED,
                JobStatus.FAILED,
            ):
                return deletion
        return None

    # ------------------------------------------------------------------ #
    # Restriction, objection, consent
    # ------------------------------------------------------------------ #

    async def process_restriction(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
        reason: str | None = None,
    ) -> Result[FulfillmentResult]:
        gate = await self._gate(business_id, request_id, RightType.RESTRICT, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()

        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        customers = await self._subject_records(request)
        for customer in customers:
            customer.processing_restricted = True
            customer.restriction_reason = reason or request.description or "GDPR Article 18 request"
            await self._directory.save_customer(customer)
        await self._log_processing(request, "restrict_processing", len(customers), customers, processed_by)
        return await self._complete(request, processed_by, {"restricted_records": len(customers)})

    async def process_objection(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
        processing_purposes: list[str],
        grounds: str | None = None,
    ) -> Result[FulfillmentResult]:
        gate = await self._gate(business_id, request_id, RightType.OBJECT, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()

        purposes = [p.strip() for p in processing_purposes if p and p.strip()]
        if not purposes:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "At least one processing purpose is required")

        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        customers = await self._subject_records(request)
        now = utcnow()
        for customer in customers:
            await self._directory.record_objection(
                ObjectionRecord(
                    id=uuid.uuid4(),
                    business_id=business_id,
                    customer_id=customer.id,
                    request_id=request.id,
                    processing_purposes=purposes,
                    grounds=grounds,
                    created_at=now,
                )
            )
        await self._log_processing(request, "objection_recorded", len(customers), customers, processed_by)
        return await self._complete(
            request,
            processed_by,
            {"objection_records": len(customers), "processing_purposes": purposes},
        )

    async def process_consent_withdrawal(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        processed_by: str,
        business_approval: bool,
        purposes: list[str] | None = None,
    ) -> Result[FulfillmentResult]:
        gate = await self._gate(business_id, request_id, RightType.CONSENT_WITHDRAW, business_approval)
        if not gate.success:
            return gate  # type: ignore[return-value]
        request = gate.unwrap()

        started = await self._start(request, processed_by)
        if not started.success:
            return started  # type: ignore[return-value]

        customers = await self._subject_records(request)
        now = utcnow()
        for customer in customers:
            customer.consent_state = ConsentState.WITHDRAWN
            customer.consent_updated_at = now
            await self._directory.save_customer(customer)
            await self._ledger.log_event(
                business_id,
                "consent.withdrawn",
                ConsentEvent(
                    subject_ref=str(customer.id),
                    state=ConsentState.WITHDRAWN.value,
                    request_id=request.id,
                    purposes=tuple(purposes or ()),
                ),
                severity=EventSeverity.MEDIUM,
                correlation_id=request.correlation_id,
                actor_id=processed_by,
                tags=("compliance_relevant",),
            )
        return await self._complete(request, processed_by, {"consent_withdrawn_records": len(customers)})

    # ------------------------------------------------------------------ #
    # Shared steps
    # ------------------------------------------------------------------ #

    async def _gate(
        self,
        business_id: uuid.UUID,
        request_id: uuid.UUID,
        right_type: RightType,
        business_approval: bool,
    ) -> Result[DataSubjectRequest]:
        request = await self._workflow.get_request(request_id, business_id)
        if request is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Request not found")
        if request.right_type != right_type:
            return Result.fail(
                ErrorKind.VALIDATION_FAILED,
                f"Request is a {request.right_type} request, not {right_type}",
            )
        if request.status in (RequestStatus.SUBMITTED, RequestStatus.PENDING_VERIFICATION):
            return Result.fail(ErrorKind.IDENTITY_NOT_VERIFIED, "Requestor identity has not been verified")
        if request.status not in (RequestStatus.VERIFIED, RequestStatus.IN_PROGRESS):
            return Result.fail(ErrorKind.ILLEGAL_TRANSITION, f"Request is already {request.status}")
        if not business_approval:
            return Result.fail(
                ErrorKind.INSUFFICIENT_APPROVAL,
                "Business approval is required to process this request",
            )
        return Result.ok(request)

    async def _start(self, request: DataSubjectRequest, processed_by: str) -> Result[DataSubjectRequest]:
        if request.status == RequestStatus.IN_PROGRESS:
            return Result.ok(request)
        moved = await self._workflow.process_workflow_transition(
            request.id,
            RequestStatus.VERIFIED,
            RequestStatus.IN_PROGRESS,
            TransitionContext(actor=ActorType.BUSINESS_ADMIN, actor_id=processed_by, reason="processing started"),
        )
        if not moved.success:
            return Result.from_error(moved.error)  # type: ignore[arg-type]
        request.status = RequestStatus.IN_PROGRESS
        return Result.ok(moved.unwrap().request)

    async def _complete(
        self,
        request: DataSubjectRequest,
        processed_by: str,
        response_data: dict[str, Any],
    ) -> Result[FulfillmentResult]:
        moved = await self._workflow.process_workflow_transition(
            request.id,
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
            TransitionContext(
                actor=ActorType.BUSINESS_ADMIN,
                actor_id=processed_by,
                reason=f"{request.right_type} fulfilled",
                updates={"response_data": response_data},
            ),
        )
        if not moved.success:
            return Result.from_error(moved.error)  # type: ignore[arg-type]
        log.info(
            "rights.request_fulfilled",
            request_id=str(request.id),
            right_type=request.right_type,
            processed_by=processed_by,
        )
        return Result.ok(FulfillmentResult(request=moved.unwrap().request, data=response_data))

    async def _subject_records(self, request: DataSubjectRequest) -> list[CustomerRecord]:
        matches = await self._directory.find_by_contact(
            request.business_id, request.requestor_email, request.requestor_phone
        )
        if request.customer_id is not None and all(c.id != request.customer_id for c in matches):
            linked = await self._directory.get_customer(request.business_id, request.customer_id)
            if linked is not None and not linked.is_erased:
                matches.append(linked)
        return matches

    async def _customer_export(self, customer: CustomerRecord) -> dict[str, Any]:
        reviews = []
        for review in await self._directory.list_review_requests(customer.business_id, customer.id):
            content = await self._directory.decrypt_review(review)
            reviews.append(
                {
                    "id": str(review.id),
                    "channel": review.channel,
                    "status": review.status,
                    "created_at": review.created_at.isoformat(),
                    **content,
                }
            )
        objections = await self._directory.list_objections(customer.business_id, customer.id)
        return {
            "customer_id": str(customer.id),
            "created_at": customer.created_at.isoformat(),
            "last_activity_at": customer.last_activity_at.isoformat(),
            "status": customer.status.value,
            "consent_state": customer.consent_state.value,
            "processing_restricted": customer.processing_restricted,
            "profile": await self._directory.decrypt_profile(customer),
            "review_requests": reviews,
            "objections": [
                {
                    "processing_purposes": o.processing_purposes,
                    "grounds": o.grounds,
                    "created_at": o.created_at.isoformat(),
                }
                for o in objections
            ],
        }

    async def _log_processing(
        self,
        request: DataSubjectRequest,
        operation: str,
        record_count: int,
        customers: list[CustomerRecord],
        processed_by: str,
        field_names: tuple[str, ...] = (),
    ) -> None:
        await self._ledger.log_event(
            request.business_id,
            f"processing.{operation}",
            DataProcessingEvent(
                request_id=request.id,
                right_type=request.right_type.value,
                operation=operation,
                record_count=record_count,
                subject_ref=",".join(sorted(str(c.id) for c in customers)) or None,
                field_names=field_names,
            ),
            severity=EventSeverity.HIGH if request.right_type == RightType.ERASURE else EventSeverity.MEDIUM,
            correlation_id=request.correlation_id,
            actor_id=processed_by,
            tags=("compliance_relevant",),
        )
