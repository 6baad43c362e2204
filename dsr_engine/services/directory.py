"""Tenant and data-subject lookup over encrypted customer records.

Customer PII is held only as ciphertext. Contact lookups go through keyed
blind indexes of the normalized email and phone, so a lookup never has to
decrypt rows of other customers and never crosses a business boundary.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog

from dsr_engine.compliance.entities import (
    CUSTOMER_PII_FIELDS,
    REVIEW_REQUEST_PII_FIELDS,
    BusinessRecord,
    ConsentState,
    CustomerRecord,
    CustomerStatus,
    ObjectionRecord,
    ReviewRequestRecord,
    utcnow,
)
from dsr_engine.core.encryption import DecryptionError, FieldEncryptionService, KeyNotFoundError, field_ref
from dsr_engine.core.input_validation import InputValidator
from dsr_engine.store.base import SubjectStore

log = structlog.get_logger(__name__)


class SubjectDirectory:
    """Reads and writes platform records on behalf of the compliance services."""

    def __init__(self, store: SubjectStore, encryption: FieldEncryptionService) -> None:
        self._store = store
        self._encryption = encryption

    @property
    def store(self) -> SubjectStore:
        return self._store

    # ------------------------------------------------------------------ #
    # Businesses
    # ------------------------------------------------------------------ #

    async def get_business(self, business_id: uuid.UUID) -> BusinessRecord | None:
        return await self._store.get_business(business_id)

    async def register_business(self, name: str, business_id: uuid.UUID | None = None) -> BusinessRecord:
        business = BusinessRecord(id=business_id or uuid.uuid4(), name=name)
        await self._store.add_business(business)
        log.info("directory.business_registered", business_id=str(business.id))
        return business

    # ------------------------------------------------------------------ #
    # Customers
    # ------------------------------------------------------------------ #

    async def register_customer(
        self,
        business_id: uuid.UUID,
        *,
        email: str,
        phone: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        address: str | None = None,
        status: CustomerStatus = CustomerStatus.ACTIVE,
        consent_state: ConsentState = ConsentState.GRANTED,
        created_at: datetime | None = None,
        last_activity_at: datetime | None = None,
    ) -> CustomerRecord:
        now = utcnow()
        customer = CustomerRecord(
            id=uuid.uuid4(),
            business_id=business_id,
            created_at=created_at or now,
            last_activity_at=last_activity_at or created_at or now,
            status=status,
            consent_state=consent_state,
        )
        values = {
            "email": email,
            "phone": phone,
            "first_name": first_name,
            "last_name": last_name,
            "address": address,
        }
        await self._encrypt_into(customer, values)
        await self._store.add_customer(customer)
        return customer

    async def get_customer(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> CustomerRecord | None:
        return await self._store.get_customer(business_id, customer_id)

    async def find_by_contact(
        self,
        business_id: uuid.UUID,
        email: str | None,
        phone: str | None = None,
    ) -> list[CustomerRecord]:
        """Customers of one business matching either contact value."""
        email_index = self._encryption.blind_index(email) if email else None
        phone_index = (
            self._encryption.blind_index(InputValidator.normalize_phone(phone)) if phone else None
        )
        return await self._store.find_customers(
            business_id,
            email_index=email_index,
            phone_index=phone_index,
        )

    async def update_customer_fields(self, customer: CustomerRecord, updates: dict[str, str]) -> CustomerRecord:
        """Re-encrypt the given PII fields and refresh the lookup indexes."""
        await self._encrypt_into(customer, updates)
        customer.last_activity_at = utcnow()
        await self._store.save_customer(customer)
        return customer

    async def save_customer(self, customer: CustomerRecord) -> None:
        await self._store.save_customer(customer)

    async def decrypt_profile(self, customer: CustomerRecord) -> dict[str, str | None]:
        """Plaintext PII of a customer; shredded fields come back as None."""
        return {
            name: await self._decrypt_field(customer.key_ref, name, customer.encrypted_fields.get(name))
            for name in CUSTOMER_PII_FIELDS
        }

    # ------------------------------------------------------------------ #
    # Review requests
    # ------------------------------------------------------------------ #

    async def add_review_request(
        self,
        business_id: uuid.UUID,
        customer_id: uuid.UUID,
        *,
        channel: str,
        recipient: str,
        message: str,
        status: str = "SENT",
        created_at: datetime | None = None,
    ) -> ReviewRequestRecord:
        now = utcnow()
        review = ReviewRequestRecord(
            id=uuid.uuid4(),
            business_id=business_id,
            customer_id=customer_id,
            channel=channel,
            status=status,
            created_at=created_at or now,
            last_activity_at=created_at or now,
        )
        for name, value in (("recipient", recipient), ("message", message)):
            review.encrypted_fields[name] = await self._encryption.encrypt(field_ref(review.key_ref, name), value)
        await self._store.add_review_request(review)
        return review

    async def get_review_request(self, business_id: uuid.UUID, review_id: uuid.UUID) -> ReviewRequestRecord | None:
        return await self._store.get_review_request(business_id, review_id)

    async def list_review_requests(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ReviewRequestRecord]:
        return await self._store.list_review_requests(business_id, customer_id)

    async def save_review_request(self, review: ReviewRequestRecord) -> None:
        await self._store.save_review_request(review)

    async def record_objection(self, objection: ObjectionRecord) -> None:
        await self._store.add_objection(objection)

    async def list_objections(self, business_id: uuid.UUID, customer_id: uuid.UUID) -> list[ObjectionRecord]:
        return await self._store.list_objections(business_id, customer_id)

    async def decrypt_review(self, review: ReviewRequestRecord) -> dict[str, str | None]:
        return {
            name: await self._decrypt_field(review.key_ref, name, review.encrypted_fields.get(name))
            for name in REVIEW_REQUEST_PII_FIELDS
        }

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    async def _encrypt_into(self, customer: CustomerRecord, values: dict[str, str | None]) -> None:
        for name, value in values.items():
            if name not in CUSTOMER_PII_FIELDS:
                raise ValueError(f"Unknown customer field: {name}")
            if value is None:
                customer.encrypted_fields.pop(name, None)
                continue
            if name == "phone":
                value = InputValidator.normalize_phone(value)
            customer.encrypted_fields[name] = await self._encryption.encrypt(
                field_ref(customer.key_ref, name), value
            )
            if name == "email":
                customer.email_index = self._encryption.blind_index(value)
            elif name == "phone":
                customer.phone_index = self._encryption.blind_index(value)

    async def _decrypt_field(self, key_ref: str, name: str, ciphertext: str | None) -> str | None:
        if ciphertext is None:
            return None
        try:
            return await self._encryption.decrypt(field_ref(key_ref, name), ciphertext)
        except KeyNotFoundError:
            return None
        except DecryptionError:
            log.error("directory.field_undecryptable", key_ref=key_ref, field=name)
            return None
