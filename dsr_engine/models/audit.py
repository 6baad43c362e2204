"""ComplianceAuditEventRow - one sealed entry of a business's audit chain.

Design principles:
- Append-only: never update or delete audit rows
- (business_id, sequence) is unique, so two writers cannot both extend the
  chain from the same head
- ``hash`` covers every other column except ``prev_hash``; any edit to a
  stored row is detected by integrity verification
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from dsr_engine.database import Base


class ComplianceAuditEventRow(Base):
    __tablename__ = "compliance_audit_events"
    __table_args__ = (
        UniqueConstraint("business_id", "sequence", name="uq_compliance_audit_events_chain"),
        Index("ix_compliance_audit_events_business_created", "business_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)

    def __repr__(self) -> str:
        return (
            f"<ComplianceAuditEventRow business={self.business_id} seq={self.sequence} "
            f"type={self.event_type!r}>"
        )
