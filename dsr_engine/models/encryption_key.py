"""Wrapped per-record data keys.

A destroyed key keeps its row as a tombstone (``wrapped_key`` NULL,
``destroyed_at`` set) so the same key reference can never be re-issued and
shredded ciphertext stays unreadable.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from dsr_engine.database import Base


class EncryptionKeyRow(Base):
    __tablename__ = "encryption_keys"

    key_ref: Mapped[str] = mapped_column(String(128), primary_key=True, comment="'<entity_type>/<entity_id>'")
    wrapped_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    destroyed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
