"""Add escalated_at to data_subject_requests.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Record when an overdue request was last escalated."""
    op.add_column(
        "data_subject_requests",
        sa.Column(
            "escalated_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Last overdue escalation; cleared when the deadline is extended",
        ),
    )


def downgrade() -> None:
    op.drop_column("data_subject_requests", "escalated_at")
