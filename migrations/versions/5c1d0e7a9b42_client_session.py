"""client session table

Revision ID: 5c1d0e7a9b42
Revises:
Create Date: 2026-10-18 09:12:40.511203

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c1d0e7a9b42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the durable session store."""
    op.create_table(
        "client_session",
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("owner_kind", sa.String(length=16), nullable=False),
        sa.Column("owner_key", sa.Text(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False),
        sa.Column("request_limit", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("window_started_at", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index(
        "ix_client_session_owner",
        "client_session",
        ["owner_kind", "owner_key", "is_active"],
    )
    op.create_index("ix_client_session_expires_at", "client_session", ["expires_at"])


def downgrade() -> None:
    """Drop the durable session store."""
    op.drop_index("ix_client_session_expires_at", table_name="client_session")
    op.drop_index("ix_client_session_owner", table_name="client_session")
    op.drop_table("client_session")
