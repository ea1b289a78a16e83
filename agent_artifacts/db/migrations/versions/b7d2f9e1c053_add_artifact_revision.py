"""Add artifacts.revision for conditional updates

Revision ID: b7d2f9e1c053
Revises: a3c1e7f04b21
Create Date: 2026-10-20

Appending to an artifact reads the body, merges, and writes it back. The
write is now guarded by the revision that was read, so a concurrent append
is retried instead of overwritten.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "b7d2f9e1c053"
down_revision = "a3c1e7f04b21"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("artifacts") as batch_op:
        batch_op.add_column(sa.Column("revision", sa.Integer(), nullable=False, server_default="1"))


def downgrade() -> None:
    with op.batch_alter_table("artifacts") as batch_op:
        batch_op.drop_column("revision")
