"""Initial schema for Runnermatch.

Creates the core tables: performers, tasks and offers, together with the
offer constraints the dispatcher relies on (one offer per runner per task,
at most one pending offer per task).

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    task_kind = sa.Enum("errand", "commission", name="taskkind")
    task_status = sa.Enum(
        "pending", "assigned", "unfulfilled", "cancelled", "completed",
        name="taskstatus",
    )
    offer_state = sa.Enum("pending", "accepted", "declined", "expired", name="offerstate")

    # Performers table
    op.create_table(
        "performers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Tasks table
    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("kind", task_kind, nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("requester_id", sa.Text(), nullable=True),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("origin_latitude", sa.Float(), nullable=True),
        sa.Column("origin_longitude", sa.Float(), nullable=True),
        sa.Column("status", task_status, nullable=False, server_default="pending"),
        sa.Column(
            "assigned_performer_id",
            sa.Uuid(),
            sa.ForeignKey("performers.id"),
            nullable=True,
        ),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Offers table
    op.create_table(
        "offers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("task_id", sa.Uuid(), sa.ForeignKey("tasks.id"), nullable=False),
        sa.Column(
            "performer_id", sa.Uuid(), sa.ForeignKey("performers.id"), nullable=False
        ),
        sa.Column("state", offer_state, nullable=False, server_default="pending"),
        sa.Column("offered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("task_id", "performer_id", name="uq_offers_task_performer"),
        sa.CheckConstraint("expires_at > offered_at", name="ck_offers_deadline_after_offer"),
    )

    # A task holds at most one pending offer
    op.create_index(
        "uq_offers_task_pending",
        "offers",
        ["task_id"],
        unique=True,
        postgresql_where=sa.text("state = 'pending'"),
        sqlite_where=sa.text("state = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("uq_offers_task_pending", table_name="offers")
    op.drop_table("offers")
    op.drop_table("tasks")
    op.drop_table("performers")

    # Drop enum types
    sa.Enum(name="offerstate").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="taskstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="taskkind").drop(op.get_bind(), checkfirst=True)
