"""Database indexes for Runnermatch.

Creates indexes backing the dispatcher's hot queries: the pending task
poll, the live runner snapshot (availability plus bounding box), the
per-runner history lookup and the orphaned offer sweep.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tasks: pending task poll, optionally filtered by kind
    op.create_index("ix_tasks_status_kind", "tasks", ["status", "kind"])

    # Tasks: completed history per runner
    op.create_index(
        "ix_tasks_assigned_performer_status",
        "tasks",
        ["assigned_performer_id", "status"],
    )

    # Performers: available runners inside a bounding box
    op.create_index(
        "ix_performers_available_lat_lon",
        "performers",
        ["is_available", "latitude", "longitude"],
    )

    # Offers: overdue pending offers for the sweeper
    op.create_index("ix_offers_state_expires_at", "offers", ["state", "expires_at"])


def downgrade() -> None:
    op.drop_index("ix_offers_state_expires_at", table_name="offers")
    op.drop_index("ix_performers_available_lat_lon", table_name="performers")
    op.drop_index("ix_tasks_assigned_performer_status", table_name="tasks")
    op.drop_index("ix_tasks_status_kind", table_name="tasks")
