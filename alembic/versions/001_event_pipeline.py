"""Create event pipeline schema - queue, log, handler state, idempotency, projections

Revision ID: 001
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. queued_events
    op.create_table(
        "queued_events",
        sa.Column("id", sa.BigInteger, sa.Identity(always=False), primary_key=True),
        sa.Column("event_kind", sa.String(100), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("schema_version", sa.Integer, server_default="1", nullable=False),
        sa.Column("status", sa.String(32), server_default="PENDING", nullable=False),
        sa.Column("attempts", sa.Integer, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index(
        "ix_queued_events_status_updated_at", "queued_events", ["status", "updated_at", "id"]
    )

    # 2. event_log
    op.create_table(
        "event_log",
        sa.Column("id", sa.BigInteger, primary_key=True),
        sa.Column("event_kind", sa.String(100), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("schema_version", sa.Integer, server_default="1", nullable=False),
        sa.Column("status", sa.String(32), server_default="COMPLETED", nullable=False),
        sa.Column("errors", JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("attempts", sa.Integer, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finalized_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_event_log_status_id", "event_log", ["status", "id"])

    # 3. event_handler_state
    op.create_table(
        "event_handler_state",
        sa.Column("event_id", sa.BigInteger, primary_key=True),
        sa.Column("handler_id", sa.String(255), primary_key=True),
        sa.Column("outcome_type", sa.String(32), nullable=False),
        sa.Column("outcome", JSONB, nullable=False),
        sa.Column("attempts", sa.Integer, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    # 4. idempotency_records
    op.create_table(
        "idempotency_records",
        sa.Column("event_id", sa.BigInteger, primary_key=True),
        sa.Column("sub_task", sa.String(255), primary_key=True),
        sa.Column("event_kind", sa.String(100), nullable=False),
        sa.Column("status", sa.String(32), server_default="COMPLETED", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    # 5. projection_builder_state
    op.create_table(
        "projection_builder_state",
        sa.Column("builder_name", sa.String(255), primary_key=True),
        sa.Column("position", sa.BigInteger, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    # 6. application_processing_delay
    op.create_table(
        "application_processing_delay",
        sa.Column("form_id", sa.String(64), primary_key=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    )

    # 7. grant_letter_views
    op.create_table(
        "grant_letter_views",
        sa.Column("grant_number", sa.String(64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("first_viewed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("grant_letter_views")
    op.drop_table("application_processing_delay")
    op.drop_table("projection_builder_state")
    op.drop_table("idempotency_records")
    op.drop_table("event_handler_state")
    op.drop_index("ix_event_log_status_id", table_name="event_log")
    op.drop_table("event_log")
    op.drop_index("ix_queued_events_status_updated_at", table_name="queued_events")
    op.drop_table("queued_events")
