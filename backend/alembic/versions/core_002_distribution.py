"""Distribution: event outbox, channel configs and calls, reconciliation, supervision alerts

Revision ID: core_002
Revises: core_001
Create Date: 2026-09-28
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "core_002"
down_revision = "core_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- event_envelopes ---
    op.create_table(
        "event_envelopes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("keys", JSONB, server_default="[]"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="3"),
        sa.Column("original_priority", sa.Integer, nullable=False, server_default="3"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("reason", sa.String(50)),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="8"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("leased_until", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("channel_state", JSONB, server_default="{}"),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("idx_event_envelopes_drain", "event_envelopes", ["type", "status", "next_attempt_at"])
    op.create_index("idx_event_envelopes_queue", "event_envelopes", ["status", "priority", "created_at"])
    op.create_index("idx_event_envelopes_hotel", "event_envelopes", ["hotel_id", "status"])

    # --- channel_configs ---
    op.create_table(
        "channel_configs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(50), nullable=False),
        sa.Column("channel_name", sa.String(100)),
        sa.Column("adapter", sa.String(20), nullable=False),
        sa.Column("hotel_timezone", sa.String(64)),
        sa.Column("credentials", JSONB),
        sa.Column("backup_credentials", JSONB),
        sa.Column("credential_status", sa.String(20), server_default="active"),
        sa.Column("credential_version", sa.Integer, server_default="1"),
        sa.Column("credential_expires_at", sa.DateTime(timezone=True)),
        sa.Column("credential_rotated_at", sa.DateTime(timezone=True)),
        sa.Column("endpoints", JSONB, server_default="{}"),
        sa.Column("supported_currencies", JSONB, server_default="[]"),
        sa.Column("sync_flags", JSONB, server_default="[]"),
        sa.Column("timeout_ms", sa.Integer),
        sa.Column("retry_policy", JSONB),
        sa.Column("max_concurrency", sa.Integer),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("connection_status", sa.String(20), server_default="connected"),
        sa.Column("consecutive_failures", sa.Integer, server_default="0"),
        sa.Column("last_sync_rates", sa.DateTime(timezone=True)),
        sa.Column("last_sync_inventory", sa.DateTime(timezone=True)),
        sa.Column("last_sync_content", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "channel_id", name="uq_channel_configs_key"),
    )

    # --- channel_calls ---
    op.create_table(
        "channel_calls",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("event_id", UUID(as_uuid=True), sa.ForeignKey("event_envelopes.id", ondelete="SET NULL")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(50), nullable=False),
        sa.Column("currency", sa.String(3)),
        sa.Column("method", sa.String(10), server_default="POST"),
        sa.Column("url", sa.String(500), nullable=False),
        sa.Column("request_payload", JSONB),
        sa.Column("status_code", sa.Integer),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error", sa.Text),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_channel_calls_event", "channel_calls", ["event_id"])

    # --- channel_bookings ---
    op.create_table(
        "channel_bookings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(50), nullable=False),
        sa.Column("channel_booking_id", sa.String(100), nullable=False),
        sa.Column("room_type_id", UUID(as_uuid=True), nullable=False),
        sa.Column("check_in", sa.Date, nullable=False),
        sa.Column("check_out", sa.Date, nullable=False),
        sa.Column("rooms", sa.Integer, nullable=False, server_default="1"),
        sa.Column("guest_name", sa.String(200)),
        sa.Column("guest_email", sa.String(200)),
        sa.Column("amount", sa.Numeric(12, 2)),
        sa.Column("currency", sa.String(3)),
        sa.Column("status", sa.String(20), nullable=False, server_default="confirmed"),
        sa.Column("source", sa.String(20), nullable=False, server_default="channel"),
        sa.Column("last_sequence", sa.Integer, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("channel", "channel_booking_id", name="uq_channel_bookings_ref"),
    )
    op.create_index("idx_channel_bookings_hotel", "channel_bookings", ["hotel_id", "check_in"])

    # --- reconciliation_records ---
    op.create_table(
        "reconciliation_records",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(50), nullable=False),
        sa.Column("channel_booking_id", sa.String(100), nullable=False),
        sa.Column("internal_booking_id", UUID(as_uuid=True)),
        sa.Column("modification_type", sa.String(20), nullable=False),
        sa.Column("sequence", sa.Integer, server_default="0"),
        sa.Column("old_values", JSONB),
        sa.Column("new_values", JSONB),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_reconciliation_booking", "reconciliation_records", ["channel_id", "channel_booking_id"])

    # --- inbound_operations (idempotency ledger) ---
    op.create_table(
        "inbound_operations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("channel", sa.String(50), nullable=False),
        sa.Column("channel_booking_id", sa.String(100), nullable=False),
        sa.Column("modification_type", sa.String(20), nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reconciliation_id", UUID(as_uuid=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "channel", "channel_booking_id", "modification_type", "sequence",
            name="uq_inbound_operations_key",
        ),
    )

    # --- supervision_alerts ---
    op.create_table(
        "supervision_alerts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False, server_default="warning"),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("body", sa.Text),
        sa.Column("reference_type", sa.String(30)),
        sa.Column("reference_id", sa.String(100)),
        sa.Column("details", JSONB),
        sa.Column("is_acknowledged", sa.Boolean, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_supervision_alerts_hotel", "supervision_alerts", ["hotel_id", "is_acknowledged"])


def downgrade() -> None:
    op.drop_table("supervision_alerts")
    op.drop_table("inbound_operations")
    op.drop_table("reconciliation_records")
    op.drop_table("channel_bookings")
    op.drop_table("channel_calls")
    op.drop_table("channel_configs")
    op.drop_table("event_envelopes")
