"""Core: room types, rate plans, pricing rules, availability and exchange rates

Revision ID: core_001
Revises:
Create Date: 2026-09-21
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "core_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- room_types ---
    op.create_table(
        "room_types",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("code", sa.String(32), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("max_occupancy", sa.Integer, nullable=False, server_default="2"),
        sa.Column("base_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("base_currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("total_rooms", sa.Integer, nullable=False, server_default="10"),
        sa.Column("timezone", sa.String(64)),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "code", name="uq_room_types_hotel_code"),
    )
    op.create_index("ix_room_types_hotel_id", "room_types", ["hotel_id"])

    # --- rate_plans ---
    op.create_table(
        "rate_plans",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", UUID(as_uuid=True), sa.ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("type", sa.String(30), nullable=False, server_default="bar"),
        sa.Column("base_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("base_currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("valid_from", sa.Date, nullable=False),
        sa.Column("valid_to", sa.Date, nullable=False),
        sa.Column("day_of_week_rates", JSONB),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("min_advance_days", sa.Integer),
        sa.Column("max_advance_days", sa.Integer),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("valid_from < valid_to", name="ck_rate_plans_validity"),
        sa.CheckConstraint("priority >= 0 AND priority <= 10", name="ck_rate_plans_priority"),
    )
    op.create_index("idx_rate_plans_lookup", "rate_plans", ["hotel_id", "room_type_id", "active"])

    # --- seasonal_rates ---
    op.create_table(
        "seasonal_rates",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", UUID(as_uuid=True), sa.ForeignKey("room_types.id", ondelete="CASCADE")),
        sa.Column("season", sa.String(50), nullable=False),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("rate", sa.Numeric(12, 2)),
        sa.Column("discount_pct", sa.Numeric(6, 2)),
        sa.Column("priority", sa.Integer, server_default="0"),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("(rate IS NULL) <> (discount_pct IS NULL)", name="ck_seasonal_rates_one_of"),
        sa.CheckConstraint("start_date <= end_date", name="ck_seasonal_rates_dates"),
    )
    op.create_index("idx_seasonal_rates_lookup", "seasonal_rates", ["hotel_id", "start_date", "end_date"])

    # --- rate_overrides ---
    op.create_table(
        "rate_overrides",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", UUID(as_uuid=True), sa.ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False),
        sa.Column("rate_plan_id", UUID(as_uuid=True), sa.ForeignKey("rate_plans.id", ondelete="CASCADE")),
        sa.Column("rate_plan_key", sa.String(36), nullable=False, server_default="*"),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("reason", sa.Text),
        sa.Column("approved_by", sa.String(100)),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "room_type_id", "rate_plan_key", "date", name="uq_rate_overrides_key"),
        sa.CheckConstraint("rate >= 0", name="ck_rate_overrides_rate"),
    )
    op.create_index("idx_rate_overrides_lookup", "rate_overrides", ["hotel_id", "room_type_id", "date"])

    # --- dynamic_rules ---
    op.create_table(
        "dynamic_rules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("rule_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(200)),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("conditions", JSONB, server_default="{}"),
        sa.Column("adjustment", JSONB, nullable=False),
        sa.Column("room_type_ids", JSONB),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "rule_id", name="uq_dynamic_rules_rule"),
    )
    op.create_index("idx_dynamic_rules_hotel", "dynamic_rules", ["hotel_id", "active"])

    # --- promo_codes ---
    op.create_table(
        "promo_codes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("discount_type", sa.String(20), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3)),
        sa.Column("min_stay_value", sa.Numeric(12, 2)),
        sa.Column("min_nights", sa.Integer),
        sa.Column("valid_from", sa.Date, nullable=False),
        sa.Column("valid_to", sa.Date, nullable=False),
        sa.Column("max_uses", sa.Integer),
        sa.Column("uses", sa.Integer, server_default="0"),
        sa.Column("active", sa.Boolean, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "code", name="uq_promo_codes_code"),
    )

    # --- demand_forecasts ---
    op.create_table(
        "demand_forecasts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", UUID(as_uuid=True), sa.ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("demand_level", sa.String(20), nullable=False),
        sa.Column("predicted_occupancy", sa.Numeric(5, 2), nullable=False),
        sa.Column("elasticity", sa.Numeric(6, 3), nullable=False),
        sa.Column("confidence", sa.Numeric(4, 3), nullable=False),
        sa.Column("factors", JSONB),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_demand_forecasts_key"),
    )

    # --- availability_rows ---
    op.create_table(
        "availability_rows",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", UUID(as_uuid=True), sa.ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("total_rooms", sa.Integer, nullable=False),
        sa.Column("sold_rooms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("blocked_rooms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stop_sell", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("closed_to_arrival", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("closed_to_departure", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("min_stay", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_stay", sa.Integer, nullable=False, server_default="30"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_availability_rows_key"),
        sa.CheckConstraint("sold_rooms >= 0", name="ck_availability_sold"),
        sa.CheckConstraint("blocked_rooms >= 0", name="ck_availability_blocked"),
        sa.CheckConstraint("sold_rooms + blocked_rooms <= total_rooms", name="ck_availability_capacity"),
        sa.CheckConstraint("min_stay >= 1 AND min_stay <= max_stay", name="ck_availability_stay"),
    )

    # --- exchange_rates (append-only) ---
    op.create_table(
        "exchange_rates",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("from_currency", sa.String(3), nullable=False),
        sa.Column("to_currency", sa.String(3), nullable=False),
        sa.Column("rate", sa.Numeric(24, 12), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("as_of", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_exchange_rates_pair", "exchange_rates", ["from_currency", "to_currency", "as_of"])


def downgrade() -> None:
    op.drop_table("exchange_rates")
    op.drop_table("availability_rows")
    op.drop_table("demand_forecasts")
    op.drop_table("promo_codes")
    op.drop_table("dynamic_rules")
    op.drop_table("rate_overrides")
    op.drop_table("seasonal_rates")
    op.drop_table("rate_plans")
    op.drop_table("room_types")
