"""Tax-lot ledger schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- tax_lots ---
    op.create_table(
        "tax_lots",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("holding_id", sa.String(36), nullable=True),
        sa.Column("symbol", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("acquisition_date", sa.Date(), nullable=False),
        sa.Column("acquisition_price", sa.Float(), nullable=False),
        sa.Column("cost_basis", sa.Float(), nullable=False),
        sa.Column("disposition_date", sa.Date(), nullable=True),
        sa.Column("disposition_price", sa.Float(), nullable=True),
        sa.Column("proceeds", sa.Float(), server_default="0"),
        sa.Column("gain_loss", sa.Float(), server_default="0"),
        sa.Column("holding_period_days", sa.Integer(), server_default="0"),
        sa.Column("is_closed", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_wash_sale", sa.Boolean(), server_default=sa.false()),
        sa.Column("wash_sale_replacement_lot_id", sa.String(36), nullable=True),
        sa.Column("wash_sale_adjustment", sa.Float(), server_default="0"),
        sa.Column("origin_lot_id", sa.String(36), nullable=False),
        sa.Column("parent_lot_id", sa.String(36), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tax_lots_user_id", "tax_lots", ["user_id"])
    op.create_index("ix_tax_lots_holding_id", "tax_lots", ["holding_id"])
    op.create_index("ix_tax_lots_symbol", "tax_lots", ["symbol"])
    op.create_index("ix_tax_lots_acquisition_date", "tax_lots", ["acquisition_date"])
    op.create_index("ix_tax_lots_disposition_date", "tax_lots", ["disposition_date"])
    op.create_index("ix_tax_lots_is_closed", "tax_lots", ["is_closed"])
    op.create_index("ix_tax_lots_is_wash_sale", "tax_lots", ["is_wash_sale"])
    op.create_index("ix_tax_lots_origin_lot_id", "tax_lots", ["origin_lot_id"])
    op.create_index("idx_tax_lots_user_symbol", "tax_lots", ["user_id", "symbol"])

    # --- capital_gains_summary ---
    op.create_table(
        "capital_gains_summary",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("symbol", sa.String(20), nullable=False),
        sa.Column("short_term_gain_loss", sa.Float(), server_default="0"),
        sa.Column("long_term_gain_loss", sa.Float(), server_default="0"),
        sa.Column("total_gain_loss", sa.Float(), server_default="0"),
        sa.Column("positions_closed", sa.Integer(), server_default="0"),
        sa.Column("wash_sale_disallowed", sa.Float(), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "tax_year", "symbol", name="uq_capital_gains_user_year_symbol"
        ),
    )
    op.create_index(
        "idx_capital_gains_summary_user_year", "capital_gains_summary", ["user_id", "tax_year"]
    )
    op.create_index("ix_capital_gains_summary_symbol", "capital_gains_summary", ["symbol"])

    # --- tax_events ---
    op.create_table(
        "tax_events",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("symbol", sa.String(20), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_reported", sa.Boolean(), server_default=sa.false()),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tax_events_user_id", "tax_events", ["user_id"])
    op.create_index("ix_tax_events_event_type", "tax_events", ["event_type"])
    op.create_index("ix_tax_events_event_date", "tax_events", ["event_date"])
    op.create_index("ix_tax_events_tax_year", "tax_events", ["tax_year"])

    # --- tax_preferences ---
    op.create_table(
        "tax_preferences",
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("tax_jurisdiction", sa.String(10), server_default="US"),
        sa.Column("default_tax_year", sa.Integer(), nullable=False),
        sa.Column("short_term_threshold_days", sa.Integer(), server_default="365"),
        sa.Column("enable_wash_sale_detection", sa.Boolean(), server_default=sa.true()),
        sa.Column("wash_sale_window_days", sa.Integer(), server_default="30"),
        sa.Column("auto_harvest_losses", sa.Boolean(), server_default=sa.false()),
        sa.Column("harvest_threshold_percent", sa.Float(), server_default="5.0"),
        sa.Column("min_harvest_amount", sa.Float(), server_default="1000.0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )


def downgrade() -> None:
    op.drop_table("tax_preferences")
    op.drop_table("tax_events")
    op.drop_table("capital_gains_summary")
    op.drop_table("tax_lots")
