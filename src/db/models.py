"""SQLAlchemy ORM models for the tax-lot ledger.

Tables:
- tax_lots: Lot records, open and closed (split records share origin_lot_id)
- capital_gains_summary: Per-symbol realized gains per user and tax year
- tax_events: Externally supplied dividends, interest, distributions, ...
- tax_preferences: Per-user thresholds and wash-sale window
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from src.db.base import Base


class TaxLotRecord(Base):
    """Tax lot row. Disposition columns are NULL while the lot is open."""

    __tablename__ = "tax_lots"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    holding_id = Column(String(36), nullable=True, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    quantity = Column(Float, nullable=False)
    acquisition_date = Column(Date, nullable=False, index=True)
    acquisition_price = Column(Float, nullable=False)
    cost_basis = Column(Float, nullable=False)

    # Disposition
    disposition_date = Column(Date, nullable=True, index=True)
    disposition_price = Column(Float, nullable=True)
    proceeds = Column(Float, default=0)
    gain_loss = Column(Float, default=0)
    holding_period_days = Column(Integer, default=0)
    is_closed = Column(Boolean, default=False, index=True)

    # Wash sales
    is_wash_sale = Column(Boolean, default=False, index=True)
    wash_sale_replacement_lot_id = Column(String(36), nullable=True)
    wash_sale_adjustment = Column(Float, default=0)

    # Lineage
    origin_lot_id = Column(String(36), nullable=False, index=True)
    parent_lot_id = Column(String(36), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    metadata_json = Column("metadata", Text, nullable=True)

    __table_args__ = (
        Index("idx_tax_lots_user_symbol", "user_id", "symbol"),
    )


class CapitalGainsSummaryRecord(Base):
    """Materialized per-symbol gains; rebuilt in full by the aggregator."""

    __tablename__ = "capital_gains_summary"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False)
    tax_year = Column(Integer, nullable=False)
    symbol = Column(String(20), nullable=False, index=True)
    short_term_gain_loss = Column(Float, default=0)
    long_term_gain_loss = Column(Float, default=0)
    total_gain_loss = Column(Float, default=0)
    positions_closed = Column(Integer, default=0)
    wash_sale_disallowed = Column(Float, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "tax_year", "symbol", name="uq_capital_gains_user_year_symbol"),
        Index("idx_capital_gains_summary_user_year", "user_id", "tax_year"),
    )


class TaxEventRecord(Base):
    """Immutable taxable event."""

    __tablename__ = "tax_events"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(40), nullable=False, index=True)
    symbol = Column(String(20), nullable=False)
    event_date = Column(Date, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    is_reported = Column(Boolean, default=False)
    tax_year = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    metadata_json = Column("metadata", Text, nullable=True)


class TaxPreferenceRecord(Base):
    """Per-user tax preferences (one row per user)."""

    __tablename__ = "tax_preferences"

    user_id = Column(String(36), primary_key=True)
    tax_jurisdiction = Column(String(10), default="US")
    default_tax_year = Column(Integer, nullable=False)
    short_term_threshold_days = Column(Integer, default=365)
    enable_wash_sale_detection = Column(Boolean, default=True)
    wash_sale_window_days = Column(Integer, default=30)
    auto_harvest_losses = Column(Boolean, default=False)
    harvest_threshold_percent = Column(Float, default=5.0)
    min_harvest_amount = Column(Float, default=1000.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    metadata_json = Column("metadata", Text, nullable=True)
