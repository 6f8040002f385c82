"""Tax-Lot Data Models.

Dataclasses for tax lots, disposition results, capital-gains summaries,
tax events, harvesting opportunities, and the annual report.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional
import uuid

import pandas as pd

from src.tax_lots.config import HoldingPeriod, TaxEventType


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# Tax Lots
# =============================================================================

@dataclass
class TaxLot:
    """A discrete batch of a security acquired at one price and date.

    A record is either fully open (no disposition fields) or fully
    closed. Partial disposals never leave a record half-closed: the
    ledger closes the disposed quantity and writes a separate open
    remainder sharing the same ``origin_lot_id``.
    """
    id: str = field(default_factory=_new_id)
    user_id: str = ""
    symbol: str = ""
    quantity: float = 0.0
    acquisition_date: date = field(default_factory=date.today)
    acquisition_price: float = 0.0
    cost_basis: float = -1.0  # < 0 means "derive from quantity x price"
    holding_id: Optional[str] = None

    # Disposition (closed records only)
    disposition_date: Optional[date] = None
    disposition_price: Optional[float] = None
    proceeds: float = 0.0
    gain_loss: float = 0.0
    holding_period_days: int = 0
    is_closed: bool = False

    # Wash sales
    is_wash_sale: bool = False
    wash_sale_replacement_lot_id: Optional[str] = None
    wash_sale_adjustment: float = 0.0  # Deferred losses added to this basis

    # Lineage
    origin_lot_id: str = ""
    parent_lot_id: Optional[str] = None

    version: int = 1
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.cost_basis < 0:
            self.cost_basis = self.quantity * self.acquisition_price
        if not self.origin_lot_id:
            self.origin_lot_id = self.id

    @property
    def is_open(self) -> bool:
        return not self.is_closed

    @property
    def cost_per_share(self) -> float:
        """Cost basis per unit, including wash-sale adjustments."""
        if self.quantity == 0:
            return 0.0
        return self.cost_basis / self.quantity

    @property
    def deductible_gain_loss(self) -> float:
        """Gain or loss that counts toward the disposal year.

        A wash-sale loss is deferred onto the replacement lot, so it
        contributes nothing here.
        """
        if self.is_wash_sale and self.gain_loss < 0:
            return 0.0
        return self.gain_loss

    @property
    def disallowed_loss(self) -> float:
        if self.is_wash_sale and self.gain_loss < 0:
            return abs(self.gain_loss)
        return 0.0

    def is_long_term(self, threshold_days: int) -> bool:
        return self.holding_period_days >= threshold_days

    def holding_period(self, threshold_days: int) -> HoldingPeriod:
        if self.is_long_term(threshold_days):
            return HoldingPeriod.LONG_TERM
        return HoldingPeriod.SHORT_TERM

    def days_held(self, as_of: Optional[date] = None) -> int:
        """Days held, up to disposition for closed records."""
        if self.is_closed and self.disposition_date is not None:
            return self.holding_period_days
        return ((as_of or date.today()) - self.acquisition_date).days

    def days_to_long_term(self, threshold_days: int, as_of: Optional[date] = None) -> int:
        """Days until long-term treatment. Zero or negative once reached."""
        return threshold_days - self.days_held(as_of)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "holding_id": self.holding_id,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "acquisition_date": self.acquisition_date.isoformat(),
            "acquisition_price": self.acquisition_price,
            "cost_basis": self.cost_basis,
            "disposition_date": _iso(self.disposition_date),
            "disposition_price": self.disposition_price,
            "proceeds": self.proceeds,
            "gain_loss": self.gain_loss,
            "holding_period_days": self.holding_period_days,
            "is_closed": self.is_closed,
            "is_wash_sale": self.is_wash_sale,
            "wash_sale_replacement_lot_id": self.wash_sale_replacement_lot_id,
            "wash_sale_adjustment": self.wash_sale_adjustment,
            "origin_lot_id": self.origin_lot_id,
            "parent_lot_id": self.parent_lot_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class DispositionResult:
    """Outcome of disposing all or part of a lot."""
    closed_portion: TaxLot
    cost_basis_sold: float
    is_long_term: bool
    remainder: Optional[TaxLot] = None
    wash_sale_replacement: Optional[TaxLot] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "closed_portion": self.closed_portion.to_dict(),
            "remainder": self.remainder.to_dict() if self.remainder else None,
            "cost_basis_sold": self.cost_basis_sold,
            "is_long_term": self.is_long_term,
            "wash_sale_replacement": (
                self.wash_sale_replacement.to_dict()
                if self.wash_sale_replacement else None
            ),
        }


# =============================================================================
# Capital Gains
# =============================================================================

@dataclass
class CapitalGainsSummary:
    """Per-symbol realized gains for one user and tax year.

    Derived from closed lots; always rebuilt, never patched.
    """
    user_id: str = ""
    tax_year: int = 0
    symbol: str = ""
    short_term_gain_loss: float = 0.0
    long_term_gain_loss: float = 0.0
    positions_closed: int = 0
    wash_sale_disallowed: float = 0.0
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def key(self) -> tuple[str, int, str]:
        return (self.user_id, self.tax_year, self.symbol)

    @property
    def total_gain_loss(self) -> float:
        return self.short_term_gain_loss + self.long_term_gain_loss

    def same_figures(self, other: "CapitalGainsSummary") -> bool:
        """Compare everything except the write timestamp."""
        return (
            self.key == other.key
            and self.short_term_gain_loss == other.short_term_gain_loss
            and self.long_term_gain_loss == other.long_term_gain_loss
            and self.positions_closed == other.positions_closed
            and self.wash_sale_disallowed == other.wash_sale_disallowed
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tax_year": self.tax_year,
            "symbol": self.symbol,
            "short_term_gain_loss": self.short_term_gain_loss,
            "long_term_gain_loss": self.long_term_gain_loss,
            "total_gain_loss": self.total_gain_loss,
            "positions_closed": self.positions_closed,
            "wash_sale_disallowed": self.wash_sale_disallowed,
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Tax Events
# =============================================================================

@dataclass(frozen=True)
class TaxEvent:
    """Externally supplied taxable event (dividend, interest, ...)."""
    user_id: str
    event_type: TaxEventType
    symbol: str
    event_date: date
    amount: float
    id: str = field(default_factory=_new_id)
    description: Optional[str] = None
    is_reported: bool = False
    tax_year: int = 0
    created_at: datetime = field(default_factory=_utc_now)
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if not self.tax_year:
            object.__setattr__(self, "tax_year", self.event_date.year)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type.value,
            "symbol": self.symbol,
            "event_date": self.event_date.isoformat(),
            "amount": self.amount,
            "description": self.description,
            "is_reported": self.is_reported,
            "tax_year": self.tax_year,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


# =============================================================================
# Harvesting
# =============================================================================

@dataclass
class HarvestingOpportunity:
    """Open lot carrying an unrealized loss.

    Derived on request from current prices; never a source of truth.
    """
    user_id: str = ""
    lot_id: str = ""
    symbol: str = ""
    quantity: float = 0.0
    current_price: float = 0.0
    current_value: float = 0.0
    cost_basis: float = 0.0
    unrealized_loss: float = 0.0
    unrealized_loss_percent: float = 0.0
    holding_period_days: int = 0
    holding_period: HoldingPeriod = HoldingPeriod.SHORT_TERM
    is_harvestable: bool = True
    reason_not_harvestable: Optional[str] = None
    identified_date: date = field(default_factory=date.today)
    expires_at: date = field(default_factory=date.today)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "lot_id": self.lot_id,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "current_price": self.current_price,
            "current_value": self.current_value,
            "cost_basis": self.cost_basis,
            "unrealized_loss": self.unrealized_loss,
            "unrealized_loss_percent": self.unrealized_loss_percent,
            "holding_period_days": self.holding_period_days,
            "holding_period": self.holding_period.value,
            "is_harvestable": self.is_harvestable,
            "reason_not_harvestable": self.reason_not_harvestable,
            "identified_date": self.identified_date.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


# =============================================================================
# Reports
# =============================================================================

@dataclass
class SymbolGains:
    """One row of the report's per-symbol breakdown."""
    symbol: str
    short_term_gain_loss: float = 0.0
    long_term_gain_loss: float = 0.0
    total_gain_loss: float = 0.0
    positions_closed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "short_term_gain_loss": self.short_term_gain_loss,
            "long_term_gain_loss": self.long_term_gain_loss,
            "total_gain_loss": self.total_gain_loss,
            "positions_closed": self.positions_closed,
        }


@dataclass
class TaxReport:
    """Annual tax report for one user."""
    user_id: str = ""
    tax_year: int = 0

    # Realized capital gains
    short_term_gains: float = 0.0
    long_term_gains: float = 0.0
    positions_closed: int = 0

    # External events
    dividends: float = 0.0
    interest: float = 0.0
    capital_gain_distributions: float = 0.0
    return_of_capital: float = 0.0
    wash_sales: float = 0.0

    symbols: list[SymbolGains] = field(default_factory=list)
    generated_at: datetime = field(default_factory=_utc_now)

    @property
    def total_gains(self) -> float:
        return self.short_term_gains + self.long_term_gains

    def to_frame(self) -> pd.DataFrame:
        """Symbol breakdown as a DataFrame indexed by symbol."""
        columns = [
            "symbol",
            "short_term_gain_loss",
            "long_term_gain_loss",
            "total_gain_loss",
            "positions_closed",
        ]
        frame = pd.DataFrame([s.to_dict() for s in self.symbols], columns=columns)
        return frame.set_index("symbol")

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tax_year": self.tax_year,
            "short_term_gains": self.short_term_gains,
            "long_term_gains": self.long_term_gains,
            "total_gains": self.total_gains,
            "dividends": self.dividends,
            "interest": self.interest,
            "capital_gain_distributions": self.capital_gain_distributions,
            "return_of_capital": self.return_of_capital,
            "wash_sales": self.wash_sales,
            "positions_closed": self.positions_closed,
            "symbols": [s.to_dict() for s in self.symbols],
            "generated_at": self.generated_at.isoformat(),
        }
