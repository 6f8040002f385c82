"""Tax-Lot Ledger Configuration.

Event types, holding-period classification, default thresholds, and the
per-user tax preference dataclass.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional

from src.settings import get_settings
from src.tax_lots.errors import InvalidPreference


# =============================================================================
# Enums
# =============================================================================

class HoldingPeriod(str, Enum):
    """Tax holding period classification."""
    SHORT_TERM = "short_term"  # < threshold days
    LONG_TERM = "long_term"    # >= threshold days


class TaxEventType(str, Enum):
    """Externally recorded taxable events."""
    DIVIDEND = "dividend"
    INTEREST = "interest"
    CAPITAL_GAIN_DISTRIBUTION = "capital_gain_distribution"
    STOCK_SPLIT = "stock_split"
    STOCK_DIVIDEND = "stock_dividend"
    RETURN_OF_CAPITAL = "return_of_capital"
    WASH_SALE = "wash_sale"
    OTHER = "other"


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_TAX_JURISDICTION = "US"
DEFAULT_SHORT_TERM_THRESHOLD_DAYS = 365
DEFAULT_WASH_SALE_WINDOW_DAYS = 30
DEFAULT_HARVEST_THRESHOLD_PERCENT = 5.0
DEFAULT_MIN_HARVEST_AMOUNT = 1000.0

# Float tolerance for quantity comparisons (fractional shares)
QUANTITY_EPSILON = 1e-9

SECONDS_PER_DAY = 86_400


# =============================================================================
# Preferences
# =============================================================================

@dataclass
class TaxPreference:
    """Per-user tax configuration.

    A single threshold model: one short/long-term cut-off and one
    symmetric wash-sale window.
    """
    user_id: str = ""
    tax_jurisdiction: str = DEFAULT_TAX_JURISDICTION
    default_tax_year: int = field(default_factory=lambda: date.today().year)
    short_term_threshold_days: int = DEFAULT_SHORT_TERM_THRESHOLD_DAYS
    enable_wash_sale_detection: bool = True
    wash_sale_window_days: int = DEFAULT_WASH_SALE_WINDOW_DAYS
    auto_harvest_losses: bool = False
    harvest_threshold_percent: float = DEFAULT_HARVEST_THRESHOLD_PERCENT
    min_harvest_amount: float = DEFAULT_MIN_HARVEST_AMOUNT
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.short_term_threshold_days < 0:
            raise InvalidPreference(
                "short_term_threshold_days must be >= 0",
                field="short_term_threshold_days",
            )
        if self.wash_sale_window_days < 0:
            raise InvalidPreference(
                "wash_sale_window_days must be >= 0",
                field="wash_sale_window_days",
            )
        if self.harvest_threshold_percent < 0:
            raise InvalidPreference(
                "harvest_threshold_percent must be >= 0",
                field="harvest_threshold_percent",
            )
        if self.min_harvest_amount < 0:
            raise InvalidPreference(
                "min_harvest_amount must be >= 0",
                field="min_harvest_amount",
            )

    @classmethod
    def defaults(cls, user_id: str) -> "TaxPreference":
        """Default preferences, drawn from environment settings."""
        settings = get_settings()
        return cls(
            user_id=user_id,
            tax_jurisdiction=settings.default_tax_jurisdiction,
            short_term_threshold_days=settings.default_short_term_threshold_days,
            wash_sale_window_days=settings.default_wash_sale_window_days,
            harvest_threshold_percent=settings.default_harvest_threshold_percent,
            min_harvest_amount=settings.default_min_harvest_amount,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tax_jurisdiction": self.tax_jurisdiction,
            "default_tax_year": self.default_tax_year,
            "short_term_threshold_days": self.short_term_threshold_days,
            "enable_wash_sale_detection": self.enable_wash_sale_detection,
            "wash_sale_window_days": self.wash_sale_window_days,
            "auto_harvest_losses": self.auto_harvest_losses,
            "harvest_threshold_percent": self.harvest_threshold_percent,
            "min_harvest_amount": self.min_harvest_amount,
            "metadata": self.metadata,
        }
