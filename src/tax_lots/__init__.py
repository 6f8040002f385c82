"""Tax-Lot Ledger.

Tax-lot accounting and capital-gains computation for investment holdings:
- Lot tracking with partial dispositions split into closed and open records
- Proportional cost-basis allocation and holding-period classification
- Wash sale detection with loss deferral onto the replacement lot
- Per-symbol capital gains summaries by holding period
- Tax-loss harvesting opportunities from current prices
- Annual tax reports combining gains with dividend and interest events

Example:
    from src.tax_lots import TaxLotService

    service = TaxLotService()
    lot = service.create_lot("user_1", "AAPL", 100, date(2024, 1, 10), 50.0)

    # Sell part of the lot
    result = service.dispose_lot("user_1", lot.id, 40, date(2024, 6, 15), 40.0)

    # Find losses worth harvesting
    opportunities = service.find_opportunities("user_1", {"AAPL": 45.0})

    # Annual report
    report = service.build_report("user_1", 2024)
"""

from src.tax_lots.config import (
    HoldingPeriod,
    TaxEventType,
    TaxPreference,
    DEFAULT_SHORT_TERM_THRESHOLD_DAYS,
    DEFAULT_WASH_SALE_WINDOW_DAYS,
    DEFAULT_HARVEST_THRESHOLD_PERCENT,
    DEFAULT_MIN_HARVEST_AMOUNT,
)

from src.tax_lots.errors import (
    ErrorCode,
    TaxLotError,
    LotNotFound,
    InvalidQuantity,
    InsufficientQuantity,
    InvalidPrice,
    InvalidDate,
    InvalidEventType,
    InvalidPreference,
    LotAlreadyClosed,
    ConcurrentModification,
    MalformedMetadata,
)

from src.tax_lots.models import (
    TaxLot,
    DispositionResult,
    CapitalGainsSummary,
    TaxEvent,
    HarvestingOpportunity,
    SymbolGains,
    TaxReport,
)

from src.tax_lots.store import (
    LotFilter,
    EventFilter,
    LedgerStore,
    InMemoryLedgerStore,
)

from src.tax_lots.market_data import PriceSource, StaticPriceSource
from src.tax_lots.locks import KeyedLocks
from src.tax_lots.wash_sales import WashSaleDetector, WashSaleVerdict, WashWindow
from src.tax_lots.disposition import DispositionProcessor, DispositionComputation
from src.tax_lots.ledger import LotLedger
from src.tax_lots.gains import GainsAggregator
from src.tax_lots.harvesting import HarvestingAdvisor
from src.tax_lots.reports import TaxReportBuilder
from src.tax_lots.service import TaxLotService

__all__ = [
    # Config
    "HoldingPeriod",
    "TaxEventType",
    "TaxPreference",
    "DEFAULT_SHORT_TERM_THRESHOLD_DAYS",
    "DEFAULT_WASH_SALE_WINDOW_DAYS",
    "DEFAULT_HARVEST_THRESHOLD_PERCENT",
    "DEFAULT_MIN_HARVEST_AMOUNT",
    # Errors
    "ErrorCode",
    "TaxLotError",
    "LotNotFound",
    "InvalidQuantity",
    "InsufficientQuantity",
    "InvalidPrice",
    "InvalidDate",
    "InvalidEventType",
    "InvalidPreference",
    "LotAlreadyClosed",
    "ConcurrentModification",
    "MalformedMetadata",
    # Models
    "TaxLot",
    "DispositionResult",
    "CapitalGainsSummary",
    "TaxEvent",
    "HarvestingOpportunity",
    "SymbolGains",
    "TaxReport",
    # Storage
    "LotFilter",
    "EventFilter",
    "LedgerStore",
    "InMemoryLedgerStore",
    # Market data
    "PriceSource",
    "StaticPriceSource",
    # Components
    "KeyedLocks",
    "WashSaleDetector",
    "WashSaleVerdict",
    "WashWindow",
    "DispositionProcessor",
    "DispositionComputation",
    "LotLedger",
    "GainsAggregator",
    "HarvestingAdvisor",
    "TaxReportBuilder",
    "TaxLotService",
]
