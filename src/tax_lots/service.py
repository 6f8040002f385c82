"""Tax Lot Service.

Single entry point for callers. Wires one store and one lock registry
into the ledger, wash-sale detector, aggregator, harvesting advisor and
report builder, and owns tax events and user preferences.
"""

from dataclasses import fields, replace
from datetime import date
from typing import Any, Optional, Union
import logging

from src.logging_config import LogContext
from src.tax_lots.config import TaxEventType, TaxPreference
from src.tax_lots.disposition import DateLike, DispositionProcessor
from src.tax_lots.errors import InvalidEventType, InvalidPreference
from src.tax_lots.gains import GainsAggregator
from src.tax_lots.harvesting import HarvestingAdvisor
from src.tax_lots.ledger import LotLedger, normalize_symbol
from src.tax_lots.locks import KeyedLocks
from src.tax_lots.market_data import PriceInput
from src.tax_lots.metadata import validate_metadata
from src.tax_lots.models import (
    CapitalGainsSummary,
    DispositionResult,
    HarvestingOpportunity,
    TaxEvent,
    TaxLot,
    TaxReport,
)
from src.tax_lots.reports import TaxReportBuilder
from src.tax_lots.store import EventFilter, InMemoryLedgerStore, LedgerStore
from src.tax_lots.wash_sales import WashSaleDetector

logger = logging.getLogger(__name__)

_PREFERENCE_FIELDS = {f.name for f in fields(TaxPreference)} - {"user_id"}


def _event_type(value: Union[str, TaxEventType]) -> TaxEventType:
    if isinstance(value, TaxEventType):
        return value
    try:
        return TaxEventType(value)
    except ValueError:
        raise InvalidEventType(str(value)) from None


class TaxLotService:
    """Tax-lot accounting for many users over one store.

    Example:
        service = TaxLotService()
        lot = service.create_lot("u1", "AAPL", 100, date(2024, 1, 10), 50.0)
        result = service.dispose_lot("u1", lot.id, 40, date(2024, 6, 15), 40.0)
        report = service.build_report("u1", 2024)
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store or InMemoryLedgerStore()
        self.locks = locks or KeyedLocks()

        self.wash_sales = WashSaleDetector(self.store)
        self.processor = DispositionProcessor(self.wash_sales)
        self.ledger = LotLedger(
            self.store,
            self.get_preferences,
            locks=self.locks,
            wash_sale_detector=self.wash_sales,
            processor=self.processor,
        )
        self.aggregator = GainsAggregator(self.store, self.get_preferences, locks=self.locks)
        self.harvesting = HarvestingAdvisor(self.store, self.wash_sales, self.get_preferences)
        self.reports = TaxReportBuilder(self.store, self.aggregator)

    # ── Lots ─────────────────────────────────────────────────────────

    def create_lot(
        self,
        user_id: str,
        symbol: str,
        quantity: float,
        acquisition_date: date,
        acquisition_price: float,
        cost_basis: Optional[float] = None,
        holding_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TaxLot:
        with LogContext(user_id=user_id):
            return self.ledger.create_lot(
                user_id,
                symbol,
                quantity,
                acquisition_date,
                acquisition_price,
                cost_basis=cost_basis,
                holding_id=holding_id,
                metadata=metadata,
            )

    def dispose_lot(
        self,
        user_id: str,
        lot_id: str,
        quantity: float,
        disposition_date: DateLike,
        disposition_price: float,
    ) -> DispositionResult:
        with LogContext(user_id=user_id):
            return self.ledger.dispose_lot(
                user_id, lot_id, quantity, disposition_date, disposition_price,
            )

    def get_lot(self, user_id: str, lot_id: str) -> TaxLot:
        return self.ledger.get_lot(user_id, lot_id)

    def list_lots(
        self,
        user_id: str,
        include_closed: bool = False,
        symbol: Optional[str] = None,
        tax_year: Optional[int] = None,
    ) -> list[TaxLot]:
        with LogContext(user_id=user_id, tax_year=tax_year):
            lots = self.ledger.list_lots(
                user_id, include_closed=include_closed, symbol=symbol, tax_year=tax_year,
            )
            logger.debug("Listed %d lots", len(lots))
            return lots

    # ── Analysis ─────────────────────────────────────────────────────

    def find_opportunities(
        self,
        user_id: str,
        prices: PriceInput,
        threshold_percent: Optional[float] = None,
        min_amount: Optional[float] = None,
        as_of: Optional[date] = None,
    ) -> list[HarvestingOpportunity]:
        with LogContext(user_id=user_id):
            return self.harvesting.find_opportunities(
                user_id,
                prices,
                threshold_percent=threshold_percent,
                min_amount=min_amount,
                as_of=as_of,
            )

    def recompute_summary(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        with LogContext(user_id=user_id, tax_year=tax_year):
            return self.aggregator.recompute_summary(user_id, tax_year)

    def get_capital_gains_summary(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        return self.aggregator.get_summary(user_id, tax_year)

    def build_report(self, user_id: str, tax_year: int) -> TaxReport:
        with LogContext(user_id=user_id, tax_year=tax_year):
            return self.reports.build_report(user_id, tax_year)

    # ── Tax events ───────────────────────────────────────────────────

    def record_tax_event(
        self,
        user_id: str,
        event_type: Union[str, TaxEventType],
        symbol: str,
        event_date: date,
        amount: float,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TaxEvent:
        """Record an external taxable event (dividend, interest, ...).

        Raises:
            InvalidEventType: ``event_type`` is not a known type.
        """
        with LogContext(user_id=user_id, tax_year=event_date.year):
            try:
                kind = _event_type(event_type)
            except InvalidEventType:
                logger.warning("Rejected tax event with unknown type %r", event_type)
                raise
            event = TaxEvent(
                user_id=user_id,
                event_type=kind,
                symbol=normalize_symbol(symbol),
                event_date=event_date,
                amount=amount,
                description=description,
                metadata=validate_metadata(metadata),
            )
            stored = self.store.insert_tax_event(event)
            logger.info(
                "Recorded %s of $%.2f for %s on %s",
                kind.value, amount, stored.symbol, event_date,
            )
            return stored

    def list_tax_events(
        self,
        user_id: str,
        tax_year: Optional[int] = None,
        event_type: Optional[Union[str, TaxEventType]] = None,
    ) -> list[TaxEvent]:
        return self.store.query_tax_events(EventFilter(
            user_id=user_id,
            tax_year=tax_year,
            event_type=_event_type(event_type) if event_type is not None else None,
        ))

    # ── Preferences ──────────────────────────────────────────────────

    def get_preferences(self, user_id: str) -> TaxPreference:
        """Stored preferences; defaults are created and saved on first access."""
        prefs = self.store.get_preferences(user_id)
        if prefs is None:
            prefs = self.store.save_preferences(TaxPreference.defaults(user_id))
            logger.info("Created default tax preferences for user %s", user_id)
        return prefs

    def update_preferences(self, user_id: str, **changes: Any) -> TaxPreference:
        """Change selected preference fields.

        Raises:
            InvalidPreference: Unknown field or out-of-range value.
        """
        unknown = set(changes) - _PREFERENCE_FIELDS
        if unknown:
            name = sorted(unknown)[0]
            logger.warning("Rejected update to unknown preference %r", name)
            raise InvalidPreference(f"Unknown preference: {name}", field=name)

        current = self.get_preferences(user_id)
        try:
            updated = replace(current, **changes)
        except InvalidPreference:
            logger.warning("Rejected preference update for user %s: %s", user_id, changes)
            raise
        updated.metadata = validate_metadata(updated.metadata)

        saved = self.store.save_preferences(updated)
        logger.info("Updated tax preferences for user %s: %s", user_id, sorted(changes))
        return saved
