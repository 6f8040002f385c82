"""Tax Report Building.

Folds a user's rebuilt capital gains summary and the year's external tax
events into one annual report.
"""

from typing import Optional
import logging

from src.logging_config import PerformanceTimer
from src.tax_lots.config import TaxEventType
from src.tax_lots.gains import GainsAggregator
from src.tax_lots.models import SymbolGains, TaxReport
from src.tax_lots.store import EventFilter, LedgerStore

logger = logging.getLogger(__name__)

# Event types folded into a report field; other types are listed only.
EVENT_FIELDS: dict[TaxEventType, str] = {
    TaxEventType.DIVIDEND: "dividends",
    TaxEventType.INTEREST: "interest",
    TaxEventType.CAPITAL_GAIN_DISTRIBUTION: "capital_gain_distributions",
    TaxEventType.RETURN_OF_CAPITAL: "return_of_capital",
    TaxEventType.WASH_SALE: "wash_sales",
}


class TaxReportBuilder:
    """Builds the annual tax report.

    Produces:
    - Short-term, long-term and total realized gains
    - Dividend, interest and distribution income from tax events
    - Wash-sale amounts recorded as events
    - Per-symbol breakdown mirroring the summary rows
    """

    def __init__(self, store: LedgerStore, aggregator: GainsAggregator):
        self.store = store
        self.aggregator = aggregator

    def build_report(self, user_id: str, tax_year: int) -> TaxReport:
        """Recompute the year's summary and fold it with tax events.

        Args:
            user_id: Report owner.
            tax_year: Calendar year reported.

        Returns:
            TaxReport for the year.
        """
        with PerformanceTimer("build_report", log=logger, details=f"{user_id}:{tax_year}"):
            summaries = self.aggregator.recompute_summary(user_id, tax_year)
            events = self.store.query_tax_events(
                EventFilter(user_id=user_id, tax_year=tax_year)
            )

            report = TaxReport(user_id=user_id, tax_year=tax_year)

            for summary in summaries:
                report.short_term_gains += summary.short_term_gain_loss
                report.long_term_gains += summary.long_term_gain_loss
                report.positions_closed += summary.positions_closed
                report.symbols.append(SymbolGains(
                    symbol=summary.symbol,
                    short_term_gain_loss=summary.short_term_gain_loss,
                    long_term_gain_loss=summary.long_term_gain_loss,
                    total_gain_loss=summary.total_gain_loss,
                    positions_closed=summary.positions_closed,
                ))

            for event in events:
                attr: Optional[str] = EVENT_FIELDS.get(event.event_type)
                if attr is not None:
                    setattr(report, attr, getattr(report, attr) + event.amount)

        logger.info(
            "Built %d report for user %s: total gains $%.2f over %d symbols, %d events",
            tax_year, user_id, report.total_gains, len(report.symbols), len(events),
        )
        return report
