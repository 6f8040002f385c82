"""Capital Gains Aggregation.

Rebuilds the per-symbol capital gains summary for a user and tax year
from closed lots. Summaries are a derived view: every run overwrites
them in full, so repeated runs on unchanged data converge.
"""

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from src.logging_config import log_performance
from src.tax_lots.config import TaxPreference
from src.tax_lots.locks import KeyedLocks, summary_key
from src.tax_lots.models import CapitalGainsSummary, TaxLot
from src.tax_lots.store import LedgerStore, LotFilter

logger = logging.getLogger(__name__)


class GainsAggregator:
    """Summarizes realized gains by symbol and holding period.

    Wash-sale losses contribute nothing to the year's gains (their
    ``deductible_gain_loss`` is zero) but still count as closed positions
    and are reported in ``wash_sale_disallowed``.
    """

    def __init__(
        self,
        store: LedgerStore,
        preferences: Callable[[str], TaxPreference],
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.preferences = preferences
        self.locks = locks or KeyedLocks()

    def _closed_in_year(self, user_id: str, tax_year: int) -> list[TaxLot]:
        return self.store.query_lots(LotFilter(
            user_id=user_id,
            include_closed=True,
            include_open=False,
            disposed_from=date(tax_year, 1, 1),
            disposed_to=date(tax_year, 12, 31),
        ))

    @log_performance()
    def recompute_summary(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        """Rebuild and store the user's summary rows for ``tax_year``.

        Returns:
            The stored rows, largest total gain first.
        """
        threshold = self.preferences(user_id).short_term_threshold_days

        with self.locks.hold(summary_key(user_id, tax_year)):
            lots = self._closed_in_year(user_id, tax_year)
            now = datetime.now(timezone.utc)

            by_symbol: dict[str, CapitalGainsSummary] = {}
            for lot in lots:
                summary = by_symbol.get(lot.symbol)
                if summary is None:
                    summary = CapitalGainsSummary(
                        user_id=user_id,
                        tax_year=tax_year,
                        symbol=lot.symbol,
                        updated_at=now,
                    )
                    by_symbol[lot.symbol] = summary

                if lot.is_long_term(threshold):
                    summary.long_term_gain_loss += lot.deductible_gain_loss
                else:
                    summary.short_term_gain_loss += lot.deductible_gain_loss
                summary.positions_closed += 1
                summary.wash_sale_disallowed += lot.disallowed_loss

            self.store.replace_summaries(user_id, tax_year, list(by_symbol.values()))
            rows = self.store.query_summaries(user_id, tax_year)

        logger.info(
            "Recomputed %d capital gains rows for user %s, %d (%d lots)",
            len(rows), user_id, tax_year, len(lots),
        )
        return rows

    def get_summary(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        """Stored rows for a user and year, largest total gain first."""
        return self.store.query_summaries(user_id, tax_year)
