"""Tax-Loss Harvesting Advisor.

Scans a user's open lots against current prices and lists the ones
carrying an unrealized loss, marking which of them are worth harvesting
now and why the rest are not.
"""

from datetime import date, timedelta
from typing import Callable, Optional
import logging

from src.tax_lots.config import HoldingPeriod, TaxPreference
from src.tax_lots.market_data import PriceInput, as_price_source
from src.tax_lots.models import HarvestingOpportunity
from src.tax_lots.store import LedgerStore, LotFilter
from src.tax_lots.wash_sales import WashSaleDetector

logger = logging.getLogger(__name__)

REASON_ZERO_BASIS = "zero cost basis"
REASON_BELOW_PERCENT = "below threshold percent"
REASON_BELOW_AMOUNT = "below minimum amount"


class HarvestingAdvisor:
    """Identifies tax-loss harvesting opportunities.

    A lot is harvestable when its unrealized loss clears both the
    percentage threshold and the minimum dollar amount, and selling it
    today would not land inside an open wash-sale window.

    Opportunities are computed on request and never stored.
    """

    def __init__(
        self,
        store: LedgerStore,
        wash_sale_detector: WashSaleDetector,
        preferences: Callable[[str], TaxPreference],
    ):
        self.store = store
        self.wash_sale_detector = wash_sale_detector
        self.preferences = preferences

    def find_opportunities(
        self,
        user_id: str,
        prices: PriceInput,
        threshold_percent: Optional[float] = None,
        min_amount: Optional[float] = None,
        as_of: Optional[date] = None,
    ) -> list[HarvestingOpportunity]:
        """Find open lots with unrealized losses.

        Args:
            user_id: Owner of the lots.
            prices: ``{symbol: price}`` mapping or a PriceSource.
            threshold_percent: Minimum loss as percent of basis.
                Defaults to the user's preference.
            min_amount: Minimum loss in dollars. Defaults to the user's
                preference.
            as_of: Evaluation date. Defaults to today.

        Returns:
            Loss opportunities, largest loss first.
        """
        prefs = self.preferences(user_id)
        if threshold_percent is None:
            threshold_percent = prefs.harvest_threshold_percent
        if min_amount is None:
            min_amount = prefs.min_harvest_amount
        as_of = as_of or date.today()
        window_days = prefs.wash_sale_window_days
        source = as_price_source(prices)

        opportunities: list[HarvestingOpportunity] = []
        lots = self.store.query_lots(LotFilter(user_id=user_id))

        for lot in lots:
            price = source.current_price(lot.symbol)
            if price is None:
                logger.debug("No price for %s, skipping lot %s", lot.symbol, lot.id[:8])
                continue

            current_value = lot.quantity * price
            unrealized = current_value - lot.cost_basis

            # Only interested in losses
            if unrealized >= 0:
                continue

            if lot.cost_basis == 0:
                percent = 0.0
            else:
                percent = unrealized / lot.cost_basis * 100

            reason = None
            if lot.cost_basis == 0:
                reason = REASON_ZERO_BASIS
            elif abs(percent) < threshold_percent:
                reason = REASON_BELOW_PERCENT
            elif abs(unrealized) < min_amount:
                reason = REASON_BELOW_AMOUNT
            elif prefs.enable_wash_sale_detection:
                window = self.wash_sale_detector.pending_window(
                    user_id,
                    lot.symbol,
                    as_of,
                    window_days,
                    exclude_origin_id=lot.origin_lot_id,
                )
                if window is not None:
                    reason = f"wash sale window open until {window.closes_on.isoformat()}"

            days_held = lot.days_held(as_of)
            holding_period = (
                HoldingPeriod.LONG_TERM
                if days_held >= prefs.short_term_threshold_days
                else HoldingPeriod.SHORT_TERM
            )

            opportunities.append(HarvestingOpportunity(
                user_id=user_id,
                lot_id=lot.id,
                symbol=lot.symbol,
                quantity=lot.quantity,
                current_price=price,
                current_value=current_value,
                cost_basis=lot.cost_basis,
                unrealized_loss=unrealized,
                unrealized_loss_percent=percent,
                holding_period_days=days_held,
                holding_period=holding_period,
                is_harvestable=reason is None,
                reason_not_harvestable=reason,
                identified_date=as_of,
                expires_at=as_of + timedelta(days=window_days),
            ))

        # Most negative first
        opportunities.sort(key=lambda o: o.unrealized_loss)

        logger.info(
            "Found %d loss lots for user %s (%d harvestable)",
            len(opportunities),
            user_id,
            sum(1 for o in opportunities if o.is_harvestable),
        )
        return opportunities
