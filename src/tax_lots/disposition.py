"""Disposition Processing.

Computes proceeds, allocated cost basis, gain/loss and holding period for
the disposed part of a lot, and consults the wash-sale detector on losses.
Nothing here writes to storage; the ledger persists the result.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from src.tax_lots.config import SECONDS_PER_DAY, TaxPreference
from src.tax_lots.errors import InvalidDate, InvalidPrice, InvalidQuantity
from src.tax_lots.models import TaxLot
from src.tax_lots.wash_sales import WashSaleDetector, WashSaleVerdict

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def whole_days_between(start: DateLike, end: DateLike) -> int:
    """Whole days from ``start`` to ``end``, floored.

    Plain dates count calendar days. Datetimes are floored on the exact
    elapsed seconds, so 23 hours is zero days.
    """
    if not isinstance(start, datetime) and not isinstance(end, datetime):
        return (end - start).days
    start_dt = _as_datetime(start)
    end_dt = _as_datetime(end)
    if (start_dt.tzinfo is None) != (end_dt.tzinfo is None):
        start_dt = start_dt.replace(tzinfo=None)
        end_dt = end_dt.replace(tzinfo=None)
    elapsed = (end_dt - start_dt).total_seconds()
    return math.floor(elapsed / SECONDS_PER_DAY)


@dataclass
class DispositionComputation:
    """Figures for the disposed portion of a lot."""
    quantity: float
    disposition_date: date
    disposition_price: float
    proceeds: float
    cost_basis_sold: float
    gain_loss: float
    holding_period_days: int
    is_long_term: bool
    wash_sale: Optional[WashSaleVerdict] = None

    @property
    def is_loss(self) -> bool:
        return self.gain_loss < 0

    @property
    def is_wash_sale(self) -> bool:
        return self.wash_sale is not None and self.wash_sale.is_wash_sale


class DispositionProcessor:
    """Computes the tax consequences of disposing part or all of a lot.

    - ``proceeds = quantity x disposition_price``
    - ``cost_basis_sold = cost_basis x quantity / lot.quantity``
    - ``gain_loss = proceeds - cost_basis_sold``
    - ``holding_period_days`` = whole days held, floored
    - long-term when ``holding_period_days >= short_term_threshold_days``

    Losses are checked against the wash-sale detector when the user has
    detection enabled; its verdict travels with the computation so the
    ledger can flag the closed record before writing it.
    """

    def __init__(self, wash_sale_detector: WashSaleDetector):
        self.wash_sale_detector = wash_sale_detector

    def process(
        self,
        lot: TaxLot,
        quantity: float,
        disposition_date: DateLike,
        disposition_price: float,
        preferences: TaxPreference,
    ) -> DispositionComputation:
        """Compute a disposition of ``quantity`` units from ``lot``.

        Args:
            lot: Open lot being disposed.
            quantity: Units disposed (0 < quantity <= lot.quantity).
            disposition_date: Sale date (date or datetime).
            disposition_price: Price per unit.
            preferences: The owner's tax preferences.

        Returns:
            DispositionComputation with the wash-sale verdict attached.
        """
        if quantity <= 0:
            raise InvalidQuantity(quantity)
        if disposition_price < 0:
            raise InvalidPrice(
                f"Disposition price must be >= 0, got {disposition_price}",
                field="disposition_price",
            )

        holding_days = whole_days_between(lot.acquisition_date, disposition_date)
        if holding_days < 0:
            raise InvalidDate(
                f"Disposition date {disposition_date} precedes acquisition "
                f"date {lot.acquisition_date}"
            )

        sale_date = disposition_date.date() if isinstance(disposition_date, datetime) else disposition_date

        proceeds = quantity * disposition_price
        cost_basis_sold = lot.cost_basis * (quantity / lot.quantity) if lot.quantity else 0.0
        gain_loss = proceeds - cost_basis_sold
        is_long_term = holding_days >= preferences.short_term_threshold_days

        computation = DispositionComputation(
            quantity=quantity,
            disposition_date=sale_date,
            disposition_price=disposition_price,
            proceeds=proceeds,
            cost_basis_sold=cost_basis_sold,
            gain_loss=gain_loss,
            holding_period_days=holding_days,
            is_long_term=is_long_term,
        )

        if gain_loss < 0 and preferences.enable_wash_sale_detection:
            computation.wash_sale = self.wash_sale_detector.check_disposition(
                user_id=lot.user_id,
                symbol=lot.symbol,
                disposition_date=sale_date,
                loss_amount=gain_loss,
                exclude_origin_id=lot.origin_lot_id,
                window_days=preferences.wash_sale_window_days,
            )

        logger.debug(
            "Disposition of %s %s from lot %s: proceeds=%.2f basis=%.2f "
            "gain_loss=%.2f days=%d long_term=%s wash_sale=%s",
            quantity, lot.symbol, lot.id[:8], proceeds, cost_basis_sold,
            gain_loss, holding_days, is_long_term, computation.is_wash_sale,
        )
        return computation
