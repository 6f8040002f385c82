"""Wash Sale Detection and Deferral.

A loss disposition is a wash sale when the same security is acquired
within the wash-sale window before or after the sale. The loss is then
disallowed for the sale year and added to the basis of the replacement
lot, to be recognised when the replacement is sold.

"Substantially identical" is an exact symbol match.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from src.tax_lots.errors import LotNotFound
from src.tax_lots.models import TaxLot
from src.tax_lots.store import LedgerStore, LotFilter

logger = logging.getLogger(__name__)


@dataclass
class WashSaleVerdict:
    """Result of checking a loss disposition."""
    is_wash_sale: bool = False
    disallowed_loss: float = 0.0
    replacement_lot_id: Optional[str] = None
    replacement_date: Optional[date] = None
    reason: str = ""


@dataclass
class WashWindow:
    """An open wash-sale window on a symbol."""
    symbol: str
    trigger: str  # "disposition" or "acquisition"
    trigger_lot_id: str
    trigger_date: date
    closes_on: date


def apply_basis_adjustment(lot: TaxLot, amount: float) -> TaxLot:
    """Add ``amount`` to a lot's basis in place.

    On a closed record the realized gain/loss moves by the same amount,
    so a deferred loss is recognised in the year the replacement sold.
    """
    lot.cost_basis += amount
    lot.wash_sale_adjustment += amount
    if lot.is_closed:
        lot.gain_loss -= amount
    return lot


class WashSaleDetector:
    """Detects wash sales and defers disallowed losses.

    Consequences of a wash sale:
    - The loss record is flagged and linked to its replacement lot
    - The disallowed loss is added to the replacement lot's basis
    - The loss no longer reduces the sale year's gains
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def _window(self, anchor: date, window_days: int) -> tuple[date, date]:
        return anchor - timedelta(days=window_days), anchor + timedelta(days=window_days)

    def check_disposition(
        self,
        user_id: str,
        symbol: str,
        disposition_date: date,
        loss_amount: float,
        exclude_origin_id: Optional[str],
        window_days: int,
    ) -> WashSaleVerdict:
        """Check whether a loss disposition is a wash sale.

        Candidates are the user's lots of the same symbol acquired within
        ``window_days`` of the sale, open or closed, except records of
        the acquisition being sold. A purchase that was itself sold again
        before the loss sale still counts. The earliest acquisition is
        the replacement.

        Args:
            user_id: Owner of the lots.
            symbol: Symbol sold at a loss.
            disposition_date: Date of the loss sale.
            loss_amount: Realized gain/loss (negative for a loss).
            exclude_origin_id: Origin id of the lot being disposed.
            window_days: Days before and after the sale to search.

        Returns:
            WashSaleVerdict.
        """
        if loss_amount >= 0:
            return WashSaleVerdict(reason="Not a loss sale")

        window_start, window_end = self._window(disposition_date, window_days)
        lots = self.store.query_lots(
            LotFilter(user_id=user_id, include_closed=True, symbol=symbol)
        )

        candidates = [
            lot for lot in lots
            if lot.origin_lot_id != exclude_origin_id
            and window_start <= lot.acquisition_date <= window_end
        ]

        if not candidates:
            return WashSaleVerdict(reason="No replacement purchase found")

        # Earliest acquisition; among its records prefer one still open
        replacement = min(
            candidates,
            key=lambda lot: (lot.acquisition_date, lot.is_closed, lot.created_at),
        )

        return WashSaleVerdict(
            is_wash_sale=True,
            disallowed_loss=abs(loss_amount),
            replacement_lot_id=replacement.id,
            replacement_date=replacement.acquisition_date,
            reason=f"Replacement purchase on {replacement.acquisition_date}",
        )

    def prepare_deferral(self, replacement_lot_id: str, amount: float) -> tuple[TaxLot, int]:
        """Replacement lot with ``amount`` added to its basis, unsaved.

        Returns the adjusted lot and the version it was read at, ready for
        ``LedgerStore.commit_lots``. Caller holds the (user, symbol) lock.
        """
        replacement = self.store.get_lot(replacement_lot_id)
        if replacement is None:
            raise LotNotFound(replacement_lot_id)
        expected = replacement.version
        apply_basis_adjustment(replacement, amount)
        return replacement, expected

    def match_acquisition(
        self,
        user_id: str,
        new_lot: TaxLot,
        window_days: int,
    ) -> list[tuple[TaxLot, int]]:
        """Flag earlier loss sales that a new, not yet stored, lot replaces.

        Covers the order where the loss sale is recorded before its
        replacement purchase. Each matching loss record is flagged and
        linked to ``new_lot``, and its loss is added to ``new_lot``'s
        basis in place. Nothing is written.

        Returns:
            ``(loss_record, expected_version)`` pairs for
            ``LedgerStore.commit_lots``, oldest sale first.
        """
        window_start, window_end = self._window(new_lot.acquisition_date, window_days)
        closed = self.store.query_lots(LotFilter(
            user_id=user_id,
            include_closed=True,
            include_open=False,
            symbol=new_lot.symbol,
        ))
        losses = [
            lot for lot in closed
            if lot.gain_loss < 0
            and not lot.is_wash_sale
            and lot.origin_lot_id != new_lot.origin_lot_id
            and lot.disposition_date is not None
            and window_start <= lot.disposition_date <= window_end
        ]
        losses.sort(key=lambda lot: (lot.disposition_date, lot.created_at))

        updates: list[tuple[TaxLot, int]] = []
        for loss in losses:
            disallowed = abs(loss.gain_loss)
            expected = loss.version
            loss.is_wash_sale = True
            loss.wash_sale_replacement_lot_id = new_lot.id
            apply_basis_adjustment(new_lot, disallowed)
            updates.append((loss, expected))
            logger.debug(
                "Matched loss of $%.2f on lot %s (%s, sold %s) to new lot %s",
                disallowed, loss.id[:8], loss.symbol, loss.disposition_date, new_lot.id[:8],
            )
        return updates

    def pending_window(
        self,
        user_id: str,
        symbol: str,
        as_of: date,
        window_days: int,
        exclude_origin_id: Optional[str] = None,
    ) -> Optional[WashWindow]:
        """Find a wash-sale window open on ``as_of`` for a symbol.

        A window is open after a loss disposition of the symbol, and after
        any acquisition of the symbol other than ``exclude_origin_id``.
        Realizing a loss inside either window would be disallowed or
        would block repurchase. The window closing last is returned.
        """
        window_start = as_of - timedelta(days=window_days)
        lots = self.store.query_lots(
            LotFilter(user_id=user_id, include_closed=True, symbol=symbol)
        )

        windows: list[WashWindow] = []
        seen_origins: set[str] = set()
        for lot in lots:
            if (
                lot.is_closed
                and lot.gain_loss < 0
                and lot.disposition_date is not None
                and window_start <= lot.disposition_date <= as_of
            ):
                windows.append(WashWindow(
                    symbol=symbol,
                    trigger="disposition",
                    trigger_lot_id=lot.id,
                    trigger_date=lot.disposition_date,
                    closes_on=lot.disposition_date + timedelta(days=window_days),
                ))
            if (
                lot.origin_lot_id != exclude_origin_id
                and lot.origin_lot_id not in seen_origins
                and window_start <= lot.acquisition_date <= as_of
            ):
                seen_origins.add(lot.origin_lot_id)
                windows.append(WashWindow(
                    symbol=symbol,
                    trigger="acquisition",
                    trigger_lot_id=lot.id,
                    trigger_date=lot.acquisition_date,
                    closes_on=lot.acquisition_date + timedelta(days=window_days),
                ))

        if not windows:
            return None
        return max(windows, key=lambda w: w.closes_on)
