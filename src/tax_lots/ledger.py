"""Tax Lot Ledger.

Owns a user's tax lots: creates lots on acquisition and applies
dispositions. A partial disposition splits the lot into a closed record
for the sold quantity and a new open remainder, so no record is ever
half-closed.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from src.tax_lots.config import HoldingPeriod, QUANTITY_EPSILON, TaxPreference
from src.tax_lots.disposition import DateLike, DispositionProcessor
from src.tax_lots.errors import (
    InsufficientQuantity,
    InvalidPrice,
    InvalidQuantity,
    LotAlreadyClosed,
    LotNotFound,
)
from src.tax_lots.locks import KeyedLocks, lot_key
from src.tax_lots.metadata import validate_metadata
from src.tax_lots.models import DispositionResult, TaxLot
from src.tax_lots.store import LedgerStore, LotFilter
from src.tax_lots.wash_sales import WashSaleDetector, apply_basis_adjustment

logger = logging.getLogger(__name__)

PreferenceLookup = Callable[[str], TaxPreference]


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


class LotLedger:
    """Creates, lists and disposes tax lots for users.

    Provides methods to:
    - Record acquisitions as new lots
    - Dispose all or part of a lot with proportional basis allocation
    - Adjust basis for deferred wash-sale losses
    - Report open quantity and unrealized gains per symbol

    All mutations for one ``(user_id, symbol)`` run under a shared lock,
    and every write is a versioned check-and-set, so two dispositions can
    never spend the same open quantity.
    """

    def __init__(
        self,
        store: LedgerStore,
        preferences: PreferenceLookup,
        locks: Optional[KeyedLocks] = None,
        wash_sale_detector: Optional[WashSaleDetector] = None,
        processor: Optional[DispositionProcessor] = None,
    ):
        self.store = store
        self.preferences = preferences
        self.locks = locks or KeyedLocks()
        self.wash_sale_detector = wash_sale_detector or WashSaleDetector(store)
        self.processor = processor or DispositionProcessor(self.wash_sale_detector)

    # ── Acquisition ──────────────────────────────────────────────────

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
        """Record an acquisition as a new open lot.

        Args:
            user_id: Owner.
            symbol: Security symbol (normalised to upper case).
            quantity: Units acquired. Must be positive.
            acquisition_date: Date acquired.
            acquisition_price: Price per unit.
            cost_basis: Override for corporate-action adjustments.
                Defaults to ``quantity x acquisition_price``.
            holding_id: Optional link to the dashboard holding.
            metadata: Optional flat map of scalars.

        Returns:
            The stored lot, reflecting any wash-sale basis it absorbed.
        """
        if quantity <= 0:
            raise InvalidQuantity(quantity)
        if acquisition_price < 0:
            raise InvalidPrice(
                f"Acquisition price must be >= 0, got {acquisition_price}",
                field="acquisition_price",
            )
        if cost_basis is not None and cost_basis < 0:
            raise InvalidPrice(f"Cost basis must be >= 0, got {cost_basis}", field="cost_basis")

        symbol = normalize_symbol(symbol)
        if isinstance(acquisition_date, datetime):
            acquisition_date = acquisition_date.date()

        lot = TaxLot(
            user_id=user_id,
            holding_id=holding_id,
            symbol=symbol,
            quantity=quantity,
            acquisition_date=acquisition_date,
            acquisition_price=acquisition_price,
            cost_basis=cost_basis if cost_basis is not None else quantity * acquisition_price,
            metadata=validate_metadata(metadata),
        )

        prefs = self.preferences(user_id)
        with self.locks.hold(lot_key(user_id, symbol)):
            flagged: list[tuple[TaxLot, int]] = []
            if prefs.enable_wash_sale_detection:
                flagged = self.wash_sale_detector.match_acquisition(
                    user_id, lot, prefs.wash_sale_window_days,
                )
            # Flagged losses and the new lot land together or not at all.
            _, (stored,) = self.store.commit_lots(flagged, [lot])

        logger.info(
            "Created lot %s: %s %s @ %.4f on %s (basis $%.2f)",
            stored.id[:8], quantity, symbol, acquisition_price,
            acquisition_date, stored.cost_basis,
        )
        for loss, _ in flagged:
            logger.info(
                "Wash sale: loss of $%.2f on lot %s (%s, sold %s) replaced by lot %s",
                abs(loss.gain_loss), loss.id[:8], symbol, loss.disposition_date, stored.id[:8],
            )
        return stored

    # ── Lookup ───────────────────────────────────────────────────────

    def get_lot(self, user_id: str, lot_id: str) -> TaxLot:
        """Fetch a lot owned by ``user_id``.

        Raises:
            LotNotFound: Unknown id, or a lot owned by someone else.
        """
        lot = self.store.get_lot(lot_id)
        if lot is None or lot.user_id != user_id:
            raise LotNotFound(lot_id)
        return lot

    def list_lots(
        self,
        user_id: str,
        include_closed: bool = False,
        symbol: Optional[str] = None,
        tax_year: Optional[int] = None,
    ) -> list[TaxLot]:
        """List lots, newest acquisition first.

        With ``tax_year``, returns lots disposed in that calendar year plus
        all open lots.
        """
        return self.store.query_lots(LotFilter(
            user_id=user_id,
            include_closed=include_closed,
            symbol=normalize_symbol(symbol) if symbol else None,
            tax_year=tax_year,
        ))

    def open_quantity(self, user_id: str, symbol: str) -> float:
        """Total open units of a symbol."""
        return sum(lot.quantity for lot in self.list_lots(user_id, symbol=symbol))

    # ── Disposition ──────────────────────────────────────────────────

    def dispose_lot(
        self,
        user_id: str,
        lot_id: str,
        quantity: float,
        disposition_date: DateLike,
        disposition_price: float,
    ) -> DispositionResult:
        """Dispose ``quantity`` units of an open lot.

        The lot record is closed for the disposed quantity. When units
        remain, a new open record carries them with the original
        acquisition date and price and the proportional remaining basis.

        Raises:
            LotNotFound: Unknown or foreign lot id.
            LotAlreadyClosed: The record is already closed.
            InvalidQuantity: ``quantity`` is not positive.
            InsufficientQuantity: ``quantity`` exceeds the open quantity.
        """
        if quantity <= 0:
            raise InvalidQuantity(quantity)

        # Symbol is needed for the lock; re-read inside it.
        symbol = self.get_lot(user_id, lot_id).symbol
        prefs = self.preferences(user_id)

        with self.locks.hold(lot_key(user_id, symbol)):
            lot = self.get_lot(user_id, lot_id)
            if lot.is_closed:
                logger.warning("Rejected disposal of closed lot %s", lot_id[:8])
                raise LotAlreadyClosed(lot_id)
            if quantity > lot.quantity + QUANTITY_EPSILON:
                logger.warning(
                    "Rejected disposal of %s from lot %s: only %s open",
                    quantity, lot_id[:8], lot.quantity,
                )
                raise InsufficientQuantity(lot_id, quantity, lot.quantity)
            quantity = min(quantity, lot.quantity)

            computation = self.processor.process(
                lot, quantity, disposition_date, disposition_price, prefs,
            )

            remaining_quantity = lot.quantity - quantity
            is_partial = remaining_quantity > QUANTITY_EPSILON
            expected_version = lot.version
            now = datetime.now(timezone.utc)

            remainder: Optional[TaxLot] = None
            if is_partial:
                remainder = replace(
                    lot,
                    id=TaxLot().id,
                    quantity=remaining_quantity,
                    cost_basis=lot.cost_basis - computation.cost_basis_sold,
                    wash_sale_adjustment=lot.wash_sale_adjustment * (remaining_quantity / lot.quantity),
                    parent_lot_id=lot.id,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )

            closed = replace(
                lot,
                quantity=quantity,
                cost_basis=computation.cost_basis_sold,
                wash_sale_adjustment=lot.wash_sale_adjustment - (
                    remainder.wash_sale_adjustment if remainder else 0.0
                ),
                disposition_date=computation.disposition_date,
                disposition_price=disposition_price,
                proceeds=computation.proceeds,
                gain_loss=computation.gain_loss,
                holding_period_days=computation.holding_period_days,
                is_closed=True,
            )
            if computation.is_wash_sale:
                closed.is_wash_sale = True
                closed.wash_sale_replacement_lot_id = computation.wash_sale.replacement_lot_id

            updates = [(closed, expected_version)]
            if computation.is_wash_sale:
                updates.append(self.wash_sale_detector.prepare_deferral(
                    computation.wash_sale.replacement_lot_id,
                    computation.wash_sale.disallowed_loss,
                ))

            # Close, remainder and deferral land together or not at all.
            updated, inserted = self.store.commit_lots(
                updates, [remainder] if remainder is not None else [],
            )
            closed = updated[0]
            replacement: Optional[TaxLot] = updated[1] if computation.is_wash_sale else None
            if remainder is not None:
                remainder = inserted[0]

        logger.info(
            "Disposed %s %s from lot %s on %s: gain/loss $%.2f (%s%s)",
            quantity, symbol, lot_id[:8], computation.disposition_date,
            computation.gain_loss,
            HoldingPeriod.LONG_TERM.value if computation.is_long_term else HoldingPeriod.SHORT_TERM.value,
            ", wash sale" if computation.is_wash_sale else "",
        )

        return DispositionResult(
            closed_portion=closed,
            cost_basis_sold=computation.cost_basis_sold,
            is_long_term=computation.is_long_term,
            remainder=remainder,
            wash_sale_replacement=replacement,
        )

    # ── Basis adjustments ────────────────────────────────────────────

    def adjust_cost_basis(
        self,
        user_id: str,
        lot_id: str,
        amount: float,
        reason: str = "wash_sale",
    ) -> TaxLot:
        """Add ``amount`` to a lot's basis (e.g. a deferred loss).

        On a closed record the realized gain/loss moves with the basis.
        """
        symbol = self.get_lot(user_id, lot_id).symbol
        with self.locks.hold(lot_key(user_id, symbol)):
            lot = self.get_lot(user_id, lot_id)
            if lot.cost_basis + amount < 0:
                raise InvalidPrice(
                    f"Adjustment of {amount} would make cost basis negative",
                    field="cost_basis",
                )
            expected = lot.version
            apply_basis_adjustment(lot, amount)
            updated = self.store.update_lot(lot, expected_version=expected)
        logger.info("Adjusted lot %s basis by $%.2f (%s)", lot_id[:8], amount, reason)
        return updated

    # ── Analysis ─────────────────────────────────────────────────────

    def unrealized_gains(
        self,
        user_id: str,
        symbol: str,
        current_price: float,
        as_of: Optional[date] = None,
    ) -> dict[str, float]:
        """Unrealized gain/loss by holding period at ``current_price``.

        Returns:
            Dict with 'short_term', 'long_term' and 'total'.
        """
        threshold = self.preferences(user_id).short_term_threshold_days
        short_term = 0.0
        long_term = 0.0

        for lot in self.list_lots(user_id, symbol=symbol):
            gain = lot.quantity * current_price - lot.cost_basis
            if lot.days_held(as_of) >= threshold:
                long_term += gain
            else:
                short_term += gain

        return {
            "short_term": short_term,
            "long_term": long_term,
            "total": short_term + long_term,
        }

    def lots_approaching_long_term(
        self,
        user_id: str,
        days_threshold: int = 30,
        as_of: Optional[date] = None,
    ) -> list[TaxLot]:
        """Open lots that turn long-term within ``days_threshold`` days.

        Useful for spotting positions worth holding a little longer.
        """
        threshold = self.preferences(user_id).short_term_threshold_days
        approaching = [
            lot for lot in self.list_lots(user_id)
            if 0 < lot.days_to_long_term(threshold, as_of) <= days_threshold
        ]
        return sorted(approaching, key=lambda lot: lot.days_to_long_term(threshold, as_of))
