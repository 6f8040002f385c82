"""Tests for the Tax-Lot Ledger."""

import threading
from datetime import date, datetime, timedelta

import pytest

from src.settings import get_settings
from src.tax_lots import (
    # Config
    HoldingPeriod,
    TaxEventType,
    TaxPreference,
    # Errors
    ErrorCode,
    ConcurrentModification,
    InsufficientQuantity,
    InvalidDate,
    InvalidEventType,
    InvalidPreference,
    InvalidPrice,
    InvalidQuantity,
    LotAlreadyClosed,
    LotNotFound,
    MalformedMetadata,
    # Models
    CapitalGainsSummary,
    TaxLot,
    # Core
    InMemoryLedgerStore,
    KeyedLocks,
    LotFilter,
    StaticPriceSource,
    TaxLotService,
)
from src.tax_lots.disposition import whole_days_between
from src.tax_lots.metadata import dump_metadata, parse_metadata, validate_metadata


USER = "user_1"
OTHER_USER = "user_2"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def service():
    """Service over a fresh in-memory store."""
    return TaxLotService()


@pytest.fixture
def lot(service):
    """100 units of XYZ acquired 2024-01-10 @ $50 (basis $5,000)."""
    return service.create_lot(USER, "XYZ", 100, date(2024, 1, 10), 50.0)


# =============================================================================
# Acceptance scenarios
# =============================================================================

class TestScenarios:
    """End-to-end acceptance scenarios."""

    def test_short_term_loss(self, service, lot):
        result = service.dispose_lot(USER, lot.id, 100, date(2024, 6, 15), 40.0)
        closed = result.closed_portion

        assert closed.proceeds == pytest.approx(4000.0)
        assert closed.gain_loss == pytest.approx(-1000.0)
        assert closed.holding_period_days == 157
        assert result.is_long_term is False
        assert closed.holding_period(365) == HoldingPeriod.SHORT_TERM
        assert result.remainder is None

    def test_long_term_gain(self, service, lot):
        result = service.dispose_lot(USER, lot.id, 100, date(2025, 2, 1), 70.0)
        closed = result.closed_portion

        assert closed.proceeds == pytest.approx(7000.0)
        assert closed.gain_loss == pytest.approx(2000.0)
        # 2024 is a leap year: 366 days to 2025-01-10, then 22 more
        assert closed.holding_period_days == 388
        assert result.is_long_term is True

    def test_harvestable_then_below_minimum(self, service):
        service.create_lot(USER, "HRV", 100, date(2024, 1, 2), 100.0)
        prices = {"HRV": 90.0}

        opps = service.find_opportunities(
            USER, prices, threshold_percent=5, min_amount=1000, as_of=date(2024, 9, 1)
        )
        assert len(opps) == 1
        assert opps[0].current_value == pytest.approx(9000.0)
        assert opps[0].unrealized_loss == pytest.approx(-1000.0)
        assert opps[0].unrealized_loss_percent == pytest.approx(-10.0)
        assert opps[0].is_harvestable is True
        assert opps[0].reason_not_harvestable is None

        opps = service.find_opportunities(
            USER, prices, threshold_percent=5, min_amount=2000, as_of=date(2024, 9, 1)
        )
        assert opps[0].is_harvestable is False
        assert opps[0].reason_not_harvestable == "below minimum amount"

    def test_wash_sale_sale_recorded_first(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        sale = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)
        assert sale.closed_portion.is_wash_sale is False

        replacement = service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)

        closed = service.get_lot(USER, original.id)
        assert closed.is_wash_sale is True
        assert closed.wash_sale_replacement_lot_id == replacement.id
        assert replacement.cost_basis == pytest.approx(4250.0 + 1000.0)
        assert replacement.wash_sale_adjustment == pytest.approx(1000.0)

        rows = service.recompute_summary(USER, 2024)
        assert len(rows) == 1
        assert rows[0].short_term_gain_loss == pytest.approx(0.0)
        assert rows[0].wash_sale_disallowed == pytest.approx(1000.0)
        assert rows[0].positions_closed == 1

    def test_wash_sale_purchase_recorded_first(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        replacement = service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)

        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)

        assert result.closed_portion.is_wash_sale is True
        assert result.closed_portion.wash_sale_replacement_lot_id == replacement.id
        assert result.closed_portion.deductible_gain_loss == 0.0
        assert result.wash_sale_replacement.cost_basis == pytest.approx(5250.0)
        assert service.get_lot(USER, replacement.id).cost_basis == pytest.approx(5250.0)

        rows = service.recompute_summary(USER, 2024)
        assert rows[0].short_term_gain_loss == pytest.approx(0.0)


# =============================================================================
# Lot Ledger
# =============================================================================

class TestLotLedger:
    """Tests for lot creation, lookup and disposition."""

    def test_create_lot_defaults(self, service):
        lot = service.create_lot(USER, " aapl ", 10, date(2024, 2, 1), 150.0, holding_id="h1")
        assert lot.symbol == "AAPL"
        assert lot.cost_basis == pytest.approx(1500.0)
        assert lot.is_open
        assert lot.origin_lot_id == lot.id
        assert lot.parent_lot_id is None
        assert lot.version == 1
        assert lot.holding_id == "h1"

    def test_create_lot_cost_basis_override(self, service):
        lot = service.create_lot(USER, "AAPL", 10, date(2024, 2, 1), 150.0, cost_basis=1400.0)
        assert lot.cost_basis == pytest.approx(1400.0)
        assert lot.cost_per_share == pytest.approx(140.0)

    def test_create_lot_rejects_bad_input(self, service):
        with pytest.raises(InvalidQuantity):
            service.create_lot(USER, "AAPL", 0, date(2024, 2, 1), 150.0)
        with pytest.raises(InvalidQuantity):
            service.create_lot(USER, "AAPL", -5, date(2024, 2, 1), 150.0)
        with pytest.raises(InvalidPrice):
            service.create_lot(USER, "AAPL", 10, date(2024, 2, 1), -1.0)
        with pytest.raises(InvalidPrice):
            service.create_lot(USER, "AAPL", 10, date(2024, 2, 1), 150.0, cost_basis=-1.0)

    def test_get_lot_unknown_or_foreign(self, service, lot):
        with pytest.raises(LotNotFound):
            service.get_lot(USER, "missing")
        with pytest.raises(LotNotFound):
            service.get_lot(OTHER_USER, lot.id)

    def test_partial_disposition_splits_lot(self, service, lot):
        result = service.dispose_lot(USER, lot.id, 40, date(2024, 6, 15), 60.0)
        closed = result.closed_portion
        remainder = result.remainder

        assert closed.id == lot.id
        assert closed.is_closed
        assert closed.quantity == pytest.approx(40)
        assert closed.cost_basis == pytest.approx(2000.0)
        assert closed.gain_loss == pytest.approx(400.0)
        assert result.cost_basis_sold == pytest.approx(2000.0)

        assert remainder is not None
        assert remainder.id != lot.id
        assert remainder.is_open
        assert remainder.quantity == pytest.approx(60)
        assert remainder.cost_basis == pytest.approx(3000.0)
        assert remainder.acquisition_date == lot.acquisition_date
        assert remainder.acquisition_price == lot.acquisition_price
        assert remainder.origin_lot_id == lot.id
        assert remainder.parent_lot_id == lot.id

    def test_basis_is_conserved_across_splits(self, service):
        lot = service.create_lot(USER, "FRC", 3, date(2024, 1, 2), 33.33)
        original_basis = lot.cost_basis

        first = service.dispose_lot(USER, lot.id, 1, date(2024, 2, 1), 30.0)
        second = service.dispose_lot(USER, first.remainder.id, 1.5, date(2024, 3, 1), 30.0)

        total = (
            first.cost_basis_sold
            + second.cost_basis_sold
            + second.remainder.cost_basis
        )
        assert total == pytest.approx(original_basis)
        assert second.remainder.quantity == pytest.approx(0.5)
        assert second.remainder.origin_lot_id == lot.id
        assert second.remainder.parent_lot_id == first.remainder.id

    def test_full_disposition_closes_lot(self, service, lot):
        result = service.dispose_lot(USER, lot.id, 100, date(2024, 6, 15), 60.0)
        assert result.remainder is None
        assert service.list_lots(USER) == []

    def test_disposition_within_tolerance_closes_lot(self, service, lot):
        result = service.dispose_lot(USER, lot.id, 100 + 1e-12, date(2024, 6, 15), 60.0)
        assert result.remainder is None
        assert result.closed_portion.quantity == pytest.approx(100)

    def test_dispose_more_than_open(self, service, lot):
        with pytest.raises(InsufficientQuantity) as exc_info:
            service.dispose_lot(USER, lot.id, 150, date(2024, 6, 15), 60.0)
        assert exc_info.value.available == pytest.approx(100)
        # Nothing was written
        assert service.get_lot(USER, lot.id).is_open

    def test_dispose_invalid_quantity(self, service, lot):
        with pytest.raises(InvalidQuantity):
            service.dispose_lot(USER, lot.id, 0, date(2024, 6, 15), 60.0)

    def test_dispose_closed_lot(self, service, lot):
        service.dispose_lot(USER, lot.id, 100, date(2024, 6, 15), 60.0)
        with pytest.raises(LotAlreadyClosed):
            service.dispose_lot(USER, lot.id, 1, date(2024, 6, 16), 60.0)

    def test_dispose_before_acquisition(self, service, lot):
        with pytest.raises(InvalidDate):
            service.dispose_lot(USER, lot.id, 10, date(2024, 1, 9), 60.0)

    def test_dispose_negative_price(self, service, lot):
        with pytest.raises(InvalidPrice):
            service.dispose_lot(USER, lot.id, 10, date(2024, 6, 15), -1.0)

    def test_dispose_foreign_lot(self, service, lot):
        with pytest.raises(LotNotFound):
            service.dispose_lot(OTHER_USER, lot.id, 10, date(2024, 6, 15), 60.0)

    def test_dispose_with_datetime(self, service, lot):
        result = service.dispose_lot(USER, lot.id, 10, datetime(2024, 6, 15, 10, 30), 60.0)
        assert result.closed_portion.disposition_date == date(2024, 6, 15)
        assert result.closed_portion.holding_period_days == 157

    def test_list_lots_order_and_filters(self, service):
        old = service.create_lot(USER, "AAA", 10, date(2023, 3, 1), 10.0)
        mid = service.create_lot(USER, "BBB", 10, date(2023, 6, 1), 10.0)
        new = service.create_lot(USER, "AAA", 10, date(2024, 1, 5), 10.0)
        service.create_lot(OTHER_USER, "AAA", 10, date(2024, 1, 5), 10.0)

        service.dispose_lot(USER, old.id, 10, date(2023, 12, 1), 12.0)
        service.dispose_lot(USER, mid.id, 10, date(2024, 2, 1), 12.0)

        assert [l.id for l in service.list_lots(USER)] == [new.id]
        assert [l.id for l in service.list_lots(USER, include_closed=True)] == [
            new.id, mid.id, old.id,
        ]
        assert [l.id for l in service.list_lots(USER, include_closed=True, symbol="aaa")] == [
            new.id, old.id,
        ]
        # Disposed in 2024, or still open
        assert [l.id for l in service.list_lots(USER, include_closed=True, tax_year=2024)] == [
            new.id, mid.id,
        ]

    def test_open_quantity(self, service, lot):
        service.create_lot(USER, "XYZ", 25, date(2024, 2, 1), 55.0)
        service.dispose_lot(USER, lot.id, 40, date(2024, 6, 15), 60.0)
        assert service.ledger.open_quantity(USER, "XYZ") == pytest.approx(85)

    def test_adjust_cost_basis(self, service, lot):
        adjusted = service.ledger.adjust_cost_basis(USER, lot.id, 100.0)
        assert adjusted.cost_basis == pytest.approx(5100.0)
        assert adjusted.wash_sale_adjustment == pytest.approx(100.0)
        assert adjusted.version == 2

        with pytest.raises(InvalidPrice):
            service.ledger.adjust_cost_basis(USER, lot.id, -10_000.0)

    def test_adjust_cost_basis_on_closed_lot_moves_gain(self, service, lot):
        service.dispose_lot(USER, lot.id, 100, date(2024, 6, 15), 60.0)
        adjusted = service.ledger.adjust_cost_basis(USER, lot.id, 300.0)
        assert adjusted.gain_loss == pytest.approx(1000.0 - 300.0)

    def test_unrealized_gains(self, service):
        service.create_lot(USER, "UNR", 100, date(2023, 1, 1), 50.0)
        service.create_lot(USER, "UNR", 10, date(2024, 6, 1), 60.0)

        gains = service.ledger.unrealized_gains(USER, "UNR", 55.0, as_of=date(2024, 7, 1))
        assert gains["long_term"] == pytest.approx(500.0)
        assert gains["short_term"] == pytest.approx(-50.0)
        assert gains["total"] == pytest.approx(450.0)

    def test_lots_approaching_long_term(self, service):
        service.create_lot(USER, "APR", 10, date(2023, 1, 1), 10.0)
        soon = service.create_lot(USER, "APR", 10, date(2023, 7, 15), 10.0)
        service.create_lot(USER, "APR", 10, date(2024, 6, 1), 10.0)

        approaching = service.ledger.lots_approaching_long_term(
            USER, days_threshold=30, as_of=date(2024, 7, 1)
        )
        assert [l.id for l in approaching] == [soon.id]


# =============================================================================
# Disposition Processing
# =============================================================================

class TestDispositionProcessing:
    """Tests for holding period and classification rules."""

    def test_whole_days_for_dates(self):
        assert whole_days_between(date(2024, 1, 10), date(2024, 6, 15)) == 157
        assert whole_days_between(date(2024, 1, 10), date(2024, 1, 10)) == 0

    def test_whole_days_floors_partial_days(self):
        start = datetime(2024, 1, 10, 12, 0)
        assert whole_days_between(start, datetime(2024, 1, 11, 11, 59)) == 0
        assert whole_days_between(start, datetime(2024, 1, 11, 12, 0)) == 1
        assert whole_days_between(date(2024, 1, 10), datetime(2024, 1, 11, 0, 0)) == 1

    def test_long_term_boundary(self, service):
        lot = service.create_lot(USER, "BND", 10, date(2023, 1, 1), 10.0)
        # Exactly 365 days later
        result = service.dispose_lot(USER, lot.id, 5, date(2024, 1, 1), 12.0)
        assert result.closed_portion.holding_period_days == 365
        assert result.is_long_term is True

        result = service.dispose_lot(USER, result.remainder.id, 5, date(2023, 12, 31), 12.0)
        assert result.closed_portion.holding_period_days == 364
        assert result.is_long_term is False

    def test_threshold_follows_preferences(self, service, lot):
        service.update_preferences(USER, short_term_threshold_days=100)
        result = service.dispose_lot(USER, lot.id, 100, date(2024, 6, 15), 40.0)
        assert result.is_long_term is True


# =============================================================================
# Wash Sales
# =============================================================================

class TestWashSales:
    """Tests for wash sale detection and deferral."""

    def _loss_sale(self, service, replacement_date):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        replacement = service.create_lot(USER, "WSH", 50, replacement_date, 85.0)
        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)
        return result, replacement

    def test_window_is_inclusive(self, service):
        result, _ = self._loss_sale(service, date(2024, 3, 31))
        assert result.closed_portion.is_wash_sale is True

    def test_outside_window(self, service):
        result, replacement = self._loss_sale(service, date(2024, 4, 1))
        assert result.closed_portion.is_wash_sale is False
        assert result.wash_sale_replacement is None
        assert service.get_lot(USER, replacement.id).cost_basis == pytest.approx(4250.0)

    def test_purchase_before_sale_within_window(self, service):
        result, replacement = self._loss_sale(service, date(2024, 2, 10))
        assert result.closed_portion.is_wash_sale is True
        assert result.closed_portion.wash_sale_replacement_lot_id == replacement.id

    def test_gain_is_never_a_wash_sale(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)
        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 120.0)
        assert result.closed_portion.is_wash_sale is False

    def test_other_symbol_is_not_replacement(self, service):
        original = service.create_lot(USER, "SPY", 50, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "VOO", 50, date(2024, 3, 20), 85.0)
        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)
        assert result.closed_portion.is_wash_sale is False

    def test_remainder_of_same_lot_is_not_replacement(self, service):
        lot = service.create_lot(USER, "WSH", 100, date(2024, 2, 20), 100.0)
        result = service.dispose_lot(USER, lot.id, 50, date(2024, 3, 1), 80.0)
        assert result.remainder is not None
        assert result.closed_portion.is_wash_sale is False

    def test_earliest_acquisition_is_replacement(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        later = service.create_lot(USER, "WSH", 10, date(2024, 3, 25), 85.0)
        earlier = service.create_lot(USER, "WSH", 10, date(2024, 3, 10), 85.0)
        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)

        assert result.closed_portion.wash_sale_replacement_lot_id == earlier.id
        assert service.get_lot(USER, later.id).cost_basis == pytest.approx(850.0)

    def test_detection_disabled(self, service):
        service.update_preferences(USER, enable_wash_sale_detection=False)
        result, replacement = self._loss_sale(service, date(2024, 3, 20))
        assert result.closed_portion.is_wash_sale is False
        assert service.get_lot(USER, replacement.id).cost_basis == pytest.approx(4250.0)

    def test_deferred_loss_recognised_on_replacement_sale(self, service):
        result, replacement = self._loss_sale(service, date(2024, 3, 20))
        sale = service.dispose_lot(USER, replacement.id, 50, date(2024, 5, 1), 90.0)

        # 4500 proceeds against 4250 + 1000 deferred basis
        assert sale.closed_portion.gain_loss == pytest.approx(-750.0)
        assert sale.closed_portion.is_wash_sale is False

        rows = service.recompute_summary(USER, 2024)
        assert rows[0].short_term_gain_loss == pytest.approx(-750.0)
        assert rows[0].positions_closed == 2
        assert rows[0].wash_sale_disallowed == pytest.approx(1000.0)

    def test_deferral_onto_sold_replacement(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        replacement = service.create_lot(USER, "WSH", 50, date(2024, 2, 20), 90.0)
        service.dispose_lot(USER, replacement.id, 50, date(2024, 3, 10), 95.0)

        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)

        assert result.closed_portion.is_wash_sale is True
        sold = service.get_lot(USER, replacement.id)
        assert sold.cost_basis == pytest.approx(5500.0)
        assert sold.gain_loss == pytest.approx(250.0 - 1000.0)

        rows = service.recompute_summary(USER, 2024)
        assert rows[0].short_term_gain_loss == pytest.approx(-750.0)

    def test_replacement_sold_before_loss_still_counts(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        resold = service.create_lot(USER, "WSH", 50, date(2024, 2, 10), 90.0)
        service.dispose_lot(USER, resold.id, 50, date(2024, 2, 20), 95.0)

        result = service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)

        assert result.closed_portion.is_wash_sale is True
        assert result.closed_portion.wash_sale_replacement_lot_id == resold.id
        assert result.wash_sale_replacement.id == resold.id
        sold = service.get_lot(USER, resold.id)
        assert sold.cost_basis == pytest.approx(4500.0 + 1000.0)
        assert sold.gain_loss == pytest.approx(250.0 - 1000.0)

        rows = service.recompute_summary(USER, 2024)
        assert rows[0].short_term_gain_loss == pytest.approx(-750.0)
        assert rows[0].wash_sale_disallowed == pytest.approx(1000.0)

    def test_loss_is_flagged_only_once(self, service):
        original = service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)

        first = service.create_lot(USER, "WSH", 10, date(2024, 3, 10), 85.0)
        second = service.create_lot(USER, "WSH", 10, date(2024, 3, 15), 85.0)

        assert first.cost_basis == pytest.approx(850.0 + 1000.0)
        assert second.cost_basis == pytest.approx(850.0)


# =============================================================================
# Gains Aggregation
# =============================================================================

class TestGainsAggregator:
    """Tests for the per-symbol capital gains summary."""

    @pytest.fixture
    def closed_lots(self, service):
        a = service.create_lot(USER, "AAA", 10, date(2023, 1, 3), 100.0)
        b = service.create_lot(USER, "AAA", 10, date(2024, 1, 3), 100.0)
        c = service.create_lot(USER, "BBB", 10, date(2024, 2, 1), 50.0)
        service.dispose_lot(USER, a.id, 10, date(2024, 6, 1), 150.0)   # LT +500
        service.dispose_lot(USER, b.id, 5, date(2024, 6, 1), 90.0)     # ST -50
        service.dispose_lot(USER, c.id, 10, date(2024, 7, 1), 40.0)    # ST -100
        return a, b, c

    def test_groups_by_symbol_and_term(self, service, closed_lots):
        rows = service.recompute_summary(USER, 2024)
        by_symbol = {r.symbol: r for r in rows}

        assert by_symbol["AAA"].long_term_gain_loss == pytest.approx(500.0)
        assert by_symbol["AAA"].short_term_gain_loss == pytest.approx(-50.0)
        assert by_symbol["AAA"].positions_closed == 2
        assert by_symbol["BBB"].short_term_gain_loss == pytest.approx(-100.0)
        assert by_symbol["BBB"].positions_closed == 1

    def test_rows_ordered_by_total(self, service, closed_lots):
        rows = service.recompute_summary(USER, 2024)
        assert [r.symbol for r in rows] == ["AAA", "BBB"]
        assert rows == service.get_capital_gains_summary(USER, 2024)

    def test_other_years_excluded(self, service, closed_lots):
        assert service.recompute_summary(USER, 2023) == []

    def test_recompute_is_idempotent(self, service, closed_lots):
        first = service.recompute_summary(USER, 2024)
        second = service.recompute_summary(USER, 2024)
        assert len(first) == len(second)
        for a, b in zip(first, second):
            assert a.same_figures(b)

    def test_stale_rows_removed(self, service, closed_lots):
        service.store.replace_summaries(USER, 2024, [CapitalGainsSummary(
            user_id=USER, tax_year=2024, symbol="OLD", short_term_gain_loss=99.0,
        )])
        rows = service.recompute_summary(USER, 2024)
        assert "OLD" not in {r.symbol for r in rows}

    def test_failed_rebuild_keeps_previous_rows(self, service, closed_lots, monkeypatch):
        before = service.recompute_summary(USER, 2024)

        def fail(*args):
            raise RuntimeError("write failed")

        monkeypatch.setattr(service.store, "replace_summaries", fail)
        with pytest.raises(RuntimeError):
            service.recompute_summary(USER, 2024)
        assert service.get_capital_gains_summary(USER, 2024) == before

    def test_concurrent_rebuilds_converge(self, service, closed_lots):
        errors = []

        def rebuild():
            try:
                service.recompute_summary(USER, 2024)
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=rebuild) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        rows = service.get_capital_gains_summary(USER, 2024)
        assert len(rows) == 2


# =============================================================================
# Harvesting
# =============================================================================

class TestHarvestingAdvisor:
    """Tests for tax-loss harvesting opportunities."""

    AS_OF = date(2024, 9, 1)

    def test_gains_are_skipped(self, service):
        service.create_lot(USER, "UP", 10, date(2024, 1, 2), 100.0)
        assert service.find_opportunities(USER, {"UP": 120.0}, as_of=self.AS_OF) == []

    def test_zero_basis_never_divides(self, service):
        service.create_lot(USER, "GFT", 10, date(2024, 1, 2), 0.0)
        assert service.find_opportunities(USER, {"GFT": 0.0}, as_of=self.AS_OF) == []

    def test_below_threshold_percent(self, service):
        service.create_lot(USER, "DIP", 1000, date(2024, 1, 2), 100.0)
        opps = service.find_opportunities(
            USER, {"DIP": 97.0}, threshold_percent=5, min_amount=1000, as_of=self.AS_OF
        )
        assert opps[0].unrealized_loss == pytest.approx(-3000.0)
        assert opps[0].is_harvestable is False
        assert opps[0].reason_not_harvestable == "below threshold percent"

    def test_defaults_from_preferences(self, service):
        service.create_lot(USER, "HRV", 100, date(2024, 1, 2), 100.0)
        service.update_preferences(USER, min_harvest_amount=2000.0)
        opps = service.find_opportunities(USER, {"HRV": 90.0}, as_of=self.AS_OF)
        assert opps[0].reason_not_harvestable == "below minimum amount"

    def test_missing_price_is_skipped(self, service):
        service.create_lot(USER, "HRV", 100, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "NOP", 100, date(2024, 1, 2), 100.0)
        opps = service.find_opportunities(USER, {"HRV": 80.0}, as_of=self.AS_OF)
        assert [o.symbol for o in opps] == ["HRV"]

    def test_recent_purchase_opens_wash_window(self, service):
        service.create_lot(USER, "WIN", 100, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "WIN", 10, date(2024, 8, 20), 100.0)

        opps = service.find_opportunities(
            USER, {"WIN": 80.0}, threshold_percent=5, min_amount=1000, as_of=self.AS_OF
        )
        assert len(opps) == 2
        big, small = opps
        assert big.unrealized_loss == pytest.approx(-2000.0)
        assert big.is_harvestable is False
        assert big.reason_not_harvestable == "wash sale window open until 2024-09-19"
        assert small.reason_not_harvestable == "below minimum amount"

    def test_recent_loss_sale_opens_wash_window(self, service):
        sold = service.create_lot(USER, "WIN", 10, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "WIN", 100, date(2024, 1, 2), 100.0)
        service.dispose_lot(USER, sold.id, 10, date(2024, 8, 25), 90.0)

        opps = service.find_opportunities(
            USER, {"WIN": 80.0}, threshold_percent=5, min_amount=1000, as_of=self.AS_OF
        )
        assert opps[0].reason_not_harvestable == "wash sale window open until 2024-09-24"

    def test_old_activity_does_not_block(self, service):
        service.create_lot(USER, "WIN", 100, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "WIN", 10, date(2024, 7, 1), 100.0)
        opps = service.find_opportunities(
            USER, {"WIN": 80.0}, threshold_percent=5, min_amount=1000, as_of=self.AS_OF
        )
        assert opps[0].is_harvestable is True

    def test_opportunity_fields(self, service):
        lot = service.create_lot(USER, "HRV", 100, date(2023, 1, 2), 100.0)
        opps = service.find_opportunities(
            USER, StaticPriceSource({"hrv": 80.0}), as_of=self.AS_OF
        )
        opp = opps[0]
        assert opp.lot_id == lot.id
        assert opp.current_price == 80.0
        assert opp.holding_period == HoldingPeriod.LONG_TERM
        assert opp.identified_date == self.AS_OF
        assert opp.expires_at == self.AS_OF + timedelta(days=30)
        assert opp.to_dict()["holding_period"] == "long_term"

    def test_sorted_by_largest_loss(self, service):
        service.create_lot(USER, "AAA", 100, date(2024, 1, 2), 100.0)
        service.create_lot(USER, "BBB", 100, date(2024, 1, 2), 100.0)
        opps = service.find_opportunities(
            USER, {"AAA": 90.0, "BBB": 70.0}, as_of=self.AS_OF
        )
        assert [o.symbol for o in opps] == ["BBB", "AAA"]

    def test_never_harvestable_below_limits(self, service):
        prices = {f"S{i}": p for i, p in enumerate([99.0, 96.0, 94.0, 89.0, 50.0])}
        for symbol in prices:
            service.create_lot(USER, symbol, 100, date(2024, 1, 2), 100.0)

        for opp in service.find_opportunities(
            USER, prices, threshold_percent=5, min_amount=1000, as_of=self.AS_OF
        ):
            if opp.is_harvestable:
                assert abs(opp.unrealized_loss_percent) >= 5
                assert abs(opp.unrealized_loss) >= 1000


# =============================================================================
# Tax Events, Reports and Preferences
# =============================================================================

class TestTaxReports:
    """Tests for tax events and the annual report."""

    def test_record_and_list_events(self, service):
        service.record_tax_event(USER, "dividend", "aapl", date(2024, 3, 15), 120.0)
        service.record_tax_event(USER, TaxEventType.INTEREST, "CASH", date(2024, 6, 30), 30.0)
        service.record_tax_event(USER, "dividend", "AAPL", date(2023, 12, 15), 110.0)

        events = service.list_tax_events(USER, tax_year=2024)
        assert [e.event_type for e in events] == [TaxEventType.INTEREST, TaxEventType.DIVIDEND]
        assert events[1].symbol == "AAPL"
        assert events[1].tax_year == 2024

        dividends = service.list_tax_events(USER, event_type="dividend")
        assert len(dividends) == 2

    def test_unknown_event_type(self, service):
        with pytest.raises(InvalidEventType):
            service.record_tax_event(USER, "lottery", "X", date(2024, 1, 1), 1.0)

    def test_build_report(self, service):
        a = service.create_lot(USER, "AAA", 10, date(2023, 1, 3), 100.0)
        b = service.create_lot(USER, "BBB", 10, date(2024, 2, 1), 50.0)
        service.dispose_lot(USER, a.id, 10, date(2024, 6, 1), 150.0)
        service.dispose_lot(USER, b.id, 10, date(2024, 7, 1), 40.0)

        service.record_tax_event(USER, "dividend", "AAA", date(2024, 3, 15), 120.0)
        service.record_tax_event(USER, "interest", "CASH", date(2024, 6, 30), 30.0)
        service.record_tax_event(USER, "capital_gain_distribution", "FND", date(2024, 12, 1), 50.0)
        service.record_tax_event(USER, "return_of_capital", "REIT", date(2024, 12, 1), 20.0)
        service.record_tax_event(USER, "wash_sale", "AAA", date(2024, 4, 1), 75.0)
        service.record_tax_event(USER, "stock_split", "AAA", date(2024, 5, 1), 0.0)
        service.record_tax_event(USER, "dividend", "AAA", date(2023, 3, 15), 999.0)

        report = service.build_report(USER, 2024)

        assert report.long_term_gains == pytest.approx(500.0)
        assert report.short_term_gains == pytest.approx(-100.0)
        assert report.total_gains == pytest.approx(400.0)
        assert report.positions_closed == 2
        assert report.dividends == pytest.approx(120.0)
        assert report.interest == pytest.approx(30.0)
        assert report.capital_gain_distributions == pytest.approx(50.0)
        assert report.return_of_capital == pytest.approx(20.0)
        assert report.wash_sales == pytest.approx(75.0)
        assert [s.symbol for s in report.symbols] == ["AAA", "BBB"]

        frame = report.to_frame()
        assert list(frame.index) == ["AAA", "BBB"]
        assert frame.loc["AAA", "total_gain_loss"] == pytest.approx(500.0)

        data = report.to_dict()
        assert data["total_gains"] == pytest.approx(400.0)
        assert len(data["symbols"]) == 2

    def test_empty_report(self, service):
        report = service.build_report(USER, 2024)
        assert report.total_gains == 0.0
        assert report.symbols == []
        assert report.to_frame().empty


class TestPreferences:
    """Tests for per-user tax preferences."""

    def test_defaults_created_on_first_access(self, service):
        assert service.store.get_preferences(USER) is None
        prefs = service.get_preferences(USER)
        assert prefs.user_id == USER
        assert prefs.short_term_threshold_days == 365
        assert prefs.wash_sale_window_days == 30
        assert prefs.enable_wash_sale_detection is True
        assert service.store.get_preferences(USER) is not None

    def test_defaults_follow_settings(self, service, monkeypatch):
        monkeypatch.setenv("TAXLOTS_DEFAULT_WASH_SALE_WINDOW_DAYS", "10")
        get_settings.cache_clear()
        assert service.get_preferences(USER).wash_sale_window_days == 10

    def test_update_preferences(self, service):
        prefs = service.update_preferences(USER, wash_sale_window_days=61, metadata={"source": "ui"})
        assert prefs.wash_sale_window_days == 61
        assert service.get_preferences(USER).metadata == {"source": "ui"}

    def test_update_rejects_unknown_and_invalid(self, service):
        with pytest.raises(InvalidPreference):
            service.update_preferences(USER, favourite_colour="blue")
        with pytest.raises(InvalidPreference):
            service.update_preferences(USER, wash_sale_window_days=-1)
        with pytest.raises(InvalidPreference):
            service.update_preferences(USER, min_harvest_amount=-5.0)
        assert service.get_preferences(USER).wash_sale_window_days == 30

    def test_preference_validation(self):
        with pytest.raises(InvalidPreference):
            TaxPreference(user_id=USER, short_term_threshold_days=-1)
        prefs = TaxPreference(user_id=USER)
        assert prefs.to_dict()["harvest_threshold_percent"] == 5.0


# =============================================================================
# Metadata and Errors
# =============================================================================

class TestMetadata:
    """Tests for typed metadata maps."""

    def test_flat_scalars_accepted(self, service):
        lot = service.create_lot(
            USER, "MET", 1, date(2024, 1, 2), 10.0,
            metadata={"broker": "acme", "lots": 3, "fractional": False, "fee": 1.5, "note": None},
        )
        assert service.get_lot(USER, lot.id).metadata["broker"] == "acme"

    def test_nested_rejected(self, service):
        with pytest.raises(MalformedMetadata):
            service.create_lot(USER, "MET", 1, date(2024, 1, 2), 10.0, metadata={"a": {"b": 1}})
        with pytest.raises(MalformedMetadata):
            validate_metadata({"tags": ["x", "y"]})

    def test_parse_stored_json(self):
        assert parse_metadata(None) is None
        assert parse_metadata("") is None
        assert parse_metadata('{"a": 1}') == {"a": 1}
        with pytest.raises(MalformedMetadata):
            parse_metadata("{not json")
        with pytest.raises(MalformedMetadata):
            parse_metadata("[1, 2]")

    def test_dump_is_stable(self):
        assert dump_metadata({"b": 1, "a": "x"}) == '{"a": "x", "b": 1}'
        assert dump_metadata(None) is None


class TestErrors:
    """Tests for the error hierarchy."""

    def test_error_to_dict(self, service, lot):
        with pytest.raises(InsufficientQuantity) as exc_info:
            service.dispose_lot(USER, lot.id, 500, date(2024, 6, 15), 60.0)
        data = exc_info.value.to_dict()
        assert data["error"] == "INSUFFICIENT_QUANTITY"
        assert data["details"][0]["resource_id"] == lot.id
        assert exc_info.value.error_code == ErrorCode.INSUFFICIENT_QUANTITY

    def test_not_found_to_dict(self, service):
        with pytest.raises(LotNotFound) as exc_info:
            service.get_lot(USER, "nope")
        assert exc_info.value.to_dict()["error"] == "LOT_NOT_FOUND"


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrency:
    """Tests for serialized lot mutations."""

    def test_versioned_update_rejects_stale_write(self):
        store = InMemoryLedgerStore()
        lot = store.insert_lot(TaxLot(user_id=USER, symbol="VER", quantity=1, acquisition_price=1.0))

        updated = store.update_lot(lot, expected_version=1)
        assert updated.version == 2

        with pytest.raises(ConcurrentModification):
            store.update_lot(lot, expected_version=1)
        with pytest.raises(LotNotFound):
            store.update_lot(TaxLot(user_id=USER), expected_version=1)

    def test_same_lot_disposed_once(self, service, lot):
        barrier = threading.Barrier(6)
        successes, failures = [], []

        def dispose():
            barrier.wait()
            try:
                successes.append(service.dispose_lot(USER, lot.id, 100, date(2024, 6, 15), 60.0))
            except LotAlreadyClosed as exc:
                failures.append(exc)

        threads = [threading.Thread(target=dispose) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(failures) == 5

    def test_partial_disposals_never_double_spend(self, service, lot):
        barrier = threading.Barrier(5)
        disposed = []

        def sell_twenty():
            barrier.wait()
            for _ in range(50):
                open_lots = service.list_lots(USER, symbol="XYZ")
                if not open_lots:
                    return
                try:
                    result = service.dispose_lot(
                        USER, open_lots[0].id, 20, date(2024, 6, 15), 60.0
                    )
                except (LotAlreadyClosed, InsufficientQuantity):
                    continue
                disposed.append(result.closed_portion.quantity)
                return

        threads = [threading.Thread(target=sell_twenty) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(disposed) == pytest.approx(100)
        assert service.list_lots(USER, symbol="XYZ") == []
        closed = service.store.query_lots(
            LotFilter(user_id=USER, include_closed=True, include_open=False)
        )
        assert len(closed) == 5
        assert sum(l.cost_basis for l in closed) == pytest.approx(5000.0)

    def test_keyed_locks_evicted_after_release(self):
        locks = KeyedLocks()
        with locks.hold(("lots", USER, "A")):
            with locks.hold(("lots", USER, "A")):
                assert len(locks) == 1
            with locks.hold(("lots", USER, "B")):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    def test_keyed_locks_released_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(ValueError):
            with locks.hold("A"):
                raise ValueError("boom")
        assert len(locks) == 0
        with locks.hold("A"):
            pass

    def test_keyed_locks_block_same_key_only(self):
        locks = KeyedLocks()
        held = threading.Event()
        release = threading.Event()
        same_key_done = threading.Event()
        other_key_done = threading.Event()

        def holder():
            with locks.hold("A"):
                held.set()
                release.wait(5)

        def same_key():
            with locks.hold("A"):
                same_key_done.set()

        def other_key():
            with locks.hold("B"):
                other_key_done.set()

        threads = [threading.Thread(target=holder)]
        threads[0].start()
        assert held.wait(5)
        threads += [threading.Thread(target=same_key), threading.Thread(target=other_key)]
        for t in threads[1:]:
            t.start()

        assert other_key_done.wait(5)
        assert not same_key_done.wait(0.05)
        release.set()
        for t in threads:
            t.join()
        assert same_key_done.is_set()
        assert len(locks) == 0

    def test_service_keeps_no_idle_locks(self, service):
        for i in range(20):
            user = f"user_{i}"
            lot = service.create_lot(user, f"S{i}", 10, date(2024, 1, 10), 50.0)
            service.dispose_lot(user, lot.id, 10, date(2024, 6, 15), 60.0)
            service.recompute_summary(user, 2024)
        assert len(service.locks) == 0


# =============================================================================
# Atomic writes
# =============================================================================

class FlakyStore(InMemoryLedgerStore):
    """In-memory store that fails chosen writes on demand."""

    def __init__(self):
        super().__init__()
        self.fail_inserts = False
        self.fail_update_ids: set[str] = set()

    def insert_lot(self, lot):
        if self.fail_inserts:
            raise RuntimeError("insert failed")
        return super().insert_lot(lot)

    def update_lot(self, lot, expected_version):
        if lot.id in self.fail_update_ids:
            raise RuntimeError("update failed")
        return super().update_lot(lot, expected_version)


class TestAtomicWrites:
    """A failed write leaves no partial disposition or deferral behind."""

    @pytest.fixture
    def store(self):
        return FlakyStore()

    @pytest.fixture
    def flaky_service(self, store):
        return TaxLotService(store=store)

    def _all_lots(self, store):
        return store.query_lots(LotFilter(user_id=USER, include_closed=True))

    def test_failed_remainder_insert_keeps_lot_open(self, store, flaky_service):
        lot = flaky_service.create_lot(USER, "XYZ", 100, date(2024, 1, 10), 50.0)
        store.fail_inserts = True

        with pytest.raises(RuntimeError):
            flaky_service.dispose_lot(USER, lot.id, 40, date(2024, 6, 15), 60.0)

        after = flaky_service.get_lot(USER, lot.id)
        assert after.is_open
        assert after.quantity == pytest.approx(100)
        assert after.cost_basis == pytest.approx(5000.0)
        assert after.version == lot.version
        assert sum(l.quantity for l in self._all_lots(store)) == pytest.approx(100)

        store.fail_inserts = False
        result = flaky_service.dispose_lot(USER, lot.id, 40, date(2024, 6, 15), 60.0)
        assert result.remainder.quantity == pytest.approx(60)

    def test_failed_deferral_keeps_loss_lot_open(self, store, flaky_service):
        original = flaky_service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        replacement = flaky_service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)
        store.fail_update_ids.add(replacement.id)

        with pytest.raises(RuntimeError):
            flaky_service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)

        assert flaky_service.get_lot(USER, original.id).is_open
        untouched = flaky_service.get_lot(USER, replacement.id)
        assert untouched.cost_basis == pytest.approx(4250.0)
        assert untouched.wash_sale_adjustment == 0.0

    def test_failed_partial_wash_sale_writes_nothing(self, store, flaky_service):
        original = flaky_service.create_lot(USER, "WSH", 100, date(2024, 1, 2), 100.0)
        replacement = flaky_service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)
        store.fail_update_ids.add(replacement.id)
        before = {l.id: l.to_dict() for l in self._all_lots(store)}

        with pytest.raises(RuntimeError):
            flaky_service.dispose_lot(USER, original.id, 40, date(2024, 3, 1), 80.0)

        assert {l.id: l.to_dict() for l in self._all_lots(store)} == before

    def test_failed_flag_write_drops_new_lot(self, store, flaky_service):
        original = flaky_service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        flaky_service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)
        store.fail_update_ids.add(original.id)

        with pytest.raises(RuntimeError):
            flaky_service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)

        assert flaky_service.list_lots(USER, symbol="WSH") == []
        assert flaky_service.get_lot(USER, original.id).is_wash_sale is False

    def test_failed_new_lot_insert_leaves_loss_unflagged(self, store, flaky_service):
        original = flaky_service.create_lot(USER, "WSH", 50, date(2024, 1, 2), 100.0)
        flaky_service.dispose_lot(USER, original.id, 50, date(2024, 3, 1), 80.0)
        store.fail_inserts = True

        with pytest.raises(RuntimeError):
            flaky_service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)

        loss = flaky_service.get_lot(USER, original.id)
        assert loss.is_wash_sale is False
        assert loss.wash_sale_replacement_lot_id is None

        store.fail_inserts = False
        replacement = flaky_service.create_lot(USER, "WSH", 50, date(2024, 3, 20), 85.0)
        assert replacement.cost_basis == pytest.approx(4250.0 + 1000.0)
        assert flaky_service.get_lot(USER, original.id).is_wash_sale is True
