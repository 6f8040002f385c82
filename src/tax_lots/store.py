"""Ledger Store: storage interface plus an in-memory implementation.

The engine talks to storage only through ``LedgerStore``. The in-memory
store is used in tests and for single-process use; ``SqlLedgerStore``
(src/tax_lots/sql_store.py) backs production.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from src.tax_lots.config import TaxEventType, TaxPreference
from src.tax_lots.errors import ConcurrentModification, LotNotFound
from src.tax_lots.metadata import validate_metadata
from src.tax_lots.models import CapitalGainsSummary, TaxEvent, TaxLot

logger = logging.getLogger(__name__)


# =============================================================================
# Filters
# =============================================================================

@dataclass
class LotFilter:
    """Lot query criteria.

    ``tax_year`` keeps lots disposed within that calendar year plus every
    open lot, since open lots are present exposure in any year.
    """
    user_id: str
    include_closed: bool = False
    include_open: bool = True
    symbol: Optional[str] = None
    tax_year: Optional[int] = None
    disposed_from: Optional[date] = None
    disposed_to: Optional[date] = None

    def matches(self, lot: TaxLot) -> bool:
        if lot.user_id != self.user_id:
            return False
        if lot.is_closed and not self.include_closed:
            return False
        if lot.is_open and not self.include_open:
            return False
        if self.symbol is not None and lot.symbol != self.symbol:
            return False
        if self.tax_year is not None and lot.is_closed:
            if lot.disposition_date is None or lot.disposition_date.year != self.tax_year:
                return False
        if self.disposed_from is not None or self.disposed_to is not None:
            if lot.disposition_date is None:
                return False
            if self.disposed_from is not None and lot.disposition_date < self.disposed_from:
                return False
            if self.disposed_to is not None and lot.disposition_date > self.disposed_to:
                return False
        return True


@dataclass
class EventFilter:
    """Tax event query criteria."""
    user_id: str
    tax_year: Optional[int] = None
    event_type: Optional[TaxEventType] = None

    def matches(self, event: TaxEvent) -> bool:
        if event.user_id != self.user_id:
            return False
        if self.tax_year is not None and event.tax_year != self.tax_year:
            return False
        if self.event_type is not None and event.event_type != self.event_type:
            return False
        return True


def sort_lots(lots: list[TaxLot]) -> list[TaxLot]:
    """Newest acquisition first; ties broken by newest record."""
    return sorted(
        lots,
        key=lambda lot: (lot.acquisition_date, lot.created_at),
        reverse=True,
    )


# =============================================================================
# Interface
# =============================================================================

class LedgerStore(ABC):
    """Storage collaborator for the tax-lot engine."""

    # ── Lots ─────────────────────────────────────────────────────────

    @abstractmethod
    def insert_lot(self, lot: TaxLot) -> TaxLot:
        """Persist a new lot record."""

    @abstractmethod
    def update_lot(self, lot: TaxLot, expected_version: int) -> TaxLot:
        """Check-and-set update.

        Raises:
            LotNotFound: If the record does not exist.
            ConcurrentModification: If the stored version differs from
                ``expected_version``.
        """

    @abstractmethod
    def commit_lots(
        self,
        updates: Sequence[tuple[TaxLot, int]],
        inserts: Sequence[TaxLot] = (),
    ) -> tuple[list[TaxLot], list[TaxLot]]:
        """Apply several check-and-set updates and inserts atomically.

        Either every write lands or none does. Updates run first, in
        order, then inserts.

        Returns:
            The updated lots and the inserted lots.

        Raises:
            LotNotFound, ConcurrentModification: As for ``update_lot``.
        """

    @abstractmethod
    def get_lot(self, lot_id: str) -> Optional[TaxLot]:
        """Fetch a lot by id, or None."""

    @abstractmethod
    def query_lots(self, lot_filter: LotFilter) -> list[TaxLot]:
        """Lots matching the filter, newest acquisition first."""

    # ── Summaries ────────────────────────────────────────────────────

    @abstractmethod
    def replace_summaries(
        self, user_id: str, tax_year: int, rows: Sequence[CapitalGainsSummary]
    ) -> None:
        """Atomically replace every row for a user and year with ``rows``."""

    @abstractmethod
    def query_summaries(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        """Rows for a user and year, largest total gain first."""

    # ── Tax events ───────────────────────────────────────────────────

    @abstractmethod
    def insert_tax_event(self, event: TaxEvent) -> TaxEvent:
        """Persist an immutable tax event."""

    @abstractmethod
    def query_tax_events(self, event_filter: EventFilter) -> list[TaxEvent]:
        """Events matching the filter, newest first."""

    # ── Preferences ──────────────────────────────────────────────────

    @abstractmethod
    def get_preferences(self, user_id: str) -> Optional[TaxPreference]:
        """Stored preferences, or None when the user has none yet."""

    @abstractmethod
    def save_preferences(self, preferences: TaxPreference) -> TaxPreference:
        """Insert or replace a user's preferences."""


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemoryLedgerStore(LedgerStore):
    """Thread-safe in-memory ledger store.

    Records are copied on the way in and out so callers cannot mutate
    stored state without going through ``update_lot``.

    Example:
        store = InMemoryLedgerStore()
        store.insert_lot(TaxLot(user_id="u1", symbol="AAPL", quantity=10))
        lots = store.query_lots(LotFilter(user_id="u1"))
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._lots: dict[str, TaxLot] = {}
        self._lots_by_user: dict[str, list[str]] = defaultdict(list)
        self._summaries: dict[tuple[str, int, str], CapitalGainsSummary] = {}
        self._events: dict[str, TaxEvent] = {}
        self._preferences: dict[str, TaxPreference] = {}

    # ── Lots ─────────────────────────────────────────────────────────

    def insert_lot(self, lot: TaxLot) -> TaxLot:
        validate_metadata(lot.metadata)
        with self._lock:
            stored = copy.deepcopy(lot)
            self._lots[stored.id] = stored
            self._lots_by_user[stored.user_id].append(stored.id)
        logger.debug("Inserted lot %s (%s %s)", lot.id[:8], lot.quantity, lot.symbol)
        return copy.deepcopy(stored)

    def update_lot(self, lot: TaxLot, expected_version: int) -> TaxLot:
        validate_metadata(lot.metadata)
        with self._lock:
            current = self._lots.get(lot.id)
            if current is None:
                raise LotNotFound(lot.id)
            if current.version != expected_version:
                raise ConcurrentModification(lot.id, expected_version, current.version)
            stored = copy.deepcopy(lot)
            stored.version = expected_version + 1
            stored.updated_at = datetime.now(timezone.utc)
            self._lots[stored.id] = stored
        return copy.deepcopy(stored)

    def commit_lots(
        self,
        updates: Sequence[tuple[TaxLot, int]],
        inserts: Sequence[TaxLot] = (),
    ) -> tuple[list[TaxLot], list[TaxLot]]:
        with self._lock:
            lots = dict(self._lots)
            by_user = {user: list(ids) for user, ids in self._lots_by_user.items()}
            try:
                updated = [self.update_lot(lot, expected) for lot, expected in updates]
                inserted = [self.insert_lot(lot) for lot in inserts]
            except Exception:
                self._lots = lots
                self._lots_by_user = defaultdict(list, by_user)
                logger.warning(
                    "Rolled back lot batch (%d updates, %d inserts)", len(updates), len(inserts),
                )
                raise
        return updated, inserted

    def get_lot(self, lot_id: str) -> Optional[TaxLot]:
        with self._lock:
            lot = self._lots.get(lot_id)
            return copy.deepcopy(lot) if lot else None

    def query_lots(self, lot_filter: LotFilter) -> list[TaxLot]:
        with self._lock:
            ids = self._lots_by_user.get(lot_filter.user_id, [])
            lots = [
                copy.deepcopy(self._lots[lid])
                for lid in ids
                if lot_filter.matches(self._lots[lid])
            ]
        return sort_lots(lots)

    # ── Summaries ────────────────────────────────────────────────────

    def replace_summaries(
        self, user_id: str, tax_year: int, rows: Sequence[CapitalGainsSummary]
    ) -> None:
        with self._lock:
            for key in [k for k in self._summaries if k[0] == user_id and k[1] == tax_year]:
                del self._summaries[key]
            for row in rows:
                self._summaries[row.key] = copy.deepcopy(row)

    def query_summaries(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        with self._lock:
            rows = [
                copy.deepcopy(s) for key, s in self._summaries.items()
                if key[0] == user_id and key[1] == tax_year
            ]
        rows.sort(key=lambda s: (-s.total_gain_loss, s.symbol))
        return rows

    # ── Tax events ───────────────────────────────────────────────────

    def insert_tax_event(self, event: TaxEvent) -> TaxEvent:
        validate_metadata(event.metadata)
        with self._lock:
            self._events[event.id] = event
        return event

    def query_tax_events(self, event_filter: EventFilter) -> list[TaxEvent]:
        with self._lock:
            events = [e for e in self._events.values() if event_filter.matches(e)]
        events.sort(key=lambda e: (e.event_date, e.created_at), reverse=True)
        return events

    # ── Preferences ──────────────────────────────────────────────────

    def get_preferences(self, user_id: str) -> Optional[TaxPreference]:
        with self._lock:
            prefs = self._preferences.get(user_id)
            return copy.deepcopy(prefs) if prefs else None

    def save_preferences(self, preferences: TaxPreference) -> TaxPreference:
        validate_metadata(preferences.metadata)
        with self._lock:
            self._preferences[preferences.user_id] = copy.deepcopy(preferences)
        return preferences
