"""SQLAlchemy-backed ledger store.

Maps ledger dataclasses to the ORM rows in ``src.db.models``. Lot updates
are optimistic: ``UPDATE ... WHERE id = :id AND version = :expected``.
Metadata is validated on every write and parsed on every read, so a
corrupt row surfaces as ``MalformedMetadata`` instead of being ignored.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from src.db.base import Base
from src.db.engine import get_sync_engine, get_sync_session_factory
from src.db.models import (
    CapitalGainsSummaryRecord,
    TaxEventRecord,
    TaxLotRecord,
    TaxPreferenceRecord,
)
from src.tax_lots.config import TaxEventType, TaxPreference
from src.tax_lots.errors import ConcurrentModification, LotNotFound
from src.tax_lots.metadata import dump_metadata, parse_metadata
from src.tax_lots.models import CapitalGainsSummary, TaxEvent, TaxLot
from src.tax_lots.store import EventFilter, LedgerStore, LotFilter, sort_lots

logger = logging.getLogger(__name__)

SUMMARY_WRITE_ATTEMPTS = 3


def _aware(value: Optional[datetime]) -> datetime:
    """SQLite drops tzinfo; treat stored timestamps as UTC."""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlLedgerStore(LedgerStore):
    """Ledger store on a relational database.

    Args:
        session_factory: SQLAlchemy sessionmaker. Defaults to the engine
            configured by ``TAXLOTS_DATABASE_URL``.

    Example:
        engine = create_engine("sqlite://")
        store = SqlLedgerStore(sessionmaker(bind=engine))
        store.create_schema(engine)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or get_sync_session_factory()

    @staticmethod
    def create_schema(engine=None) -> None:
        """Create all ledger tables (tests and local development)."""
        Base.metadata.create_all(engine or get_sync_engine())

    def _session(self) -> Session:
        return self._session_factory()

    # ── Row mapping ──────────────────────────────────────────────────

    @staticmethod
    def _lot_from_row(row: TaxLotRecord) -> TaxLot:
        return TaxLot(
            id=row.id,
            user_id=row.user_id,
            holding_id=row.holding_id,
            symbol=row.symbol,
            quantity=row.quantity,
            acquisition_date=row.acquisition_date,
            acquisition_price=row.acquisition_price,
            cost_basis=row.cost_basis,
            disposition_date=row.disposition_date,
            disposition_price=row.disposition_price,
            proceeds=row.proceeds or 0.0,
            gain_loss=row.gain_loss or 0.0,
            holding_period_days=row.holding_period_days or 0,
            is_closed=bool(row.is_closed),
            is_wash_sale=bool(row.is_wash_sale),
            wash_sale_replacement_lot_id=row.wash_sale_replacement_lot_id,
            wash_sale_adjustment=row.wash_sale_adjustment or 0.0,
            origin_lot_id=row.origin_lot_id,
            parent_lot_id=row.parent_lot_id,
            version=row.version,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            metadata=parse_metadata(row.metadata_json),
        )

    @staticmethod
    def _lot_values(lot: TaxLot) -> dict:
        return {
            "user_id": lot.user_id,
            "holding_id": lot.holding_id,
            "symbol": lot.symbol,
            "quantity": lot.quantity,
            "acquisition_date": lot.acquisition_date,
            "acquisition_price": lot.acquisition_price,
            "cost_basis": lot.cost_basis,
            "disposition_date": lot.disposition_date,
            "disposition_price": lot.disposition_price,
            "proceeds": lot.proceeds,
            "gain_loss": lot.gain_loss,
            "holding_period_days": lot.holding_period_days,
            "is_closed": lot.is_closed,
            "is_wash_sale": lot.is_wash_sale,
            "wash_sale_replacement_lot_id": lot.wash_sale_replacement_lot_id,
            "wash_sale_adjustment": lot.wash_sale_adjustment,
            "origin_lot_id": lot.origin_lot_id,
            "parent_lot_id": lot.parent_lot_id,
            "metadata_json": dump_metadata(lot.metadata),
        }

    @staticmethod
    def _summary_from_row(row: CapitalGainsSummaryRecord) -> CapitalGainsSummary:
        return CapitalGainsSummary(
            user_id=row.user_id,
            tax_year=row.tax_year,
            symbol=row.symbol,
            short_term_gain_loss=row.short_term_gain_loss or 0.0,
            long_term_gain_loss=row.long_term_gain_loss or 0.0,
            positions_closed=row.positions_closed or 0,
            wash_sale_disallowed=row.wash_sale_disallowed or 0.0,
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _event_from_row(row: TaxEventRecord) -> TaxEvent:
        return TaxEvent(
            id=row.id,
            user_id=row.user_id,
            event_type=TaxEventType(row.event_type),
            symbol=row.symbol,
            event_date=row.event_date,
            amount=row.amount,
            description=row.description,
            is_reported=bool(row.is_reported),
            tax_year=row.tax_year,
            created_at=_aware(row.created_at),
            metadata=parse_metadata(row.metadata_json),
        )

    # ── Lots ─────────────────────────────────────────────────────────

    def _lot_record(self, lot: TaxLot) -> TaxLotRecord:
        return TaxLotRecord(
            id=lot.id,
            version=lot.version,
            created_at=lot.created_at,
            updated_at=lot.updated_at,
            **self._lot_values(lot),
        )

    def _versioned_update(self, session: Session, lot: TaxLot, expected_version: int) -> TaxLot:
        result = session.execute(
            update(TaxLotRecord)
            .where(TaxLotRecord.id == lot.id)
            .where(TaxLotRecord.version == expected_version)
            .values(
                version=expected_version + 1,
                updated_at=datetime.now(timezone.utc),
                **self._lot_values(lot),
            )
        )
        if result.rowcount == 0:
            current = session.get(TaxLotRecord, lot.id)
            if current is None:
                raise LotNotFound(lot.id)
            raise ConcurrentModification(lot.id, expected_version, current.version)
        row = session.get(TaxLotRecord, lot.id, populate_existing=True)
        return self._lot_from_row(row)

    def insert_lot(self, lot: TaxLot) -> TaxLot:
        record = self._lot_record(lot)
        with self._session() as session, session.begin():
            session.add(record)
        logger.debug("Inserted lot %s (%s %s)", lot.id[:8], lot.quantity, lot.symbol)
        return lot

    def update_lot(self, lot: TaxLot, expected_version: int) -> TaxLot:
        with self._session() as session, session.begin():
            return self._versioned_update(session, lot, expected_version)

    def commit_lots(
        self,
        updates: Sequence[tuple[TaxLot, int]],
        inserts: Sequence[TaxLot] = (),
    ) -> tuple[list[TaxLot], list[TaxLot]]:
        with self._session() as session, session.begin():
            updated = [
                self._versioned_update(session, lot, expected) for lot, expected in updates
            ]
            session.add_all([self._lot_record(lot) for lot in inserts])
        logger.debug("Committed lot batch (%d updates, %d inserts)", len(updated), len(inserts))
        return updated, list(inserts)

    def get_lot(self, lot_id: str) -> Optional[TaxLot]:
        with self._session() as session:
            row = session.get(TaxLotRecord, lot_id)
            return self._lot_from_row(row) if row else None

    def query_lots(self, lot_filter: LotFilter) -> list[TaxLot]:
        stmt = select(TaxLotRecord).where(TaxLotRecord.user_id == lot_filter.user_id)
        if not lot_filter.include_closed:
            stmt = stmt.where(TaxLotRecord.is_closed.is_(False))
        if not lot_filter.include_open:
            stmt = stmt.where(TaxLotRecord.is_closed.is_(True))
        if lot_filter.symbol is not None:
            stmt = stmt.where(TaxLotRecord.symbol == lot_filter.symbol)
        if lot_filter.tax_year is not None:
            start = date(lot_filter.tax_year, 1, 1)
            end = date(lot_filter.tax_year, 12, 31)
            stmt = stmt.where(or_(
                TaxLotRecord.disposition_date.between(start, end),
                TaxLotRecord.is_closed.is_(False),
            ))
        if lot_filter.disposed_from is not None:
            stmt = stmt.where(TaxLotRecord.disposition_date >= lot_filter.disposed_from)
        if lot_filter.disposed_to is not None:
            stmt = stmt.where(TaxLotRecord.disposition_date <= lot_filter.disposed_to)

        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            return sort_lots([self._lot_from_row(r) for r in rows])

    # ── Summaries ────────────────────────────────────────────────────

    def replace_summaries(
        self, user_id: str, tax_year: int, rows: Sequence[CapitalGainsSummary]
    ) -> None:
        """Delete the year's rows and insert ``rows`` in one transaction.

        Two writers racing on an empty year can both insert; the loser
        hits the unique key and retries against the winner's rows.
        """
        for attempt in range(1, SUMMARY_WRITE_ATTEMPTS + 1):
            try:
                with self._session() as session, session.begin():
                    session.execute(delete(CapitalGainsSummaryRecord).where(
                        CapitalGainsSummaryRecord.user_id == user_id,
                        CapitalGainsSummaryRecord.tax_year == tax_year,
                    ))
                    session.add_all([
                        CapitalGainsSummaryRecord(
                            id=uuid.uuid4().hex,
                            user_id=row.user_id,
                            tax_year=row.tax_year,
                            symbol=row.symbol,
                            short_term_gain_loss=row.short_term_gain_loss,
                            long_term_gain_loss=row.long_term_gain_loss,
                            total_gain_loss=row.total_gain_loss,
                            positions_closed=row.positions_closed,
                            wash_sale_disallowed=row.wash_sale_disallowed,
                            updated_at=row.updated_at,
                        )
                        for row in rows
                    ])
                return
            except IntegrityError:
                if attempt == SUMMARY_WRITE_ATTEMPTS:
                    raise
                logger.warning(
                    "Summary write for %s/%d collided, retrying (%d/%d)",
                    user_id, tax_year, attempt, SUMMARY_WRITE_ATTEMPTS,
                )

    def query_summaries(self, user_id: str, tax_year: int) -> list[CapitalGainsSummary]:
        stmt = (
            select(CapitalGainsSummaryRecord)
            .where(
                CapitalGainsSummaryRecord.user_id == user_id,
                CapitalGainsSummaryRecord.tax_year == tax_year,
            )
            .order_by(
                CapitalGainsSummaryRecord.total_gain_loss.desc(),
                CapitalGainsSummaryRecord.symbol,
            )
        )
        with self._session() as session:
            return [self._summary_from_row(r) for r in session.execute(stmt).scalars()]

    # ── Tax events ───────────────────────────────────────────────────

    def insert_tax_event(self, event: TaxEvent) -> TaxEvent:
        with self._session() as session, session.begin():
            session.add(TaxEventRecord(
                id=event.id,
                user_id=event.user_id,
                event_type=event.event_type.value,
                symbol=event.symbol,
                event_date=event.event_date,
                amount=event.amount,
                description=event.description,
                is_reported=event.is_reported,
                tax_year=event.tax_year,
                created_at=event.created_at,
                metadata_json=dump_metadata(event.metadata),
            ))
        return event

    def query_tax_events(self, event_filter: EventFilter) -> list[TaxEvent]:
        stmt = select(TaxEventRecord).where(TaxEventRecord.user_id == event_filter.user_id)
        if event_filter.tax_year is not None:
            stmt = stmt.where(TaxEventRecord.tax_year == event_filter.tax_year)
        if event_filter.event_type is not None:
            stmt = stmt.where(TaxEventRecord.event_type == event_filter.event_type.value)
        stmt = stmt.order_by(TaxEventRecord.event_date.desc(), TaxEventRecord.created_at.desc())
        with self._session() as session:
            return [self._event_from_row(r) for r in session.execute(stmt).scalars()]

    # ── Preferences ──────────────────────────────────────────────────

    def get_preferences(self, user_id: str) -> Optional[TaxPreference]:
        with self._session() as session:
            row = session.get(TaxPreferenceRecord, user_id)
            if row is None:
                return None
            return TaxPreference(
                user_id=row.user_id,
                tax_jurisdiction=row.tax_jurisdiction,
                default_tax_year=row.default_tax_year,
                short_term_threshold_days=row.short_term_threshold_days,
                enable_wash_sale_detection=bool(row.enable_wash_sale_detection),
                wash_sale_window_days=row.wash_sale_window_days,
                auto_harvest_losses=bool(row.auto_harvest_losses),
                harvest_threshold_percent=row.harvest_threshold_percent,
                min_harvest_amount=row.min_harvest_amount,
                metadata=parse_metadata(row.metadata_json),
            )

    def save_preferences(self, preferences: TaxPreference) -> TaxPreference:
        metadata_json = dump_metadata(preferences.metadata)
        with self._session() as session, session.begin():
            row = session.get(TaxPreferenceRecord, preferences.user_id)
            if row is None:
                row = TaxPreferenceRecord(user_id=preferences.user_id)
                session.add(row)
            row.tax_jurisdiction = preferences.tax_jurisdiction
            row.default_tax_year = preferences.default_tax_year
            row.short_term_threshold_days = preferences.short_term_threshold_days
            row.enable_wash_sale_detection = preferences.enable_wash_sale_detection
            row.wash_sale_window_days = preferences.wash_sale_window_days
            row.auto_harvest_losses = preferences.auto_harvest_losses
            row.harvest_threshold_percent = preferences.harvest_threshold_percent
            row.min_harvest_amount = preferences.min_harvest_amount
            row.metadata_json = metadata_json
        return preferences
