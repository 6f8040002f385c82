"""Database package for the tax-lot ledger."""

from src.db.base import Base
from src.db.engine import get_sync_engine, get_sync_session_factory, SyncSessionLocal
from src.db.models import (
    TaxLotRecord,
    CapitalGainsSummaryRecord,
    TaxEventRecord,
    TaxPreferenceRecord,
)

__all__ = [
    "Base",
    "get_sync_engine",
    "get_sync_session_factory",
    "SyncSessionLocal",
    "TaxLotRecord",
    "CapitalGainsSummaryRecord",
    "TaxEventRecord",
    "TaxPreferenceRecord",
]
