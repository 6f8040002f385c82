"""Database engine and session factory."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.settings import get_settings

_sync_engine = None


def get_sync_engine():
    """Get or create the database engine."""
    global _sync_engine
    if _sync_engine is None:
        settings = get_settings()
        _sync_engine = create_engine(
            settings.database_url,
            echo=settings.sql_echo,
            pool_pre_ping=True,
        )
    return _sync_engine


def get_sync_session_factory(engine=None):
    return sessionmaker(bind=engine or get_sync_engine(), expire_on_commit=False)


# Convenience alias
SyncSessionLocal = get_sync_session_factory
