"""Centralized settings for the tax-lot ledger.

Uses pydantic-settings to load from environment variables (prefixed
TAXLOTS_) with defaults matching the stock tax preferences.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    # --- Database ---
    database_url: str = "sqlite:///taxlots.db"
    use_database: bool = False
    sql_echo: bool = False

    # --- Default tax preferences (applied when a user has none stored) ---
    default_tax_jurisdiction: str = "US"
    default_short_term_threshold_days: int = 365
    default_wash_sale_window_days: int = 30
    default_harvest_threshold_percent: float = 5.0
    default_min_harvest_amount: float = 1000.0

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"
    slow_operation_ms: float = 1000.0

    model_config = {
        "env_prefix": "TAXLOTS_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
