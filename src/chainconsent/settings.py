"""Application settings via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]


class Settings(BaseSettings):
    """Central configuration; all values from environment."""

    model_config = SettingsConfigDict(env_prefix="CHAINCONSENT_")

    # Target environment
    environment: str = "dev"
    log_level: str = "INFO"
    log_json: bool = True

    # Ledger gateway (empty → in-memory ledger)
    ledger_url: str = ""
    ledger_read_timeout: float = 30.0
    genesis_block: int = 0

    # PostgreSQL event index
    pg_dsn: str = ""
    indexer_enabled: bool = False
    store_timeout: float = 30.0

    # Redis cache
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True

    # Query bounds
    max_block_range: int = 10_000
    resolve_batch_size: int = 50
