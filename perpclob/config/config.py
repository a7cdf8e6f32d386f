"""
Configuration management for the venue.
Loads settings from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

from .constants import (
    DEFAULT_FUNDING_CHECK_SECONDS,
    DEFAULT_LIQUIDATION_CHECK_SECONDS,
    FUNDING_HISTORY_SIZE,
)


class StoreBackend:
    MEMORY = "memory"
    DUCKDB = "duckdb"


@dataclass
class EngineConfig:
    """Background engine timers and bounds."""
    funding_check_seconds: float = DEFAULT_FUNDING_CHECK_SECONDS
    liquidation_check_seconds: float = DEFAULT_LIQUIDATION_CHECK_SECONDS
    funding_history_size: int = FUNDING_HISTORY_SIZE
    start_funding_engine: bool = True
    start_liquidation_monitor: bool = True


@dataclass
class StoreConfig:
    """Persistence backend selection."""
    backend: str = StoreBackend.MEMORY
    db_path: str = "data/venue.duckdb"
    journal_path: Optional[str] = None

    def __post_init__(self):
        if self.backend not in (StoreBackend.MEMORY, StoreBackend.DUCKDB):
            raise ValueError(
                f"Unknown store backend '{self.backend}'. "
                f"Expected '{StoreBackend.MEMORY}' or '{StoreBackend.DUCKDB}'"
            )


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_dir: str = "logs"


@dataclass
class ApiConfig:
    """Admin API server configuration."""
    host: str = "127.0.0.1"
    port: int = 8700


@dataclass
class MarketsConfig:
    """Where market definitions are read from."""
    markets_file: str = "configs/markets.yaml"


class Config:
    """
    Central configuration manager.

    Loads configuration from environment variables and provides
    typed access to all settings.
    """

    _instance: Optional['Config'] = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, env_file: str = ".env"):
        if self._initialized:
            return

        env_path = Path(env_file)
        if env_path.exists():
            load_dotenv(env_path, override=True)

        self.engine = self._load_engine_config()
        self.store = self._load_store_config()
        self.log = self._load_log_config()
        self.api = self._load_api_config()
        self.markets = self._load_markets_config()

        self._initialized = True

    def _load_engine_config(self) -> EngineConfig:
        return EngineConfig(
            funding_check_seconds=float(
                os.getenv("FUNDING_CHECK_SECONDS", str(DEFAULT_FUNDING_CHECK_SECONDS))
            ),
            liquidation_check_seconds=float(
                os.getenv("LIQUIDATION_CHECK_SECONDS", str(DEFAULT_LIQUIDATION_CHECK_SECONDS))
            ),
            funding_history_size=int(os.getenv("FUNDING_HISTORY_SIZE", str(FUNDING_HISTORY_SIZE))),
            start_funding_engine=os.getenv("START_FUNDING_ENGINE", "true").lower() == "true",
            start_liquidation_monitor=os.getenv("START_LIQUIDATION_MONITOR", "true").lower() == "true",
        )

    def _load_store_config(self) -> StoreConfig:
        return StoreConfig(
            backend=os.getenv("VENUE_STORE", StoreBackend.MEMORY).lower(),
            db_path=os.getenv("VENUE_DB_PATH", "data/venue.duckdb"),
            journal_path=os.getenv("VENUE_JOURNAL_PATH") or None,
        )

    def _load_log_config(self) -> LogConfig:
        return LogConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )

    def _load_api_config(self) -> ApiConfig:
        return ApiConfig(
            host=os.getenv("VENUE_API_HOST", "127.0.0.1"),
            port=int(os.getenv("VENUE_API_PORT", "8700")),
        )

    def _load_markets_config(self) -> MarketsConfig:
        return MarketsConfig(
            markets_file=os.getenv("VENUE_MARKETS_FILE", "configs/markets.yaml"),
        )

    def reload(self, env_file: str = ".env"):
        """Reload configuration from environment."""
        self._initialized = False
        self.__init__(env_file)

    def summary(self) -> str:
        """Get a summary of current configuration (for display)."""
        lines = [
            "=== Venue Configuration ===",
            f"Store: {self.store.backend} ({self.store.db_path})",
            f"Journal: {self.store.journal_path or 'disabled'}",
            f"Markets file: {self.markets.markets_file}",
            f"Funding check: every {self.engine.funding_check_seconds}s",
            f"Liquidation check: every {self.engine.liquidation_check_seconds}s",
            f"Admin API: {self.api.host}:{self.api.port}",
            f"Log level: {self.log.level}",
        ]
        return "\n".join(lines)


def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
