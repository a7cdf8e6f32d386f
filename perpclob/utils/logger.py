"""
Logging system for the venue.
Provides structured, human-readable logs with file and console output.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

# ANSI color codes for terminal output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    BOLD = "\033[1m"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.msg = f"{color}{record.msg}{Colors.RESET}"
        return super().format(record)


class VenueLogger:
    """
    Central logging system for the venue.

    Features:
    - Console output with colors
    - Daily file output (disabled when log_dir is None)
    - Separate log files for trades, errors, and general logs
    - Structured trade / risk / funding lines for easy parsing
    """

    _instance: Optional['VenueLogger'] = None
    _initialized: bool = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, log_dir: Optional[str] = "logs", log_level: str = "INFO"):
        if VenueLogger._initialized:
            return

        self.log_dir = Path(log_dir) if log_dir else None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self.main_logger = self._create_logger("perpclob", log_level)
        self.trade_logger = self._create_logger("perpclob.trades", log_level, "trades")
        self.error_logger = self._create_logger("perpclob.errors", "ERROR", "errors")

        VenueLogger._initialized = True

    def _create_logger(self, name: str, level: str, file_prefix: str = None) -> logging.Logger:
        """Create a configured logger instance."""
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        logger.propagate = False
        logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(ColoredFormatter(
            "%(asctime)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S"
        ))
        # Trade and error lines are mirrored through the main logger
        if file_prefix is None:
            logger.addHandler(console_handler)

        if self.log_dir:
            prefix = file_prefix or "venue"
            log_file = self.log_dir / f"{prefix}_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
            logger.addHandler(file_handler)

        if not logger.handlers:
            logger.addHandler(logging.NullHandler())

        return logger

    def info(self, msg: str, *args, **kwargs):
        """Log info message."""
        self.main_logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        """Log debug message."""
        self.main_logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        """Log warning message."""
        self.main_logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        """Log error message."""
        self.main_logger.error(msg, *args, **kwargs)
        self.error_logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        """Log critical message."""
        self.main_logger.critical(msg, *args, **kwargs)
        self.error_logger.critical(msg, *args, **kwargs)

    def trade(self, action: str, market: str, side: str, size: float,
              price: float = None, pnl: float = None, **kwargs):
        """
        Log a trade action with structured format.

        Args:
            action: ORDER_PLACED, ORDER_FILLED, ORDER_CANCELLED, POSITION_OPENED, POSITION_CLOSED
            market: Market symbol (e.g., BTC-PERP)
            side: buy/sell or long/short
            size: Quantity in base units
            price: Execution price (optional)
            pnl: Realized PnL (optional, for closes)
            **kwargs: Additional fields
        """
        parts = [
            f"[{action}]",
            f"market={market}",
            f"side={side}",
            f"size={size:.6g}",
        ]

        if price:
            parts.append(f"price={price:.4f}")
        if pnl is not None:
            parts.append(f"pnl={pnl:.4f}")

        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)
        self.trade_logger.info(msg)
        self.main_logger.info(msg)

    def risk(self, action: str, reason: str, **kwargs):
        """
        Log risk actions (liquidations, bad debt, margin shortfalls).

        Args:
            action: LIQUIDATED, BAD_DEBT, MARGIN_FORFEIT, WARNING
            reason: Reason for the action
            **kwargs: Additional context
        """
        parts = [f"[RISK:{action}]", reason]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)

        if action in ("BAD_DEBT", "MARGIN_FORFEIT"):
            self.main_logger.warning(msg)
            self.error_logger.warning(msg)
        else:
            self.main_logger.info(msg)

    def funding(self, market: str, rate: float, **kwargs):
        """Log a settled funding round."""
        parts = ["[FUNDING]", f"market={market}", f"rate={rate:.6f}"]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")
        self.main_logger.info(" | ".join(parts))


# Global logger instance
_logger: Optional[VenueLogger] = None


def get_logger(log_dir: Optional[str] = "logs", log_level: str = "INFO") -> VenueLogger:
    """Get or create the global logger instance."""
    global _logger
    if _logger is None:
        _logger = VenueLogger(log_dir, log_level)
        _configure_third_party_loggers()
    return _logger


def setup_logger(log_dir: Optional[str] = "logs", log_level: str = "INFO") -> VenueLogger:
    """Initialize the logger with custom settings."""
    global _logger
    VenueLogger._initialized = False
    VenueLogger._instance = None
    _logger = VenueLogger(log_dir, log_level)
    _configure_third_party_loggers()
    return _logger


def _configure_third_party_loggers():
    """Reduce noise from the HTTP server stack."""
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
