"""Application settings and environment helpers."""

from __future__ import annotations

import logging
import os
import sys
from typing import List

from dotenv import load_dotenv

load_dotenv(override=False)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


def _split_csv(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


# Storage --------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./raceboard.db")
# Pause before the single retry of a mutation that hit lock contention.
STORE_RETRY_BACKOFF_SECONDS = _env_float("STORE_RETRY_BACKOFF_SECONDS", 0.05)


# Domain defaults ------------------------------------------------------------
RECENT_LAPS_LIMIT = _env_int("RECENT_LAPS_LIMIT", 10)
DEFAULT_TYRE_NAME = os.getenv("DEFAULT_TYRE_NAME", "Racing: Soft")


# HTTP -----------------------------------------------------------------------
ALLOWED_CORS_ORIGINS = _split_csv(os.getenv("ALLOWED_CORS_ORIGINS")) or ["*"]


# Logging --------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Send every raceboard logger to stdout at the configured level."""

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers = [handler]


__all__ = [
    "ALLOWED_CORS_ORIGINS",
    "DATABASE_URL",
    "DEFAULT_TYRE_NAME",
    "LOG_LEVEL",
    "RECENT_LAPS_LIMIT",
    "STORE_RETRY_BACKOFF_SECONDS",
    "configure_logging",
]
