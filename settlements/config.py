from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final


def _get_int(env_var: str, default: int) -> int:
    value = os.getenv(env_var)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_var: str, default: float) -> float:
    value = os.getenv(env_var)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


SETTLEMENT_API_URL: Final[str] = os.getenv("SETTLEMENT_API_URL", "http://localhost:8080/api")
HTTP_TIMEOUT_SECONDS: Final[float] = _get_float("SETTLEMENT_HTTP_TIMEOUT", 20.0)
# Minimum time the generating indicator stays up.
MIN_VISIBLE_MS: Final[int] = _get_int("SETTLEMENT_MIN_VISIBLE_MS", 2000)
INITIAL_PAGES: Final[int] = _get_int("SETTLEMENT_INITIAL_PAGES", 3)
PREFETCH_AHEAD: Final[int] = _get_int("SETTLEMENT_PREFETCH_AHEAD", 2)
MAX_NOTICES: Final[int] = _get_int("SETTLEMENT_MAX_NOTICES", 50)
# Idle operator sessions are dropped after this many seconds.
SESSION_TTL_SECONDS: Final[float] = _get_float("SETTLEMENT_SESSION_TTL", 1800.0)

DATA_DIR: Final[Path] = Path(os.getenv("SETTLEMENT_DATA_DIR", "data"))
DB_PATH: Final[Path] = Path(os.getenv("SETTLEMENT_DB_PATH", str(DATA_DIR / "settlements.db")))
PAGE_SIZE: Final[int] = _get_int("SETTLEMENT_PAGE_SIZE", 10)
DEMO_MAX_PREVIEWS: Final[int] = _get_int("SETTLEMENT_DEMO_MAX_PREVIEWS", 20)

LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class Settings:
    api_url: str = SETTLEMENT_API_URL
    http_timeout: float = HTTP_TIMEOUT_SECONDS
    min_visible_ms: int = MIN_VISIBLE_MS
    initial_pages: int = INITIAL_PAGES
    prefetch_ahead: int = PREFETCH_AHEAD
    max_notices: int = MAX_NOTICES
    session_ttl: float = SESSION_TTL_SECONDS


def load_settings(**overrides: object) -> Settings:
    return Settings(**overrides)  # type: ignore[arg-type]
