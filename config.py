"""Config for the options snapshot ingester.

Everything is read from the environment (a local `.env` is loaded first):
- MASSIVE_API_KEY (POLYGON_API_KEY is accepted for older deployments)
- UNDERLYING_SYMBOL selects the single underlying this service tracks
- DUCKDB_PATH points at the analytical store
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

HOLIDAY_CALENDAR_KINDS = {"static", "xnys"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def _env_str_first(names: list[str], default: str = "") -> str:
    for n in names:
        raw = os.environ.get(n)
        if raw is None or raw.strip() == "":
            continue
        return raw.strip()
    return default


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class AppConfig:
    massive_api_key: str = field(
        default_factory=lambda: _env_str_first(["MASSIVE_API_KEY", "POLYGON_API_KEY"], "")
    )
    massive_rest_base: str = field(
        default_factory=lambda: _env_str_first(["MASSIVE_REST_BASE"], "https://api.massive.com").rstrip("/")
    )
    underlying_symbol: str = field(
        default_factory=lambda: _env_str_first(["UNDERLYING_SYMBOL"], "MSTR").upper()
    )

    # Pagination
    snapshot_page_limit: int = field(default_factory=lambda: _env_int("SNAPSHOT_PAGE_LIMIT", 250))
    snapshot_max_pages: int = field(default_factory=lambda: _env_int("SNAPSHOT_MAX_PAGES", 50))
    snapshot_page_delay_s: float = field(default_factory=lambda: _env_float("SNAPSHOT_PAGE_DELAY_S", 0.2))
    http_timeout_total_s: int = field(default_factory=lambda: _env_int("HTTP_TIMEOUT_TOTAL", 60))

    # Writes
    upsert_batch_size: int = field(default_factory=lambda: _env_int("UPSERT_BATCH_SIZE", 100))
    upsert_batch_delay_s: float = field(default_factory=lambda: _env_float("UPSERT_BATCH_DELAY_S", 0.025))

    # Storage
    duckdb_path: Path = field(
        default_factory=lambda: Path(os.environ.get("DUCKDB_PATH", str(Path("data") / "options.duckdb")))
    )

    # Market calendar
    holiday_calendar: str = field(
        default_factory=lambda: _env_str_first(["HOLIDAY_CALENDAR"], "static").lower()
    )
    market_holidays: list[str] = field(default_factory=lambda: _env_list("MARKET_HOLIDAYS"))

    # HTTP surface
    cors_allow_origins: list[str] = field(default_factory=lambda: _env_list("CORS_ALLOW_ORIGINS") or ["*"])
    log_level: str = field(default_factory=lambda: _env_str_first(["LOG_LEVEL"], "INFO").upper())

    @property
    def has_api_key(self) -> bool:
        return bool(self.massive_api_key)

    def validate(self) -> list[str]:
        """Return a list of configuration problems; empty means usable."""
        errors: list[str] = []
        if not self.underlying_symbol:
            errors.append("UNDERLYING_SYMBOL is empty")
        if self.snapshot_page_limit <= 0:
            errors.append(f"SNAPSHOT_PAGE_LIMIT must be > 0 (got {self.snapshot_page_limit})")
        if self.snapshot_max_pages <= 0:
            errors.append(f"SNAPSHOT_MAX_PAGES must be > 0 (got {self.snapshot_max_pages})")
        if self.snapshot_page_delay_s < 0:
            errors.append(f"SNAPSHOT_PAGE_DELAY_S must be >= 0 (got {self.snapshot_page_delay_s})")
        if self.upsert_batch_size <= 0:
            errors.append(f"UPSERT_BATCH_SIZE must be > 0 (got {self.upsert_batch_size})")
        if self.upsert_batch_delay_s < 0:
            errors.append(f"UPSERT_BATCH_DELAY_S must be >= 0 (got {self.upsert_batch_delay_s})")
        if self.http_timeout_total_s <= 0:
            errors.append(f"HTTP_TIMEOUT_TOTAL must be > 0 (got {self.http_timeout_total_s})")
        if self.holiday_calendar not in HOLIDAY_CALENDAR_KINDS:
            errors.append(
                f"HOLIDAY_CALENDAR must be one of {sorted(HOLIDAY_CALENDAR_KINDS)} (got {self.holiday_calendar!r})"
            )
        return errors


config = AppConfig()
