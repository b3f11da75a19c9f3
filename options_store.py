"""DuckDB store for option snapshots and underlying prices.

`options_snapshots` holds one row per (trading_date, contract_id). Writes go
through `INSERT ... ON CONFLICT DO UPDATE`, which replaces the mutable columns
of an existing row and leaves its identity columns untouched. Timestamps are
stored as naive UTC.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

import duckdb

from snapshot_models import MUTABLE_COLUMNS, ROW_COLUMNS, CanonicalOptionRow

LOGGER = logging.getLogger(__name__)

OPTIONS_TABLE = "options_snapshots"
UNDERLYING_TABLE = "underlying_prices"

_COLUMN_TYPES: dict[str, str] = {
    "trading_date": "DATE NOT NULL",
    "contract_id": "VARCHAR NOT NULL",
    "underlying": "VARCHAR NOT NULL",
    "contract_type": "VARCHAR NOT NULL",
    "strike_price": "DOUBLE NOT NULL",
    "expiration_date": "DATE NOT NULL",
    "exercise_style": "VARCHAR",
    "shares_per_contract": "INTEGER",
    "created_at": "TIMESTAMP NOT NULL",
    "underlying_price": "DOUBLE",
    "delta": "DOUBLE",
    "gamma": "DOUBLE",
    "theta": "DOUBLE",
    "vega": "DOUBLE",
    "rho": "DOUBLE",
    "bid": "DOUBLE",
    "ask": "DOUBLE",
    "bid_size": "BIGINT",
    "ask_size": "BIGINT",
    "mid_price": "DOUBLE",
    "spread": "DOUBLE",
    "last_price": "DOUBLE",
    "last_size": "BIGINT",
    "day_open": "DOUBLE",
    "day_high": "DOUBLE",
    "day_low": "DOUBLE",
    "day_close": "DOUBLE",
    "day_vwap": "DOUBLE",
    "volume": "BIGINT",
    "open_interest": "BIGINT",
    "implied_volatility": "DOUBLE",
    "break_even_price": "DOUBLE",
    "days_to_expiration": "INTEGER",
    "score": "DOUBLE",
    "last_updated": "TIMESTAMP NOT NULL",
}


def _options_ddl() -> str:
    columns_sql = ",\n    ".join(f"{name} {_COLUMN_TYPES[name]}" for name in ROW_COLUMNS)
    return f"""
    CREATE TABLE IF NOT EXISTS {OPTIONS_TABLE} (
    {columns_sql},
    PRIMARY KEY (trading_date, contract_id)
    )
    """


OPTIONS_INDEX_DDL = (
    f"CREATE INDEX IF NOT EXISTS idx_{OPTIONS_TABLE}_underlying_expiry "
    f"ON {OPTIONS_TABLE} (underlying, expiration_date)"
)


UNDERLYING_DDL = f"""
CREATE TABLE IF NOT EXISTS {UNDERLYING_TABLE} (
    trading_date DATE NOT NULL,
    underlying VARCHAR NOT NULL,
    price DOUBLE NOT NULL,
    source VARCHAR NOT NULL,
    recorded_at TIMESTAMP NOT NULL,
    PRIMARY KEY (trading_date, underlying)
)
"""


def _merge_sql() -> str:
    cols = ", ".join(ROW_COLUMNS)
    placeholders = ", ".join("?" for _ in ROW_COLUMNS)
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in MUTABLE_COLUMNS)
    return (
        f"INSERT INTO {OPTIONS_TABLE} ({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT (trading_date, contract_id) DO UPDATE SET {updates}"
    )


MERGE_SQL = _merge_sql()


def _utc_naive(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _row_params(row: CanonicalOptionRow) -> list[Any]:
    out: list[Any] = []
    for name in ROW_COLUMNS:
        value = getattr(row, name)
        if isinstance(value, datetime):
            value = _utc_naive(value)
        out.append(value)
    return out


class OptionsStore:
    """Thin wrapper over one DuckDB database.

    Each operation runs on its own cursor. DuckDB rejects two open write
    transactions touching the same key (optimistic concurrency), so write
    transactions are serialized through one lock, and a run holds the
    per-underlying lease from `write_lease` for its whole write stage.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: duckdb.DuckDBPyConnection | None = duckdb.connect(self.path)
        self._write_lock = threading.Lock()
        self._leases: dict[str, asyncio.Lock] = {}
        LOGGER.info("opened DuckDB store at %s", self.path)
        self.initialize()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("store is closed")
        return self._conn

    def initialize(self) -> None:
        with self.transaction() as tx:
            tx.execute(_options_ddl())
            tx.execute(OPTIONS_INDEX_DDL)
            tx.execute(UNDERLYING_DDL)

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._write_lock:
            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN TRANSACTION")
                try:
                    yield cur
                except BaseException:
                    cur.execute("ROLLBACK")
                    raise
                cur.execute("COMMIT")
            finally:
                cur.close()

    def write_lease(self, underlying: str) -> asyncio.Lock:
        """Lock a run holds while it writes rows for `underlying`."""
        key = underlying.strip().upper()
        lease = self._leases.get(key)
        if lease is None:
            lease = self._leases[key] = asyncio.Lock()
        return lease

    def _fetch_dicts(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        cur = self.conn.cursor()
        try:
            cur.execute(sql, list(params or []))
            names = [d[0] for d in cur.description or []]
            return [dict(zip(names, values)) for values in cur.fetchall()]
        finally:
            cur.close()

    # ----------------------------
    # Writes
    # ----------------------------

    def upsert_batch(self, rows: Sequence[CanonicalOptionRow]) -> int:
        """Merge one batch atomically; returns the number of rows written."""
        if not rows:
            return 0
        with self.transaction() as tx:
            tx.executemany(MERGE_SQL, [_row_params(r) for r in rows])
        return len(rows)

    def upsert_underlying_price(
        self,
        *,
        trading_date: date,
        underlying: str,
        price: float,
        source: str,
        recorded_at: datetime,
    ) -> None:
        with self.transaction() as tx:
            tx.execute(
                f"""
                INSERT INTO {UNDERLYING_TABLE} (trading_date, underlying, price, source, recorded_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (trading_date, underlying) DO UPDATE SET
                  price = EXCLUDED.price,
                  source = EXCLUDED.source,
                  recorded_at = EXCLUDED.recorded_at
                """,
                [trading_date, underlying, float(price), source, _utc_naive(recorded_at)],
            )

    # ----------------------------
    # Reads
    # ----------------------------

    def get_expiry_dates(self, underlying: str) -> list[date]:
        rows = self._fetch_dicts(
            f"""
            SELECT DISTINCT expiration_date
            FROM {OPTIONS_TABLE}
            WHERE underlying = ?
            ORDER BY expiration_date ASC
            """,
            [underlying],
        )
        return [r["expiration_date"] for r in rows]

    def get_options_data(self, underlying: str, expiry: date, limit: int = 1000) -> list[dict[str, Any]]:
        return self._fetch_dicts(
            f"""
            SELECT *
            FROM {OPTIONS_TABLE}
            WHERE underlying = ? AND expiration_date = ?
            ORDER BY contract_type, strike_price, last_updated DESC
            LIMIT {int(limit)}
            """,
            [underlying, expiry],
        )

    def get_underlying_price(self, underlying: str) -> dict[str, Any] | None:
        rows = self._fetch_dicts(
            f"""
            SELECT underlying, price, source, trading_date, recorded_at
            FROM {UNDERLYING_TABLE}
            WHERE underlying = ?
            ORDER BY recorded_at DESC
            LIMIT 1
            """,
            [underlying],
        )
        return rows[0] if rows else None

    def count_rows(self, underlying: str | None = None, trading_date: date | None = None) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if underlying is not None:
            clauses.append("underlying = ?")
            params.append(underlying)
        if trading_date is not None:
            clauses.append("trading_date = ?")
            params.append(trading_date)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_dicts(f"SELECT COUNT(*) AS n FROM {OPTIONS_TABLE} {where}", params)
        return int(rows[0]["n"])

    def get_row(self, trading_date: date, contract_id: str) -> dict[str, Any] | None:
        rows = self._fetch_dicts(
            f"SELECT * FROM {OPTIONS_TABLE} WHERE trading_date = ? AND contract_id = ?",
            [trading_date, contract_id],
        )
        return rows[0] if rows else None

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
                LOGGER.info("DuckDB store closed")
            finally:
                self._conn = None

    def __enter__(self) -> "OptionsStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
