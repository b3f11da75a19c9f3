"""One ingestion run: gate, fetch, transform, write.

Every stage is awaited in order; nothing in a run happens concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Iterable

from batch_writer import BatchUpsertWriter
from config import AppConfig
from errors import ConfigurationError
from market_calendar import MarketStatus, MarketWindowGate, trading_date_for
from options_store import OptionsStore
from options_transform import transform_all, underlying_price_from_snapshots
from snapshot_fetcher import SnapshotFetcher, create_session
from snapshot_models import ContractSnapshot

LOGGER = logging.getLogger(__name__)

PREVIEW_SIZE = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def filter_by_expiry(contracts: Iterable[ContractSnapshot], expiry: date | None) -> list[ContractSnapshot]:
    if expiry is None:
        return list(contracts)
    return [c for c in contracts if c.details.expiration_date == expiry]


def split_calls_puts(contracts: Iterable[ContractSnapshot]) -> tuple[list[ContractSnapshot], list[ContractSnapshot]]:
    calls: list[ContractSnapshot] = []
    puts: list[ContractSnapshot] = []
    for c in contracts:
        if c.contract_type == "call":
            calls.append(c)
        elif c.contract_type == "put":
            puts.append(c)
    return calls, puts


class OptionsIngestionPipeline:
    def __init__(
        self,
        config: AppConfig,
        *,
        gate: MarketWindowGate,
        store: OptionsStore,
        open_fetcher: Callable[[], AsyncContextManager[Any]] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.gate = gate
        self.store = store
        self.clock = clock
        self._open_fetcher = open_fetcher or self._default_fetcher
        self.writer = BatchUpsertWriter(
            store,
            batch_size=config.upsert_batch_size,
            batch_delay_s=config.upsert_batch_delay_s,
            sleep=sleep,
        )

    @property
    def symbol(self) -> str:
        return self.config.underlying_symbol

    @asynccontextmanager
    async def _default_fetcher(self) -> AsyncIterator[SnapshotFetcher]:
        session = await create_session(timeout_total_s=self.config.http_timeout_total_s)
        try:
            yield SnapshotFetcher(
                session,
                self.config.massive_api_key,
                base_url=self.config.massive_rest_base,
                page_limit=self.config.snapshot_page_limit,
                max_pages=self.config.snapshot_max_pages,
                page_delay_s=self.config.snapshot_page_delay_s,
            )
        finally:
            await session.close()

    def _require_api_key(self) -> None:
        if not self.config.has_api_key:
            raise ConfigurationError("MASSIVE_API_KEY is not set")

    def _gate(self, now: datetime, force: bool, action: str) -> MarketStatus:
        market = self.gate.status(now)
        if force:
            LOGGER.warning(
                "force_test set: bypassing market hours check for %s (market open=%s reason=%s)",
                action,
                market.open,
                market.reason,
            )
        return market

    def _skipped(self, market: MarketStatus, started: float) -> dict[str, Any]:
        LOGGER.info("market closed (%s); next open %s", market.reason, market.next_open)
        return {
            "status": "skipped",
            "reason": "market closed",
            "market": market.as_dict(),
            "trading_date": market.trading_date,
            "elapsed_s": round(time.perf_counter() - started, 3),
        }

    async def fetch_and_store(self, expiry: date | None = None, force: bool = False) -> dict[str, Any]:
        started = time.perf_counter()
        now = self.clock()
        market = self._gate(now, force, "fetch-and-store")
        if not market.open and not force:
            return self._skipped(market, started)
        self._require_api_key()

        trading_date = market.trading_date or trading_date_for(now)
        price_source = "snapshot"

        async with self._open_fetcher() as fetcher:
            fetched = await fetcher.fetch_all(self.symbol)
            underlying_price = underlying_price_from_snapshots(fetched.contracts)
            if underlying_price is None:
                price_source = "daily_aggregate"
                underlying_price = await fetcher.fetch_underlying_close(self.symbol, trading_date)

        contracts = filter_by_expiry(fetched.contracts, expiry)
        calls, puts = split_calls_puts(contracts)
        if expiry is not None:
            LOGGER.info("filtered to %s contracts for expiry %s", len(contracts), expiry)

        rows, skipped = transform_all(
            contracts,
            underlying=self.symbol,
            trading_date=trading_date,
            now=now,
            underlying_price=underlying_price,
        )
        # Overlapping runs for one underlying write one after the other.
        async with self.store.write_lease(self.symbol):
            written = await self.writer.write(rows)
            if underlying_price is not None:
                await asyncio.to_thread(
                    self.store.upsert_underlying_price,
                    trading_date=trading_date,
                    underlying=self.symbol,
                    price=underlying_price,
                    source=price_source,
                    recorded_at=now,
                )

        if underlying_price is None:
            LOGGER.warning("no underlying price available for %s on %s", self.symbol, trading_date)

        elapsed = round(time.perf_counter() - started, 3)
        LOGGER.info(
            "fetch-and-store %s done: fetched=%s transformed=%s skipped=%s written=%s batches=%s elapsed=%.3fs",
            self.symbol,
            len(fetched.contracts),
            len(rows),
            skipped,
            written.rows_written,
            written.batches_written,
            elapsed,
        )
        return {
            "status": "stored",
            "trading_date": trading_date,
            "contracts_fetched": len(fetched.contracts),
            "contracts_after_filter": len(contracts),
            "pages": fetched.pages,
            "page_ceiling_hit": fetched.ceiling_hit,
            "calls": len(calls),
            "puts": len(puts),
            "rows_transformed": len(rows),
            "rows_skipped": skipped,
            "rows_written": written.rows_written,
            "batches_written": written.batches_written,
            "underlying_price": underlying_price,
            "underlying_price_source": price_source if underlying_price is not None else None,
            "elapsed_s": elapsed,
        }

    async def fetch_only(self, expiry: date | None = None, force: bool = False) -> dict[str, Any]:
        started = time.perf_counter()
        now = self.clock()
        market = self._gate(now, force, "fetch-only")
        if not market.open and not force:
            return self._skipped(market, started)
        self._require_api_key()

        async with self._open_fetcher() as fetcher:
            fetched = await fetcher.fetch_all(self.symbol)

        contracts = filter_by_expiry(fetched.contracts, expiry)
        calls, puts = split_calls_puts(contracts)
        return {
            "status": "fetched",
            "trading_date": market.trading_date or trading_date_for(now),
            "contracts_fetched": len(fetched.contracts),
            "contracts_after_filter": len(contracts),
            "pages": fetched.pages,
            "page_ceiling_hit": fetched.ceiling_hit,
            "calls": len(calls),
            "puts": len(puts),
            "options": {
                "calls": [c.model_dump(mode="json") for c in calls[:PREVIEW_SIZE]],
                "puts": [c.model_dump(mode="json") for c in puts[:PREVIEW_SIZE]],
            },
            "underlying_price": underlying_price_from_snapshots(contracts),
            "elapsed_s": round(time.perf_counter() - started, 3),
        }
