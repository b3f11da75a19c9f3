import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from batch_writer import BatchUpsertWriter
from errors import WriteBatchError
from helpers import MONDAY_OPEN_UTC, TRADING_DATE, no_sleep, snapshot
from options_store import OptionsStore
from options_transform import transform_contract


@pytest.fixture
def store():
    s = OptionsStore(":memory:")
    yield s
    s.close()


def _row(ticker, *, contract_type="call", strike=100.0, expiration="2025-04-17", now=MONDAY_OPEN_UTC, **kwargs):
    snap = snapshot(ticker=ticker, contract_type=contract_type, strike=strike, expiration=expiration, **kwargs)
    row = transform_contract(snap, underlying="MSTR", trading_date=TRADING_DATE, now=now, underlying_price=300.0)
    assert row is not None
    return row


def _rows(n):
    return [_row(f"O:MSTR250417C{i:08d}", strike=100.0 + i) for i in range(n)]


class TestUpsert:
    def test_rewrite_is_idempotent(self, store):
        rows = _rows(5)
        store.upsert_batch(rows)
        first = store.get_row(TRADING_DATE, rows[0].contract_id)

        store.upsert_batch(rows)

        assert store.count_rows("MSTR", TRADING_DATE) == 5
        assert store.get_row(TRADING_DATE, rows[0].contract_id) == first

    def test_overwrite_replaces_mutable_fields_only(self, store):
        first = _row("O:X")
        store.upsert_batch([first])

        later = MONDAY_OPEN_UTC + timedelta(minutes=30)
        updated = replace(first, delta=0.9, score=-1.0, last_updated=later, created_at=later, contract_type="put")
        store.upsert_batch([updated])

        stored = store.get_row(TRADING_DATE, "O:X")
        assert store.count_rows() == 1
        assert stored["delta"] == 0.9
        assert stored["score"] == -1.0
        assert stored["last_updated"] == later.replace(tzinfo=None)
        # identity columns keep their first-written values
        assert stored["created_at"] == MONDAY_OPEN_UTC.replace(tzinfo=None)
        assert stored["contract_type"] == "call"

    def test_new_trading_date_is_a_new_row(self, store):
        row = _row("O:X")
        store.upsert_batch([row])
        store.upsert_batch([replace(row, trading_date=date(2025, 3, 11))])
        assert store.count_rows() == 2
        assert store.count_rows(trading_date=TRADING_DATE) == 1

    def test_failed_batch_rolls_back(self, store):
        good = _row("O:GOOD")
        bad = replace(_row("O:BAD"), strike_price=None)

        with pytest.raises(Exception):
            store.upsert_batch([good, bad])

        assert store.count_rows() == 0


class TestConcurrentWrites:
    def test_threads_rewriting_the_same_keys_all_succeed(self, store):
        rows = _rows(200)

        def rewrite():
            for _ in range(20):
                store.upsert_batch(rows)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(rewrite) for _ in range(2)]
            for f in futures:
                f.result()

        assert store.count_rows("MSTR", TRADING_DATE) == 200

    @pytest.mark.asyncio
    async def test_overlapping_writers_both_succeed(self, store):
        rows = _rows(6)
        writers = [BatchUpsertWriter(store, batch_size=2, batch_delay_s=0, sleep=no_sleep) for _ in range(2)]

        results = await asyncio.gather(*(w.write(rows) for w in writers))

        assert [r.rows_written for r in results] == [6, 6]
        assert store.count_rows() == 6

    def test_write_lease_is_shared_per_underlying(self, store):
        assert store.write_lease("mstr") is store.write_lease("MSTR ")
        assert store.write_lease("MSTR") is not store.write_lease("COIN")


class TestQueries:
    def test_expiry_dates_are_distinct_and_ascending(self, store):
        store.upsert_batch(
            [
                _row("O:1", expiration="2025-05-16"),
                _row("O:2", expiration="2025-04-17"),
                _row("O:3", expiration="2025-05-16"),
            ]
        )
        assert store.get_expiry_dates("MSTR") == [date(2025, 4, 17), date(2025, 5, 16)]
        assert store.get_expiry_dates("COIN") == []

    def test_options_data_ordering(self, store):
        store.upsert_batch(
            [
                _row("O:P110", contract_type="put", strike=110.0),
                _row("O:C120", strike=120.0),
                _row("O:C90", strike=90.0),
                _row("O:OTHER", expiration="2025-05-16"),
            ]
        )
        rows = store.get_options_data("MSTR", date(2025, 4, 17))
        assert [r["contract_id"] for r in rows] == ["O:C90", "O:C120", "O:P110"]
        assert store.get_options_data("MSTR", date(2025, 4, 17), limit=1)[0]["contract_id"] == "O:C90"

    def test_latest_underlying_price(self, store):
        assert store.get_underlying_price("MSTR") is None

        store.upsert_underlying_price(
            trading_date=date(2025, 3, 7), underlying="MSTR", price=280.0, source="daily_aggregate",
            recorded_at=datetime(2025, 3, 7, 20, 0, tzinfo=timezone.utc),
        )
        store.upsert_underlying_price(
            trading_date=TRADING_DATE, underlying="MSTR", price=300.0, source="snapshot", recorded_at=MONDAY_OPEN_UTC
        )
        store.upsert_underlying_price(
            trading_date=TRADING_DATE, underlying="MSTR", price=305.5, source="snapshot",
            recorded_at=MONDAY_OPEN_UTC + timedelta(minutes=15),
        )

        latest = store.get_underlying_price("MSTR")
        assert latest["price"] == 305.5
        assert latest["source"] == "snapshot"
        assert latest["trading_date"] == TRADING_DATE


class FlakySink:
    def __init__(self, store, fail_on):
        self.store = store
        self.fail_on = fail_on
        self.calls = 0

    def upsert_batch(self, rows):
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("disk full")
        return self.store.upsert_batch(rows)


class TestBatchUpsertWriter:
    @pytest.mark.asyncio
    async def test_writes_in_batches(self, store):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        writer = BatchUpsertWriter(store, batch_size=2, batch_delay_s=0.025, sleep=record_sleep)
        result = await writer.write(_rows(5))

        assert result.rows_written == 5
        assert result.batches_written == 3
        assert sleeps == [0.025, 0.025]
        assert store.count_rows() == 5

    @pytest.mark.asyncio
    async def test_empty_input_writes_nothing(self, store):
        result = await BatchUpsertWriter(store, sleep=no_sleep).write([])
        assert (result.rows_written, result.batches_written) == (0, 0)

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_earlier_batches(self, store):
        rows = _rows(6)
        sink = FlakySink(store, fail_on=2)
        writer = BatchUpsertWriter(sink, batch_size=2, batch_delay_s=0, sleep=no_sleep)

        with pytest.raises(WriteBatchError) as exc_info:
            await writer.write(rows)

        assert exc_info.value.batch_index == 2
        assert exc_info.value.rows_written == 2
        assert sink.calls == 2
        stored = {r["contract_id"] for r in store.get_options_data("MSTR", date(2025, 4, 17))}
        assert stored == {rows[0].contract_id, rows[1].contract_id}

    @pytest.mark.asyncio
    async def test_store_error_midway_rolls_back_that_batch(self, store):
        rows = _rows(6)
        rows[3] = replace(rows[3], strike_price=None)
        writer = BatchUpsertWriter(store, batch_size=2, batch_delay_s=0, sleep=no_sleep)

        with pytest.raises(WriteBatchError) as exc_info:
            await writer.write(rows)

        assert exc_info.value.rows_written == 2
        assert store.count_rows() == 2
        assert store.get_row(TRADING_DATE, rows[2].contract_id) is None

    def test_batch_size_must_be_positive(self, store):
        with pytest.raises(ValueError):
            BatchUpsertWriter(store, batch_size=0)
