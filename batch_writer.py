from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Protocol, Sequence

from errors import WriteBatchError
from snapshot_models import CanonicalOptionRow

LOGGER = logging.getLogger(__name__)


class BatchSink(Protocol):
    def upsert_batch(self, rows: Sequence[CanonicalOptionRow]) -> int: ...


@dataclass
class WriteResult:
    rows_written: int = 0
    batches_written: int = 0


def _chunks(rows: Sequence[CanonicalOptionRow], size: int) -> Iterator[Sequence[CanonicalOptionRow]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class BatchUpsertWriter:
    """Writes rows in fixed-size batches, one batch at a time and in input order.

    Each batch is merged atomically by the sink. When batch k fails the batches
    before it stay committed, later ones are never attempted, and
    `WriteBatchError` reports how many rows made it.
    """

    def __init__(
        self,
        store: BatchSink,
        *,
        batch_size: int = 100,
        batch_delay_s: float = 0.025,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0 (got {batch_size})")
        self.store = store
        self.batch_size = int(batch_size)
        self.batch_delay_s = float(batch_delay_s)
        self._sleep = sleep

    async def write(self, rows: Sequence[CanonicalOptionRow]) -> WriteResult:
        result = WriteResult()
        total_batches = (len(rows) + self.batch_size - 1) // self.batch_size

        for index, batch in enumerate(_chunks(rows, self.batch_size), start=1):
            if index > 1 and self.batch_delay_s > 0:
                await self._sleep(self.batch_delay_s)
            try:
                written = await asyncio.to_thread(self.store.upsert_batch, batch)
            except Exception as e:
                LOGGER.error(
                    "batch %s/%s failed after %s rows written: %s",
                    index,
                    total_batches,
                    result.rows_written,
                    e,
                )
                raise WriteBatchError(
                    f"batch {index} of {total_batches} failed: {e}",
                    batch_index=index,
                    rows_written=result.rows_written,
                ) from e

            result.rows_written += written
            result.batches_written += 1
            LOGGER.info("batch %s/%s upserted %s rows", index, total_batches, written)

        return result
