"""
Bulk-write batching.

Large update sets are split into chunks so each bulk_write call stays under
the database batch limits, and per-URL updates produced by the crawler are
accumulated into fixed-size batches before being written.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most `size` items.

    Example:
        >>> [list(c) for c in chunked([1, 2, 3, 4, 5], 2)]
        [[1, 2], [3, 4], [5]]
    """
    if size <= 0:
        raise ValueError("size must be positive")

    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class BulkWriteSummary:
    """Aggregated counts over every chunk of a bulk write."""

    matched: int = 0
    modified: int = 0
    upserted: int = 0
    inserted: int = 0
    deleted: int = 0
    chunks: int = 0

    def add_result(self, result: Any) -> None:
        """Accumulate a pymongo BulkWriteResult."""
        self.matched += result.matched_count
        self.modified += result.modified_count
        self.upserted += result.upserted_count
        self.inserted += result.inserted_count
        self.deleted += result.deleted_count
        self.chunks += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "matched": self.matched,
            "modified": self.modified,
            "upserted": self.upserted,
            "inserted": self.inserted,
            "deleted": self.deleted,
            "chunks": self.chunks,
        }


class UpdateQueue(Generic[T]):
    """Accumulates items and flushes them in batches of `size`.

    Example:
        queue = UpdateQueue(100, lambda ops: db.bulk_write("urls", ops))
        for op in ops:
            await queue.add(op)
        await queue.flush()
    """

    def __init__(
        self,
        size: int,
        on_flush: Callable[[list[T]], Awaitable[Any]],
        name: str = "queue",
    ):
        if size <= 0:
            raise ValueError("size must be positive")

        self.size = size
        self.name = name
        self._on_flush = on_flush
        self._items: list[T] = []
        self._lock = asyncio.Lock()
        self.flushed_count = 0

    def __len__(self) -> int:
        return len(self._items)

    async def add(self, item: T) -> None:
        """Append an item, flushing once the buffer reaches `size`."""
        batch: list[T] | None = None

        async with self._lock:
            self._items.append(item)
            if len(self._items) >= self.size:
                batch, self._items = self._items, []

        if batch:
            await self._write(batch)

    async def flush(self) -> None:
        """Write any buffered items."""
        async with self._lock:
            batch, self._items = self._items, []

        if batch:
            await self._write(batch)

    async def _write(self, batch: list[T]) -> None:
        try:
            await self._on_flush(batch)
        except Exception as e:
            logger.error(
                "Update queue flush failed",
                queue=self.name,
                dropped=len(batch),
                error=str(e),
            )
            raise

        self.flushed_count += len(batch)
        logger.debug("Update queue flushed", queue=self.name, count=len(batch))
