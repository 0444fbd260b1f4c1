"""
Blob-cached query execution.

Raw results of expensive external queries (Adobe Analytics reports) are
stored as JSON blobs, so re-running an update for the same dates reuses them
instead of querying again.
"""

import json
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from dbupdate.storage.blob_storage import BlobContainer, BlobExistsError
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)

A = TypeVar("A")
R = TypeVar("R")


class BlobProxy(Generic[A, R]):
    """Runs a query once per key, caching its JSON result in a blob container.

    Example:
        proxy = BlobProxy(
            container,
            filename_generator=lambda date: f"activityMap_itemIds_{date}.json",
            query_executor=client.get_activity_map_item_ids,
        )
        item_ids = await proxy.exec(date_range, "2024-01-01")
    """

    def __init__(
        self,
        container: BlobContainer,
        filename_generator: Callable[[str], str],
        query_executor: Callable[[A], Awaitable[R]],
    ):
        self.container = container
        self.filename_generator = filename_generator
        self.query_executor = query_executor

    async def exec(self, args: A, key: str) -> R:
        """Return the cached result for `key`, or run the query and cache it.

        Args:
            args: Argument passed to the query executor.
            key: Cache key; the blob is named filename_generator(key).

        Returns:
            Query result (as decoded from JSON when cached).
        """
        blob = self.container.blob(self.filename_generator(key))

        if await blob.exists():
            logger.info("Using cached query result", blob=blob.name)
            return await blob.download_json()

        result = await self.query_executor(args)

        try:
            await blob.upload(json.dumps(result, ensure_ascii=False, default=str))
        except BlobExistsError:
            # Another run cached the same key first
            logger.debug("Query result already cached", blob=blob.name)
        else:
            logger.info("Cached query result", blob=blob.name)

        return result
