"""
Database management for dbupdate.
Handles the MongoDB connection, indexes, and common operations.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.asynchronous.database import AsyncDatabase

from dbupdate.storage.bulk import BulkWriteSummary, chunked
from dbupdate.utils.config import get_settings
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)


# (collection, keys, options)
INDEXES: list[tuple[str, list[tuple[str, int]], dict[str, Any]]] = [
    ("urls", [("url", ASCENDING)], {"unique": True}),
    ("urls", [("page", ASCENDING)], {}),
    ("pages", [("url", ASCENDING)], {}),
    ("readability", [("hash", ASCENDING)], {}),
    ("readability", [("url", ASCENDING), ("date", DESCENDING)], {}),
    ("page_metrics", [("url", ASCENDING), ("date", ASCENDING)], {}),
    ("page_metrics", [("page", ASCENDING), ("date", ASCENDING)], {}),
    ("aa_item_ids", [("itemId", ASCENDING)], {}),
]


class Database:
    """Async MongoDB database manager."""

    def __init__(
        self,
        uri: str | None = None,
        database: str | None = None,
        client: AsyncMongoClient | None = None,
    ):
        """Initialize database manager.

        Args:
            uri: MongoDB connection string. If None, uses settings.
            database: Database name. If None, uses settings.
            client: Existing client (tests). Not closed by close().
        """
        settings = get_settings()

        self.uri = uri or settings.mongo.uri
        self.database_name = database or settings.mongo.database
        self.bulk_chunk_size = settings.mongo.bulk_chunk_size
        self._timeout_ms = settings.mongo.server_selection_timeout_ms
        self._client: AsyncMongoClient | None = client
        self._owns_client = client is None
        self._db: AsyncDatabase | None = (
            client[self.database_name] if client is not None else None
        )

    async def connect(self) -> None:
        """Connect to the database server."""
        if self._db is not None:
            return

        self._client = AsyncMongoClient(
            self.uri,
            serverSelectionTimeoutMS=self._timeout_ms,
            tz_aware=True,
        )
        await self._client.aconnect()
        self._db = self._client[self.database_name]

        logger.info("Database connected", database=self.database_name)

    async def close(self) -> None:
        """Close the database connection."""
        if self._client is not None and self._owns_client:
            await self._client.close()
            logger.info("Database connection closed")
        self._client = None
        self._db = None

    @property
    def db(self) -> AsyncDatabase:
        if self._db is None:
            raise RuntimeError("Database is not connected")
        return self._db

    def collection(self, name: str) -> AsyncCollection:
        return self.db[name]

    async def ensure_indexes(self) -> None:
        """Create the indexes the update pipeline relies on."""
        for collection, keys, options in INDEXES:
            await self.collection(collection).create_index(keys, **options)

        logger.info("Database indexes ensured", count=len(INDEXES))

    async def fetch_one(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        projection: Mapping[str, Any] | Sequence[str] | None = None,
        sort: list[tuple[str, int]] | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a single document.

        Args:
            collection: Collection name.
            filter: Query filter.
            projection: Fields to include/exclude.
            sort: Sort specification, applied before picking the document.

        Returns:
            Document as dict or None.
        """
        return await self.collection(collection).find_one(
            filter or {},
            projection,
            sort=sort,
        )

    async def fetch_all(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        projection: Mapping[str, Any] | Sequence[str] | None = None,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
    ) -> list[dict[str, Any]]:
        """Fetch all matching documents.

        Args:
            collection: Collection name.
            filter: Query filter.
            projection: Fields to include/exclude.
            sort: Sort specification.
            limit: Maximum documents (0 = no limit).

        Returns:
            List of documents.
        """
        cursor = self.collection(collection).find(filter or {}, projection)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list()

    async def distinct(
        self,
        collection: str,
        key: str,
        filter: Mapping[str, Any] | None = None,
    ) -> list[Any]:
        return await self.collection(collection).distinct(key, filter or {})

    async def aggregate(
        self,
        collection: str,
        pipeline: list[dict[str, Any]],
        allow_disk_use: bool = False,
    ) -> list[dict[str, Any]]:
        cursor = await self.collection(collection).aggregate(
            pipeline,
            allowDiskUse=allow_disk_use,
        )
        return await cursor.to_list()

    async def insert_one(self, collection: str, document: dict[str, Any]) -> Any:
        """Insert a document.

        Returns:
            Inserted _id.
        """
        result = await self.collection(collection).insert_one(document)
        return result.inserted_id

    async def insert_many(
        self,
        collection: str,
        documents: list[dict[str, Any]],
        ordered: bool = True,
    ) -> list[Any]:
        """Insert documents in chunks of `bulk_chunk_size`.

        Returns:
            Inserted _ids.
        """
        inserted: list[Any] = []

        for chunk in chunked(documents, self.bulk_chunk_size):
            result = await self.collection(collection).insert_many(
                list(chunk),
                ordered=ordered,
            )
            inserted.extend(result.inserted_ids)

        return inserted

    async def update_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any] | list[dict[str, Any]],
        upsert: bool = False,
    ) -> int:
        """Update a single document.

        Returns:
            Number of documents modified.
        """
        result = await self.collection(collection).update_one(
            filter,
            update,
            upsert=upsert,
        )
        return result.modified_count

    async def update_many(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any] | list[dict[str, Any]],
    ) -> int:
        """Update all matching documents.

        Returns:
            Number of documents modified.
        """
        result = await self.collection(collection).update_many(filter, update)
        return result.modified_count

    async def delete_one(self, collection: str, filter: Mapping[str, Any]) -> int:
        result = await self.collection(collection).delete_one(filter)
        return result.deleted_count

    async def delete_many(self, collection: str, filter: Mapping[str, Any]) -> int:
        result = await self.collection(collection).delete_many(filter)
        return result.deleted_count

    async def estimated_count(self, collection: str) -> int:
        return await self.collection(collection).estimated_document_count()

    async def count(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
    ) -> int:
        return await self.collection(collection).count_documents(filter or {})

    async def bulk_write(
        self,
        collection: str,
        operations: Sequence[Any],
        ordered: bool = True,
    ) -> BulkWriteSummary:
        """Write operations in chunks of `bulk_chunk_size`, in order.

        Args:
            collection: Collection name.
            operations: pymongo write models (UpdateOne, InsertOne, ...).
            ordered: Whether each chunk stops at its first error.

        Returns:
            Counts aggregated over every chunk.
        """
        summary = BulkWriteSummary()
        if not operations:
            return summary

        for chunk in chunked(operations, self.bulk_chunk_size):
            result = await self.collection(collection).bulk_write(
                list(chunk),
                ordered=ordered,
            )
            summary.add_result(result)

        logger.debug(
            "Bulk write complete",
            collection=collection,
            operations=len(operations),
            **summary.to_dict(),
        )
        return summary


# Global database instance
_db: Database | None = None


async def get_database() -> Database:
    """Get the global database instance.

    Returns:
        Database instance.
    """
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
        await _db.ensure_indexes()
    return _db


async def close_database() -> None:
    """Close the global database instance."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
