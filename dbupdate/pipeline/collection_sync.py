"""
Collection <-> blob storage synchronization.

Production runs upload full collection exports (JSON) after updating them;
non-production runs download those exports instead of crawling. Exports are
plain JSON: ObjectIds as hex strings and dates as ISO strings, revived on
download.
"""

import json
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from bson import ObjectId
from pymongo import UpdateOne

from dbupdate.storage.blob_storage import BlobContainer
from dbupdate.storage.database import Database
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps_documents(documents: list[dict[str, Any]]) -> str:
    """Serialize documents to export JSON."""
    return json.dumps(documents, default=_json_default, ensure_ascii=False)


def parse_date(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def parse_object_id(value: Any) -> Any:
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


@dataclass(frozen=True)
class ExportSchema:
    """Which fields of an exported document are revived on download."""

    date_keys: Collection[str] = ()
    id_keys: Collection[str] = ("_id", "page")
    # list field -> date keys of its items (e.g. hashes -> date)
    nested_date_keys: dict[str, Collection[str]] = field(default_factory=dict)

    def revive(self, doc: dict[str, Any]) -> dict[str, Any]:
        revived = dict(doc)
        for key in self.date_keys:
            if revived.get(key) is not None:
                revived[key] = parse_date(revived[key])
        for key in self.id_keys:
            if revived.get(key) is not None:
                revived[key] = parse_object_id(revived[key])
        for key, item_keys in self.nested_date_keys.items():
            if isinstance(revived.get(key), list):
                revived[key] = [
                    {
                        **item,
                        **{
                            item_key: parse_date(item[item_key])
                            for item_key in item_keys
                            if item.get(item_key) is not None
                        },
                    }
                    for item in revived[key]
                ]
        return revived


class CollectionBlobSync:
    """Uploads a collection export to a blob and restores the collection from it.

    Args:
        db: Database.
        container: Blob container holding the export.
        collection: Collection name.
        blob_name: Export blob name.
        schema: Fields to revive on download.
        modified_field: Documents with this field newer than the export date
            mean the export is stale.
        checked_field: Latest value of this field is the collection's date.
        upsert_key: Field identifying documents when restoring.
    """

    def __init__(
        self,
        db: Database,
        container: BlobContainer,
        collection: str,
        blob_name: str,
        schema: ExportSchema,
        modified_field: str,
        checked_field: str,
        upsert_key: str,
    ):
        self.db = db
        self.container = container
        self.collection = collection
        self.blob_name = blob_name
        self.schema = schema
        self.modified_field = modified_field
        self.checked_field = checked_field
        self.upsert_key = upsert_key

    def data_blob(self):
        return self.container.blob(self.blob_name)

    def archive_blob(self, now: datetime | None = None):
        date_string = (now or datetime.now(UTC)).strftime("%Y-%m-%d")
        return self.container.blob(f"archive/{date_string}/{self.blob_name}")

    async def save(self, force: bool = False) -> bool:
        """Upload the collection if it changed since the last export.

        Returns:
            True if uploaded.
        """
        blob = self.data_blob()

        if await blob.exists():
            properties = await blob.get_properties()
            blob_date = parse_date(properties.metadata.get("date")) or properties.last_modified

            new_data = await self.db.fetch_one(
                self.collection,
                {self.modified_field: {"$gt": blob_date}},
                {"_id": 1},
            )

            if new_data is None and not force:
                logger.info(
                    "No new data added. Skipping upload to storage.",
                    collection=self.collection,
                )
                return False

            logger.info(
                "Overwriting collection export",
                collection=self.collection,
                previous_date=blob_date.isoformat() if blob_date else None,
            )

        documents = await self.db.fetch_all(self.collection)
        data = dumps_documents(documents)
        now = datetime.now(UTC)

        await blob.upload(
            data,
            metadata={"date": _json_default(now)},
            overwrite=True,
        )

        archive = self.archive_blob(now)
        if not await archive.exists():
            await archive.upload(data)

        logger.info(
            "Collection exported to blob storage",
            collection=self.collection,
            documents=len(documents),
        )
        return True

    async def restore(self) -> int:
        """Upsert the collection from its export when the export is newer.

        The export is newer when its date is after the collection's latest
        `checked_field` plus one day.

        Returns:
            Number of documents modified or upserted.
        """
        blob = self.data_blob()

        if not await blob.exists():
            logger.warning(
                "Tried to sync local collection, but data blob does not exist.",
                collection=self.collection,
                blob=self.blob_name,
            )
            return 0

        properties = await blob.get_properties()
        blob_date = parse_date(properties.metadata.get("date")) or properties.last_modified

        latest = await self.db.fetch_one(
            self.collection,
            {},
            {self.checked_field: 1},
            sort=[(self.checked_field, -1)],
        )
        collection_date = (latest or {}).get(self.checked_field)

        if collection_date and _aware(collection_date) + timedelta(days=1) > _aware(blob_date):
            logger.info("Collection data is up to date.", collection=self.collection)
            return 0

        logger.info("Downloading collection data from blob storage...", collection=self.collection)

        documents = [self.schema.revive(doc) for doc in await blob.download_json()]

        ops = [
            UpdateOne(
                {self.upsert_key: doc[self.upsert_key]},
                {
                    "$setOnInsert": {"_id": doc["_id"]},
                    "$set": {k: v for k, v in doc.items() if k != "_id"},
                },
                upsert=True,
            )
            for doc in documents
        ]

        summary = await self.db.bulk_write(self.collection, ops, ordered=True)
        updated = summary.modified + summary.upserted

        logger.info(
            "Collection updated from blob storage",
            collection=self.collection,
            updated=updated,
        )
        return updated


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)
