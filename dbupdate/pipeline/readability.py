"""
Readability collection service.
"""

from typing import Any

from dbupdate.extractor.readability import calculate_readability
from dbupdate.pipeline.collection_sync import CollectionBlobSync, ExportSchema
from dbupdate.storage.blob_storage import BlobStorage
from dbupdate.storage.database import Database
from dbupdate.utils.config import get_settings
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)

READABILITY_SCHEMA = ExportSchema(date_keys=("date",))


class ReadabilityService:
    """Scores snapshots and keeps the readability collection export in sync."""

    def __init__(self, db: Database, blob_storage: BlobStorage):
        settings = get_settings()
        self.db = db
        self._sync = CollectionBlobSync(
            db,
            blob_storage.container(settings.blob.urls_container),
            collection="readability",
            blob_name=settings.urls.readability_blob_name,
            schema=READABILITY_SCHEMA,
            modified_field="date",
            checked_field="date",
            upsert_key="_id",
        )

    def calculate_readability(self, html: str, lang: str) -> dict[str, Any]:
        return calculate_readability(html, lang)

    async def save_collection_to_blob_storage(self, force: bool = False) -> bool:
        logger.info("Saving readability data to blob storage...")
        try:
            return await self._sync.save(force=force)
        except Exception as e:
            logger.error(
                "An error occurred uploading readability collection to blob storage",
                error=str(e),
                exc_info=True,
            )
            return False

    async def update_collection_from_blob_storage(self) -> int:
        try:
            return await self._sync.restore()
        except Exception as e:
            logger.error(
                "Error updating readability collection from blob storage",
                error=str(e),
                exc_info=True,
            )
            return 0
