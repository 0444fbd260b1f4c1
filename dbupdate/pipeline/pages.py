"""
Pages collection maintenance.
"""

from typing import Any

from bson import ObjectId
from pymongo import UpdateMany, UpdateOne

from dbupdate.storage.bulk import BulkWriteSummary
from dbupdate.storage.database import Database
from dbupdate.utils.errors import EmptyCollectionError
from dbupdate.utils.logging import get_logger, log_timing

logger = get_logger(__name__)


def lang_from_url(url: str) -> str | None:
    """en/fr from a canada.ca url path."""
    for lang in ("en", "fr"):
        if f"canada.ca/{lang}/" in url:
            return lang
    return None


class PagesService:
    """Creates pages from the published pages list and keeps them consistent."""

    def __init__(self, db: Database):
        self.db = db

    @log_timing
    async def create_pages_from_page_list(self) -> list[dict[str, Any]]:
        """Create pages for published list urls not yet in the pages collection.

        New pages are then referenced from page_metrics docs with the same url
        and no page ref.

        Returns:
            Created pages.

        Raises:
            EmptyCollectionError: If the published pages list is empty.
        """
        logger.info("Checking for new pages in Published Pages list...")

        pages_list = await self.db.fetch_all("pages_list")
        if not pages_list:
            raise EmptyCollectionError("pages_list", "Published pages list is empty")

        list_urls = [page["url"] for page in pages_list]
        existing = set(
            await self.db.distinct("pages", "url", {"url": {"$in": list_urls}})
        )

        created: dict[str, dict[str, Any]] = {}
        for page in pages_list:
            if page["url"] not in existing and page["url"] not in created:
                created[page["url"]] = {
                    "_id": ObjectId(),
                    "url": page["url"],
                    "title": page.get("title"),
                }
        pages_to_create = list(created.values())

        logger.info("Creating new pages from Published Pages list...", count=len(pages_to_create))

        if not pages_to_create:
            return []

        await self.db.insert_many("pages", pages_to_create, ordered=False)
        logger.info("New pages successfully created")

        logger.info("Adding references to page metrics...")
        ops = [
            UpdateMany({"url": page["url"], "page": None}, {"$set": {"page": page["_id"]}})
            for page in pages_to_create
        ]
        summary = await self.db.bulk_write("page_metrics", ops)

        if summary.modified:
            logger.info("Successfully added references to page metrics", modified=summary.modified)
        else:
            logger.warning(
                "No page metrics found for the following urls",
                urls=[page["url"] for page in pages_to_create],
            )

        return pages_to_create

    async def update_pages_lang(self) -> int:
        """Set `lang` on pages missing it, from the url.

        Returns:
            Number of pages updated.
        """
        pages = await self.db.fetch_all(
            "pages",
            {"$or": [{"lang": {"$exists": False}}, {"lang": None}, {"lang": ""}]},
            {"url": 1},
        )

        ops = []
        for page in pages:
            lang = lang_from_url(page["url"])
            if lang:
                ops.append(UpdateOne({"_id": page["_id"]}, {"$set": {"lang": lang}}))

        if not ops:
            logger.info("Pages lang is up to date")
            return 0

        summary = await self.db.bulk_write("pages", ops, ordered=False)
        logger.info("Pages lang updated", modified=summary.modified)
        return summary.modified

    async def upsert_page_metrics(self, metrics: list[dict[str, Any]]) -> BulkWriteSummary:
        """Upsert page metrics by (url, date), keeping `_id` on insert."""
        ops = []
        for metric in metrics:
            fields = {key: value for key, value in metric.items() if key != "_id"}
            update: dict[str, Any] = {"$set": fields}
            if "_id" in metric:
                update["$setOnInsert"] = {"_id": metric["_id"]}
            ops.append(
                UpdateOne(
                    {"url": metric["url"], "date": metric["date"]},
                    update,
                    upsert=True,
                )
            )

        return await self.db.bulk_write("page_metrics", ops)

    async def check_for_duplicate_pages(self) -> list[dict[str, Any]]:
        """Urls that appear on more than one page.

        Returns:
            [{"_id": url, "count": n}, ...]
        """
        duplicates = await self.db.aggregate(
            "pages",
            [
                {"$group": {"_id": "$url", "count": {"$sum": 1}}},
                {"$match": {"count": {"$gt": 1}}},
            ],
        )

        if duplicates:
            logger.warning("Duplicate pages found", duplicates=duplicates)
        else:
            logger.info("No duplicate pages found")

        return duplicates
