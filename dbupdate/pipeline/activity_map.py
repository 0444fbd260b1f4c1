"""
Activity map service.

Daily link clicks per page from Adobe Analytics are written to
page_metrics.activity_map. Analytics identifies activity map pages by title,
so item ids are mapped to pages through the titles recorded on urls
(all_titles).
"""

import re
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from bson import ObjectId
from pymongo import UpdateOne

from dbupdate.external.adobe_analytics import AdobeAnalyticsClient
from dbupdate.external.blob_proxy import BlobProxy
from dbupdate.storage.blob_storage import BlobStorage
from dbupdate.storage.database import Database
from dbupdate.utils.config import get_settings
from dbupdate.utils.dates import DateRange, parse_query_date, today, utc_midnight
from dbupdate.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

ITEM_ID_TYPE = "activityMapTitle"

_OUTBOUND_LINK_RE = re.compile(r"^https?://.+?/([^/]+?\.(?:pdf|txt|brf))$", re.IGNORECASE)
_BARE_FILE_LINK_RE = re.compile(r"^([^/]+?\.(?:pdf|txt|brf))$", re.IGNORECASE)


def fix_outbound_links(entries: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Clean file links in activity map entries.

    Bare file names (e.g. "form.pdf") are incorrect values and are dropped;
    absolute file links are renamed to their file name.
    """
    fixed = []
    for entry in entries:
        activity_map = []
        for item in entry.get("activity_map", []):
            link = item.get("link", "")
            if _BARE_FILE_LINK_RE.match(link):
                continue
            match = _OUTBOUND_LINK_RE.match(link)
            activity_map.append({**item, "link": match.group(1)} if match else item)
        fixed.append({**entry, "activity_map": activity_map})
    return fixed


def is_in_gap(day: datetime, gap_start: datetime, gap_end: datetime) -> bool:
    """Day falls inside the data gap (inclusive, compared by day)."""
    return gap_start.date() <= day.date() <= gap_end.date()


def build_single_day_ranges(
    date_range: DateRange,
    gap_start: datetime,
    gap_end: datetime,
    now: datetime | None = None,
) -> list[DateRange]:
    """Split a range into single days, excluding the data gap and today."""
    current_day = today() if now is None else utc_midnight(now.date())
    return [
        day
        for day in date_range.single_days()
        if not is_in_gap(day.start_date, gap_start, gap_end)
        and day.start_date.date() != current_day.date()
    ]


def build_activity_map_updates(
    entries: Iterable[dict[str, Any]],
    date: datetime,
) -> list[UpdateOne]:
    """One $set per (page, date) for entries with page refs."""
    return [
        UpdateOne(
            {"date": date, "page": page},
            {"$set": {"activity_map": entry["activity_map"]}},
        )
        for entry in entries
        for page in entry.get("pages", [])
    ]


class ActivityMapService:
    """Updates page_metrics activity maps from Adobe Analytics."""

    def __init__(
        self,
        db: Database,
        blob_storage: BlobStorage,
        client: AdobeAnalyticsClient | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.config = settings.activity_map
        self.client = client or AdobeAnalyticsClient()
        self.raw_container = blob_storage.container(settings.blob.aa_raw_container)

    async def _latest_date(self) -> datetime | None:
        latest = await self.db.fetch_one(
            "page_metrics",
            {"activity_map": {"$exists": True, "$not": {"$size": 0}}},
            {"date": 1},
            sort=[("date", -1)],
        )
        return latest["date"] if latest else None

    async def default_date_range(self) -> DateRange:
        """Day after the latest stored activity map through the end of yesterday."""
        latest = await self._latest_date()
        start = utc_midnight((latest or today()).date()) + timedelta(days=1)
        end = today() - timedelta(days=1)
        return DateRange.from_datetimes(start, end)

    async def update_activity_map(self, date_range: DateRange | None = None) -> int:
        """Update activity maps for each day of the range.

        Errors are logged, not raised.

        Returns:
            Number of page_metrics updates written.
        """
        written = 0

        with LogContext(service="activity_map"):
            try:
                date_range = date_range or await self.default_date_range()

                if date_range.end_date.date() < date_range.start_date.date():
                    logger.info("Page activity map already up-to-date.")
                    return 0

                days = build_single_day_ranges(
                    date_range,
                    parse_query_date(self.config.gap_start),
                    parse_query_date(self.config.gap_end),
                )

                proxy = BlobProxy(
                    self.raw_container,
                    lambda date: f"activityMap_data_{date}.json",
                    lambda args: self.client.get_page_activity_map(*args),
                )

                for day in days:
                    item_ids = await self.update_activity_map_item_ids(day)

                    results = await proxy.exec((day, item_ids), day.start[:10])
                    with_refs = await self.add_page_refs_to_activity_map(results)
                    clean = fix_outbound_links(with_refs)

                    ops = build_activity_map_updates(clean, day.start_date)
                    if ops:
                        await self.db.bulk_write("page_metrics", ops, ordered=False)
                        written += len(ops)
                        logger.info("Updated records", date=day.start[:10], count=len(ops))
            except Exception as e:
                logger.error("Error updating activity map", error=str(e), exc_info=True)

        return written

    async def update_activity_map_item_ids(self, date_range: DateRange) -> list[dict[str, Any]]:
        logger.info("Updating itemIds", start=date_range.start, end=date_range.end)

        proxy = BlobProxy(
            self.raw_container,
            lambda date: f"activityMap_itemIds_{date}.json",
            self.client.get_activity_map_item_ids,
        )

        item_ids = await proxy.exec(date_range, date_range.start[:10])
        await self.insert_item_ids_if_new(item_ids)

        logger.info("Successfully updated itemIds.")
        return item_ids

    async def add_page_refs_to_item_ids(
        self,
        item_ids: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Attach refs of pages whose urls have had the item's value as a title."""
        urls = await self.db.fetch_all(
            "urls",
            {
                "all_titles": {
                    "$not": {"$size": 0},
                    "$in": [item["value"] for item in item_ids],
                }
            },
            {"all_titles": 1, "page": 1},
        )

        pages_by_title: dict[str, list[ObjectId]] = {}
        for url in urls:
            for title in url.get("all_titles") or []:
                if url.get("page"):
                    pages_by_title.setdefault(title, []).append(url["page"])

        with_refs = []
        for item in item_ids:
            pages = pages_by_title.get(item["value"])
            with_refs.append({**item, "pages": pages} if pages else dict(item))
        return with_refs

    async def add_page_refs_to_activity_map(
        self,
        activity_map: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Keep only entries whose stored item id has pages, attaching them."""
        item_ids = await self.db.fetch_all("aa_item_ids", {"type": ITEM_ID_TYPE})
        by_item_id = {item["itemId"]: item for item in item_ids}

        entries = []
        for entry in activity_map:
            pages = (by_item_id.get(entry["itemId"]) or {}).get("pages")
            if pages:
                entries.append({**entry, "pages": pages})
        return entries

    async def insert_item_ids_if_new(self, item_ids: list[dict[str, Any]]) -> int:
        """Store item ids not seen before (values containing https:// are skipped).

        Returns:
            Number of item ids inserted.
        """
        existing = await self.db.fetch_all("aa_item_ids", {"type": ITEM_ID_TYPE}, {"itemId": 1})
        existing_ids = {item["itemId"] for item in existing}

        new_items = [
            {"_id": ObjectId(), "type": ITEM_ID_TYPE, **item}
            for item in item_ids
            if item["itemId"] not in existing_ids and "https://" not in item["value"]
        ]

        if not new_items:
            logger.info("No new itemIds to insert")
            return 0

        logger.info("Finding valid Page references and inserting...")
        with_refs = await self.add_page_refs_to_item_ids(new_items)
        await self.db.insert_many("aa_item_ids", with_refs)

        logger.info("Inserted new itemIds", count=len(new_items))
        return len(new_items)
