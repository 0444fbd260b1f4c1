"""
Maintenance operations for the urls, pages and readability collections.

One-off repairs and migrations run from the command line: snapshot
deduplication, title cleanup, and reports.
"""

import asyncio
import json
import re
import time
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from pymongo import UpdateOne

from dbupdate.extractor.html_processor import process_html
from dbupdate.filter.snapshot_dedup import find_duplicate_readability, find_redundant_hashes
from dbupdate.pipeline.activity_map import ITEM_ID_TYPE
from dbupdate.pipeline.urls import UrlsService, collapse_titles, squish_trim
from dbupdate.storage.blob_storage import BlobNotFoundError, BlobStorage
from dbupdate.storage.database import Database
from dbupdate.utils.config import get_project_root, get_settings
from dbupdate.utils.logging import LogContext, ProgressLogger, get_logger, log_timing

logger = get_logger(__name__)

_CANADA_SUFFIX_RE = re.compile(r"\s+-\s+Canada\.ca\s*$", re.IGNORECASE)
_ALL_TITLES_SUFFIX_RE = re.compile(r"\s[-–]\sCanada\.ca")


# Pending operations log


@dataclass
class PendingOperations:
    """Hashes still to remove, per target.

    Dumped to disk when redundant hash removal fails so it can be resumed.
    """

    url_hashes_to_remove: list[str] = field(default_factory=list)
    readability_hashes_to_delete: list[str] = field(default_factory=list)
    blob_hashes_to_delete: list[str] = field(default_factory=list)

    def add_pending(self, hashes: Iterable[str]) -> None:
        for hash_ in hashes:
            for pending in self._lists():
                if hash_ not in pending:
                    pending.append(hash_)

    def _lists(self) -> tuple[list[str], list[str], list[str]]:
        return (
            self.url_hashes_to_remove,
            self.readability_hashes_to_delete,
            self.blob_hashes_to_delete,
        )

    @staticmethod
    def _remove(pending: list[str], hash_: str) -> None:
        if pending and pending[0] == hash_:
            pending.pop(0)
        elif hash_ in pending:
            pending.remove(hash_)

    def set_urls_processed(self, hash_: str) -> None:
        self._remove(self.url_hashes_to_remove, hash_)

    def set_readability_processed(self, hash_: str) -> None:
        self._remove(self.readability_hashes_to_delete, hash_)

    def set_blob_processed(self, hash_: str) -> None:
        self._remove(self.blob_hashes_to_delete, hash_)

    def all_hashes(self) -> list[str]:
        """Every pending hash, once, in order."""
        return list(dict.fromkeys(h for pending in self._lists() for h in pending))

    def is_empty(self) -> bool:
        return not any(self._lists())

    def to_dict(self) -> dict[str, list[str]]:
        return asdict(self)

    def dump(self, directory: str | Path) -> Path:
        """Write to `pendingOps_<epoch ms>.json` in `directory`.

        Returns:
            Path of the dump.
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"pendingOps_{int(time.time() * 1000)}.json"
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: str | Path) -> "PendingOperations":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(
            url_hashes_to_remove=list(data.get("url_hashes_to_remove", [])),
            readability_hashes_to_delete=list(data.get("readability_hashes_to_delete", [])),
            blob_hashes_to_delete=list(data.get("blob_hashes_to_delete", [])),
        )


# Title helpers


def clean_url_title(title: str) -> str:
    """Strip the " - Canada.ca" suffix and collapse whitespace."""
    return squish_trim(_CANADA_SUFFIX_RE.sub("", title))


def clean_all_titles_entry(title: str) -> str:
    return squish_trim(_ALL_TITLES_SUFFIX_RE.sub("", squish_trim(title)))


def mangle_title(title: str) -> str:
    """A title as it appears when "ss" was stripped from it by a bad import."""
    return squish_trim(re.sub(r"\s{2,}", " ", re.sub(r"s{2,}", " ", title)))


def drop_mangled_titles(titles: Iterable[str]) -> list[str]:
    """Remove titles equal to a mangled version of another title."""
    titles = list(titles)
    mangled = {mangle_title(title) for title in titles if "ss" in title}
    return [title for title in titles if title not in mangled]


def select_page_titles(urls: Iterable[Mapping[str, Any]]) -> dict[Any, str]:
    """Page -> title, for pages whose urls all have the same title.

    "Forbidden" titles and 404 urls are ignored.
    """
    titles_by_page: dict[Any, list[str]] = defaultdict(list)
    for url in urls:
        if url.get("is_404") or not url.get("title") or not url.get("page"):
            continue
        if url["title"] == "Forbidden":
            continue
        titles_by_page[url["page"]].append(url["title"])

    return {
        page: titles[0]
        for page, titles in titles_by_page.items()
        if len(set(titles)) == 1
    }


def build_redirects_report(pages: Iterable[Mapping[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    """Redirects and 404s of tracked pages (pages with an airtable_id).

    A redirect is flagged when its target is a known page that is not tracked.
    """
    pages = list(pages)
    redirect_urls = {
        page["redirect"] for page in pages if page.get("airtable_id") and page.get("redirect")
    }
    untracked_targets = {
        page["url"]
        for page in pages
        if page["url"] in redirect_urls and not page.get("airtable_id")
    }

    redirects = []
    not_found = []
    for page in pages:
        if not page.get("airtable_id"):
            continue
        if page.get("redirect"):
            entry: dict[str, Any] = {"URL": page["url"], "Redirect": page["redirect"]}
            if page["redirect"] in untracked_targets:
                entry["Redirect missing from airtable?"] = True
            entry["Airtable id"] = page["airtable_id"]
            redirects.append(entry)
        if page.get("is_404") and not page["url"].endswith(".pdf"):
            not_found.append(
                {"URL": page["url"], "Is 404?": True, "Airtable id": page["airtable_id"]}
            )

    return {"redirects": redirects, "404s": not_found}


class MaintenanceService:
    """Repair and migration operations."""

    def __init__(
        self,
        db: Database,
        blob_storage: BlobStorage,
        urls: UrlsService | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.urls_config = settings.urls
        self.dedup_config = settings.dedup
        self.container = blob_storage.container(settings.blob.urls_container)
        self._blob_storage = blob_storage
        self._urls = urls

    @property
    def urls(self) -> UrlsService:
        if self._urls is None:
            self._urls = UrlsService(self.db, self._blob_storage)
        return self._urls

    # Redundant snapshots

    @log_timing
    async def remove_redundant_url_hashes(self) -> PendingOperations:
        """Remove snapshots whose readability scores repeat their neighbours.

        Duplicate readability docs are deleted first. Each redundant hash is
        then pulled from urls, its readability docs deleted and its blob
        deleted.

        Returns:
            The pending operations (empty when everything was processed).
        """
        with LogContext(operation="remove_redundant_hashes"):
            before = await self.db.estimated_count("readability")
            logger.info("Readability documents before", count=before)

            readability_docs = await self.db.fetch_all(
                "readability",
                {},
                {"url": 1, "hash": 1, "date": 1, "final_fk_score": 1, "total_words": 1},
            )

            duplicates = find_duplicate_readability(readability_docs)
            if duplicates:
                duplicate_ids = [doc["_id"] for doc in duplicates]
                deleted = await self.db.delete_many(
                    "readability", {"_id": {"$in": duplicate_ids}}
                )
                logger.info("Duplicate readability docs deleted", deleted=deleted)

            duplicate_id_set = {doc["_id"] for doc in duplicates}
            scores_by_url: dict[str, list[dict[str, Any]]] = defaultdict(list)
            for doc in readability_docs:
                if doc["_id"] not in duplicate_id_set:
                    scores_by_url[doc["url"]].append(doc)

            url_docs = await self.db.fetch_all(
                "urls",
                {f"hashes.{self.dedup_config.min_hashes}": {"$exists": True}},
                {"url": 1, "hashes": 1},
            )
            protected = {
                hash_ for hash_ in await self.db.distinct("urls", "latest_snapshot") if hash_
            }

            redundant, _kept = find_redundant_hashes(url_docs, scores_by_url, protected)

            pending = PendingOperations()
            pending.add_pending(sorted(redundant))

            await self.process_pending_operations(pending)

            after = await self.db.estimated_count("readability")
            logger.info("Readability documents after", count=after, removed=before - after)

            return pending

    async def _remove_hash(self, pending: PendingOperations, hash_: str) -> None:
        async def pull_from_urls() -> None:
            await self.db.update_many(
                "urls",
                {"hashes.hash": hash_},
                {"$pull": {"hashes": {"hash": hash_}}},
            )
            pending.set_urls_processed(hash_)

        async def delete_readability() -> None:
            await self.db.delete_many("readability", {"hash": hash_})
            pending.set_readability_processed(hash_)

        async def delete_blob() -> None:
            await self.container.blob(hash_).delete()
            pending.set_blob_processed(hash_)

        tasks = []
        if hash_ in pending.url_hashes_to_remove:
            tasks.append(pull_from_urls())
        if hash_ in pending.readability_hashes_to_delete:
            tasks.append(delete_readability())
        if hash_ in pending.blob_hashes_to_delete:
            tasks.append(delete_blob())

        # Let every removal settle before a failure propagates, so a dump
        # records the final state of this hash
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def process_pending_operations(self, pending: PendingOperations) -> bool:
        """Run pending removals; dump what is left if one fails.

        Returns:
            True if every operation completed.
        """
        hashes = pending.all_hashes()
        progress = ProgressLogger(len(hashes), name="Removing redundant hashes", log_every=100)

        try:
            for hash_ in hashes:
                await self._remove_hash(pending, hash_)
                progress.log_iteration()
        except Exception as e:
            dump_dir = get_project_root() / self.dedup_config.dump_dir
            path = pending.dump(dump_dir)
            logger.error(
                "Error removing redundant hashes; pending operations saved",
                error=str(e),
                dump=str(path),
                exc_info=True,
            )
            return False

        logger.info("Redundant hashes removed", count=len(hashes))
        return True

    async def resume_pending_operations(self, path: str | Path) -> bool:
        pending = PendingOperations.load(path)
        logger.info(
            "Resuming pending operations",
            path=str(path),
            urls=len(pending.url_hashes_to_remove),
            readability=len(pending.readability_hashes_to_delete),
            blobs=len(pending.blob_hashes_to_delete),
        )
        return await self.process_pending_operations(pending)

    # Titles

    async def add_url_titles_to_all_titles(self) -> int:
        urls = await self.db.fetch_all(
            "urls",
            {"title": {"$nin": [None, ""]}},
            {"title": 1},
        )
        ops = [
            UpdateOne({"_id": url["_id"]}, {"$addToSet": {"all_titles": url["title"]}})
            for url in urls
        ]
        summary = await self.db.bulk_write("urls", ops, ordered=False)
        logger.info("Url titles added to all_titles", modified=summary.modified)
        return summary.modified

    async def clean_urls_titles(self) -> int:
        """Remove " - Canada.ca" suffixes and extra whitespace from url titles."""
        urls = await self.db.fetch_all(
            "urls",
            {"$or": [{"title": {"$nin": [None, ""]}}, {"all_titles.0": {"$exists": True}}]},
            {"title": 1, "all_titles": 1},
        )

        ops = []
        for url in urls:
            update: dict[str, Any] = {}
            if url.get("title"):
                title = clean_url_title(url["title"])
                if title != url["title"]:
                    update["title"] = title
            if url.get("all_titles"):
                all_titles = collapse_titles(clean_url_title(t) for t in url["all_titles"])
                if all_titles != url["all_titles"]:
                    update["all_titles"] = all_titles
            if update:
                ops.append(UpdateOne({"_id": url["_id"]}, {"$set": update}))

        summary = await self.db.bulk_write("urls", ops, ordered=False)
        logger.info("Url titles cleaned", modified=summary.modified)
        return summary.modified

    @log_timing
    async def repair_url_titles(self) -> int:
        """Re-derive url titles from their latest snapshot.

        all_titles keeps every distinct title, minus versions mangled by the
        removal of "ss".
        """
        urls = await self.db.fetch_all(
            "urls",
            {
                "title": {"$nin": [None, ""]},
                "latest_snapshot": {"$nin": [None, ""]},
                "hashes.0": {"$exists": True},
            },
            {"title": 1, "all_titles": 1, "latest_snapshot": 1, "url": 1},
        )

        progress = ProgressLogger(len(urls), name="Repairing url titles", log_every=500)
        ops = []

        for url in urls:
            progress.log_iteration()
            try:
                html = await self.container.blob(url["latest_snapshot"]).download_text()
            except BlobNotFoundError:
                logger.warning(
                    "Snapshot blob not found",
                    url=url["url"],
                    hash=url["latest_snapshot"],
                )
                continue

            processed = process_html(html)
            if processed is None or not processed.title:
                continue

            all_titles = drop_mangled_titles(
                collapse_titles(
                    [processed.title, url["title"], *(url.get("all_titles") or [])]
                )
            )
            ops.append(
                UpdateOne(
                    {"_id": url["_id"]},
                    {"$set": {"title": processed.title, "all_titles": all_titles}},
                )
            )

        summary = await self.db.bulk_write("urls", ops, ordered=False)
        logger.info("Url titles repaired", modified=summary.modified)
        return summary.modified

    async def update_page_titles_from_urls(self) -> int:
        """Set page titles from their urls, where the urls agree on one title."""
        urls = await self.db.fetch_all(
            "urls",
            {"title": {"$nin": [None, ""]}, "page": {"$exists": True}},
            {"title": 1, "page": 1, "is_404": 1},
        )
        titles = select_page_titles(urls)

        pages = await self.db.fetch_all(
            "pages",
            {"_id": {"$in": list(titles)}},
            {"title": 1},
        )

        ops = [
            UpdateOne({"_id": page["_id"]}, {"$set": {"title": titles[page["_id"]]}})
            for page in pages
            if page.get("title") != titles[page["_id"]]
        ]

        summary = await self.db.bulk_write("pages", ops, ordered=False)
        logger.info("Page titles updated", modified=summary.modified)
        return summary.modified

    async def _download_json(self, name: str) -> Any:
        return await self.container.blob(name).download_json()

    async def populate_all_titles(self) -> int:
        """Add historical titles from the all-titles blob to url all_titles."""
        all_titles_data: dict[str, list[str]] = await self._download_json(
            self.urls_config.all_titles_blob_name
        )
        blob_titles = {
            url: list(dict.fromkeys(clean_all_titles_entry(t) for t in titles))
            for url, titles in all_titles_data.items()
        }

        urls = await self.db.fetch_all(
            "urls",
            {"title": {"$nin": [None, ""]}},
            {"url": 1, "title": 1, "all_titles": 1},
        )

        ops = []
        for url in urls:
            titles = blob_titles.get(url["url"])
            if not titles:
                continue
            current = url.get("all_titles") or []
            expected = set(titles) | {url["title"]}
            if current and (
                len(current) == len(expected) or all(t in current for t in titles)
            ):
                continue
            ops.append(
                UpdateOne(
                    {"_id": url["_id"]},
                    {"$addToSet": {"all_titles": {"$each": [*titles, url["title"]]}}},
                )
            )

        summary = await self.db.bulk_write("urls", ops, ordered=False)
        logger.info("all_titles populated", modified=summary.modified)
        return summary.modified

    @log_timing
    async def fix_activity_map_titles(self) -> None:
        """Remove bad historical titles and reset activity map data.

        Activity maps are matched to pages by title, so after the cleanup the
        item ids and stored activity maps are dropped to be rebuilt.
        """
        deletions: dict[str, list[str]] = await self._download_json(
            self.urls_config.titles_deletion_blob_name
        )

        pull_ops = [
            UpdateOne({"url": url}, {"$pullAll": {"all_titles": titles}})
            for url, titles in deletions.items()
            if titles
        ]
        summary = await self.db.bulk_write("urls", pull_ops)
        logger.info("Bad titles removed", modified=summary.modified)

        added = await self.add_url_titles_to_all_titles()
        logger.info("Current titles ensured", modified=added)

        deleted = await self.db.delete_many("aa_item_ids", {"type": ITEM_ID_TYPE})
        logger.info("Activity map item ids deleted", deleted=deleted)

        unset = await self.db.update_many(
            "page_metrics",
            {"activity_map": {"$exists": True}},
            {"$unset": {"activity_map": ""}},
        )
        logger.info("Activity maps removed from page metrics", modified=unset)

    # Reports

    async def export_redirects_list(self, path: str | Path) -> Path:
        """Write the redirects/404s report of tracked pages as JSON."""
        pages = await self.db.fetch_all(
            "pages",
            {},
            {"_id": 0, "airtable_id": 1, "url": 1, "redirect": 1, "is_404": 1},
        )
        report = build_redirects_report(pages)

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")

        logger.info(
            "Redirects list exported",
            path=str(path),
            redirects=len(report["redirects"]),
            not_found=len(report["404s"]),
        )
        return path

    # Urls collection

    async def sync_urls_collection(self) -> None:
        await self.urls.update_urls()

    async def upload_urls_collection(self) -> bool:
        return await self.urls.save_collection_to_blob_storage(force=True)
