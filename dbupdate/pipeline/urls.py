"""
Urls collection service.

Keeps urls, pages and snapshot blobs consistent:
- crawls urls that are due for a check and records new snapshots (hashes)
- uploads each snapshot's minified HTML to blob storage, named by hash
- scores new snapshots for readability
- propagates url data (title, redirects, 404s, metadata) to pages
- exports the collection to blob storage (production) or restores it from
  there (non-production)
"""

import asyncio
import json
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from bson import ObjectId
from pymongo import UpdateOne

from dbupdate.crawler.fetch_result import FetchResult
from dbupdate.crawler.http_fetcher import HTTPFetcher
from dbupdate.extractor.html_processor import (
    ProcessedHtml,
    content_hash,
    minify_html,
    process_html,
)
from dbupdate.pipeline.collection_sync import CollectionBlobSync, ExportSchema
from dbupdate.pipeline.readability import ReadabilityService
from dbupdate.storage.blob_storage import (
    BlobClient,
    BlobExistsError,
    BlobNotFoundError,
    BlobStorage,
)
from dbupdate.storage.bulk import UpdateQueue
from dbupdate.storage.database import Database
from dbupdate.utils.config import UrlsConfig, get_settings
from dbupdate.utils.dates import today
from dbupdate.utils.errors import (
    AccessDeniedError,
    EmptyCollectionError,
    InvalidOptionsError,
    LanguageDetectionError,
    PipelineError,
)
from dbupdate.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

URLS_SCHEMA = ExportSchema(
    date_keys=("last_checked", "last_updated", "last_modified"),
    nested_date_keys={"hashes": ("date",)},
)

# Fields copied from urls to their page
PAGE_SYNC_FIELDS = ("title", "altLangHref", "redirect", "is_404", "metadata")

_LANG_RE = re.compile(r"^www\.canada\.ca/(en|fr)")
_READABILITY_LANG_RE = re.compile(r"canada\.ca/(en|fr)", re.IGNORECASE)
_SCHEME_RE = re.compile(r"https?://", re.IGNORECASE)


def squish_trim(value: str) -> str:
    """Collapse whitespace runs and trim."""
    return re.sub(r"\s+", " ", value).strip()


def url_lang(url: str) -> str | None:
    match = _LANG_RE.match(url)
    return match.group(1) if match else None


def collapse_titles(titles: Iterable[str]) -> list[str]:
    """Squish-trim titles and drop duplicates and blanks, keeping order."""
    return list(dict.fromkeys(t for t in (squish_trim(title) for title in titles) if t))


def build_urls_query(
    now: datetime,
    config: UrlsConfig,
    check_404s: bool = False,
    check_all: bool = False,
    url_filter: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Query selecting urls due for a check.

    Non-404 urls are rechecked after `recheck_days`, 404s after
    `recheck_404_days`; both thresholds are pushed forward by
    `recheck_grace_hours` so a daily run doesn't miss urls checked slightly
    later on a previous day.
    """
    if url_filter is not None:
        return dict(url_filter)
    if check_all:
        return {}

    grace = timedelta(hours=config.recheck_grace_hours)
    recheck_before = now - timedelta(days=config.recheck_days) + grace
    recheck_404_before = now - timedelta(days=config.recheck_404_days) + grace

    not_404 = {} if check_404s else {"is_404": {"$in": [None, False]}}

    return {
        "url": {"$regex": f"^{re.escape(config.domain)}"},
        "$or": [
            {"last_checked": None},
            {**not_404, "last_checked": {"$lt": recheck_before}},
            {"is_404": True, "last_checked": {"$lt": recheck_404_before}},
        ],
    }


def is_checkable(url: str, ignored_urls: Iterable[str]) -> bool:
    """Urls with endless redirect loops and pdfs are never fetched."""
    return url not in ignored_urls and not url.endswith(".pdf")


def build_url_update(url_data: dict[str, Any]) -> UpdateOne:
    """Bulk update for a checked url.

    A `hash` entry ({hash, date}) marks a new snapshot: it is added to
    `hashes`, links and title are added to `links` and `all_titles`.
    Otherwise every field is $set.
    """
    data = dict(url_data)
    hash_entry = data.pop("hash", None)
    set_on_insert = {"_id": data["_id"], "url": data["url"]}

    if hash_entry is None:
        return UpdateOne(
            {"_id": data["_id"]},
            {
                "$setOnInsert": set_on_insert,
                "$set": {k: v for k, v in data.items() if k not in ("_id", "url")},
            },
            upsert=True,
        )

    links = data.pop("links", [])
    add_to_set: dict[str, Any] = {
        "hashes": hash_entry,
        "links": {"$each": links},
    }
    if data.get("title"):
        add_to_set["all_titles"] = data["title"]

    return UpdateOne(
        {"_id": data["_id"]},
        {
            "$setOnInsert": set_on_insert,
            "$set": {k: v for k, v in data.items() if k not in ("_id", "url")},
            "$addToSet": add_to_set,
        },
        upsert=True,
    )


def page_sync_fields(url_doc: Mapping[str, Any]) -> dict[str, Any]:
    """Fields a page should carry, derived from its url doc.

    altLangHref comes from the url's langHrefs for the other language.
    """
    fields = {key: url_doc[key] for key in PAGE_SYNC_FIELDS if key in url_doc}
    fields.pop("altLangHref", None)

    lang = url_lang(url_doc["url"])
    alt_lang = "fr" if lang == "en" else "en"
    alt_href = (url_doc.get("langHrefs") or {}).get(alt_lang)
    if alt_href:
        fields["altLangHref"] = alt_href

    return fields


def build_page_updates(urls_with_pages: Iterable[Mapping[str, Any]]) -> list[UpdateOne]:
    """Page updates for urls whose page differs on the synced fields.

    Synced fields the url no longer has are unset on the page.

    Args:
        urls_with_pages: Url docs with `page` replaced by the page document.
    """
    ops = []
    for url_doc in urls_with_pages:
        page = url_doc["page"]
        expected = page_sync_fields(url_doc)
        current = {key: page[key] for key in PAGE_SYNC_FIELDS if key in page}
        if expected == current:
            continue

        update: dict[str, Any] = {}
        if expected:
            update["$set"] = expected
        stale = [key for key in current if key not in expected]
        if stale:
            update["$unset"] = {key: "" for key in stale}
        ops.append(UpdateOne({"_id": page["_id"]}, update))
    return ops


def find_dangling_page_refs(urls_with_pages: Iterable[Mapping[str, Any]]) -> list[str]:
    """Urls whose page ref is missing or points at a page with another url.

    Args:
        urls_with_pages: Url docs with `page` as the $lookup result (list).
    """
    return [
        doc["url"]
        for doc in urls_with_pages
        if not doc.get("page") or doc["page"][0].get("url") != doc["url"]
    ]


class UrlsService:
    """Updates the urls collection and reconciles it with pages and blobs."""

    def __init__(
        self,
        db: Database,
        blob_storage: BlobStorage,
        fetcher: HTTPFetcher | None = None,
        readability: ReadabilityService | None = None,
        production: bool | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.config = settings.urls
        self.production = settings.general.production if production is None else production
        self.container = blob_storage.container(settings.blob.urls_container)
        self.fetcher = fetcher or HTTPFetcher()
        self.readability = readability or ReadabilityService(db, blob_storage)
        self._sync = CollectionBlobSync(
            db,
            self.container,
            collection="urls",
            blob_name=self.config.data_blob_name,
            schema=URLS_SCHEMA,
            modified_field="last_modified",
            checked_field="last_checked",
            upsert_key="url",
        )
        self._snapshot_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def prepare_pages_collection(self) -> int:
        """Strip schemes and surrounding whitespace from page urls.

        Returns:
            Number of pages updated.
        """
        pages = await self.db.fetch_all(
            "pages",
            {"url": {"$regex": r"^\s*https:|\s+$", "$options": "i"}},
            {"url": 1},
        )

        ops = [
            UpdateOne(
                {"_id": page["_id"]},
                {"$set": {"url": _SCHEME_RE.sub("", squish_trim(page["url"]))}},
            )
            for page in pages
        ]

        if ops:
            await self.db.bulk_write("pages", ops)
            logger.info("Page urls cleaned", count=len(ops))

        return len(ops)

    async def update_urls(
        self,
        check_404s: bool = False,
        check_all: bool = False,
        url_filter: Mapping[str, Any] | None = None,
    ) -> None:
        """Check urls that are due and record their snapshots.

        Args:
            check_404s: Also recheck 404s on the regular schedule.
            check_all: Check every url.
            url_filter: Query selecting the urls to check.

        Raises:
            InvalidOptionsError: If url_filter is combined with another option.
            EmptyCollectionError: If the urls collection is empty.
        """
        if url_filter is not None and (check_404s or check_all):
            raise InvalidOptionsError(
                "Cannot use filter option with check404s or checkAll options."
            )

        with LogContext(service="urls"):
            await self.prepare_pages_collection()

            if not self.production:
                await self.update_collection_from_blob_storage()
                await self.readability.update_collection_from_blob_storage()
                return

            await self.update_collection_from_page_urls()

            logger.info("Checking Urls collection to see what URLs to update.")

            query = build_urls_query(
                today(),
                self.config,
                check_404s=check_404s,
                check_all=check_all,
                url_filter=url_filter,
            )

            urls = [
                doc
                for doc in await self.db.fetch_all("urls", query)
                if is_checkable(doc["url"], self.config.ignored_urls)
            ]

            if urls:
                logger.info("Found URLs from collection to check.", count=len(urls))
                await self.check_and_update_url_data(urls)
                return

            if await self.db.fetch_one("urls", {}, {"_id": 1}):
                logger.info("URL data is already up to date.")
                return

            raise EmptyCollectionError(
                "urls", "Urls collection should be populated, but no data was found."
            )

    async def assess_readability(
        self,
        content: str,
        url: str,
        page: ObjectId | None,
        hash_: str,
        date: datetime,
    ) -> dict[str, Any]:
        """Readability document for a snapshot.

        Raises:
            LanguageDetectionError: If the url is not /en/ or /fr/.
        """
        match = _READABILITY_LANG_RE.search(url)
        lang = match.group(1).lower() if match else None
        if lang not in ("en", "fr"):
            raise LanguageDetectionError(url)

        scores = self.readability.calculate_readability(content, lang)

        return {
            "_id": ObjectId(),
            "lang": lang,
            "url": url,
            "page": page,
            "hash": hash_,
            "date": date,
            **scores,
        }

    async def _add_url_to_blob_metadata(self, blob: BlobClient, url: str) -> None:
        properties = await blob.get_properties()
        metadata = dict(properties.metadata)
        urls = json.loads(metadata.get("urls") or "[]")

        if url not in urls:
            urls.append(url)
            await blob.set_metadata({**metadata, "urls": json.dumps(urls)})

    async def reconcile_snapshot_blob(
        self,
        hash_: str,
        url: str,
        body: str,
        date: datetime,
    ) -> None:
        """Make sure the snapshot blob exists and lists `url` in its metadata.

        Urls sharing a hash are handled one at a time, so no url is lost from
        the metadata when they are crawled in the same batch.
        """
        async with self._snapshot_locks[hash_]:
            await self._reconcile_snapshot_blob(hash_, url, body, date)

    async def _reconcile_snapshot_blob(
        self,
        hash_: str,
        url: str,
        body: str,
        date: datetime,
    ) -> None:
        blob = self.container.blob(hash_)

        if await blob.exists():
            await self._add_url_to_blob_metadata(blob, url)
            return

        try:
            content = minify_html(body)
        except Exception as e:
            # Malformed html: store it as-is
            logger.warning("Minifying snapshot failed", url=url, hash=hash_, error=str(e))
            content = body

        try:
            await blob.upload(
                content,
                metadata={
                    "urls": json.dumps([url]),
                    "date": date.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                },
            )
        except BlobExistsError:
            # Uploaded by another process since the check
            await self._add_url_to_blob_metadata(blob, url)

    async def check_and_update_url_data(self, urls: list[dict[str, Any]]) -> None:
        """Fetch urls and record their current snapshot.

        Per response: 404s (and pages without main content) are flagged,
        "Access Denied" responses are skipped until the next run, and new
        content hashes are added to the url with a readability score.
        """
        urls_data = {doc["url"]: doc for doc in urls}

        pages = await self.db.fetch_all("pages", {}, {"url": 1})
        page_ids = {page["url"]: page["_id"] for page in pages}

        readability_hashes = set(await self.db.distinct("readability", "hash"))

        urls_queue: UpdateQueue[UpdateOne] = UpdateQueue(
            self.config.update_queue_size,
            lambda ops: self.db.bulk_write("urls", ops),
            name="urls",
        )
        readability_queue: UpdateQueue[dict[str, Any]] = UpdateQueue(
            self.config.update_queue_size,
            lambda docs: self.db.insert_many("readability", docs),
            name="readability",
        )

        async def add_to_queues(
            url_data: dict[str, Any],
            readability_doc: dict[str, Any] | None = None,
        ) -> None:
            if readability_doc is not None:
                await readability_queue.add(readability_doc)
            await urls_queue.add(build_url_update(url_data))

        async def handle_response(result: FetchResult) -> None:
            date = datetime.now(UTC)
            url_doc = urls_data.get(result.url)

            if url_doc is None:
                raise PipelineError(f"No collection data found for url {result.url}.")

            redirect = {"redirect": result.redirect} if result.redirect else {}
            not_found = {
                "_id": url_doc["_id"],
                "url": url_doc["url"],
                "last_checked": date,
                "last_modified": date,
                "is_404": True,
                **redirect,
            }

            if result.is_404:
                await add_to_queues(not_found)
                return

            if result.is_access_denied:
                # Rate limited; checked again on the next run
                logger.warning("Access Denied, skipping", url=result.url)
                return

            if not result.ok:
                logger.warning(
                    "Fetch failed, skipping",
                    url=result.url,
                    status=result.status,
                    reason=result.reason,
                )
                return

            processed = process_html(result.body)

            if processed is None:
                # No main content: not technically a 404, but may as well be
                await add_to_queues(not_found)
                return

            # Hash the processed html: scripts inject dynamic content
            hash_ = content_hash(processed.body)

            await self.reconcile_snapshot_blob(hash_, result.url, processed.body, date)

            url_data = self._checked_url_data(url_doc, processed, date, redirect)
            known_hashes = {h["hash"] for h in url_doc.get("hashes") or []}

            if hash_ in known_hashes:
                readability_doc = None
                if hash_ not in readability_hashes:
                    readability_doc = await self.assess_readability(
                        processed.body, url_doc["url"], url_doc.get("page"), hash_, date
                    )
                    readability_hashes.add(hash_)
                await add_to_queues(url_data, readability_doc)
                return

            page_id = page_ids.get(result.url)
            readability_doc = await self.assess_readability(
                processed.body, url_doc["url"], url_doc.get("page"), hash_, date
            )
            readability_hashes.add(hash_)

            await add_to_queues(
                {
                    **url_data,
                    **({"page": page_id} if page_id else {}),
                    "last_modified": date,
                    "is_404": False,
                    "hash": {"hash": hash_, "date": date},
                    "latest_snapshot": hash_,
                },
                readability_doc,
            )

        try:
            await self.fetcher.fetch_all([doc["url"] for doc in urls], handle_response)
        except Exception as e:
            logger.error("An error occurred while fetching urls", error=str(e), exc_info=True)
        finally:
            # A failed flush is logged by its queue and must not block the other
            await asyncio.gather(
                urls_queue.flush(), readability_queue.flush(), return_exceptions=True
            )

        try:
            await self.sync_data_with_pages()
        except Exception as e:
            logger.error(
                "An error occurred while syncing urls data with pages",
                error=str(e),
                exc_info=True,
            )

        try:
            await self.save_collection_to_blob_storage()
        except Exception as e:
            logger.error(
                "An error occurred during save_collection_to_blob_storage()",
                error=str(e),
                exc_info=True,
            )

        try:
            await self.readability.save_collection_to_blob_storage()
        except Exception as e:
            logger.error(
                "An error occurred during readability save_collection_to_blob_storage()",
                error=str(e),
                exc_info=True,
            )

        logger.info("Urls and Readability updates completed.")

    @staticmethod
    def _checked_url_data(
        url_doc: Mapping[str, Any],
        processed: ProcessedHtml,
        date: datetime,
        redirect: dict[str, str],
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "_id": url_doc["_id"],
            "url": url_doc["url"],
            "title": processed.title,
            "last_checked": date,
            "metadata": processed.metadata,
            "links": processed.links,
            **redirect,
        }
        if processed.lang_hrefs:
            data["langHrefs"] = processed.lang_hrefs
        return data

    async def get_page_data(self, url: str) -> dict[str, Any] | None:
        """Fetch and process a single page.

        Returns:
            The fetch result with processed html, hash, redirect and lang, or
            None if anything failed (logged).
        """
        previous_stats = self.fetcher.rate_limit_stats
        self.fetcher.set_rate_limit_stats(False)

        try:
            result = await self.fetcher.fetch(url)

            if result.is_access_denied:
                raise AccessDeniedError(url)

            processed = process_html(result.body)
            if processed is None:
                raise PipelineError(f"No main content found for {url}")

            return {
                **result.to_dict(),
                "body": result.body,
                "processed_html": processed,
                "redirect": result.redirect,
                "hash": content_hash(processed.body),
                "lang": url_lang(url),
            }
        except Exception as e:
            logger.error("Error getting page data", url=url, error=str(e))
            return None
        finally:
            self.fetcher.set_rate_limit_stats(previous_stats)

    async def _download_json_blob(self, name: str) -> Any:
        try:
            return await self.container.blob(name).download_json()
        except BlobNotFoundError:
            logger.warning("Blob not found", blob=name)
            return {}

    async def populate_empty_titles(self) -> int:
        """Fill empty url titles from the all-titles and titles-from-pages blobs.

        Returns:
            Number of urls updated.
        """
        urls_no_title = await self.db.fetch_all(
            "urls",
            {"$or": [{"title": ""}, {"title": None}]},
            {"url": 1, "title": 1, "page": 1},
        )

        if not urls_no_title:
            logger.info("All urls have titles.")
            return 0

        no_title_urls = {doc["url"] for doc in urls_no_title}

        all_titles = await self._download_json_blob(self.config.all_titles_blob_name)
        titles_map = {
            url: collapse_titles(titles)
            for url, titles in all_titles.items()
            if url in no_title_urls
        }
        titles_from_pages = await self._download_json_blob(
            self.config.titles_from_pages_blob_name
        )

        ops = []
        from_pages = 0
        for doc in urls_no_title:
            titles = titles_map.get(doc["url"])
            if titles:
                ops.append(UpdateOne({"_id": doc["_id"]}, {"$set": {"title": titles[0]}}))
            elif titles_from_pages.get(doc["url"]):
                from_pages += 1
                ops.append(
                    UpdateOne(
                        {"_id": doc["_id"]},
                        {"$set": {"title": squish_trim(titles_from_pages[doc["url"]])}},
                    )
                )

        logger.info(
            "Populating empty url titles",
            urls_no_title=len(urls_no_title),
            title_matches=len(ops) - from_pages,
            from_pages=from_pages,
        )

        summary = await self.db.bulk_write("urls", ops)
        logger.info("Url titles updated", modified=summary.modified)
        return summary.modified

    async def sync_data_with_pages(self) -> int:
        """Copy title, altLangHref, redirect, is_404 and metadata from urls to pages.

        Returns:
            Number of pages modified.
        """
        await self.populate_empty_titles()
        await self.ensure_page_refs()

        urls_with_pages = await self.db.aggregate(
            "urls",
            [
                {
                    "$project": {
                        "url": 1,
                        "title": 1,
                        "redirect": 1,
                        "is_404": 1,
                        "metadata": 1,
                        "page": 1,
                        "langHrefs": 1,
                    }
                },
                {
                    "$match": {
                        "page": {"$exists": True},
                        "$and": [{"title": {"$ne": None}}, {"title": {"$ne": ""}}],
                    }
                },
                {
                    "$lookup": {
                        "from": "pages",
                        "localField": "page",
                        "foreignField": "_id",
                        "as": "page",
                    }
                },
                {"$unwind": "$page"},
            ],
        )

        ops = build_page_updates(urls_with_pages)

        if not ops:
            logger.info("Pages are up-to-date")
            return 0

        logger.info("Updating pages...", count=len(ops))
        summary = await self.db.bulk_write("pages", ops)
        logger.info("Pages updated", modified=summary.modified)
        return summary.modified

    async def update_collection_from_page_urls(self) -> int:
        """Add a url doc for every page url not in the urls collection.

        Raises:
            EmptyCollectionError: If the pages collection is empty.
        """
        logger.info("Checking Pages collection for any new urls...")

        current_urls = set(await self.db.distinct("urls", "url"))
        pages = await self.db.fetch_all("pages", {}, {"url": 1})

        if not pages:
            raise EmptyCollectionError(
                "pages",
                "Could not populate urls collection. The pages collection seems to be empty.",
            )

        new_docs = [
            {"_id": ObjectId(), "url": page["url"], "page": page["_id"]}
            for page in pages
            if page["url"] not in current_urls
        ]

        if not new_docs:
            logger.info("No new urls found.")
            return 0

        await self.db.insert_many("urls", new_docs)
        logger.info("New urls added.", count=len(new_docs))

        await self.ensure_page_refs()
        return len(new_docs)

    async def save_collection_to_blob_storage(self, force: bool = False) -> bool:
        logger.info("Saving urls data to blob storage...")
        try:
            return await self._sync.save(force=force)
        except Exception as e:
            logger.error(
                "An error occurred uploading collection to blob storage",
                error=str(e),
                exc_info=True,
            )
            return False

    async def update_collection_from_blob_storage(self) -> int:
        updated = 0
        try:
            updated = await self._sync.restore()
        except Exception as e:
            logger.error(
                "Error updating urls collection from blob storage",
                error=str(e),
                exc_info=True,
            )

        await self.ensure_page_refs()
        return updated

    async def ensure_page_refs(self) -> int:
        """Re-point urls whose page ref is dangling or mismatched.

        Returns:
            Number of urls re-pointed.
        """
        logger.info("Ensuring page refs for urls collection...")

        urls_with_pages = await self.db.aggregate(
            "urls",
            [
                {"$project": {"url": 1, "page": 1}},
                {"$match": {"page": {"$exists": True}}},
                {
                    "$lookup": {
                        "from": "pages",
                        "localField": "page",
                        "foreignField": "_id",
                        "as": "page",
                    }
                },
            ],
        )

        urls_to_update = find_dangling_page_refs(urls_with_pages)

        if not urls_to_update:
            logger.info("Pages references are up to date.")
            return 0

        pages = await self.db.fetch_all(
            "pages",
            {"url": {"$in": urls_to_update}},
            {"url": 1},
        )

        if not pages:
            logger.error(
                "Invalid references found, but no corresponding pages were found",
                urls=urls_to_update,
            )
            return 0

        ops = [
            UpdateOne({"url": page["url"]}, {"$set": {"page": page["_id"]}})
            for page in pages
        ]

        logger.info("Updating references to pages...", count=len(ops))
        await self.db.bulk_write("urls", ops)
        logger.info("Page references successfully updated.")
        return len(ops)
