"""
Main entry point for dbupdate.
"""

import argparse
import asyncio
import logging
from datetime import datetime

from dbupdate.crawler.http_fetcher import HTTPFetcher
from dbupdate.external.adobe_analytics import AdobeAnalyticsClient
from dbupdate.pipeline.activity_map import ActivityMapService
from dbupdate.pipeline.db_update import DbUpdateService
from dbupdate.pipeline.maintenance import MaintenanceService
from dbupdate.pipeline.pages import PagesService
from dbupdate.pipeline.urls import UrlsService
from dbupdate.storage.blob_storage import BlobStorage, get_blob_storage
from dbupdate.storage.database import Database, close_database, get_database
from dbupdate.utils.config import ensure_directories, get_settings
from dbupdate.utils.dates import DateRange, parse_query_date, today
from dbupdate.utils.logging import BlobLogSink, configure_logging, get_logger

COMMANDS = [
    "update-all",
    "update-urls",
    "activity-map",
    "create-pages",
    "remove-redundant-hashes",
    "resume-pending",
    "repair-titles",
    "clean-titles",
    "populate-all-titles",
    "fix-activity-map-titles",
    "update-page-titles",
    "check-duplicate-pages",
    "upload-urls",
    "export-redirects",
]


async def initialize() -> tuple[Database, BlobStorage, BlobLogSink]:
    """Initialize logging, the database and blob storage."""
    ensure_directories()

    settings = get_settings()
    configure_logging(
        log_level=settings.general.log_level,
        json_format=True,
    )

    logger = get_logger(__name__)
    logger.info(
        "dbupdate initializing",
        version=settings.general.version,
        production=settings.general.production,
    )

    db = await get_database()
    blob_storage = await get_blob_storage()

    log_sink = BlobLogSink(blob_storage.container(settings.blob.logs_container))
    logging.getLogger().addHandler(log_sink)

    return db, blob_storage, log_sink


async def shutdown() -> None:
    """Shutdown the application."""
    logger = get_logger(__name__)
    logger.info("dbupdate shutting down")

    await close_database()

    logger.info("dbupdate shutdown complete")


def _parse_day(value: str) -> datetime:
    try:
        return parse_query_date(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="dbupdate - page snapshot ingestion and reconciliation"
    )
    parser.add_argument(
        "command",
        choices=COMMANDS,
        help="Command to run",
    )
    parser.add_argument(
        "path",
        nargs="?",
        help="Pending operations file (resume-pending) or output path (export-redirects)",
    )
    parser.add_argument(
        "--check-404s",
        action="store_true",
        help="Recheck 404s on the regular schedule (update-urls)",
    )
    parser.add_argument(
        "--check-all",
        action="store_true",
        help="Check every url (update-urls)",
    )
    parser.add_argument(
        "--start",
        type=_parse_day,
        help="First day, YYYY-MM-DD (activity-map)",
    )
    parser.add_argument(
        "--end",
        type=_parse_day,
        help="Last day, YYYY-MM-DD (activity-map)",
    )
    parser.add_argument(
        "--log-to-blobs",
        action="store_true",
        help="Upload logs to blob storage (update-all, production only)",
    )
    return parser


async def run_command(
    args: argparse.Namespace,
    db: Database,
    blob_storage: BlobStorage,
    log_sink: BlobLogSink,
) -> None:
    """Run a parsed command."""
    logger = get_logger(__name__)

    if args.command in ("resume-pending", "export-redirects") and not args.path:
        raise SystemExit(f"Error: a path is required for {args.command}")

    fetcher = HTTPFetcher()
    client = AdobeAnalyticsClient()

    try:
        urls = UrlsService(db, blob_storage, fetcher=fetcher)
        activity_map = ActivityMapService(db, blob_storage, client=client)
        pages = PagesService(db)
        maintenance = MaintenanceService(db, blob_storage, urls=urls)

        match args.command:
            case "update-all":
                service = DbUpdateService(
                    db, urls, activity_map, pages=pages, log_sink=log_sink
                )
                await service.update_all(log_to_blobs=args.log_to_blobs)
            case "update-urls":
                await urls.update_urls(check_404s=args.check_404s, check_all=args.check_all)
            case "activity-map":
                date_range = None
                if args.start or args.end:
                    date_range = DateRange.from_datetimes(
                        args.start or (await activity_map.default_date_range()).start_date,
                        args.end or today(),
                    )
                await activity_map.update_activity_map(date_range)
            case "create-pages":
                await pages.create_pages_from_page_list()
            case "remove-redundant-hashes":
                await maintenance.remove_redundant_url_hashes()
            case "resume-pending":
                await maintenance.resume_pending_operations(args.path)
            case "repair-titles":
                await maintenance.repair_url_titles()
            case "clean-titles":
                await maintenance.clean_urls_titles()
            case "populate-all-titles":
                await maintenance.populate_all_titles()
            case "fix-activity-map-titles":
                await maintenance.fix_activity_map_titles()
            case "update-page-titles":
                await maintenance.update_page_titles_from_urls()
            case "check-duplicate-pages":
                duplicates = await pages.check_for_duplicate_pages()
                for duplicate in duplicates:
                    print(f"{duplicate['_id']}\t{duplicate['count']}")
            case "upload-urls":
                await maintenance.upload_urls_collection()
            case "export-redirects":
                path = await maintenance.export_redirects_list(args.path)
                print(f"Report written to {path}")
    finally:
        await fetcher.close()
        await client.close()
        logger.debug("Clients closed", command=args.command)


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()

    async def async_main():
        db, blob_storage, log_sink = await initialize()

        try:
            await run_command(args, db, blob_storage, log_sink)
        finally:
            await shutdown()

    asyncio.run(async_main())


if __name__ == "__main__":
    main()
