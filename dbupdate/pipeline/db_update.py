"""
Scheduled database update.

Runs every update stage in order. A failing stage is logged with its
traceback and the remaining stages still run.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from dbupdate.pipeline.activity_map import ActivityMapService
from dbupdate.pipeline.pages import PagesService
from dbupdate.pipeline.urls import UrlsService
from dbupdate.storage.database import Database
from dbupdate.utils.config import get_settings
from dbupdate.utils.logging import BlobLogSink, LogContext, get_logger, log_timing
from dbupdate.utils.retry import with_retry

logger = get_logger(__name__)

SourceUpdater = Callable[[], Awaitable[Any]]


class DbUpdateService:
    """Orchestrates the update stages.

    Args:
        db: Database.
        urls: Urls service.
        activity_map: Activity map service.
        pages: Pages service. Created from `db` if None.
        log_sink: Blob log sink to configure and flush, if any.
    """

    def __init__(
        self,
        db: Database,
        urls: UrlsService,
        activity_map: ActivityMapService,
        pages: PagesService | None = None,
        log_sink: BlobLogSink | None = None,
    ):
        self.db = db
        self.urls = urls
        self.activity_map = activity_map
        self.pages = pages or PagesService(db)
        self.log_sink = log_sink
        self.production = get_settings().general.production
        self._source_updaters: dict[str, SourceUpdater] = {}

    def register_source_updater(self, name: str, coro_fn: SourceUpdater) -> None:
        """Register an updater for an external data source.

        Source updaters run concurrently at the start of update_all.
        """
        self._source_updaters[name] = coro_fn

    # ActivityMapService logs its own errors and returns; only a failure of the
    # call itself (a replaced or wrapped service) reaches this retry
    @with_retry(4, 1.0)
    async def update_activity_map(self) -> int:
        return await self.activity_map.update_activity_map()

    async def _run_stage(self, name: str, func: Callable[[], Awaitable[Any]]) -> bool:
        with LogContext(stage=name):
            try:
                await func()
                return True
            except Exception as e:
                logger.error("Stage failed", stage=name, error=str(e), exc_info=True)
                return False

    async def run_source_updaters(self) -> dict[str, bool]:
        """Run registered source updaters concurrently.

        Returns:
            Updater name -> success.
        """
        if not self._source_updaters:
            return {}

        names = list(self._source_updaters)
        results = await asyncio.gather(
            *(self._source_updaters[name]() for name in names),
            return_exceptions=True,
        )

        outcome = {}
        for name, result in zip(names, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Source updater failed",
                    updater=name,
                    error=str(result),
                    exc_info=result,
                )
                outcome[name] = False
            else:
                outcome[name] = True
        return outcome

    @log_timing
    async def update_all(self, log_to_blobs: bool = False) -> dict[str, bool]:
        """Run all update stages.

        Args:
            log_to_blobs: Send this run's logs to the logs blob container.

        Returns:
            Stage name -> success.
        """
        if self.log_sink is not None:
            if log_to_blobs and self.production:
                self.log_sink.set_targets(BlobLogSink.date_targets())
            else:
                self.log_sink.disable()

        logger.info("Starting database update", production=self.production)

        results: dict[str, bool] = {}

        source_results = await self.run_source_updaters()
        results["sources"] = all(source_results.values())

        stages: list[tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("create_pages", self.pages.create_pages_from_page_list),
            ("activity_map", self.update_activity_map),
            ("pages_lang", self.pages.update_pages_lang),
            ("urls", self.urls.update_urls),
        ]
        for name, func in stages:
            results[name] = await self._run_stage(name, func)

        logger.info(
            "Database update completed",
            failed=[name for name, ok in results.items() if not ok],
        )

        if self.log_sink is not None:
            try:
                await self.log_sink.upload()
            except Exception as e:
                logger.error("Error uploading logs", error=str(e), exc_info=True)

        return results
