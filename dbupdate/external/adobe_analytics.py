"""
Adobe Analytics 2.0 reporting API client.

Only the activity map queries used by the update pipeline:
- item ids of activity map pages (page titles) for a date range
- per-page link click breakdowns for those item ids
"""

import asyncio
from typing import Any

import httpx

from dbupdate.utils.backoff import BackoffConfig
from dbupdate.utils.config import get_settings
from dbupdate.utils.dates import DateRange
from dbupdate.utils.logging import get_logger
from dbupdate.utils.retry import HTTPStatusError, RetryPolicy, retry_call

logger = get_logger(__name__)

PAGE_DIMENSION = "variables/clickmappage"
LINK_DIMENSION = "variables/clickmaplink"
CLICKS_METRIC = "metrics/occurrences"
ROW_LIMIT = 50000

#: Policy for the Adobe Analytics reporting API
ANALYTICS_API_POLICY = RetryPolicy(
    max_retries=3,
    backoff=BackoffConfig(base_delay=2.0, max_delay=60.0),
    retryable_exceptions=(httpx.TransportError, ConnectionError, TimeoutError),
)


class AdobeAnalyticsClient:
    """Async client for the Analytics 2.0 /reports endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ):
        settings = get_settings().activity_map
        self._settings = settings
        self._policy = policy or ANALYTICS_API_POLICY
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"{settings.api_base_url}/{settings.company_id}",
            timeout=settings.request_timeout,
            headers={
                "Authorization": f"Bearer {settings.access_token}",
                "x-api-key": settings.client_id,
                "x-proxy-global-company-id": settings.company_id,
                "Accept": "application/json",
            },
        )
        self._semaphore = asyncio.Semaphore(settings.max_parallel)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post_report(self, body: dict[str, Any]) -> dict[str, Any]:
        async with self._semaphore:
            response = await self._client.post("/reports", json=body)
        if response.status_code >= 400:
            raise HTTPStatusError(response.status_code, response.text[:200])
        return response.json()

    async def run_report(self, body: dict[str, Any]) -> list[dict[str, Any]]:
        """Run a ranked report, following pagination.

        Returns:
            All rows across pages.
        """
        rows: list[dict[str, Any]] = []
        page = 0

        while True:
            body["settings"] = {**body.get("settings", {}), "page": page}
            result = await retry_call(
                self._post_report,
                body,
                policy=self._policy,
                operation_name="analytics_report",
            )
            rows.extend(result.get("rows", []))

            page += 1
            if result.get("lastPage", True) or page >= result.get("totalPages", 1):
                return rows

    def _base_body(self, date_range: DateRange, dimension: str) -> dict[str, Any]:
        return {
            "rsid": self._settings.report_suite_id,
            "globalFilters": [{"type": "dateRange", "dateRange": date_range.to_adobe()}],
            "metricContainer": {"metrics": [{"columnId": "0", "id": CLICKS_METRIC}]},
            "dimension": dimension,
            "settings": {"limit": ROW_LIMIT, "dimensionSort": "asc"},
        }

    async def get_activity_map_item_ids(self, date_range: DateRange) -> list[dict[str, str]]:
        """Activity map page item ids for a date range.

        Returns:
            [{"itemId": ..., "value": <page title>}, ...]
        """
        rows = await self.run_report(self._base_body(date_range, PAGE_DIMENSION))

        logger.info(
            "Fetched activity map item ids",
            start=date_range.start,
            count=len(rows),
        )
        return [{"itemId": row["itemId"], "value": row["value"]} for row in rows]

    async def _get_item_activity_map(
        self,
        date_range: DateRange,
        item_id: dict[str, Any],
    ) -> dict[str, Any]:
        body = self._base_body(date_range, LINK_DIMENSION)
        body["metricContainer"] = {
            "metrics": [{"columnId": "0", "id": CLICKS_METRIC, "filters": ["0"]}],
            "metricFilters": [
                {
                    "id": "0",
                    "type": "breakdown",
                    "dimension": PAGE_DIMENSION,
                    "itemId": item_id["itemId"],
                }
            ],
        }

        rows = await self.run_report(body)

        return {
            "itemId": item_id["itemId"],
            "title": item_id["value"],
            "activity_map": [
                {"link": row["value"], "clicks": int((row.get("data") or [0])[0])}
                for row in rows
            ],
        }

    async def get_page_activity_map(
        self,
        date_range: DateRange,
        item_ids: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Link clicks per activity map page.

        Args:
            date_range: Single-day range.
            item_ids: Item ids from get_activity_map_item_ids.

        Returns:
            [{"itemId", "title", "activity_map": [{"link", "clicks"}]}, ...]
        """
        results = await asyncio.gather(
            *(self._get_item_activity_map(date_range, item_id) for item_id in item_ids)
        )

        logger.info(
            "Fetched page activity map",
            start=date_range.start,
            pages=len(results),
        )
        return list(results)
