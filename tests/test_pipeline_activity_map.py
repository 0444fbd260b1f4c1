"""
Tests for the activity map service.

Test Perspectives Table:
| Case ID | Input / Precondition | Perspective | Expected Result | Notes |
|---------|---------------------|-------------|-----------------|-------|
| TC-L-01 | Absolute pdf link | Normal | Renamed to file name | |
| TC-L-02 | Bare pdf link | Abnormal | Dropped | Incorrect value |
| TC-D-01 | Range crossing the gap | Boundary | Gap days excluded | |
| TC-D-02 | Range ending today | Boundary | Today excluded | |
| TC-S-01 | One day, known item id with pages | Normal | page_metrics updated | |
| TC-S-02 | Results cached in blobs | Normal | Client not queried again | |
| TC-S-03 | Client failure | Abnormal | Logged, 0 written | |
| TC-I-01 | New item ids | Normal | Inserted with page refs | https:// skipped |
"""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

from dbupdate.pipeline.activity_map import (
    ITEM_ID_TYPE,
    ActivityMapService,
    build_activity_map_updates,
    build_single_day_ranges,
    fix_outbound_links,
    is_in_gap,
)
from dbupdate.utils.dates import DateRange

pytestmark = pytest.mark.unit


def day(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=UTC)


def make_client(item_ids=None, activity_map=None) -> MagicMock:
    client = MagicMock()
    client.get_activity_map_item_ids = AsyncMock(return_value=item_ids or [])
    client.get_page_activity_map = AsyncMock(return_value=activity_map or [])
    return client


class TestFixOutboundLinks:
    def test_links_cleaned(self):
        # Given: Entries with file links
        entries = [
            {
                "itemId": "1",
                "activity_map": [
                    {"link": "https://www.canada.ca/content/dam/cra/form.pdf", "clicks": 3},
                    {"link": "form.pdf", "clicks": 1},
                    {"link": "www.canada.ca/en/services.html", "clicks": 5},
                ],
            }
        ]

        # When: Fixing links
        (fixed,) = fix_outbound_links(entries)

        # Then: Absolute file links renamed, bare file names dropped
        assert fixed["activity_map"] == [
            {"link": "form.pdf", "clicks": 3},
            {"link": "www.canada.ca/en/services.html", "clicks": 5},
        ]

    def test_entries_not_mutated(self):
        entries = [{"itemId": "1", "activity_map": [{"link": "a.txt"}]}]

        fix_outbound_links(entries)

        assert entries[0]["activity_map"] == [{"link": "a.txt"}]


class TestSingleDayRanges:
    def test_gap_inclusive(self):
        assert is_in_gap(day("2022-07-01"), day("2022-07-01"), day("2022-12-31"))
        assert is_in_gap(day("2022-12-31T23:00:00"), day("2022-07-01"), day("2022-12-31"))
        assert not is_in_gap(day("2023-01-01"), day("2022-07-01"), day("2022-12-31"))

    def test_gap_days_excluded(self):
        date_range = DateRange.from_datetimes(day("2022-06-29"), day("2022-07-02"))

        days = build_single_day_ranges(
            date_range, day("2022-07-01"), day("2022-12-31"), now=day("2024-01-01")
        )

        assert [d.start[:10] for d in days] == ["2022-06-29", "2022-06-30"]

    def test_today_excluded(self):
        date_range = DateRange.from_datetimes(day("2024-01-01"), day("2024-01-03"))

        days = build_single_day_ranges(
            date_range, day("2022-07-01"), day("2022-12-31"), now=day("2024-01-03T10:00:00")
        )

        assert [d.start[:10] for d in days] == ["2024-01-01", "2024-01-02"]


class TestActivityMapUpdates:
    def test_one_update_per_page(self):
        first, second = ObjectId(), ObjectId()
        date = day("2024-01-01")
        entries = [
            {"itemId": "1", "activity_map": [{"link": "x"}], "pages": [first, second]},
            {"itemId": "2", "activity_map": []},
        ]

        ops = build_activity_map_updates(entries, date)

        assert [op._filter for op in ops] == [
            {"date": date, "page": first},
            {"date": date, "page": second},
        ]
        assert ops[0]._doc == {"$set": {"activity_map": [{"link": "x"}]}}


class TestActivityMapService:
    """Tests for ActivityMapService."""

    @pytest.mark.asyncio
    async def test_update_single_day(self, mock_db, blob_storage):
        # Given: A known item id with a page and its day of clicks
        page_id = ObjectId()
        mock_db.fetch_all.return_value = [
            {"itemId": "1", "type": ITEM_ID_TYPE, "value": "Title A", "pages": [page_id]}
        ]
        client = make_client(
            item_ids=[{"itemId": "1", "value": "Title A"}],
            activity_map=[
                {"itemId": "1", "title": "Title A", "activity_map": [{"link": "x", "clicks": 3}]},
                {"itemId": "2", "title": "Unknown", "activity_map": [{"link": "y", "clicks": 1}]},
            ],
        )
        service = ActivityMapService(mock_db, blob_storage, client=client)
        date_range = DateRange.from_datetimes(day("2024-01-01"), day("2024-01-01"))

        # When: Updating the activity map
        written = await service.update_activity_map(date_range)

        # Then: Only the entry with a page ref is written
        assert written == 1
        collection, ops = mock_db.bulk_write.await_args.args
        assert collection == "page_metrics"
        assert ops[0]._filter == {"date": day("2024-01-01"), "page": page_id}
        mock_db.insert_many.assert_not_awaited()

        # And: Raw results are cached per day
        raw = blob_storage.container("aa-raw")
        assert await raw.blob("activityMap_itemIds_2024-01-01.json").exists()
        assert await raw.blob("activityMap_data_2024-01-01.json").exists()

    @pytest.mark.asyncio
    async def test_cached_results_reused(self, mock_db, blob_storage):
        raw = blob_storage.container("aa-raw")
        await raw.blob("activityMap_itemIds_2024-01-01.json").upload(json.dumps([]))
        await raw.blob("activityMap_data_2024-01-01.json").upload(json.dumps([]))
        client = make_client()
        service = ActivityMapService(mock_db, blob_storage, client=client)

        await service.update_activity_map(
            DateRange.from_datetimes(day("2024-01-01"), day("2024-01-01"))
        )

        client.get_activity_map_item_ids.assert_not_awaited()
        client.get_page_activity_map.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_error_logged(self, mock_db, blob_storage):
        client = make_client()
        client.get_activity_map_item_ids.side_effect = RuntimeError("API down")
        service = ActivityMapService(mock_db, blob_storage, client=client)

        written = await service.update_activity_map(
            DateRange.from_datetimes(day("2024-01-01"), day("2024-01-01"))
        )

        assert written == 0

    @pytest.mark.asyncio
    async def test_up_to_date(self, mock_db, blob_storage):
        client = make_client()
        service = ActivityMapService(mock_db, blob_storage, client=client)

        written = await service.update_activity_map(
            DateRange.from_datetimes(day("2024-01-02"), day("2024-01-01"))
        )

        assert written == 0
        client.get_activity_map_item_ids.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_date_range(self, mock_db, blob_storage):
        mock_db.fetch_one.return_value = {"date": day("2024-01-01")}
        service = ActivityMapService(mock_db, blob_storage, client=make_client())

        date_range = await service.default_date_range()

        assert date_range.start[:10] == "2024-01-02"

    @pytest.mark.asyncio
    async def test_insert_new_item_ids(self, mock_db, blob_storage):
        # Given: No stored item ids and a url that had the item's title
        page_id = ObjectId()

        async def fetch_all(collection, *args, **kwargs):
            if collection == "urls":
                return [{"all_titles": ["Title A"], "page": page_id}]
            return []

        mock_db.fetch_all.side_effect = fetch_all
        service = ActivityMapService(mock_db, blob_storage, client=make_client())

        # When: Inserting
        inserted = await service.insert_item_ids_if_new(
            [
                {"itemId": "1", "value": "Title A"},
                {"itemId": "2", "value": "https://www.canada.ca/en.html"},
                {"itemId": "3", "value": "Title B"},
            ]
        )

        # Then: Url-like values are skipped, page refs attached by title
        assert inserted == 2
        collection, docs = mock_db.insert_many.await_args.args
        assert collection == "aa_item_ids"
        assert [doc["itemId"] for doc in docs] == ["1", "3"]
        assert docs[0]["pages"] == [page_id]
        assert docs[0]["type"] == ITEM_ID_TYPE
        assert "pages" not in docs[1]
