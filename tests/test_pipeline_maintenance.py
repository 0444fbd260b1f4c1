"""
Tests for maintenance operations.

Test Perspectives Table:
| Case ID | Input / Precondition | Perspective | Expected Result | Notes |
|---------|---------------------|-------------|-----------------|-------|
| TC-P-01 | Pending hashes | Normal | Listed once per target | |
| TC-P-02 | Dump then load | Normal | Same pending operations | |
| TC-R-01 | Redundant hashes found | Normal | Pulled, readability + blob deleted | |
| TC-R-02 | Pull from urls fails | Abnormal | Pending ops dumped, False | |
| TC-R-04 | Pull fails while delete still running | Abnormal | Dump written after the delete settles | |
| TC-R-03 | Resume from dump | Normal | Remaining ops processed | |
| TC-T-01 | Titles with "ss" mangled copies | Normal | Mangled copies dropped | |
| TC-T-02 | Urls of a page disagree | Boundary | Page not updated | |
| TC-X-01 | Tracked pages with redirects/404s | Normal | Report entries | pdfs excluded |
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bson import ObjectId

from dbupdate.pipeline.activity_map import ITEM_ID_TYPE
from dbupdate.pipeline.maintenance import (
    MaintenanceService,
    PendingOperations,
    build_redirects_report,
    clean_all_titles_entry,
    clean_url_title,
    drop_mangled_titles,
    mangle_title,
    select_page_titles,
)
from dbupdate.utils.config import get_settings

pytestmark = pytest.mark.unit


class TestPendingOperations:
    def test_add_pending_once(self):
        pending = PendingOperations()

        pending.add_pending(["a", "b", "a"])

        assert pending.url_hashes_to_remove == ["a", "b"]
        assert pending.readability_hashes_to_delete == ["a", "b"]
        assert pending.blob_hashes_to_delete == ["a", "b"]

    def test_set_processed(self):
        pending = PendingOperations()
        pending.add_pending(["a", "b"])

        pending.set_urls_processed("b")
        pending.set_readability_processed("a")
        pending.set_blob_processed("a")
        pending.set_blob_processed("b")

        assert pending.url_hashes_to_remove == ["a"]
        assert pending.readability_hashes_to_delete == ["b"]
        assert pending.blob_hashes_to_delete == []
        assert pending.all_hashes() == ["a", "b"]
        assert not pending.is_empty()

    def test_dump_and_load(self, tmp_path):
        pending = PendingOperations(
            url_hashes_to_remove=["a"],
            readability_hashes_to_delete=["a", "b"],
            blob_hashes_to_delete=[],
        )

        path = pending.dump(tmp_path / "pending")

        assert path.name.startswith("pendingOps_")
        assert path.suffix == ".json"
        assert PendingOperations.load(path) == pending


class TestTitleHelpers:
    @pytest.mark.parametrize(
        "title,expected",
        [
            ("Benefits - Canada.ca", "Benefits"),
            ("Benefits  -  canada.ca ", "Benefits"),
            ("  Taxes   and  you ", "Taxes and you"),
            ("Canada.ca", "Canada.ca"),
        ],
    )
    def test_clean_url_title(self, title, expected):
        assert clean_url_title(title) == expected

    def test_clean_all_titles_entry(self):
        assert clean_all_titles_entry(" Benefits – Canada.ca ") == "Benefits"

    def test_mangle_title(self):
        assert mangle_title("Access your account") == "Acce your account"

    def test_drop_mangled_titles(self):
        titles = ["Access your account", "Acce your account", "Other"]

        assert drop_mangled_titles(titles) == ["Access your account", "Other"]

    def test_select_page_titles(self):
        agree, disagree, forbidden = ObjectId(), ObjectId(), ObjectId()
        urls = [
            {"page": agree, "title": "A"},
            {"page": agree, "title": "A"},
            {"page": agree, "title": "Gone", "is_404": True},
            {"page": disagree, "title": "B"},
            {"page": disagree, "title": "C"},
            {"page": forbidden, "title": "Forbidden"},
            {"title": "No page"},
        ]

        assert select_page_titles(urls) == {agree: "A"}


class TestRedirectsReport:
    def test_report(self):
        pages = [
            {"url": "a", "redirect": "b", "airtable_id": "rec1"},
            {"url": "b"},
            {"url": "c", "redirect": "d", "airtable_id": "rec2"},
            {"url": "d", "airtable_id": "rec3"},
            {"url": "e", "is_404": True, "airtable_id": "rec4"},
            {"url": "f.pdf", "is_404": True, "airtable_id": "rec5"},
            {"url": "g", "redirect": "h"},
        ]

        report = build_redirects_report(pages)

        assert report["redirects"] == [
            {"URL": "a", "Redirect": "b", "Redirect missing from airtable?": True, "Airtable id": "rec1"},
            {"URL": "c", "Redirect": "d", "Airtable id": "rec2"},
        ]
        assert report["404s"] == [{"URL": "e", "Is 404?": True, "Airtable id": "rec4"}]


def make_service(mock_db, blob_storage) -> MaintenanceService:
    return MaintenanceService(mock_db, blob_storage, urls=MagicMock())


class TestRemoveRedundantHashes:
    """Tests for MaintenanceService.remove_redundant_url_hashes."""

    @pytest.mark.asyncio
    async def test_removes_redundant(self, mock_db, blob_storage):
        # Given: Readability docs with one duplicate and two redundant hashes
        duplicate = {"_id": ObjectId(), "url": "u", "hash": "h1"}
        kept = {"_id": ObjectId(), "url": "u", "hash": "h1"}
        mock_db.fetch_all.return_value = [duplicate, kept]
        mock_db.distinct.return_value = ["latest", None]
        container = blob_storage.container("urls")
        for hash_ in ("h2", "h3"):
            await container.blob(hash_).upload("<main/>")
        service = make_service(mock_db, blob_storage)

        # When: Removing redundant hashes
        with (
            patch(
                "dbupdate.pipeline.maintenance.find_duplicate_readability",
                return_value=[duplicate],
            ),
            patch(
                "dbupdate.pipeline.maintenance.find_redundant_hashes",
                return_value=({"h3", "h2"}, {"h1"}),
            ) as find_redundant,
        ):
            pending = await service.remove_redundant_url_hashes()

        # Then: Duplicates are deleted and excluded from the scores
        mock_db.delete_many.assert_any_await("readability", {"_id": {"$in": [duplicate["_id"]]}})
        _, scores_by_url, protected = find_redundant.call_args.args
        assert scores_by_url == {"u": [kept]}
        assert protected == {"latest"}

        # And: Urls are queried by snapshot count
        min_hashes = get_settings().dedup.min_hashes
        assert mock_db.fetch_all.await_args_list[1].args[1] == {
            f"hashes.{min_hashes}": {"$exists": True}
        }

        # And: Every redundant hash is removed everywhere
        mock_db.update_many.assert_any_await(
            "urls", {"hashes.hash": "h2"}, {"$pull": {"hashes": {"hash": "h2"}}}
        )
        mock_db.delete_many.assert_any_await("readability", {"hash": "h3"})
        assert not await container.blob("h2").exists()
        assert not await container.blob("h3").exists()
        assert pending.is_empty()

    @pytest.mark.asyncio
    async def test_failure_dumps_pending(self, mock_db, blob_storage, tmp_path, monkeypatch):
        # Given: Pulling hashes from urls fails
        dump_dir = tmp_path / "pending_ops"
        monkeypatch.setenv("DBUPDATE_DEDUP__DUMP_DIR", str(dump_dir))
        mock_db.update_many.side_effect = RuntimeError("connection lost")
        service = make_service(mock_db, blob_storage)
        pending = PendingOperations()
        pending.add_pending(["h1", "h2"])

        # When: Processing
        completed = await service.process_pending_operations(pending)

        # Then: What is left is dumped for resuming
        assert completed is False
        (dump,) = dump_dir.glob("pendingOps_*.json")
        data = json.loads(dump.read_text())
        assert data["url_hashes_to_remove"] == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_failure_dump_waits_for_sibling_removals(
        self, mock_db, blob_storage, tmp_path, monkeypatch
    ):
        # Given: The urls pull fails while the readability delete is still running
        dump_dir = tmp_path / "pending_ops"
        monkeypatch.setenv("DBUPDATE_DEDUP__DUMP_DIR", str(dump_dir))
        mock_db.update_many.side_effect = RuntimeError("connection lost")

        async def slow_delete(*args, **kwargs):
            await asyncio.sleep(0.01)
            return 1

        mock_db.delete_many.side_effect = slow_delete
        service = make_service(mock_db, blob_storage)
        pending = PendingOperations()
        pending.add_pending(["h1", "h2"])

        # When: Processing
        completed = await service.process_pending_operations(pending)

        # Then: The dump records the readability and blob removals that finished
        assert completed is False
        (dump,) = dump_dir.glob("pendingOps_*.json")
        assert json.loads(dump.read_text()) == {
            "url_hashes_to_remove": ["h1", "h2"],
            "readability_hashes_to_delete": ["h2"],
            "blob_hashes_to_delete": ["h2"],
        }

    @pytest.mark.asyncio
    async def test_resume(self, mock_db, blob_storage, tmp_path):
        path = PendingOperations(
            url_hashes_to_remove=[],
            readability_hashes_to_delete=["h1"],
            blob_hashes_to_delete=[],
        ).dump(tmp_path)
        service = make_service(mock_db, blob_storage)

        assert await service.resume_pending_operations(path) is True

        mock_db.delete_many.assert_awaited_once_with("readability", {"hash": "h1"})
        mock_db.update_many.assert_not_awaited()


class TestTitleOperations:
    @pytest.mark.asyncio
    async def test_clean_urls_titles(self, mock_db, blob_storage):
        clean, dirty = ObjectId(), ObjectId()
        mock_db.fetch_all.return_value = [
            {"_id": clean, "title": "Benefits", "all_titles": ["Benefits"]},
            {"_id": dirty, "title": "Taxes - Canada.ca", "all_titles": ["Taxes - Canada.ca", "Taxes"]},
        ]

        await make_service(mock_db, blob_storage).clean_urls_titles()

        (op,) = mock_db.bulk_write.await_args.args[1]
        assert op._filter == {"_id": dirty}
        assert op._doc == {"$set": {"title": "Taxes", "all_titles": ["Taxes"]}}

    @pytest.mark.asyncio
    async def test_repair_url_titles(self, mock_db, blob_storage, page_html):
        # Given: A url whose snapshot has a newer title, and one without a blob
        oid = ObjectId()
        await blob_storage.container("urls").blob("h1").upload(page_html(title="Access your account"))
        mock_db.fetch_all.return_value = [
            {
                "_id": oid,
                "url": "www.canada.ca/en/account.html",
                "title": "Acce your account",
                "latest_snapshot": "h1",
            },
            {"_id": ObjectId(), "url": "www.canada.ca/en/x.html", "title": "X", "latest_snapshot": "missing"},
        ]

        # When: Repairing
        await make_service(mock_db, blob_storage).repair_url_titles()

        # Then: The title comes from the snapshot and mangled copies are dropped
        (op,) = mock_db.bulk_write.await_args.args[1]
        assert op._filter == {"_id": oid}
        assert op._doc == {
            "$set": {"title": "Access your account", "all_titles": ["Access your account"]}
        }

    @pytest.mark.asyncio
    async def test_update_page_titles_from_urls(self, mock_db, blob_storage):
        same, changed = ObjectId(), ObjectId()

        async def fetch_all(collection, *args, **kwargs):
            if collection == "urls":
                return [{"page": same, "title": "Same"}, {"page": changed, "title": "New"}]
            return [{"_id": same, "title": "Same"}, {"_id": changed, "title": "Old"}]

        mock_db.fetch_all.side_effect = fetch_all

        await make_service(mock_db, blob_storage).update_page_titles_from_urls()

        collection, (op,) = mock_db.bulk_write.await_args.args[:2]
        assert collection == "pages"
        assert op._doc == {"$set": {"title": "New"}}

    @pytest.mark.asyncio
    async def test_populate_all_titles(self, mock_db, blob_storage):
        # Given: Historical titles for two urls, one already populated
        await blob_storage.container("urls").blob("all-titles.json").upload(
            json.dumps({"a": ["Old - Canada.ca", "Old"], "b": ["B"]})
        )
        first = ObjectId()
        mock_db.fetch_all.return_value = [
            {"_id": first, "url": "a", "title": "New"},
            {"_id": ObjectId(), "url": "b", "title": "B", "all_titles": ["B"]},
        ]

        # When: Populating
        await make_service(mock_db, blob_storage).populate_all_titles()

        # Then: Only the url missing titles is updated
        (op,) = mock_db.bulk_write.await_args.args[1]
        assert op._filter == {"_id": first}
        assert op._doc == {"$addToSet": {"all_titles": {"$each": ["Old", "New"]}}}

    @pytest.mark.asyncio
    async def test_fix_activity_map_titles(self, mock_db, blob_storage):
        await blob_storage.container("urls").blob("all-titles_deletion.json").upload(
            json.dumps({"a": ["Bad title"], "b": []})
        )

        await make_service(mock_db, blob_storage).fix_activity_map_titles()

        pull_call = mock_db.bulk_write.await_args_list[0]
        (op,) = pull_call.args[1]
        assert op._doc == {"$pullAll": {"all_titles": ["Bad title"]}}
        mock_db.delete_many.assert_awaited_once_with("aa_item_ids", {"type": ITEM_ID_TYPE})
        mock_db.update_many.assert_awaited_once_with(
            "page_metrics",
            {"activity_map": {"$exists": True}},
            {"$unset": {"activity_map": ""}},
        )


class TestReportsAndSync:
    @pytest.mark.asyncio
    async def test_export_redirects_list(self, mock_db, blob_storage, tmp_path):
        mock_db.fetch_all.return_value = [{"url": "e", "is_404": True, "airtable_id": "rec"}]

        path = await make_service(mock_db, blob_storage).export_redirects_list(
            tmp_path / "reports" / "redirects.json"
        )

        assert json.loads(path.read_text()) == {
            "redirects": [],
            "404s": [{"URL": "e", "Is 404?": True, "Airtable id": "rec"}],
        }

    @pytest.mark.asyncio
    async def test_upload_urls_collection_forced(self, mock_db, blob_storage):
        service = make_service(mock_db, blob_storage)
        service.urls.save_collection_to_blob_storage = AsyncMock(return_value=True)

        assert await service.upload_urls_collection() is True

        service.urls.save_collection_to_blob_storage.assert_awaited_once_with(force=True)

    @pytest.mark.asyncio
    async def test_sync_urls_collection(self, mock_db, blob_storage):
        service = make_service(mock_db, blob_storage)
        service.urls.update_urls = AsyncMock()

        await service.sync_urls_collection()

        service.urls.update_urls.assert_awaited_once()
