"""
Tests for blob storage (filesystem backend).
"""

import asyncio

import pytest

from dbupdate.storage.blob_storage import (
    BlobExistsError,
    BlobNotFoundError,
    FileBlobStorage,
    get_blob_storage,
)

pytestmark = pytest.mark.unit


class TestFileBlobClient:
    """Tests for FileBlobClient."""

    @pytest.mark.asyncio
    async def test_upload_and_download(self, blob_storage):
        # Given: A snapshot blob named by hash
        blob = blob_storage.container("urls").blob("abc123")

        # When: Uploading with metadata
        await blob.upload("<main>hi</main>", metadata={"urls": '["www.canada.ca/en"]'})

        # Then: Content and metadata round-trip
        assert await blob.exists()
        assert await blob.download_text() == "<main>hi</main>"
        properties = await blob.get_properties()
        assert properties.metadata == {"urls": '["www.canada.ca/en"]'}
        assert properties.last_modified is not None
        assert properties.size == len("<main>hi</main>")

    @pytest.mark.asyncio
    async def test_upload_without_overwrite_fails_if_exists(self, blob_storage):
        blob = blob_storage.container("urls").blob("abc123")
        await blob.upload("first")

        with pytest.raises(BlobExistsError):
            await blob.upload("second")

        assert await blob.download_text() == "first"

    @pytest.mark.asyncio
    async def test_concurrent_uploads_only_one_wins(self, blob_storage):
        # Given: Two urls producing the same hash at the same time
        container = blob_storage.container("urls")

        # When: Both upload without overwrite
        results = await asyncio.gather(
            container.blob("samehash").upload("a"),
            container.blob("samehash").upload("a"),
            return_exceptions=True,
        )

        # Then: Exactly one upload fails with BlobExistsError
        errors = [r for r in results if isinstance(r, BlobExistsError)]
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_rejected_upload_keeps_metadata(self, blob_storage):
        # Given: A snapshot blob listing one url
        container = blob_storage.container("urls")
        blob = container.blob("h")
        await blob.upload("x", metadata={"urls": '["a"]'})

        # When: A second upload of the same name is rejected
        with pytest.raises(BlobExistsError):
            await container.blob("h").upload("x", metadata={"urls": '["b"]'})

        # Then: The first metadata survives and no temp files are left behind
        assert (await blob.get_properties()).metadata == {"urls": '["a"]'}
        assert await container.list_blobs() == ["h"]
        assert not list(blob.path.parent.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_overwrite(self, blob_storage):
        blob = blob_storage.container("urls").blob("data.json")
        await blob.upload("[]")

        await blob.upload('[{"url": "x"}]', overwrite=True)

        assert await blob.download_json() == [{"url": "x"}]

    @pytest.mark.asyncio
    async def test_append_creates_and_extends(self, blob_storage):
        blob = blob_storage.container("logs").blob("2024-01/db-update_2024-01-02")

        await blob.append("line 1\n")
        await blob.append("line 2\n")

        assert await blob.download_text() == "line 1\nline 2\n"

    @pytest.mark.asyncio
    async def test_set_metadata(self, blob_storage):
        blob = blob_storage.container("urls").blob("h")
        await blob.upload("x", metadata={"urls": "[]"})

        await blob.set_metadata({"urls": '["a"]', "date": "2024-01-01T00:00:00.000Z"})

        assert (await blob.get_properties()).metadata["urls"] == '["a"]'

    @pytest.mark.asyncio
    async def test_missing_blob(self, blob_storage):
        blob = blob_storage.container("urls").blob("missing")

        assert not await blob.exists()
        with pytest.raises(BlobNotFoundError):
            await blob.download()
        with pytest.raises(BlobNotFoundError):
            await blob.get_properties()
        assert await blob.delete() is False

    @pytest.mark.asyncio
    async def test_delete(self, blob_storage):
        blob = blob_storage.container("urls").blob("h")
        await blob.upload("x")

        assert await blob.delete() is True
        assert not await blob.exists()


class TestFileBlobContainer:
    @pytest.mark.asyncio
    async def test_list_blobs_with_prefix(self, blob_storage):
        container = blob_storage.container("urls")
        await container.blob("urls-collection-data.json").upload("[]")
        await container.blob("archive/2024-01-01/urls-collection-data.json").upload("[]")

        names = await container.list_blobs("archive/")

        assert names == ["archive/2024-01-01/urls-collection-data.json"]

    def test_containers_are_cached(self, blob_storage):
        assert blob_storage.container("urls") is blob_storage.container("urls")


class TestGetBlobStorage:
    @pytest.mark.asyncio
    async def test_file_backend(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DBUPDATE_BLOB__ROOT_DIR", str(tmp_path / "blobs"))

        storage = await get_blob_storage()

        assert isinstance(storage, FileBlobStorage)
        assert storage.root_dir == tmp_path / "blobs"
        assert await get_blob_storage() is storage

    @pytest.mark.asyncio
    async def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("DBUPDATE_BLOB__BACKEND", "s3")

        with pytest.raises(ValueError, match="Unknown blob backend"):
            await get_blob_storage()
