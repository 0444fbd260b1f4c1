"""
Tests for logging utilities.
"""

import logging
from datetime import UTC, datetime

import pytest

from dbupdate.utils.logging import BlobLogSink, ProgressLogger, log_timing

pytestmark = pytest.mark.unit


def attach(sink: BlobLogSink) -> logging.Logger:
    """A stdlib logger writing only to the sink."""
    logger = logging.getLogger(f"dbupdate.test.sink.{id(sink)}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(sink)
    return logger


class TestBlobLogSink:
    """Tests for BlobLogSink."""

    def test_date_targets(self):
        targets = BlobLogSink.date_targets(datetime(2024, 3, 5, tzinfo=UTC))

        assert targets == {
            "error": "2024-03/db-update_errors_2024-03-05",
            "warning": "2024-03/db-update_2024-03-05",
            "info": "2024-03/db-update_2024-03-05",
        }

    def test_records_buffered_per_target(self, blob_storage):
        # Given: A sink with fixed targets
        sink = BlobLogSink(blob_storage.container("logs"))
        sink.set_targets({"error": "errors", "warning": "log", "info": "log"})

        # When: Emitting records of each level
        logger = attach(sink)
        logger.info("started")
        logger.warning("careful")
        logger.error("failed")

        # Then: Errors go to their own target
        assert sink.pending() == {"log": ["started", "careful"], "errors": ["failed"]}

    def test_below_level_ignored(self, blob_storage):
        sink = BlobLogSink(blob_storage.container("logs"), level=logging.INFO)

        attach(sink).debug("noise")

        assert sink.pending() == {}

    def test_disabled(self, blob_storage):
        sink = BlobLogSink(blob_storage.container("logs"))
        sink.disable()

        attach(sink).error("failed")

        assert sink.pending() == {}

    @pytest.mark.asyncio
    async def test_upload_appends_to_existing_blob(self, blob_storage):
        # Given: An existing log blob from an earlier run
        container = blob_storage.container("logs")
        await container.blob("log").upload("earlier\n")
        sink = BlobLogSink(container)
        sink.set_targets({"error": "errors", "warning": "log", "info": "log"})
        attach(sink).info("later")

        # When: Uploading
        uploaded = await sink.upload()

        # Then: Lines are appended and the buffer is cleared
        assert uploaded == 1
        assert await container.blob("log").download_text() == "earlier\nlater\n"
        assert sink.pending() == {}

    @pytest.mark.asyncio
    async def test_upload_nothing(self, blob_storage):
        sink = BlobLogSink(blob_storage.container("logs"))

        assert await sink.upload() == 0


class TestProgressLogger:
    def test_eta(self):
        progress = ProgressLogger(10, log_every=5)

        assert progress.eta_seconds() is None
        for _ in range(5):
            progress.log_iteration()

        assert progress.count == 5
        assert progress.eta_seconds() is not None
        assert progress.eta_seconds() >= 0


class TestLogTiming:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        @log_timing
        async def work(x: int) -> int:
            return x + 1

        assert await work(1) == 2
        assert work.__name__ == "work"

    @pytest.mark.asyncio
    async def test_propagates_errors(self):
        @log_timing
        async def fail() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await fail()
