"""
Pytest fixtures and configuration for dbupdate tests.

Test Classification:
- @pytest.mark.unit: Single class/function, no external dependencies
  - DEFAULT: Tests without marker are auto-classified as unit
- @pytest.mark.integration: Multiple components, mocked external dependencies
- @pytest.mark.e2e: Real MongoDB (excluded unless requested with `pytest -m e2e`)
- @pytest.mark.slow: Tests taking >5 seconds

Mock Strategy:
- MongoDB: `mock_db` fixture (Database with AsyncMock methods)
- Blob storage: FileBlobStorage under tmp_path
- HTTP: httpx.MockTransport
"""

import os
from collections.abc import Generator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before importing anything else
os.environ["DBUPDATE_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")
os.environ["DBUPDATE_GENERAL__LOG_LEVEL"] = "DEBUG"


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no external dependencies (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests with mocked external dependencies (<5s/test)"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests requiring a real MongoDB (excluded by default)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds (excluded by default)"
    )


def pytest_collection_modifyitems(config, items):
    """Default unmarked tests to unit; skip e2e unless selected with -m."""
    markexpr = config.getoption("-m", default="")
    skip_e2e = pytest.mark.skip(reason="E2E tests need a real MongoDB. Run with: pytest -m e2e")

    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration", "e2e") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)

        if "e2e" not in markexpr and any(m.name == "e2e" for m in item.iter_markers()):
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    """Settings are cached process-wide; reload them for every test."""
    from dbupdate.utils.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_global_singletons() -> Generator[None, None, None]:
    """Reset global database and blob storage singletons between tests."""
    yield
    from dbupdate.storage import database as db_module
    from dbupdate.storage.blob_storage import reset_blob_storage

    db_module._db = None
    reset_blob_storage()


@pytest.fixture
def mock_settings():
    """Create settings for testing."""
    from dbupdate.utils.config import (
        DedupConfig,
        GeneralConfig,
        Settings,
    )

    return Settings(
        general=GeneralConfig(log_level="DEBUG", production=False),
        dedup=DedupConfig(min_hashes=6, min_scores=2, dump_dir="/tmp/pending_ops"),
    )


@pytest.fixture
def mock_db() -> MagicMock:
    """Database whose query methods are AsyncMocks.

    Reads return empty results by default; bulk_write returns an empty
    BulkWriteSummary.
    """
    from dbupdate.storage.bulk import BulkWriteSummary

    db = MagicMock()
    db.fetch_one = AsyncMock(return_value=None)
    db.fetch_all = AsyncMock(return_value=[])
    db.distinct = AsyncMock(return_value=[])
    db.aggregate = AsyncMock(return_value=[])
    db.insert_one = AsyncMock()
    db.insert_many = AsyncMock(return_value=[])
    db.update_one = AsyncMock(return_value=0)
    db.update_many = AsyncMock(return_value=0)
    db.delete_one = AsyncMock(return_value=0)
    db.delete_many = AsyncMock(return_value=0)
    db.estimated_count = AsyncMock(return_value=0)
    db.count = AsyncMock(return_value=0)
    db.bulk_write = AsyncMock(return_value=BulkWriteSummary())
    return db


@pytest.fixture
def blob_storage(tmp_path: Path):
    """File-backed blob storage under tmp_path."""
    from dbupdate.storage.blob_storage import FileBlobStorage

    return FileBlobStorage(tmp_path / "blobs")


def make_page_html(
    title: str = "Test page - Canada.ca",
    main: str = "<h1>Heading</h1><p>Some text for the page.</p>",
    head: str = "",
) -> str:
    """Build a canada.ca-like page."""
    return (
        "<!DOCTYPE html><html><head>"
        f"<title>{title}</title>{head}"
        "<script>var x = 1;</script>"
        "</head><body>"
        f"<main>{main}</main>"
        "</body></html>"
    )


@pytest.fixture
def page_html():
    return make_page_html
