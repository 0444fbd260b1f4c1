"""
Configuration management for dbupdate.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "dbupdate"
    version: str = "0.1.0"
    log_level: str = "INFO"
    data_dir: str = "data"
    logs_dir: str = "logs"

    # Non-production runs sync collections from blob storage instead of crawling
    production: bool = False


class MongoConfig(BaseModel):
    """MongoDB connection configuration."""

    uri: str = "mongodb://localhost:27017"
    database: str = "upd"
    server_selection_timeout_ms: int = 5000
    # Max operations sent per bulk_write call
    bulk_chunk_size: int = 1000


class BlobConfig(BaseModel):
    """Blob storage configuration."""

    backend: str = "file"  # file, gridfs
    root_dir: str = "data/blobs"

    # Container names
    urls_container: str = "urls"
    aa_raw_container: str = "aa-raw"
    logs_container: str = "logs"


class CrawlerConfig(BaseModel):
    """Crawler configuration."""

    batch_size: int = 12
    rate_limit_delay: float = 0.088  # seconds between request starts
    request_timeout: float = 30.0
    max_retries: int = 2
    user_agent: str = "Mozilla/5.0 (compatible; dbupdate/0.1; +https://www.canada.ca)"
    rate_limit_stats: bool = True


class UrlsConfig(BaseModel):
    """Urls collection update configuration."""

    domain: str = "www.canada.ca"
    recheck_days: int = 3
    recheck_404_days: int = 14
    recheck_grace_hours: int = 2
    # Pages with endless redirect loops
    ignored_urls: list[str] = Field(
        default_factory=lambda: [
            "www.canada.ca/en/revenue-agency/services/tax/businesses/topics/payroll/"
            "completing-filing-information-returns/t4a-information-payers/t4a-slip/"
            "distribute-your-t4a-slips.html",
            "www.canada.ca/fr/agence-revenu/services/impot/entreprises/sujets/retenues-paie/"
            "remplir-produire-declarations-renseignements/t4a-information-payeurs/feuillet-t4a/"
            "comment-distribuer-vos-feuillets-t4a.html",
        ]
    )
    update_queue_size: int = 100

    data_blob_name: str = "urls-collection-data.json"
    readability_blob_name: str = "readability-collection-data.json"
    all_titles_blob_name: str = "all-titles.json"
    titles_deletion_blob_name: str = "all-titles_deletion.json"
    titles_from_pages_blob_name: str = "titles-from-pages.json"


class ActivityMapConfig(BaseModel):
    """Adobe Analytics activity map configuration."""

    api_base_url: str = "https://analytics.adobe.io/api"
    company_id: str = ""
    client_id: str = ""
    access_token: str = ""
    report_suite_id: str = ""
    max_parallel: int = 4
    request_timeout: float = 120.0

    # Period with no usable activity map data
    gap_start: str = "2022-07-01"
    gap_end: str = "2022-12-31"


class DedupConfig(BaseModel):
    """Redundant snapshot removal configuration."""

    # Only urls with more than this many hashes are considered
    min_hashes: int = 6
    # Urls need more than this many remaining hashes/scores to be processed
    min_scores: int = 2
    dump_dir: str = "data/pending_ops"


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    mongo: MongoConfig = Field(default_factory=MongoConfig)
    blob: BlobConfig = Field(default_factory=BlobConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    urls: UrlsConfig = Field(default_factory=UrlsConfig)
    activity_map: ActivityMapConfig = Field(default_factory=ActivityMapConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides (settings section).

    Example local.yaml:
        settings:
          general:
            production: true

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config: dict[str, Any] = {}

    base_path = config_dir / "settings.yaml"
    if base_path.exists():
        with open(base_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    local_path = config_dir / "local.yaml"
    if local_path.exists():
        with open(local_path, encoding="utf-8") as f:
            local_overrides = yaml.safe_load(f) or {}
        if "settings" in local_overrides:
            config = _deep_merge(config, local_overrides["settings"])

    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with DBUPDATE_ and use
    double underscores for nested keys.

    Example:
        DBUPDATE_GENERAL__LOG_LEVEL=DEBUG

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    prefix = "DBUPDATE_"

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == "DBUPDATE_CONFIG_DIR":
            continue

        key_path = key[len(prefix) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config_dir = Path(os.environ.get("DBUPDATE_CONFIG_DIR", "config"))

    config = _load_yaml_config(config_dir)
    config = _apply_env_overrides(config)

    return Settings(**config)


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    # Assuming this file is at dbupdate/utils/config.py
    return Path(__file__).parent.parent.parent


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    settings = get_settings()
    root = get_project_root()

    dirs = [
        root / settings.general.data_dir,
        root / settings.general.logs_dir,
        root / settings.dedup.dump_dir,
    ]
    if settings.blob.backend == "file":
        dirs.append(root / settings.blob.root_dir)

    for dir_path in dirs:
        dir_path.mkdir(parents=True, exist_ok=True)
