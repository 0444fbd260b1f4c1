"""
dbupdate Filter Module.

Snapshot deduplication.
"""

from dbupdate.filter.snapshot_dedup import (
    DedupResult,
    find_duplicate_readability,
    find_redundant_hashes,
    is_same_score,
)

__all__ = [
    "DedupResult",
    "find_duplicate_readability",
    "find_redundant_hashes",
    "is_same_score",
]
