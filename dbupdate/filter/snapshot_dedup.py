"""
Snapshot deduplication for dbupdate.

A URL accumulates one hash per distinct snapshot of its page. Many snapshots
differ only in markup, so their readability scores are identical. Consecutive
snapshots (by date) with the same final_fk_score and total_words form a run;
the first snapshot of each run is kept and the ones between the first and the
last are redundant.
"""

from collections import defaultdict
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from typing import Any

from dbupdate.utils.config import get_settings
from dbupdate.utils.errors import InconsistentDataError
from dbupdate.utils.logging import ProgressLogger, get_logger

logger = get_logger(__name__)


def is_same_score(a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Two readability docs score the same."""
    return a.get("final_fk_score") == b.get("final_fk_score") and a.get(
        "total_words"
    ) == b.get("total_words")


def find_duplicate_readability(docs: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Find readability docs duplicated on (url, hash).

    Args:
        docs: Readability docs with at least _id, url, hash, date,
            final_fk_score and total_words.

    Returns:
        Docs to delete: every doc of a duplicate group except the earliest.

    Raises:
        InconsistentDataError: If docs of a group disagree on their scores.
    """
    groups: dict[tuple[str, str], list[dict[str, Any]]] = defaultdict(list)
    for doc in docs:
        groups[(doc["url"], doc["hash"])].append(doc)

    to_delete: list[dict[str, Any]] = []

    for (url, hash_), group in groups.items():
        if len(group) < 2:
            continue

        group.sort(key=lambda doc: doc["date"])

        if not all(is_same_score(group[0], doc) for doc in group[1:]):
            raise InconsistentDataError(
                f"Not all docs are the same for: {url} {hash_}, cannot proceed"
            )

        to_delete.extend(group[1:])

    if to_delete:
        logger.info(
            "Duplicate readability scores found",
            groups=sum(1 for group in groups.values() if len(group) > 1),
            to_delete=len(to_delete),
        )

    return to_delete


@dataclass
class DedupResult:
    """Hashes classified by find_redundant_hashes."""

    redundant: set[str] = field(default_factory=set)
    kept: set[str] = field(default_factory=set)
    urls_considered: int = 0

    def __iter__(self):
        # Allows `redundant, kept = find_redundant_hashes(...)`
        return iter((self.redundant, self.kept))


def find_redundant_hashes(
    url_docs: Iterable[dict[str, Any]],
    scores_by_url: dict[str, list[dict[str, Any]]],
    protected: Collection[str] = (),
    min_hashes: int | None = None,
    min_scores: int | None = None,
) -> DedupResult:
    """Classify snapshot hashes as redundant or kept.

    Args:
        url_docs: Url docs with `url` and `hashes` ([{hash, date}, ...]).
        scores_by_url: Readability docs (hash, date, final_fk_score,
            total_words) grouped by url.
        protected: Hashes that are never redundant (latest snapshots).
        min_hashes: Only urls with more hashes than this are considered
            (default: dedup.min_hashes).
        min_scores: Urls need more remaining hashes and scores than this
            (default: dedup.min_scores).

    Returns:
        DedupResult with redundant and kept hashes.
    """
    settings = get_settings()
    if min_hashes is None:
        min_hashes = settings.dedup.min_hashes
    if min_scores is None:
        min_scores = settings.dedup.min_scores

    candidates = sorted(
        (doc for doc in url_docs if len(doc.get("hashes") or []) > min_hashes),
        key=lambda doc: len(doc["hashes"]),
        reverse=True,
    )

    logger.info(
        "Finding redundant hashes",
        urls=len(candidates),
        min_hashes=min_hashes,
    )

    result = DedupResult(urls_considered=len(candidates))

    # Hashes are classified once; later urls sharing a hash skip it
    def should_skip(hash_: str) -> bool:
        return hash_ in result.redundant or hash_ in result.kept

    progress = ProgressLogger(len(candidates), name="Finding redundant hashes", log_every=100)

    for url_doc in candidates:
        progress.log_iteration()

        url_hashes = [h for h in url_doc["hashes"] if not should_skip(h["hash"])]
        if len(url_hashes) <= min_scores:
            continue

        scores = sorted(
            (s for s in scores_by_url.get(url_doc["url"], []) if not should_skip(s["hash"])),
            key=lambda s: s["date"],
        )
        if len(scores) <= min_scores:
            continue

        run_start: dict[str, Any] | None = None
        prev: dict[str, Any] | None = None

        for score in scores:
            if run_start is None or not is_same_score(run_start, score):
                result.kept.add(score["hash"])
                run_start = score
                prev = None
                continue

            if prev is None:
                prev = score
                continue

            if prev["hash"] not in protected:
                result.redundant.add(prev["hash"])

            prev = score

    logger.info(
        "Redundant hashes found",
        redundant=len(result.redundant),
        kept=len(result.kept),
    )

    return result
