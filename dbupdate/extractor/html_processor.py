"""
Page HTML processing for snapshots.

Strips dynamic content from fetched pages and extracts the fields stored on
urls documents (title, metadata, links, alternate-language hrefs). The
processed body is what gets hashed: scripts inject per-request content, so
they are removed before hashing.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from bs4 import BeautifulSoup

from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)

IGNORED_META_CONTENT = frozenset({"IE=edge", "width=device-width,initial-scale=1"})
DATE_META_NAMES = frozenset({"dcterms.issued", "dcterms.modified"})

_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_TITLE_SUFFIX_RE = re.compile(r" - Canada\.ca\s*$")
_LANG_PATH_RE = re.compile(r"^/(en|fr)/", re.IGNORECASE)


@dataclass
class ProcessedHtml:
    """Fields extracted from a page."""

    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    links: list[dict[str, str]] = field(default_factory=list)
    lang_hrefs: dict[str, str] = field(default_factory=dict)


def _parse_meta_date(content: str) -> datetime | str:
    match = _DATE_RE.search(content)
    if not match:
        return content
    try:
        return datetime(*(int(part) for part in match.groups()), tzinfo=UTC)
    except ValueError:
        return content


def _normalize_link(href: str) -> str:
    return _LANG_PATH_RE.sub(
        lambda m: f"www.canada.ca/{m.group(1)}/",
        href.replace("https://", "", 1),
    )


def process_html(html: str) -> ProcessedHtml | None:
    """Process a fetched page.

    Args:
        html: Raw page HTML.

    Returns:
        ProcessedHtml, or None when the page has no <main> content (treated as
        a 404 by the caller).
    """
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup.select('script, meta[property="fb:pages"]'):
        tag.decompose()

    main = soup.find("main")
    if main is None or not main.decode_contents().strip():
        return None

    metadata: dict[str, Any] = {}
    for meta in soup.select("meta[name]"):
        name = meta.get("name")
        content = meta.get("content")
        if not name or not content or content in IGNORED_META_CONTENT:
            continue
        if name in DATE_META_NAMES:
            metadata[name] = _parse_meta_date(content)
        else:
            metadata[name] = content

    links = [
        {"href": _normalize_link(a["href"]), "text": a.get_text()}
        for a in main.select("a[href]")
    ]

    lang_hrefs = {
        link["hreflang"]: link["href"].replace("https://", "", 1)
        for link in soup.select('link[rel="alternate"][hreflang]')
        if link.get("hreflang") and link.get("href")
    }

    title_tag = soup.find("title")
    title = title_tag.get_text() if title_tag else ""
    title = re.sub(r"\s+", " ", _TITLE_SUFFIX_RE.sub("", title)).strip()

    return ProcessedHtml(
        title=title,
        body=str(soup),
        metadata=metadata,
        links=links,
        lang_hrefs=lang_hrefs,
    )


def content_hash(text: str) -> str:
    """MD5 hex digest of the processed body; names the snapshot blob."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def _collapse(fragment: str) -> str:
    # Whitespace runs become a single space (or newline if one was present)
    return re.sub(
        r"\s+",
        lambda m: "\n" if "\n" in m.group(0) else " ",
        fragment,
    )


def minify_html(html: str) -> str:
    """Minify HTML for storage.

    - Removes HTML comments (but not conditional comments)
    - Collapses whitespace conservatively, leaving <pre> and <textarea>
      contents untouched

    Raises:
        ValueError: If the document is empty or has unbalanced <pre> blocks.
    """
    if not html or not html.strip():
        raise ValueError("Nothing to minify")

    html = re.sub(r"<!--(?!\[if).*?-->", "", html, flags=re.DOTALL)

    parts = re.split(
        r"(<(pre|textarea)\b[^>]*>.*?</\2>)",
        html,
        flags=re.DOTALL | re.IGNORECASE,
    )

    out: list[str] = []
    # re.split with two groups yields [text, block, tag, text, block, tag, ...]
    for index in range(0, len(parts), 3):
        text = parts[index]
        if re.search(r"<(pre|textarea)\b", text, flags=re.IGNORECASE):
            raise ValueError("Unbalanced preformatted block")
        out.append(_collapse(text))
        if index + 1 < len(parts):
            out.append(parts[index + 1])

    return "".join(out).strip()
