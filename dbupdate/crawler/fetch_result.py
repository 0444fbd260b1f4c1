"""Fetch result data class for the page fetcher."""

from typing import Any


def strip_scheme(url: str) -> str:
    """Remove a leading http:// or https://."""
    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            return url[len(scheme) :]
    return url


class FetchResult:
    """Result of a fetch operation.

    `url` is the URL as requested (no scheme, as stored in the urls
    collection). `redirect` is set when the final URL differs from it.
    """

    def __init__(
        self,
        ok: bool,
        url: str,
        *,
        status: int | None = None,
        headers: dict[str, str] | None = None,
        body: str = "",
        title: str | None = None,
        reason: str | None = None,
        # Redirect tracking
        final_url: str | None = None,  # URL after following redirects
    ):
        self.ok = ok
        self.url = strip_scheme(url)
        self.final_url = final_url or url
        self.status = status
        self.headers = headers or {}
        self.body = body
        self.title = title
        self.reason = reason

    @property
    def is_404(self) -> bool:
        return self.status in (404, 410)

    @property
    def redirect(self) -> str | None:
        final = strip_scheme(self.final_url)
        return final if final != self.url else None

    @property
    def is_access_denied(self) -> bool:
        """Rate-limited responses come back as an "Access Denied" page."""
        return (self.title or "").strip() == "Access Denied"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "ok": self.ok,
            "url": self.url,
            "final_url": self.final_url,
            "redirect": self.redirect,
            "status": self.status,
            "is_404": self.is_404,
            "title": self.title,
            "reason": self.reason,
            "content_length": len(self.body),
        }

    def __repr__(self) -> str:
        return f"FetchResult(url={self.url!r}, status={self.status}, ok={self.ok})"
