"""
dbupdate Crawler Module.

Provides rate-limited concurrent page fetching.
"""

from dbupdate.crawler.fetch_result import FetchResult, strip_scheme
from dbupdate.crawler.http_fetcher import HTTPFetcher, RateLimiter, parse_title

__all__ = [
    "FetchResult",
    "HTTPFetcher",
    "RateLimiter",
    "parse_title",
    "strip_scheme",
]
