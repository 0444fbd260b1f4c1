"""
dbupdate Extractor Module.

HTML normalization, content hashing and readability scoring.
"""

from dbupdate.extractor.html_processor import (
    ProcessedHtml,
    content_hash,
    minify_html,
    process_html,
)
from dbupdate.extractor.readability import calculate_readability

__all__ = [
    "ProcessedHtml",
    "process_html",
    "content_hash",
    "minify_html",
    "calculate_readability",
]
