"""
Readability scoring for page main content.

The final score (0-100) combines:
- Flesch-Kincaid points (max 60): full marks at grade 6 or below, none at 18+
- Heading points (max 20): full marks at <= 40 words per heading, none at 200+
- Paragraph points (max 20): full marks at <= 30 words per paragraph, none at 80+
"""

import re
from collections import Counter
from typing import Any

import textstat
from bs4 import BeautifulSoup


SUPPORTED_LANGS = ("en", "fr")
TOP_WORDS = 20

_WORD_RE = re.compile(r"[^\W\d_]+(?:['’-][^\W\d_]+)*", re.UNICODE)

# Excluded from word_counts
STOP_WORDS: dict[str, frozenset[str]] = {
    "en": frozenset(
        """a about an and are as at be by can for from has have if in into is it
        its may not of on or our than that the their there these this to was we
        were will with you your""".split()
    ),
    "fr": frozenset(
        """au aux avec ce ces cette dans de des du elle en est et il ils la le
        les leur leurs mais ne nous ou par pas plus pour qui que sa se ses son
        sont sur un une vos votre vous""".split()
    ),
}


def _linear_points(value: float, best: float, worst: float, max_points: float) -> float:
    """max_points at or below `best`, 0 at or above `worst`, linear in between."""
    if value <= best:
        return max_points
    if value >= worst:
        return 0.0
    return max_points * (worst - value) / (worst - best)


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text)


def calculate_readability(html: str, lang: str) -> dict[str, Any]:
    """Calculate readability scores for a page.

    Args:
        html: Page HTML (the <main> element is scored when present).
        lang: "en" or "fr".

    Returns:
        Dict of readability fields (see module docstring for the scoring).
    """
    if lang not in SUPPORTED_LANGS:
        raise ValueError(f"Unsupported language: {lang}")

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.select("script, style, noscript"):
        tag.decompose()
    root = soup.find("main") or soup

    text = re.sub(r"\s+", " ", root.get_text(" ")).strip()
    words = _words(text)
    total_words = len(words)

    paragraphs = [p for p in root.find_all("p") if p.get_text(strip=True)]
    headings = [h for h in root.find_all(re.compile(r"^h[1-6]$")) if h.get_text(strip=True)]
    paragraph_words = sum(len(_words(p.get_text(" "))) for p in paragraphs)

    textstat.set_lang(lang)
    total_sentences = max(1, textstat.sentence_count(text)) if total_words else 0
    total_syllables = textstat.syllable_count(text) if total_words else 0

    if total_words:
        original_score = (
            0.39 * (total_words / total_sentences)
            + 11.8 * (total_syllables / total_words)
            - 15.59
        )
    else:
        original_score = 0.0

    avg_words_per_paragraph = paragraph_words / len(paragraphs) if paragraphs else 0.0
    avg_words_per_header = total_words / len(headings) if headings else float(total_words)

    fk_points = _linear_points(original_score, 6, 18, 60)
    header_points = _linear_points(avg_words_per_header, 40, 200, 20)
    paragraph_points = _linear_points(avg_words_per_paragraph, 30, 80, 20)

    stop_words = STOP_WORDS[lang]
    counts = Counter(
        word.lower()
        for word in words
        if len(word) > 2 and word.lower() not in stop_words
    )

    return {
        "original_score": round(original_score, 2),
        "final_fk_score": round(fk_points + header_points + paragraph_points, 2),
        "fk_points": round(fk_points, 2),
        "avg_words_per_paragraph": round(avg_words_per_paragraph, 2),
        "avg_words_per_header": round(avg_words_per_header, 2),
        "paragraph_points": round(paragraph_points, 2),
        "header_points": round(header_points, 2),
        "word_counts": [
            {"word": word, "count": count} for word, count in counts.most_common(TOP_WORDS)
        ],
        "total_sentences": total_sentences,
        "total_syllables": total_syllables,
        "total_paragraph": len(paragraphs),
        "total_headings": len(headings),
        "total_words": total_words,
    }
