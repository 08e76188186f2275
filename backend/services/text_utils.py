"""Text helpers shared by chunking, context building and streaming."""
import html
import math
import re
from typing import List, Tuple

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
# Terminal punctuation (optionally followed by closing quotes/brackets), whitespace,
# then the start of the next sentence
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*(?=\s+[\"'(\[]?[A-Z0-9])")
_WORD_BEFORE_RE = re.compile(r"(\S+)$")
# Longer than any abbreviation; bounds the per-sentence lookback
_ABBREVIATION_LOOKBACK = 32

ABBREVIATIONS = frozenset({
    "mr.", "mrs.", "ms.", "dr.", "prof.", "st.", "vs.", "etc.", "e.g.", "i.e.",
    "inc.", "ltd.", "co.", "no.", "approx.", "jr.", "sr.", "dept.", "est.",
})

CHARS_PER_TOKEN = 4


def strip_markup(text: str) -> str:
    """Remove HTML tags and unescape entities."""
    if not text:
        return ""
    return html.unescape(_TAG_RE.sub(" ", text))


def normalize_whitespace(text: str) -> str:
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def estimate_tokens(text: str) -> int:
    """Character/4 token estimate."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _is_abbreviation(text: str, end: int) -> bool:
    match = _WORD_BEFORE_RE.search(text, max(0, end - _ABBREVIATION_LOOKBACK), end)
    if not match:
        return False
    word = match.group(1).lower()
    if word in ABBREVIATIONS:
        return True
    # Single-letter initials such as "J." in "J. Smith"
    return len(word) == 2 and word[0].isalpha()


def sentence_spans(text: str) -> List[Tuple[int, int]]:
    """
    Split normalized text into sentence spans.

    Returns (start, end) offsets; the whitespace between sentences belongs to
    neither span, so text[start:end] never has leading or trailing spaces.
    """
    if not text:
        return []

    spans = []
    start = 0
    for match in _SENTENCE_END_RE.finditer(text):
        end = match.end()
        if _is_abbreviation(text, match.start() + 1):
            continue
        if end > start:
            spans.append((start, end))
        start = end
        while start < len(text) and text[start].isspace():
            start += 1

    if start < len(text):
        spans.append((start, len(text)))
    return spans


def split_sentences(text: str) -> List[str]:
    return [text[s:e] for s, e in sentence_spans(text)]


def last_sentence_boundary(text: str, limit: int) -> int:
    """Offset of the last sentence end at or before `limit`, or 0 if none."""
    best = 0
    for start, end in sentence_spans(text):
        if end > limit:
            break
        best = end
    return best


def last_word_boundary(text: str, limit: int) -> int:
    """Offset of the last word end at or before `limit`, or 0 if none."""
    if limit >= len(text):
        return len(text)
    if text[limit].isspace():
        return len(text[:limit].rstrip())
    cut = text.rfind(" ", 0, limit)
    if cut <= 0:
        return 0
    return len(text[:cut].rstrip())
