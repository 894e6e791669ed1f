"""Cleanup of text extracted from PDFs.

Every stage is a plain ``str -> str`` function and can be applied on its own.
Form feeds (``\\f``) are kept throughout: the extractor uses them as page
delimiters, header/footer detection works on the page segments they mark and
the chunker reads page numbers from them.
"""

import math
import re
import unicodedata
from collections import Counter
from typing import List, Optional

PAGE_BREAK = "\f"

# C0 controls and DEL, except \t \n \f \r
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0E-\x1F\x7F]")
_MULTI_SPACE = re.compile(r" {2,}")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
# word-\nword, only across a single line wrap
_BROKEN_HYPHEN = re.compile(r"(\w+)-[ \t]*\n[ \t]*(\w+)")

_TYPOGRAPHY = {
    "ﬀ": "ff",
    "ﬁ": "fi",
    "ﬂ": "fl",
    "ﬃ": "ffi",
    "ﬄ": "ffl",
    "æ": "ae",
    "œ": "oe",
    "“": '"',
    "”": '"',
    "„": '"',
    "‘": "'",
    "’": "'",
    "–": "-",
    "—": "-",
    "…": "...",
}
_TYPOGRAPHY_RE = re.compile("|".join(re.escape(k) for k in _TYPOGRAPHY))

_PAGE_NUMBER_LINE = re.compile(r"^[ \t]*(?:Page[ \t]+\d+|[-–—][ \t]*\d+[ \t]*[-–—])[ \t]*$", re.IGNORECASE | re.MULTILINE)
_COPYRIGHT_LINE = re.compile(r"^[ \t]*(?:Copyright|©)[ \t]+\d{4}.*$", re.IGNORECASE | re.MULTILINE)
_TRAILING_URL = re.compile(r"https?://[^\s]+$", re.IGNORECASE | re.MULTILINE)


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


def normalize_unicode(text: str, form: str = "NFC") -> str:
    return unicodedata.normalize(form, text)


def collapse_spaces(text: str) -> str:
    return _MULTI_SPACE.sub(" ", text)


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def collapse_blank_lines(text: str) -> str:
    """Three or more consecutive line breaks become a single blank line."""
    return _EXCESS_NEWLINES.sub("\n\n", text)


def trim_lines(text: str) -> str:
    # strip(" \t") rather than strip(): a form feed at a line edge is a page break
    return "\n".join(line.strip(" \t") for line in text.split("\n"))


def dehyphenate(text: str) -> str:
    return _BROKEN_HYPHEN.sub(r"\1\2", text)


def normalize_typography(text: str) -> str:
    """Ligatures, smart quotes, dashes and ellipses to plain ASCII."""
    return _TYPOGRAPHY_RE.sub(lambda m: _TYPOGRAPHY[m.group(0)], text)


def clean(text: str) -> str:
    """Basic normalization: control chars, Unicode, spaces, line endings, blank lines, trimming."""
    cleaned = strip_control_chars(text)
    cleaned = normalize_unicode(cleaned)
    cleaned = collapse_spaces(cleaned)
    cleaned = normalize_line_endings(cleaned)
    cleaned = trim_lines(cleaned)
    cleaned = collapse_blank_lines(cleaned)
    return cleaned.strip(" \t\n")


def fix_common_issues(text: str) -> str:
    return normalize_typography(dehyphenate(text))


def _edge_line(segment: str, last: bool) -> str:
    lines = segment.strip("\n").split("\n")
    return lines[-1] if last else lines[0]


def _most_common(lines: List[str], threshold: int) -> Optional[str]:
    counts = Counter(line for line in lines if line.strip())
    if not counts:
        return None
    line, count = counts.most_common(1)[0]
    return line if count >= threshold else None


def remove_headers_footers(text: str, min_ratio: float = 0.5) -> str:
    """Drop a first/last line that repeats on at least ``min_ratio`` of the pages.

    Pages are the form-feed delimited segments of ``text``; fewer than two
    non-empty pages means there is nothing to compare.
    """
    segments = text.split(PAGE_BREAK)
    pages = [s for s in segments if s.strip()]
    if len(pages) < 2:
        return text

    threshold = max(2, math.ceil(len(pages) * min_ratio))
    header = _most_common([_edge_line(p, last=False) for p in pages], threshold)
    footer = _most_common([_edge_line(p, last=True) for p in pages], threshold)
    if header is None and footer is None:
        return text

    stripped = []
    for segment in segments:
        if not segment.strip():
            stripped.append(segment)
            continue
        lines = segment.strip("\n").split("\n")
        if header is not None and lines and lines[0] == header:
            lines.pop(0)
        if footer is not None and lines and lines[-1] == footer:
            lines.pop()
        stripped.append("\n".join(lines))
    return PAGE_BREAK.join(stripped)


def extract_main_content(text: str) -> str:
    """Remove standalone page numbers, copyright footers and trailing URLs."""
    content = _PAGE_NUMBER_LINE.sub("", text)
    content = _COPYRIGHT_LINE.sub("", content)
    content = _TRAILING_URL.sub("", content)
    return content


def full_clean(text: str, header_ratio: float = 0.5) -> str:
    cleaned = clean(text)
    # hyphenation and ligatures first: broken lines change what the page edges look like
    cleaned = fix_common_issues(cleaned)
    cleaned = remove_headers_footers(cleaned, min_ratio=header_ratio)
    cleaned = extract_main_content(cleaned)
    cleaned = collapse_blank_lines(trim_lines(cleaned))
    # edge form feeds stay: a blank first page still counts as page 1
    return cleaned.strip(" \t\n")
