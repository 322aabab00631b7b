"""Clean-up of language-model output before it is stored or published."""

from __future__ import annotations

import re
from typing import Optional

_META_PATTERNS = [
    re.compile(r"（注：.*?）"),
    re.compile(r"\(Note:.*?\)", re.IGNORECASE),
    re.compile(r"（or.*?）", re.IGNORECASE),
    re.compile(r"\(or .*?\)", re.IGNORECASE),
    re.compile(r"^Note:.*?$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"Translation note:.*?$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"Translated by:.*?$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"Here is the translated.*?$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^Here is the translation:?", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^Title:\s*", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^Headline:\s*", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\*\*Headline:\*\*\s*", re.IGNORECASE | re.MULTILINE),
]

# Trailing editorial sections the model sometimes appends after the post
_EDITORIAL_TAIL = re.compile(
    r"\n{2,}(?:What it signals|Visuals to use|Video idea|Image idea|Content idea)[:\s][\s\S]*",
    re.IGNORECASE,
)

_ONLY_PUNCTUATION = re.compile(r"^[.,?!\-\s]+$")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def sanitize_text(text: Optional[str], is_headline: bool = False) -> Optional[str]:
    """Strip known model artifacts from *text*.

    Removes translator notes and preambles, ``Title:``/``Headline:``
    prefixes, bold/underline markers and trailing editorial sections, and
    turns ``-``/``*`` bullets into ``•``. Headlines also lose surrounding
    quotes and a trailing period.

    Returns:
        The cleaned text, or ``None`` when nothing meaningful is left.
    """
    if not text:
        return None

    clean = text.strip()
    for pattern in _META_PATTERNS:
        clean = pattern.sub("", clean)

    clean = _EDITORIAL_TAIL.sub("", clean)
    clean = re.sub(r"\*\*(.*?)\*\*", r"\1", clean)
    clean = re.sub(r"__(.*?)__", r"\1", clean)
    clean = re.sub(r"^\s*[-*]\s+", "• ", clean, flags=re.MULTILINE)

    if is_headline:
        clean = clean.strip()
        clean = re.sub(r"^[\"'](.*)[\"']$", r"\1", clean)
        clean = re.sub(r"\.$", "", clean)

    clean = _EXTRA_BLANK_LINES.sub("\n\n", clean).strip()

    if len(clean) < 2 or _ONLY_PUNCTUATION.match(clean):
        return None
    return clean


def strip_platform_references(text: Optional[str]) -> str:
    """Remove mentions and links so published text carries no outbound references.

    - ``@[Name](url)`` and ``[Title](url)`` keep only the label
    - ``@[Name]`` and ``[Title]`` keep only the label
    - raw ``http(s)://`` URLs are dropped
    """
    if not text:
        return ""

    clean = re.sub(r"@?\[([^\]]+)\]\([^)]+\)", r"\1", text)
    clean = re.sub(r"@\[([^\]]+)\]", r"\1", clean)
    clean = re.sub(r"https?://[^\s)]+", "", clean, flags=re.IGNORECASE)
    clean = re.sub(r"\[([^\]]+)\]", r"\1", clean)
    clean = _EXTRA_BLANK_LINES.sub("\n\n", clean).strip()
    return clean
