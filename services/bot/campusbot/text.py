"""
Text helpers used by routing and search:

- sanitize(): normalise user input before keyword matching
- build_keyword_regex() / extract_search_term(): keyword claims
- contains_all_runes(): the fuzzy (character-multiset) predicate
- strip_mentions(): cut @-mention spans out of group messages
"""

import re
from collections import Counter
from typing import Callable, Hashable, Iterable, List, Pattern, Sequence, Tuple, TypeVar

T = TypeVar("T")

_IDEOGRAPHIC_SPACE = 0x3000


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def _allowed(ch: str) -> bool:
    cp = ord(ch)
    return (
        "a" <= ch <= "z"
        or "A" <= ch <= "Z"
        or "0" <= ch <= "9"
        or ch == " "
        or 0x4E00 <= cp <= 0x9FFF   # CJK unified ideographs
        or 0x3400 <= cp <= 0x4DBF   # CJK extension A
    )


def sanitize(text: str) -> str:
    """
    Trim, collapse whitespace, drop punctuation and symbols, collapse again.

    Only ASCII letters/digits, spaces and CJK ideographs survive. The
    ideographic space (U+3000) becomes a normal space; the rest of the CJK
    punctuation block is dropped. Idempotent.
    """
    text = collapse_whitespace(text.strip())
    kept = []
    for ch in text:
        if _allowed(ch):
            kept.append(ch)
        elif ord(ch) == _IDEOGRAPHIC_SPACE:
            kept.append(" ")
    return collapse_whitespace("".join(kept))


def fold_ascii(text: str) -> str:
    """Lower-case ASCII letters only; other codepoints are compared raw."""
    return "".join(ch.lower() if ch.isascii() else ch for ch in text)


def is_numeric(text: str) -> bool:
    return bool(text) and all("0" <= ch <= "9" for ch in text)


# -----------------------------------------------------------------------------
# Keyword claims
# -----------------------------------------------------------------------------
def build_keyword_regex(keywords: Sequence[str]) -> Pattern[str]:
    """
    Compile ``(?i)^(k1|k2|...)`` with the longest keywords first so that
    "課程" wins over "課" for the text "課程 微積分".
    """
    if not keywords:
        raise ValueError("keywords cannot be empty")
    ordered = sorted(keywords, key=len, reverse=True)
    return re.compile("^(" + "|".join(re.escape(k) for k in ordered) + ")", re.IGNORECASE)


def extract_search_term(text: str, keyword: str) -> str:
    """
    Remove ``keyword`` from ``text`` and return the trimmed remainder.
    The keyword may sit at the start, the end, or in the middle.
    """
    text = text.strip()
    if not keyword:
        return text
    if text.startswith(keyword):
        return text[len(keyword):].strip()
    if text.endswith(keyword):
        return text[: -len(keyword)].strip()
    return collapse_whitespace(text.replace(keyword, "", 1))


# -----------------------------------------------------------------------------
# Fuzzy matching
# -----------------------------------------------------------------------------
def contains_all_runes(haystack: str, needle: str) -> bool:
    """
    Character-multiset containment, case-insensitive for ASCII.

    True iff every codepoint of ``needle`` occurs in ``haystack`` at least as
    many times as it does in ``needle``. Order and adjacency do not matter and
    whitespace in the needle is ignored: "王明" matches "王小明", "aaab" does
    not match "aabb".
    """
    wanted = Counter(ch for ch in fold_ascii(needle) if not ch.isspace())
    if not wanted:
        return True
    if not haystack:
        return False
    have = Counter(fold_ascii(haystack))
    return all(have[ch] >= n for ch, n in wanted.items())


# -----------------------------------------------------------------------------
# Mentions and truncation
# -----------------------------------------------------------------------------
def strip_mentions(text: str, spans: Iterable[Tuple[int, int]]) -> str:
    """
    Remove ``(index, length)`` codepoint spans from ``text``.

    Spans are cut back-to-front so earlier indices stay valid; out-of-range
    spans are ignored. Whitespace is collapsed afterwards.
    """
    chars = list(text)
    for index, length in sorted(spans, key=lambda s: s[0], reverse=True):
        if index < 0 or length <= 0 or index >= len(chars):
            continue
        del chars[index:index + length]
    return collapse_whitespace("".join(chars))


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    """Codepoint-safe truncation."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if limit <= len(suffix):
        return text[:limit]
    return text[: limit - len(suffix)] + suffix


def dedupe(items: Iterable[T], key: Callable[[T], Hashable]) -> List[T]:
    """Drop repeated keys, keeping the first occurrence and its position."""
    seen = set()
    out: List[T] = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out
