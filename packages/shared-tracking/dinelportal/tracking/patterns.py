"""Conversion path and page title patterns.

A path pattern is either an exact path or a glob:

- ``*`` matches any characters within one path segment
- ``**`` matches any characters across segments
- ``?`` matches one character other than ``/``

Matching is case-insensitive and ignores a trailing slash, so
``/Thank-You/`` matches the pattern ``/thank-you``.

A title pattern matches when it occurs at the start of a word in the page
title, ignoring case. ``*`` matches any run of characters, so ``tak*``
matches "Tak for din ordre" but not "Kontakt".
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

GLOB_CHARS = ("*", "?")


def normalize_path(path: str) -> str:
    """Lower-case a path and drop its trailing slash (except for "/")."""
    path = (path or "/").strip().lower()
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts))


@dataclass(frozen=True)
class ConversionPattern:
    """A compiled conversion pattern.

    Example:
        >>> ConversionPattern("/confirmation/*").matches("/confirmation/123")
        True
        >>> ConversionPattern("/confirmation/*").matches("/confirmation/123/receipt")
        False
        >>> ConversionPattern("/thank-you").matches("/Thank-You/")
        True
    """

    raw: str
    _normalized: str = field(init=False, repr=False, compare=False)
    _regex: re.Pattern[str] | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.raw or not self.raw.strip():
            raise ValueError("Conversion pattern must not be empty")
        normalized = normalize_path(self.raw)
        object.__setattr__(self, "_normalized", normalized)
        regex = _glob_to_regex(normalized) if self.is_glob else None
        object.__setattr__(self, "_regex", regex)

    @property
    def is_glob(self) -> bool:
        """Return True if the pattern contains wildcards."""
        return any(char in self.raw for char in GLOB_CHARS)

    def matches(self, path: str) -> bool:
        """Check a URL path against this pattern."""
        candidate = normalize_path(path)
        if self._regex is not None:
            return self._regex.fullmatch(candidate) is not None
        return candidate == self._normalized


@dataclass(frozen=True)
class TitlePattern:
    """A compiled page title pattern.

    Example:
        >>> TitlePattern("tak*").matches("Tak for din bestilling")
        True
        >>> TitlePattern("tak*").matches("Kontakt os")
        False
    """

    raw: str
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.raw or not self.raw.strip():
            raise ValueError("Title pattern must not be empty")
        body = ".*".join(re.escape(part) for part in self.raw.strip().split("*"))
        object.__setattr__(self, "_regex", re.compile(rf"(?<!\w){body}", re.IGNORECASE))

    def matches(self, title: str) -> bool:
        """Check a page title against this pattern."""
        return self._regex.search(title or "") is not None


class PatternSet:
    """An ordered list of patterns where the first match wins."""

    def __init__(
        self,
        patterns: Iterable[str],
        pattern_type: Callable[[str], ConversionPattern | TitlePattern] = ConversionPattern,
    ):
        self.patterns = [pattern_type(p) for p in patterns]

    def match(self, value: str) -> ConversionPattern | TitlePattern | None:
        """Return the first pattern matching the path or title, or None."""
        for pattern in self.patterns:
            if pattern.matches(value):
                return pattern
        return None

    def __len__(self) -> int:
        return len(self.patterns)

    def __iter__(self):
        return iter(self.patterns)


def match_first(path: str, patterns: Iterable[str]) -> str | None:
    """Return the raw text of the first pattern matching a path.

    Examples:
        >>> match_first("/confirmation/123", ["/thank-you", "/confirmation/*"])
        '/confirmation/*'
        >>> match_first("/products", ["/thank-you"]) is None
        True
    """
    matched = PatternSet(patterns).match(path)
    return matched.raw if matched is not None else None
