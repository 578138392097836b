# File: restgen/utils.py
"""
NexaFlow RestGen - Utility Functions & Helpers
================================================
String transformation, path canonicalisation and option-merging helpers
used throughout route assembly and request execution.

Performance strategy:
- ALL string-conversion functions are decorated with ``@lru_cache(maxsize=None)``
  so the repeated calls made while assembling routers for every model are
  amortised to O(1) after first invocation.
- ``canonicalize_path`` is the single shared rule for comparing custom router
  paths against generated ones.
"""

from __future__ import annotations

import copy
import functools
import logging
import re
import time
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.utils")

# ---------------------------------------------------------------------------
# Pre-compiled regex patterns (compiled once at module load)
# ---------------------------------------------------------------------------

_CAMEL_TO_SNAKE_RE1: re.Pattern[str] = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL_TO_SNAKE_RE2: re.Pattern[str] = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALPHANUM_RE: re.Pattern[str] = re.compile(r"[^a-zA-Z0-9]")
_MULTI_UNDERSCORE_RE: re.Pattern[str] = re.compile(r"_{2,}")
_LEADING_TRAILING_UNDERSCORE_RE: re.Pattern[str] = re.compile(r"^_+|_+$")
_SPLIT_WORDS_RE: re.Pattern[str] = re.compile(
    r"[A-Z]?[a-z]+|[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z]|\d+"
)
_MULTI_SLASH_RE: re.Pattern[str] = re.compile(r"/{2,}")
_PATH_PARAM_RE: re.Pattern[str] = re.compile(r"^(:[A-Za-z_][A-Za-z0-9_]*|\{[^/{}]+\})$")

# Irregular nouns commonly found in data models
_IRREGULAR_PLURALS: Dict[str, str] = {
    "person": "people",
    "child": "children",
    "man": "men",
    "woman": "women",
    "mouse": "mice",
    "goose": "geese",
    "tooth": "teeth",
    "foot": "feet",
    "datum": "data",
    "index": "indices",
    "matrix": "matrices",
    "vertex": "vertices",
    "axis": "axes",
    "crisis": "crises",
    "analysis": "analyses",
    "status": "statuses",
    "address": "addresses",
}

# Nouns that do not change between singular and plural
_UNCOUNTABLE: FrozenSet[str] = frozenset({
    "information", "equipment", "news", "series", "species", "media",
    "metadata", "feedback", "software", "data",
})


# ---------------------------------------------------------------------------
# Cached string transformation functions
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=None)
def _extract_words(name: str) -> Tuple[str, ...]:
    """
    Extract individual words from any casing style.

    Returns a tuple (hashable for LRU cache) of lowercase word strings.
    """
    cleaned: str = _NON_ALPHANUM_RE.sub(" ", name)
    words: List[str] = _SPLIT_WORDS_RE.findall(cleaned)
    return tuple(w.lower() for w in words if w)


@functools.lru_cache(maxsize=None)
def to_snake_case(name: str) -> str:
    """
    Convert any string to snake_case.

    Examples:
        >>> to_snake_case("UserProfile")
        'user_profile'
        >>> to_snake_case("auth-action")
        'auth_action'
    """
    if not name:
        return ""
    s: str = _CAMEL_TO_SNAKE_RE1.sub(r"\1_\2", name)
    s = _CAMEL_TO_SNAKE_RE2.sub(r"\1_\2", s)
    s = _NON_ALPHANUM_RE.sub("_", s)
    s = _MULTI_UNDERSCORE_RE.sub("_", s)
    s = _LEADING_TRAILING_UNDERSCORE_RE.sub("", s)
    return s.lower()


@functools.lru_cache(maxsize=None)
def to_pascal_case(name: str) -> str:
    """
    Convert any string to PascalCase.

    Examples:
        >>> to_pascal_case("order-item")
        'OrderItem'
        >>> to_pascal_case("user_profile")
        'UserProfile'
    """
    if not name:
        return ""
    return "".join(word.capitalize() for word in _extract_words(name))


@functools.lru_cache(maxsize=None)
def to_camel_case(name: str) -> str:
    """
    Convert any string to camelCase.

    Examples:
        >>> to_camel_case("order-item")
        'orderItem'
    """
    words: Tuple[str, ...] = _extract_words(name) if name else ()
    if not words:
        return ""
    return words[0] + "".join(w.capitalize() for w in words[1:])


@functools.lru_cache(maxsize=None)
def to_kebab_case(name: str) -> str:
    """Convert any string to kebab-case (used in URL paths and resource names)."""
    if not name:
        return ""
    return "-".join(_extract_words(name))


@functools.lru_cache(maxsize=None)
def to_plural(name: str) -> str:
    """
    Naive English pluralisation sufficient for route naming.

    Only the last word of a kebab/snake name is pluralised, so
    ``order-item`` becomes ``order-items``.
    """
    if not name:
        return ""

    match = re.search(r"([A-Za-z]+)$", name)
    if match is None:
        return name
    head: str = name[: match.start()]
    word: str = match.group(1)
    lower: str = word.lower()

    if lower in _UNCOUNTABLE:
        return name

    if lower in _IRREGULAR_PLURALS:
        plural: str = _IRREGULAR_PLURALS[lower]
        if word[0].isupper():
            plural = plural[0].upper() + plural[1:]
        return head + plural

    if lower in _IRREGULAR_PLURALS.values():
        return name

    if lower.endswith(("sh", "ch", "x", "z", "ss")):
        return head + word + "es"
    if lower.endswith("s"):
        return name
    if lower.endswith("y") and len(word) > 1 and lower[-2] not in "aeiou":
        return head + word[:-1] + "ies"
    if lower.endswith("fe"):
        return head + word[:-2] + "ves"
    if lower.endswith("f") and not lower.endswith("ff"):
        return head + word[:-1] + "ves"
    if lower.endswith("o") and len(word) > 1 and lower[-2] not in "aeiou":
        return head + word + "es"

    return head + word + "s"


@functools.lru_cache(maxsize=None)
def model_to_route_name(model_name: str) -> str:
    """Convert a model name to its collection route segment (kebab, plural)."""
    return to_plural(to_kebab_case(model_name))


# ---------------------------------------------------------------------------
# Path canonicalisation
# ---------------------------------------------------------------------------


def canonicalize_path(path: str) -> str:
    """
    Reduce a route path to a comparable canonical form.

    Rules, applied in order:
        - repeated slashes collapse to one
        - leading and trailing slashes are dropped
        - a leading ``api`` segment is dropped
        - ``:param`` and ``{param}`` segments both become ``{}``

    Examples:
        >>> canonicalize_path("/api/users/:id/")
        'users/{}'
        >>> canonicalize_path("users/{user_id}")
        'users/{}'
    """
    collapsed: str = _MULTI_SLASH_RE.sub("/", path or "").strip("/")
    segments: List[str] = [s for s in collapsed.split("/") if s]
    if segments and segments[0] == "api":
        segments = segments[1:]
    return "/".join("{}" if _PATH_PARAM_RE.match(s) else s for s in segments)


def join_paths(*parts: str) -> str:
    """Join URL path fragments with exactly one slash between them."""
    joined: str = "/".join(p.strip("/") for p in parts if p and p.strip("/"))
    return "/" + joined


# ---------------------------------------------------------------------------
# Option merging
# ---------------------------------------------------------------------------


def deep_merge(*layers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge option mappings left to right; later layers win.

    Nested mappings merge recursively, every other value (lists included)
    is replaced.  Inputs are never mutated.
    """
    result: Dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            existing = result.get(key)
            if isinstance(existing, dict) and isinstance(value, Mapping):
                result[key] = deep_merge(existing, value)
            else:
                result[key] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Timer context manager
# ---------------------------------------------------------------------------


class Timer:
    """
    Simple context-manager timer for profiling assembly steps.

    Usage:
        with Timer("assemble routers") as t:
            ...
        print(t.elapsed)
    """

    __slots__ = ("label", "start_time", "end_time", "elapsed")

    def __init__(self, label: str = "operation") -> None:
        self.label: str = label
        self.start_time: float = 0.0
        self.end_time: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        self.end_time = time.perf_counter()
        self.elapsed = self.end_time - self.start_time
        logger.info("Timer [%s]: %.4f seconds", self.label, self.elapsed)

    def __repr__(self) -> str:
        return f"<Timer {self.label}: {self.elapsed:.4f}s>"


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "to_snake_case",
    "to_pascal_case",
    "to_camel_case",
    "to_kebab_case",
    "to_plural",
    "model_to_route_name",
    "canonicalize_path",
    "join_paths",
    "deep_merge",
    "Timer",
]

logger.debug("restgen.utils loaded: %d public symbols.", len(__all__))
