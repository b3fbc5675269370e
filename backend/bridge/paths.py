"""
Path grammar for the memory document.

`/` is the root. Every other path is `/` followed by `/`-separated tokens.
Tokens are escaped the JSON-Pointer way (`~0` for `~`, `~1` for `/`) so map
keys may contain either character.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Union


ROOT = "/"


@dataclass(frozen=True)
class FieldSegment:
    """Object property or collection field name."""

    name: str


@dataclass(frozen=True)
class IndexSegment:
    """Position inside an array collection."""

    index: int


@dataclass(frozen=True)
class KeySegment:
    """Entry key inside a map collection."""

    key: str


Segment = Union[FieldSegment, IndexSegment, KeySegment]


def escape_token(token: Union[str, int]) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def unescape_token(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def normalize_path(path: Optional[str]) -> str:
    """Trim, collapse duplicate slashes and drop the trailing slash."""
    raw = (path or "").strip()
    if not raw or raw == ROOT:
        return ROOT
    tokens = [part for part in raw.split("/") if part]
    if not tokens:
        return ROOT
    return ROOT + "/".join(tokens)


def split_path(path: Optional[str]) -> List[str]:
    """Return the unescaped tokens of a path."""
    normalized = normalize_path(path)
    if normalized == ROOT:
        return []
    return [unescape_token(part) for part in normalized[1:].split("/")]


def join_path(tokens: Iterable[Union[str, int]]) -> str:
    escaped = [escape_token(token) for token in tokens]
    if not escaped:
        return ROOT
    return ROOT + "/".join(escaped)


def child_path(parent: str, token: Union[str, int]) -> str:
    base = normalize_path(parent)
    if base == ROOT:
        return ROOT + escape_token(token)
    return f"{base}/{escape_token(token)}"


def parent_path(path: str) -> str:
    tokens = split_path(path)
    return join_path(tokens[:-1])


def is_same_or_descendant(path: str, ancestor: str) -> bool:
    candidate = normalize_path(path)
    base = normalize_path(ancestor)
    if base == ROOT or candidate == base:
        return True
    return candidate.startswith(base + "/")
