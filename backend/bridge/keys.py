"""
Map key codec.

A map entry's key is `{short id}_{sanitized label}`, e.g.
`ab12cd34_student_will_use_23_word_ph`. The id prefix is the only part used
to resolve a key back to a row, so it must stay long enough to make
collisions negligible inside one scope.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional


MIN_PREFIX_LENGTH = 8

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_UNDERSCORES = re.compile(r"_+$")


def short_id(row_id: Any, length: int = MIN_PREFIX_LENGTH) -> str:
    value = str(row_id or "").strip()
    if not value:
        return "unknown"
    return value[:length].lower()


def sanitize_label(
    label: Optional[str], max_length: int = 20, fallback: str = "unnamed"
) -> str:
    if not label:
        return fallback
    cleaned = _NON_ALNUM.sub("", str(label))
    cleaned = _WHITESPACE.sub("_", cleaned)[:max_length]
    cleaned = _TRAILING_UNDERSCORES.sub("", cleaned).lower()
    return cleaned or fallback


@dataclass(frozen=True)
class MapKeyCodec:
    """Derives keys from rows and extracts the id prefix back out of a key."""

    label_field: str
    id_field: str = "id"
    prefix_length: int = MIN_PREFIX_LENGTH
    label_max_length: int = 20
    fallback: str = "unnamed"

    def __post_init__(self) -> None:
        if self.prefix_length < MIN_PREFIX_LENGTH:
            raise ValueError(
                f"prefix_length must be >= {MIN_PREFIX_LENGTH}, got {self.prefix_length}"
            )

    def derive(self, row: Mapping[str, Any]) -> str:
        row_id = short_id(row.get(self.id_field), self.prefix_length)
        label = sanitize_label(
            row.get(self.label_field), self.label_max_length, self.fallback
        )
        return f"{row_id}_{label}"

    @staticmethod
    def id_prefix(key: str) -> str:
        """Text before the first underscore, lower-cased."""
        return str(key).split("_", 1)[0].strip().lower()

    def matches(self, key: str, row: Mapping[str, Any]) -> bool:
        return self.derive(row) == key
