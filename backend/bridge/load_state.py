"""
Load-state tracking for a partially materialized memory document.

Tracks which paths are materialized (`visible`), the window held for each
collection (`pages`), which paths were invalidated from outside (`stale`),
plus last-known collection totals and load timestamps.

Window policy: a list call whose limit is larger than the recorded one
supersedes it; a smaller or equal one leaves the recorded window in place.
Windows are never unioned, so the recorded window can understate what was
fetched if a caller pages from a non-zero offset first.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from .paths import ROOT, is_same_or_descendant, normalize_path, split_path, join_path


@dataclass(frozen=True)
class Window:
    offset: int
    limit: int

    def to_dict(self) -> Dict[str, int]:
        return {"offset": self.offset, "limit": self.limit}


def _strictly_under(path: str, ancestor: str) -> bool:
    return path != ancestor and is_same_or_descendant(path, ancestor)


class LoadState:
    def __init__(
        self,
        visible: Optional[Iterable[str]] = None,
        pages: Optional[Dict[str, Window]] = None,
        stale: Optional[Iterable[str]] = None,
        totals: Optional[Dict[str, int]] = None,
        loaded_at: Optional[Dict[str, float]] = None,
    ):
        self.visible: Set[str] = set(visible or ())
        self.pages: Dict[str, Window] = dict(pages or {})
        self.stale: Set[str] = set(stale or ())
        self.totals: Dict[str, int] = dict(totals or {})
        self.loaded_at: Dict[str, float] = dict(loaded_at or {})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_visible(self, path: str) -> bool:
        return normalize_path(path) in self.visible

    def is_stale(self, path: str) -> bool:
        return normalize_path(path) in self.stale

    def window(self, path: str) -> Optional[Window]:
        return self.pages.get(normalize_path(path))

    def total(self, path: str) -> Optional[int]:
        return self.totals.get(normalize_path(path))

    def needs_loading(self, path: str) -> bool:
        normalized = normalize_path(path)
        return normalized not in self.visible or normalized in self.stale

    # ------------------------------------------------------------------
    # Mutations driven by the dispatcher
    # ------------------------------------------------------------------

    def mark_visible(self, path: str, total: Optional[int] = None) -> None:
        normalized = normalize_path(path)
        self.visible.add(normalized)
        self.stale.discard(normalized)
        self.loaded_at[normalized] = time.time()
        if total is not None:
            self.totals[normalized] = total

    def record_window(self, path: str, window: Window) -> Tuple[Window, bool]:
        """Record a served window; returns (held window, whether it was replaced)."""
        normalized = normalize_path(path)
        current = self.pages.get(normalized)
        if current is None or window.limit > current.limit:
            self.pages[normalized] = window
            return window, True
        return current, False

    def set_window(self, path: str, window: Window) -> None:
        self.pages[normalize_path(path)] = window

    def adjust_total(self, path: str, delta: int) -> None:
        normalized = normalize_path(path)
        if normalized in self.totals:
            self.totals[normalized] = max(0, self.totals[normalized] + delta)

    def invalidate(self, path: str, include_descendants: bool = False) -> None:
        """External invalidation: the only way a path becomes stale."""
        normalized = normalize_path(path)
        self.stale.add(normalized)
        if include_descendants:
            for loaded in list(self.visible):
                if _strictly_under(loaded, normalized):
                    self.stale.add(loaded)

    def forget(self, path: str) -> None:
        """Drop all bookkeeping for a path and everything below it."""
        normalized = normalize_path(path)
        if normalized == ROOT:
            self.clear()
            return
        self._drop(lambda candidate: is_same_or_descendant(candidate, normalized))

    def forget_descendants(self, path: str) -> None:
        normalized = normalize_path(path)
        self._drop(lambda candidate: _strictly_under(candidate, normalized))

    def clear(self) -> None:
        self.visible.clear()
        self.pages.clear()
        self.stale.clear()
        self.totals.clear()
        self.loaded_at.clear()

    def move(self, old_path: str, new_path: str) -> None:
        """Re-key bookkeeping after a map entry changed its key."""
        old = normalize_path(old_path)
        new = normalize_path(new_path)
        self.forget(new)

        def _rewrite(candidate: str) -> str:
            if is_same_or_descendant(candidate, old):
                return new + candidate[len(old):]
            return candidate

        self._rewrite_all(_rewrite)

    def shift_indices(self, collection_path: str, start: int, delta: int) -> None:
        """Renumber tracked item paths at or after `start` by `delta`."""
        collection = normalize_path(collection_path)
        depth = len(split_path(collection))

        def _rewrite(candidate: str) -> str:
            if not _strictly_under(candidate, collection):
                return candidate
            tokens = split_path(candidate)
            token = tokens[depth]
            if not token.isdigit() or int(token) < start:
                return candidate
            tokens[depth] = str(int(token) + delta)
            return join_path(tokens)

        self._rewrite_all(_rewrite)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visible": sorted(self.visible),
            "page": {path: window.to_dict() for path, window in sorted(self.pages.items())},
            "stale": sorted(self.stale),
            "totals": dict(sorted(self.totals.items())),
            "loadedAt": dict(sorted(self.loaded_at.items())),
        }

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> "LoadState":
        data = payload or {}
        pages = {
            normalize_path(path): Window(
                offset=int(window.get("offset", 0)), limit=int(window.get("limit", 0))
            )
            for path, window in (data.get("page") or {}).items()
        }
        return cls(
            visible=(normalize_path(p) for p in data.get("visible") or ()),
            pages=pages,
            stale=(normalize_path(p) for p in data.get("stale") or ()),
            totals={normalize_path(p): int(v) for p, v in (data.get("totals") or {}).items()},
            loaded_at={
                normalize_path(p): float(v) for p, v in (data.get("loadedAt") or {}).items()
            },
        )

    def copy(self) -> "LoadState":
        return LoadState(
            visible=self.visible,
            pages=self.pages,
            stale=self.stale,
            totals=self.totals,
            loaded_at=self.loaded_at,
        )

    # ------------------------------------------------------------------

    def _drop(self, predicate) -> None:
        self.visible = {p for p in self.visible if not predicate(p)}
        self.stale = {p for p in self.stale if not predicate(p)}
        self.pages = {p: w for p, w in self.pages.items() if not predicate(p)}
        self.totals = {p: t for p, t in self.totals.items() if not predicate(p)}
        self.loaded_at = {p: t for p, t in self.loaded_at.items() if not predicate(p)}

    def _rewrite_all(self, rewrite) -> None:
        self.visible = {rewrite(p) for p in self.visible}
        self.stale = {rewrite(p) for p in self.stale}
        self.pages = {rewrite(p): w for p, w in self.pages.items()}
        self.totals = {rewrite(p): t for p, t in self.totals.items()}
        self.loaded_at = {rewrite(p): t for p, t in self.loaded_at.items()}

    def __repr__(self) -> str:
        return (
            f"LoadState(visible={len(self.visible)}, pages={len(self.pages)}, "
            f"stale={len(self.stale)})"
        )
