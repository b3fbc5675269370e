"""
Operation dispatcher.

Resolves one path against the field schema and the current document,
builds the operation context on the way down, calls the bound operation
set and merges the outcome back into the document and load state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .context import OperationContext
from .document import Token, delete_at, get_at, insert_at, merge_preserving_children, set_at
from .errors import (
    BridgeError,
    InvalidOperationError,
    NotFoundError,
    StoreError,
    UnsupportedOperationError,
)
from .load_state import LoadState, Window
from .paths import ROOT, FieldSegment, IndexSegment, KeySegment, Segment, child_path, normalize_path
from .schema import (
    Adder,
    ArrayField,
    Clearer,
    Deleter,
    FieldNode,
    FieldRegistry,
    Getter,
    KeyDeriver,
    Lister,
    Locator,
    MapField,
    ObjectField,
    Page,
    Reader,
    Renamer,
    Updater,
    Upserter,
    Writer,
    context_contribution,
    is_collection,
)

logger = logging.getLogger(__name__)

READ_ACTIONS = {"view", "hide"}
WRITE_ACTIONS = {"set", "update", "upsert", "add", "insert", "delete", "clear", "rename"}
ACTIONS = READ_ACTIONS | WRITE_ACTIONS


# =============================================================================
# Resolution
# =============================================================================


@dataclass
class ResolvedNode:
    path: str
    node: FieldNode
    ctx: OperationContext
    child_ctx: OperationContext
    location: Optional[List[Token]]
    value: Any
    segment: Optional[Segment] = None
    unbound: bool = False

    @property
    def is_item(self) -> bool:
        return isinstance(self.segment, (IndexSegment, KeySegment))

    @property
    def locator(self) -> Optional[Locator]:
        if isinstance(self.segment, IndexSegment):
            return self.segment.index
        if isinstance(self.segment, KeySegment):
            return self.segment.key
        return None


def _array_position(
    load_state: LoadState, collection_path: str, items: Any, index: int
) -> Optional[int]:
    if not isinstance(items, list):
        return None
    window = load_state.window(collection_path)
    position = index - (window.offset if window else 0)
    if 0 <= position < len(items) and items[position] is not None:
        return position
    return None


def resolve_path(
    registry: FieldRegistry,
    document: Dict[str, Any],
    load_state: LoadState,
    path: str,
    base_context: Optional[Dict[str, Any]] = None,
) -> List[ResolvedNode]:
    """
    Walk `path` from the root and return one resolved node per segment,
    root first. Context is only extracted from values that are present in
    the document; an unmaterialized ancestor contributes nothing.
    """
    root_ctx = OperationContext.root(base_context)
    chain = [
        ResolvedNode(
            path=ROOT,
            node=registry.root,
            ctx=root_ctx,
            child_ctx=root_ctx,
            location=[],
            value=document,
        )
    ]
    for bound in registry.bind(path):
        parent = chain[-1]
        segment = bound.segment
        if isinstance(segment, FieldSegment):
            ctx = parent.child_ctx.at(bound.path)
            present = isinstance(parent.value, dict)
            value = parent.value.get(segment.name) if present else None
            location = (
                parent.location + [segment.name]
                if present and parent.location is not None
                else None
            )
            child_ctx = ctx
            if isinstance(bound.node, ObjectField):
                contribution = context_contribution(bound.node.ops, value)
                if contribution is not None:
                    child_ctx = ctx.descend(contribution, bound.path)
        else:
            if isinstance(segment, IndexSegment):
                locator: Locator = segment.index
                position = _array_position(load_state, parent.path, parent.value, locator)
                raw: Optional[Token] = position
                value = parent.value[position] if position is not None else None
            else:
                locator = segment.key
                raw = locator if isinstance(parent.value, dict) and locator in parent.value else None
                value = parent.value.get(locator) if raw is not None else None
            ctx = parent.ctx.at(bound.path, locator)
            location = (
                parent.location + [raw]
                if raw is not None and parent.location is not None
                else None
            )
            contribution = context_contribution(parent.node.ops, value, locator)
            child_ctx = (
                ctx.descend(contribution, bound.path, locator)
                if contribution is not None
                else ctx
            )
        chain.append(
            ResolvedNode(
                path=bound.path,
                node=bound.node,
                ctx=ctx,
                child_ctx=child_ctx,
                location=location,
                value=value,
                segment=segment,
                unbound=bound.unbound,
            )
        )
    return chain


# =============================================================================
# Dispatch
# =============================================================================


@dataclass
class DispatchOutcome:
    value: Any = None
    key: Optional[str] = None
    new_path: Optional[str] = None
    total: Optional[int] = None
    materialized: bool = True
    mutated_paths: List[str] = field(default_factory=list)


class Dispatcher:
    """Applies single operations against one document/load-state pair."""

    def __init__(
        self,
        registry: FieldRegistry,
        document: Dict[str, Any],
        load_state: LoadState,
        base_context: Optional[Dict[str, Any]] = None,
        default_limit: int = 50,
        max_limit: int = 200,
    ):
        self.registry = registry
        self.document = document
        self.load_state = load_state
        self.base_context = dict(base_context or {})
        self.default_limit = default_limit
        self.max_limit = max_limit

    def resolve(self, path: str) -> List[ResolvedNode]:
        return resolve_path(
            self.registry, self.document, self.load_state, path, self.base_context
        )

    async def dispatch(
        self,
        action: str,
        path: str,
        value: Any = None,
        *,
        key: Optional[str] = None,
        new_key: Optional[str] = None,
        index: Optional[int] = None,
        page: Optional[Page] = None,
    ) -> DispatchOutcome:
        if action not in ACTIONS:
            raise InvalidOperationError(f"Unknown action '{action}'")
        path = normalize_path(path)
        chain = self.resolve(path)
        try:
            if action == "view":
                return await self._view(chain, page)
            if action == "hide":
                return self._hide(chain)
            if action in ("set", "update"):
                return await self._set(chain, value, action)
            if action == "upsert":
                return await self._upsert(chain, value, key)
            if action in ("add", "insert"):
                return await self._add(chain, value, action, key=key, index=index)
            if action == "delete":
                return await self._delete(chain)
            if action == "clear":
                return await self._clear(chain)
            return await self._rename(chain, new_key or key)
        except BridgeError:
            raise
        except Exception as exc:
            logger.exception("Store call failed for %s %s", action, path)
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    # ------------------------------------------------------------------
    # view / hide
    # ------------------------------------------------------------------

    async def _view(self, chain: List[ResolvedNode], page: Optional[Page]) -> DispatchOutcome:
        target = chain[-1]
        if target.path == ROOT:
            return DispatchOutcome(value=self.document)
        if is_collection(target.node):
            return await self._list(target, page or Page(0, self.default_limit))
        if target.is_item:
            return await self._fetch_item(chain)
        if isinstance(target.node, ObjectField) and target.node.ops is not None:
            return await self._read_object(target)
        return await self._view_field(chain)

    async def _list(self, target: ResolvedNode, page: Page) -> DispatchOutcome:
        ops = target.node.ops
        if not isinstance(ops, Lister):
            raise UnsupportedOperationError("view", target.path, "no list operation")
        if page.limit > self.max_limit:
            page = Page(page.offset, self.max_limit)
        result = await ops.list(target.ctx, page)
        items = list(result.items)
        if isinstance(target.node, MapField):
            keys = result.keys or [self._derive_key(ops, item, target.path) for item in items]
            value: Any = dict(zip(keys, items))
        else:
            value = items

        if target.location is None:
            return DispatchOutcome(value=value, total=result.total, materialized=False)

        requested = Window(page.offset, page.limit)
        previous_window = self.load_state.window(target.path)
        existing = get_at(self.document, target.location)
        if existing is None or self.load_state.is_stale(target.path):
            self.load_state.set_window(target.path, requested)
            replaced = True
        else:
            _, replaced = self.load_state.record_window(target.path, requested)

        if isinstance(target.node, MapField):
            self._store_map_window(target, existing, value, replaced)
        else:
            self._store_array_window(
                target, existing, items, requested, previous_window, replaced
            )
        self.load_state.mark_visible(target.path, total=result.total)
        return DispatchOutcome(value=value, total=result.total, mutated_paths=[target.path])

    def _store_array_window(
        self,
        target: ResolvedNode,
        existing: Any,
        items: List[Any],
        requested: Window,
        previous_window: Optional[Window],
        replaced: bool,
    ) -> None:
        previous = existing if isinstance(existing, list) else []
        same_offset = previous_window is not None and previous_window.offset == requested.offset
        if replaced and not same_offset:
            self.load_state.forget_descendants(target.path)
            set_at(self.document, target.location, list(items), merge=False)
            return
        if not same_offset:
            # The held window stays; a page placed elsewhere is only returned.
            return

        refreshed = list(previous) if replaced else previous
        for position, item in enumerate(items):
            if position >= len(refreshed):
                if not replaced:
                    break
                refreshed.append(item)
                continue
            old = refreshed[position]
            if _same_identity(old, item):
                refreshed[position] = merge_preserving_children(old, item)
            else:
                self.load_state.forget(child_path(target.path, requested.offset + position))
                refreshed[position] = item
        if replaced:
            for position in range(len(items), len(refreshed)):
                self.load_state.forget(child_path(target.path, requested.offset + position))
            del refreshed[len(items):]
            set_at(self.document, target.location, refreshed, merge=False)

    def _store_map_window(
        self, target: ResolvedNode, existing: Any, entries: Dict[str, Any], replaced: bool
    ) -> None:
        previous = existing if isinstance(existing, dict) else {}
        if replaced:
            for stale_key in set(previous) - set(entries):
                self.load_state.forget(child_path(target.path, stale_key))
            merged = {
                key: merge_preserving_children(previous.get(key), item)
                for key, item in entries.items()
            }
            set_at(self.document, target.location, merged, merge=False)
            return
        for key, item in entries.items():
            previous[key] = merge_preserving_children(previous.get(key), item)
        if not isinstance(existing, dict):
            set_at(self.document, target.location, previous, merge=False)

    async def _read_object(self, target: ResolvedNode) -> DispatchOutcome:
        ops = target.node.ops
        if not isinstance(ops, Reader):
            raise UnsupportedOperationError("view", target.path, "no read operation")
        value = await ops.read(target.ctx)
        if target.location is None:
            return DispatchOutcome(value=value, materialized=False)
        if value is None:
            if delete_at(self.document, target.location):
                self.load_state.forget(target.path)
            return DispatchOutcome(value=None)
        set_at(self.document, target.location, value, merge=True)
        self.load_state.mark_visible(target.path)
        return DispatchOutcome(value=get_at(self.document, target.location))

    async def _fetch_item(self, chain: List[ResolvedNode]) -> DispatchOutcome:
        target, collection = chain[-1], chain[-2]
        ops = collection.node.ops
        locator = target.locator
        if isinstance(ops, Getter):
            item = await ops.get(target.ctx, locator)
        elif isinstance(ops, Lister) and isinstance(locator, int):
            result = await ops.list(collection.ctx, Page(locator, 1))
            item = result.items[0] if result.items else None
        else:
            raise UnsupportedOperationError("view", target.path, "no get operation")
        if item is None:
            raise NotFoundError(collection.path, locator)
        placed = self._place_item(collection, locator, item)
        return DispatchOutcome(
            value=item,
            key=locator if isinstance(locator, str) else None,
            materialized=placed is not None,
        )

    def _place_item(
        self, collection: ResolvedNode, locator: Locator, item: Any
    ) -> Optional[str]:
        """Put a fetched or updated item into the document; returns its path."""
        if collection.location is None:
            return None
        item_path = child_path(collection.path, locator)
        current = get_at(self.document, collection.location)
        if isinstance(collection.node, MapField):
            if current is not None and not isinstance(current, dict):
                return None
            set_at(self.document, collection.location + [locator], item, merge=True)
            self.load_state.mark_visible(item_path)
            return item_path

        window = self.load_state.window(collection.path)
        if not isinstance(current, list) or window is None:
            set_at(self.document, collection.location, [item], merge=False)
            self.load_state.set_window(collection.path, Window(locator, 1))
            self.load_state.mark_visible(collection.path)
            self.load_state.mark_visible(item_path)
            return item_path
        position = locator - window.offset
        if 0 <= position < len(current):
            current[position] = merge_preserving_children(current[position], item)
        elif position == len(current):
            current.append(item)
            self.load_state.set_window(
                collection.path, Window(window.offset, max(window.limit, len(current)))
            )
        else:
            return None
        self.load_state.mark_visible(item_path)
        return item_path

    async def _view_field(self, chain: List[ResolvedNode]) -> DispatchOutcome:
        target = chain[-1]
        owner_index = self._owner_record_index(chain)
        if owner_index is None:
            return DispatchOutcome(value=target.value)
        owner = chain[owner_index]
        if owner.location is None or self.load_state.needs_loading(owner.path):
            await self._view(chain[: owner_index + 1], None)
            target = self.resolve(target.path)[-1]
        return DispatchOutcome(value=target.value, materialized=target.location is not None)

    def _hide(self, chain: List[ResolvedNode]) -> DispatchOutcome:
        target = chain[-1]
        if target.path == ROOT:
            self.document.clear()
            self.load_state.clear()
            return DispatchOutcome(mutated_paths=[ROOT])
        if target.location is not None:
            delete_at(self.document, target.location)
        self.load_state.forget(target.path)
        return DispatchOutcome(mutated_paths=[target.path])

    # ------------------------------------------------------------------
    # set / update / upsert
    # ------------------------------------------------------------------

    async def _set(self, chain: List[ResolvedNode], value: Any, action: str) -> DispatchOutcome:
        target = chain[-1]
        if target.path == ROOT or is_collection(target.node):
            raise InvalidOperationError(
                f"'{action}' needs an object, item or field path; "
                f"use add/clear on collection '{target.path}'"
            )
        if target.is_item:
            return await self._update_item(chain, _require_mapping(value, action), action)
        if isinstance(target.node, ObjectField) and target.node.ops is not None:
            partial = _require_mapping(value, action)
            if action == "update":
                current = await self._current_object(target)
                partial = _deep_merge(_record_fields(target.node, current), partial)
            return await self._write_object(target, partial)
        return await self._set_field(chain, value, action)

    async def _write_object(self, target: ResolvedNode, value: Dict[str, Any]) -> DispatchOutcome:
        ops = target.node.ops
        if not isinstance(ops, Writer):
            raise UnsupportedOperationError("set", target.path, "no write operation")
        await ops.write(target.ctx, value)
        stored: Any = value
        if isinstance(ops, Reader):
            stored = await ops.read(target.ctx)
            if stored is None:
                stored = value
        if target.location is not None:
            set_at(self.document, target.location, stored, merge=True)
            self.load_state.mark_visible(target.path)
            stored = get_at(self.document, target.location)
        return DispatchOutcome(
            value=stored,
            materialized=target.location is not None,
            mutated_paths=[target.path],
        )

    async def _current_object(self, target: ResolvedNode) -> Dict[str, Any]:
        if target.value is not None and not self.load_state.needs_loading(target.path):
            return dict(target.value)
        ops = target.node.ops
        if isinstance(ops, Reader):
            current = await ops.read(target.ctx)
            return dict(current or {})
        return dict(target.value or {})

    async def _update_item(
        self, chain: List[ResolvedNode], partial: Dict[str, Any], action: str
    ) -> DispatchOutcome:
        target, collection = chain[-1], chain[-2]
        ops = collection.node.ops
        if not isinstance(ops, Updater):
            raise UnsupportedOperationError(action, target.path, "no update operation")
        updated = await ops.update(target.ctx, target.locator, partial)
        return self._settle_item(collection, target, updated)

    def _settle_item(
        self, collection: ResolvedNode, target: ResolvedNode, item: Any
    ) -> DispatchOutcome:
        """Merge an updated item back, re-keying map entries whose key changed."""
        locator = target.locator
        outcome = DispatchOutcome(value=item, mutated_paths=[target.path])
        if isinstance(collection.node, MapField):
            new_key = locator
            if isinstance(collection.node.ops, KeyDeriver) and item is not None:
                new_key = collection.node.ops.get_db_key(item)
            outcome.key = new_key
            if new_key != locator:
                new_path = child_path(collection.path, new_key)
                outcome.new_path = new_path
                outcome.mutated_paths.append(new_path)
                self._move_map_entry(collection, locator, new_key)
            entries = (
                get_at(self.document, collection.location)
                if collection.location is not None
                else None
            )
            placed = (
                self._place_item(collection, new_key, item)
                if item is not None and isinstance(entries, dict)
                else None
            )
        else:
            placed = (
                self._place_item(collection, locator, item)
                if item is not None and target.location is not None
                else None
            )
        outcome.materialized = placed is not None
        return outcome

    def _move_map_entry(self, collection: ResolvedNode, old_key: str, new_key: str) -> None:
        old_path = child_path(collection.path, old_key)
        new_path = child_path(collection.path, new_key)
        if collection.location is not None:
            entries = get_at(self.document, collection.location)
            if isinstance(entries, dict) and old_key in entries:
                entries[new_key] = entries.pop(old_key)
        self.load_state.move(old_path, new_path)

    async def _set_field(
        self, chain: List[ResolvedNode], value: Any, action: str
    ) -> DispatchOutcome:
        target = chain[-1]
        owner_index = self._owner_record_index(chain)
        if owner_index is None:
            if target.location is None:
                raise NotFoundError(target.path, target.path)
            set_at(self.document, target.location, value, merge=False)
            return DispatchOutcome(value=value, mutated_paths=[target.path])

        owner = chain[owner_index]
        names = [
            node.segment.name
            for node in chain[owner_index + 1 :]
            if isinstance(node.segment, FieldSegment)
        ]
        partial: Dict[str, Any] = _nest(names, value)
        if owner.is_item:
            outcome = await self._update_item(chain[: owner_index + 1], partial, action)
        else:
            current = await self._current_object(owner)
            outcome = await self._write_object(
                owner, _deep_merge(_record_fields(owner.node, current), partial)
            )
        outcome.mutated_paths.append(target.path)
        return outcome

    async def _upsert(
        self, chain: List[ResolvedNode], value: Any, key: Optional[str]
    ) -> DispatchOutcome:
        target = chain[-1]
        if isinstance(target.node, MapField) and key:
            chain = self.resolve(child_path(target.path, key))
            target = chain[-1]
        if isinstance(target.node, ObjectField) and target.node.ops is not None and not target.is_item:
            return await self._write_object(target, _require_mapping(value, "upsert"))
        if not target.is_item:
            raise InvalidOperationError(
                f"'upsert' needs a map entry path or a map path with 'key', got '{target.path}'"
            )
        collection = chain[-2]
        ops = collection.node.ops
        if isinstance(ops, Upserter) and isinstance(target.locator, str):
            existed = target.value is not None
            if not existed and isinstance(ops, Getter):
                existed = await ops.get(target.ctx, target.locator) is not None
            item = await ops.upsert(target.ctx, _require_mapping(value, "upsert"), target.locator)
            outcome = self._settle_item(collection, target, item)
            if not existed:
                self.load_state.adjust_total(collection.path, 1)
                outcome.mutated_paths.insert(0, collection.path)
            return outcome
        if isinstance(collection.node, MapField) and isinstance(ops, Getter):
            existing = await ops.get(target.ctx, target.locator)
            if existing is not None:
                return await self._update_item(chain, _require_mapping(value, "upsert"), "upsert")
            return await self._add(chain, value, "add", key=target.locator, index=None)
        raise UnsupportedOperationError("upsert", target.path, "no upsert operation")

    # ------------------------------------------------------------------
    # add / insert
    # ------------------------------------------------------------------

    async def _add(
        self,
        chain: List[ResolvedNode],
        value: Any,
        action: str,
        *,
        key: Optional[str],
        index: Optional[int],
    ) -> DispatchOutcome:
        target = chain[-1]
        if target.is_item:
            collection = chain[-2]
            if isinstance(target.segment, IndexSegment):
                index = target.segment.index
            else:
                key = target.segment.key
        elif is_collection(target.node):
            collection = target
        else:
            raise InvalidOperationError(f"'{action}' needs a collection path, got '{target.path}'")

        is_array = isinstance(collection.node, ArrayField)
        if action == "insert" and is_array and index is None:
            raise InvalidOperationError("'insert' on an array requires 'index'")
        if index is not None and index < 0:
            raise InvalidOperationError("'index' must be >= 0")
        ops = collection.node.ops
        if not isinstance(ops, Adder):
            raise UnsupportedOperationError(action, collection.path, "no add operation")

        if is_array:
            item = await ops.add(collection.ctx, value, index=index)
            return self._settle_added_array_item(collection, item, index)

        item = await ops.add(collection.ctx, value, key=key)
        if isinstance(ops, KeyDeriver):
            item_key = ops.get_db_key(item)
        elif key:
            item_key = key
        else:
            raise InvalidOperationError(f"'{action}' on map '{collection.path}' requires 'key'")
        self.load_state.adjust_total(collection.path, 1)
        item_path = child_path(collection.path, item_key)
        placed = self._place_item(collection, item_key, item)
        return DispatchOutcome(
            value=item,
            key=item_key,
            new_path=item_path,
            materialized=placed is not None,
            mutated_paths=[collection.path, item_path],
        )

    def _settle_added_array_item(
        self, collection: ResolvedNode, item: Any, index: Optional[int]
    ) -> DispatchOutcome:
        total_before = self.load_state.total(collection.path)
        window = self.load_state.window(collection.path)
        current = get_at(self.document, collection.location) if collection.location else None
        self.load_state.adjust_total(collection.path, 1)

        position_index = index if index is not None else total_before
        outcome = DispatchOutcome(value=item, mutated_paths=[collection.path], materialized=False)
        if position_index is None:
            return outcome
        if total_before is not None and position_index > total_before:
            position_index = total_before
        item_path = child_path(collection.path, position_index)
        outcome.new_path = item_path
        if not isinstance(current, list) or window is None:
            return outcome

        position = position_index - window.offset
        if position < 0:
            # Every held position shifted; drop the window instead of guessing.
            delete_at(self.document, collection.location)
            self.load_state.forget(collection.path)
            return outcome
        if position > len(current):
            return outcome
        if index is not None:
            self.load_state.shift_indices(collection.path, position_index, 1)
        insert_at(self.document, collection.location + [position], item)
        self.load_state.set_window(
            collection.path, Window(window.offset, max(window.limit, len(current)))
        )
        self.load_state.mark_visible(item_path)
        outcome.materialized = True
        return outcome

    # ------------------------------------------------------------------
    # delete / clear / rename
    # ------------------------------------------------------------------

    async def _delete(self, chain: List[ResolvedNode]) -> DispatchOutcome:
        target = chain[-1]
        if not target.is_item:
            raise InvalidOperationError(
                f"'delete' needs an array index or map key path, got '{target.path}'"
            )
        collection = chain[-2]
        ops = collection.node.ops
        if not isinstance(ops, Deleter):
            raise UnsupportedOperationError("delete", target.path, "no delete operation")
        await ops.delete(target.ctx, target.locator)
        self.load_state.adjust_total(collection.path, -1)
        self.load_state.forget(target.path)

        if isinstance(collection.node, MapField):
            if target.location is not None:
                delete_at(self.document, target.location)
            return DispatchOutcome(mutated_paths=[target.path])

        window = self.load_state.window(collection.path)
        current = get_at(self.document, collection.location) if collection.location else None
        if isinstance(current, list) and window is not None:
            position = target.locator - window.offset
            if position < 0:
                delete_at(self.document, collection.location)
                self.load_state.forget(collection.path)
            elif position < len(current):
                current.pop(position)
                self.load_state.shift_indices(collection.path, target.locator + 1, -1)
        return DispatchOutcome(mutated_paths=[target.path, collection.path])

    async def _clear(self, chain: List[ResolvedNode]) -> DispatchOutcome:
        target = chain[-1]
        if not is_collection(target.node) or target.is_item:
            raise InvalidOperationError(f"'clear' needs a collection path, got '{target.path}'")
        ops = target.node.ops
        if not isinstance(ops, Clearer):
            raise UnsupportedOperationError("clear", target.path, "no clear operation")
        await ops.clear(target.ctx)
        self.load_state.forget_descendants(target.path)
        if target.location is not None:
            empty: Any = {} if isinstance(target.node, MapField) else []
            set_at(self.document, target.location, empty, merge=False)
            self.load_state.mark_visible(target.path, total=0)
            if self.load_state.window(target.path) is None:
                self.load_state.set_window(target.path, Window(0, self.default_limit))
        return DispatchOutcome(value=None, total=0, mutated_paths=[target.path])

    async def _rename(self, chain: List[ResolvedNode], new_key: Optional[str]) -> DispatchOutcome:
        target = chain[-1]
        if not (target.is_item and isinstance(target.segment, KeySegment)):
            raise InvalidOperationError(f"'rename' needs a map entry path, got '{target.path}'")
        if not new_key:
            raise InvalidOperationError("'rename' requires 'new_key'")
        collection = chain[-2]
        ops = collection.node.ops
        if not isinstance(ops, Renamer):
            raise UnsupportedOperationError(
                "rename", target.path, "keys are derived from row fields; update the label instead"
            )
        old_key = target.segment.key
        await ops.rename(target.ctx, old_key, new_key)
        new_path = child_path(collection.path, new_key)
        self._move_map_entry(collection, old_key, new_key)
        return DispatchOutcome(
            key=new_key, new_path=new_path, mutated_paths=[target.path, new_path]
        )

    # ------------------------------------------------------------------

    def _owner_record_index(self, chain: List[ResolvedNode]) -> Optional[int]:
        """Index in `chain` of the nearest item or bound object owning the target."""
        for position in range(len(chain) - 2, 0, -1):
            candidate = chain[position]
            if candidate.is_item:
                return position
            if isinstance(candidate.node, ObjectField) and candidate.node.ops is not None:
                return position
            if is_collection(candidate.node):
                return None
        return None

    @staticmethod
    def _derive_key(ops: Any, item: Any, path: str) -> str:
        if isinstance(ops, KeyDeriver):
            return ops.get_db_key(item)
        raise StoreError(f"Map '{path}' listed entries without keys and has no key deriver")


def _same_identity(old: Any, new: Any) -> bool:
    if not isinstance(old, dict) or not isinstance(new, dict):
        return False
    return old.get("id") is not None and old.get("id") == new.get("id")


def _require_mapping(value: Any, action: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidOperationError(f"'{action}' requires an object value")
    return value


def _record_fields(node: FieldNode, value: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """The part of a materialized object that belongs to its own row."""
    record: Dict[str, Any] = {}
    for name, item in (value or {}).items():
        prop = node.property(name) if isinstance(node, ObjectField) else None
        if prop is None and isinstance(item, (dict, list)):
            continue
        if prop is not None and (
            is_collection(prop) or (isinstance(prop, ObjectField) and prop.ops is not None)
        ):
            continue
        record[name] = item
    return record


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for name, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(name), dict):
            merged[name] = _deep_merge(merged[name], value)
        else:
            merged[name] = value
    return merged


def _nest(names: List[str], value: Any) -> Dict[str, Any]:
    nested: Any = value
    for name in reversed(names):
        nested = {name: nested}
    return nested

