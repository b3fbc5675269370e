"""
Populate-on-load.

Walks the field schema at session start and materializes a bounded first
window of every auto-open node. One failing subtree is logged and left
unmaterialized; it never aborts the rest of the bootstrap.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .dispatcher import Dispatcher
from .document import get_at, set_at
from .errors import BridgeError
from .load_state import LoadState
from .paths import ROOT, child_path
from .schema import ArrayField, FieldNode, FieldRegistry, MapField, ObjectField, Page

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50

OpenPredicate = Callable[[FieldNode, str], bool]


@dataclass
class PopulateResult:
    memory_values: Dict[str, Any]
    load_state: LoadState
    loaded_paths: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memoryValues": self.memory_values,
            "loadState": self.load_state.to_dict(),
            "loadedPaths": list(self.loaded_paths),
            "errors": list(self.errors),
        }


def _auto_open(node: FieldNode, _path: str) -> bool:
    return bool(getattr(node, "auto_open", False))


async def populate_memory(
    registry: FieldRegistry,
    base_context: Optional[Dict[str, Any]] = None,
    *,
    document: Optional[Dict[str, Any]] = None,
    load_state: Optional[LoadState] = None,
    default_limit: int = DEFAULT_LIMIT,
    force_refresh: bool = False,
    should_open: Optional[OpenPredicate] = None,
) -> PopulateResult:
    """
    Materialize every auto-open node reachable from the root.

    An existing document/load state can be passed in to resume a session;
    paths that are already visible and not stale are then kept as they are
    unless `force_refresh` is set.
    """
    memory = document if document is not None else {}
    state = load_state if load_state is not None else LoadState()
    walker = _Walker(
        dispatcher=Dispatcher(
            registry,
            memory,
            state,
            base_context=base_context,
            default_limit=default_limit,
            max_limit=max(default_limit, 1),
        ),
        default_limit=default_limit,
        force_refresh=force_refresh,
        should_open=should_open or _auto_open,
    )
    await walker.walk(registry.fields, ROOT)
    return PopulateResult(
        memory_values=memory,
        load_state=state,
        loaded_paths=walker.loaded_paths,
        errors=walker.errors,
    )


class _Walker:
    def __init__(
        self,
        dispatcher: Dispatcher,
        default_limit: int,
        force_refresh: bool,
        should_open: OpenPredicate,
    ):
        self.dispatcher = dispatcher
        self.default_limit = default_limit
        self.force_refresh = force_refresh
        self.should_open = should_open
        self.loaded_paths: List[str] = []
        self.errors: List[Dict[str, str]] = []

    @property
    def document(self) -> Dict[str, Any]:
        return self.dispatcher.document

    @property
    def load_state(self) -> LoadState:
        return self.dispatcher.load_state

    async def walk(self, nodes: Sequence[FieldNode], parent: str) -> None:
        for node in nodes:
            if isinstance(node, (ObjectField, ArrayField, MapField)):
                await self._open(node, child_path(parent, node.id))

    async def _open(self, node: FieldNode, path: str) -> None:
        if not self.should_open(node, path):
            return
        if node.ops is None and isinstance(node, ObjectField):
            # Structural container: nothing to fetch, only children to visit.
            chain = self.dispatcher.resolve(path)
            parent = chain[-2]
            if chain[-1].value is None and parent.location is not None:
                set_at(self.document, parent.location + [node.id], {}, merge=False)
            await self.walk(node.properties, path)
            return

        if self.force_refresh or self.load_state.needs_loading(path):
            try:
                outcome = await self.dispatcher.dispatch(
                    "view", path, page=Page(0, self.default_limit)
                )
            except BridgeError as exc:
                logger.warning("Skipping memory subtree %s: %s", path, exc)
                self.errors.append({"path": path, "error": exc.message})
                return
            if not outcome.materialized or outcome.value is None:
                return
            self.loaded_paths.append(path)

        await self._open_children(node, path)

    async def _open_children(self, node: FieldNode, path: str) -> None:
        chain = self.dispatcher.resolve(path)
        location = chain[-1].location
        if location is None:
            return
        value = get_at(self.document, location)
        if isinstance(node, ObjectField):
            if value is not None:
                await self.walk(node.properties, path)
            return

        element = node.items if isinstance(node, ArrayField) else node.values
        if not isinstance(element, ObjectField):
            return
        if isinstance(node, ArrayField) and isinstance(value, list):
            window = self.load_state.window(path)
            offset = window.offset if window else 0
            for position in range(len(value)):
                await self.walk(element.properties, child_path(path, offset + position))
        elif isinstance(node, MapField) and isinstance(value, dict):
            for key in list(value):
                await self.walk(element.properties, child_path(path, key))
