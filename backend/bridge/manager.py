"""
Memory session.

Owns one document/load-state pair for one base context and is the single
entry point an agent loop talks to: populate once, then apply tool-call
batches, invalidate paths changed elsewhere, refresh what went stale.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from .load_state import LoadState
from .populate import PopulateResult, populate_memory
from .processor import BatchInput, BatchResult, MemoryOperation, process_tool_calls
from .schema import FieldRegistry, Page

logger = logging.getLogger(__name__)


class MemorySession:
    def __init__(
        self,
        registry: FieldRegistry,
        base_context: Dict[str, Any],
        *,
        default_limit: int = 50,
        max_limit: int = 200,
        document: Optional[Dict[str, Any]] = None,
        load_state: Optional[LoadState] = None,
    ):
        self.registry = registry
        self.base_context = dict(base_context)
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.document: Dict[str, Any] = document if document is not None else {}
        self.load_state = load_state if load_state is not None else LoadState()
        self.initialized = False

    @classmethod
    def restore(
        cls,
        registry: FieldRegistry,
        base_context: Dict[str, Any],
        stored: Dict[str, Any],
        **kwargs: Any,
    ) -> "MemorySession":
        """Rebuild a session from a `snapshot()` taken earlier."""
        return cls(
            registry,
            base_context,
            document=copy.deepcopy(stored.get("memoryValues") or {}),
            load_state=LoadState.from_dict(stored.get("loadState")),
            **kwargs,
        )

    async def initialize(self, force_refresh: bool = False) -> PopulateResult:
        result = await populate_memory(
            self.registry,
            self.base_context,
            document=self.document,
            load_state=self.load_state,
            default_limit=self.default_limit,
            force_refresh=force_refresh,
        )
        self.initialized = True
        if result.errors:
            logger.warning(
                "Memory session started with %d unmaterialized subtree(s)", len(result.errors)
            )
        return result

    async def apply(self, operations: BatchInput) -> BatchResult:
        return await process_tool_calls(
            self.registry,
            operations,
            document=self.document,
            load_state=self.load_state,
            base_context=self.base_context,
            default_limit=self.default_limit,
            max_limit=self.max_limit,
        )

    def invalidate(self, path: str, include_descendants: bool = True) -> None:
        self.load_state.invalidate(path, include_descendants=include_descendants)

    async def refresh_stale(self) -> BatchResult:
        """Re-view every stale path, shallowest first."""
        stale = sorted(self.load_state.stale, key=lambda p: (p.count("/"), p))
        ops: List[MemoryOperation] = []
        for path in stale:
            window = self.load_state.window(path)
            page = Page(window.offset, window.limit) if window is not None else None
            ops.append(MemoryOperation(action="view", path=path, page=page))
        return await self.apply(ops)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "memoryValues": copy.deepcopy(self.document),
            "loadState": self.load_state.to_dict(),
        }
