"""
Memory-to-relational bridge.

Exposes a tree of objects, arrays and maps (an agent's working memory) as a
single path-addressable document, lazily materialized from relational
tables through per-node operation sets.
"""

from .context import OperationContext
from .errors import (
    BridgeError,
    InvalidOperationError,
    MissingContextError,
    NotFoundError,
    StoreError,
    UnresolvedPathError,
    UnsupportedOperationError,
)
from .keys import MapKeyCodec
from .load_state import LoadState, Window
from .populate import PopulateResult, populate_memory
from .processor import BatchResult, MemoryOperation, OperationResult, process_tool_calls
from .schema import (
    ArrayField,
    FieldRegistry,
    ListResult,
    MapField,
    ObjectField,
    Page,
    PrimitiveField,
)

__all__ = [
    "ArrayField",
    "BatchResult",
    "BridgeError",
    "FieldRegistry",
    "InvalidOperationError",
    "ListResult",
    "LoadState",
    "MapField",
    "MapKeyCodec",
    "MemoryOperation",
    "MissingContextError",
    "NotFoundError",
    "ObjectField",
    "OperationContext",
    "OperationResult",
    "Page",
    "PopulateResult",
    "PrimitiveField",
    "StoreError",
    "UnresolvedPathError",
    "UnsupportedOperationError",
    "Window",
    "populate_memory",
    "process_tool_calls",
]
