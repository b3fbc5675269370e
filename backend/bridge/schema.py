"""
Field schema for the memory document.

Nodes are an explicit sum type over primitive, object, array and map
variants. Composite nodes may carry an operation set: any object that
implements some of the capability protocols below. The dispatcher checks
capabilities with `isinstance` instead of probing attributes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

from .context import OperationContext
from .errors import UnresolvedPathError
from .paths import FieldSegment, IndexSegment, KeySegment, Segment, child_path, split_path, ROOT


Locator = Union[int, str]


# =============================================================================
# Pagination
# =============================================================================


@dataclass(frozen=True)
class Page:
    offset: int = 0
    limit: int = 50

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")


@dataclass
class ListResult:
    """One window of a collection. `total` is the full collection size."""

    items: List[Any]
    total: int
    keys: Optional[List[str]] = None


# =============================================================================
# Operation capabilities
# =============================================================================


@runtime_checkable
class Reader(Protocol):
    async def read(self, ctx: OperationContext) -> Optional[Dict[str, Any]]: ...


@runtime_checkable
class Writer(Protocol):
    async def write(self, ctx: OperationContext, value: Dict[str, Any]) -> None: ...


@runtime_checkable
class Lister(Protocol):
    async def list(self, ctx: OperationContext, page: Page) -> ListResult: ...


@runtime_checkable
class Getter(Protocol):
    async def get(self, ctx: OperationContext, locator: Locator) -> Optional[Any]: ...


@runtime_checkable
class Adder(Protocol):
    async def add(
        self,
        ctx: OperationContext,
        value: Any,
        *,
        index: Optional[int] = None,
        key: Optional[str] = None,
    ) -> Any: ...


@runtime_checkable
class Updater(Protocol):
    async def update(
        self, ctx: OperationContext, locator: Locator, partial: Dict[str, Any]
    ) -> Any: ...


@runtime_checkable
class Deleter(Protocol):
    async def delete(self, ctx: OperationContext, locator: Locator) -> None: ...


@runtime_checkable
class Clearer(Protocol):
    async def clear(self, ctx: OperationContext) -> None: ...


@runtime_checkable
class Upserter(Protocol):
    async def upsert(self, ctx: OperationContext, value: Any, key: str) -> Any: ...


@runtime_checkable
class Renamer(Protocol):
    async def rename(self, ctx: OperationContext, old_key: str, new_key: str) -> None: ...


@runtime_checkable
class ChildContextExtractor(Protocol):
    def extract_child_context(
        self, value: Any, key: Optional[Locator] = None
    ) -> Dict[str, Any]: ...


@runtime_checkable
class KeyDeriver(Protocol):
    def get_db_key(self, value: Any) -> str: ...


# =============================================================================
# Field nodes
# =============================================================================


@dataclass(frozen=True)
class PrimitiveField:
    id: str
    type: str = "string"
    description: str = ""
    required: bool = False
    enum: Optional[Tuple[Any, ...]] = None
    format: Optional[str] = None

    kind: ClassVar[str] = "primitive"
    ops: ClassVar[None] = None
    auto_open: ClassVar[bool] = False


@dataclass(frozen=True)
class ObjectField:
    id: str
    properties: Tuple["FieldNode", ...] = ()
    ops: Optional[Any] = None
    auto_open: bool = False
    required: bool = False
    description: str = ""
    additional_properties: bool = False
    _by_id: Dict[str, "FieldNode"] = field(
        default_factory=dict, init=False, repr=False, compare=False, hash=False
    )

    kind: ClassVar[str] = "object"

    def __post_init__(self) -> None:
        index: Dict[str, FieldNode] = {}
        for prop in self.properties:
            if prop.id in index:
                raise ValueError(f"Duplicate property '{prop.id}' in object '{self.id}'")
            index[prop.id] = prop
        object.__setattr__(self, "_by_id", index)

    def property(self, name: str) -> Optional["FieldNode"]:
        return self._by_id.get(name)


@dataclass(frozen=True)
class ArrayField:
    id: str
    items: "FieldNode"
    ops: Optional[Any] = None
    auto_open: bool = False
    required: bool = False
    description: str = ""

    kind: ClassVar[str] = "array"


@dataclass(frozen=True)
class MapField:
    id: str
    values: "FieldNode"
    ops: Optional[Any] = None
    auto_open: bool = False
    required: bool = False
    description: str = ""

    kind: ClassVar[str] = "map"


FieldNode = Union[PrimitiveField, ObjectField, ArrayField, MapField]
CollectionField = Union[ArrayField, MapField]


def is_collection(node: FieldNode) -> bool:
    return isinstance(node, (ArrayField, MapField))


def element_node(node: CollectionField) -> FieldNode:
    return node.items if isinstance(node, ArrayField) else node.values


def children_of(node: FieldNode) -> Sequence[FieldNode]:
    if isinstance(node, ObjectField):
        return node.properties
    return ()


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class BoundSegment:
    """A parsed path segment together with the schema node it lands on."""

    segment: Segment
    node: FieldNode
    path: str
    unbound: bool = False


class FieldRegistry:
    """
    Immutable field tree for one configuration load.

    Build one per configuration and pass it to every engine entry point;
    registries are never cached in module state, so several configurations
    can coexist in one process.
    """

    def __init__(self, fields: Sequence[FieldNode], name: str = "memory"):
        self.name = name
        self.root = ObjectField(id="", properties=tuple(fields))

    @property
    def fields(self) -> Tuple[FieldNode, ...]:
        return self.root.properties

    def field(self, name: str) -> Optional[FieldNode]:
        return self.root.property(name)

    def bind(self, path: str) -> List[BoundSegment]:
        """Parse `path` once into typed segments bound to schema nodes."""
        bound: List[BoundSegment] = []
        node: FieldNode = self.root
        current = ROOT
        for token in split_path(path):
            current = child_path(current, token)
            if isinstance(node, ObjectField):
                prop = node.property(token)
                if prop is not None:
                    node = prop
                    bound.append(BoundSegment(FieldSegment(token), node, current))
                    continue
                if node.additional_properties:
                    node = PrimitiveField(id=token, type="any")
                    bound.append(
                        BoundSegment(FieldSegment(token), node, current, unbound=True)
                    )
                    continue
                raise UnresolvedPathError(path, f"unknown field '{token}'")
            if isinstance(node, ArrayField):
                if not (token.isascii() and token.isdigit()):
                    raise UnresolvedPathError(
                        path, f"'{token}' is not a valid index for array '{node.id}'"
                    )
                node = node.items
                bound.append(BoundSegment(IndexSegment(int(token)), node, current))
                continue
            if isinstance(node, MapField):
                node = node.values
                bound.append(BoundSegment(KeySegment(token), node, current))
                continue
            raise UnresolvedPathError(path, f"'{node.id}' has no children")
        return bound

    def describe(self) -> List[Dict[str, Any]]:
        """Documentation view of the tree, including enum/format hints."""
        return [_describe(node) for node in self.fields]


def _describe(node: FieldNode) -> Dict[str, Any]:
    info: Dict[str, Any] = {"id": node.id, "kind": node.kind}
    if node.description:
        info["description"] = node.description
    if node.required:
        info["required"] = True
    if isinstance(node, PrimitiveField):
        info["type"] = node.type
        if node.enum:
            info["enum"] = list(node.enum)
        if node.format:
            info["format"] = node.format
        return info
    info["autoOpen"] = node.auto_open
    if isinstance(node, ObjectField):
        info["properties"] = [_describe(prop) for prop in node.properties]
    else:
        info["items" if isinstance(node, ArrayField) else "values"] = _describe(
            element_node(node)
        )
    return info


def context_contribution(
    ops: Optional[Any], value: Any, key: Optional[Locator] = None
) -> Optional[Mapping[str, Any]]:
    """Result of the node's child-context extractor, or None if it contributes nothing."""
    if ops is None or value is None or not isinstance(ops, ChildContextExtractor):
        return None
    return ops.extract_child_context(value, key) or None
