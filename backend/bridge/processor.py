"""
Tool-call processor.

Applies an ordered batch of agent-issued operations one at a time against
the evolving document. A batch is best-effort: each operation gets its own
result, and a failure never rolls back or blocks the operations after it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .dispatcher import ACTIONS, READ_ACTIONS, Dispatcher
from .errors import BridgeError, InvalidOperationError, StoreError
from .load_state import LoadState
from .paths import ROOT, normalize_path
from .schema import FieldRegistry, Page

logger = logging.getLogger(__name__)


@dataclass
class MemoryOperation:
    action: str
    path: str = ROOT
    value: Any = None
    key: Optional[str] = None
    new_key: Optional[str] = None
    index: Optional[int] = None
    page: Optional[Page] = None
    paths: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any, default_limit: int = 50) -> "MemoryOperation":
        if not isinstance(raw, Mapping):
            raise InvalidOperationError("Each operation must be an object")
        action = str(raw.get("action") or "").strip().lower()
        if action not in ACTIONS:
            raise InvalidOperationError(
                f"Unknown action '{raw.get('action')}'. Expected one of: "
                + ", ".join(sorted(ACTIONS))
            )

        paths = raw.get("paths") or ()
        if not isinstance(paths, (list, tuple)) or not all(isinstance(p, str) for p in paths):
            raise InvalidOperationError("'paths' must be a list of strings")
        if paths and action not in READ_ACTIONS:
            raise InvalidOperationError(f"'paths' is only accepted for view/hide, not '{action}'")
        path = raw.get("path")
        if path is not None and not isinstance(path, str):
            raise InvalidOperationError("'path' must be a string")
        if not path and not paths and action not in READ_ACTIONS:
            raise InvalidOperationError(f"'{action}' requires 'path'")

        return cls(
            action=action,
            path=normalize_path(path),
            value=raw.get("value"),
            key=_optional_str(raw.get("key"), "key"),
            new_key=_optional_str(
                raw.get("new_key", raw.get("newKey")), "new_key"
            ),
            index=_optional_index(raw.get("index")),
            page=_parse_page(raw.get("page"), default_limit),
            paths=tuple(normalize_path(p) for p in paths),
        )

    def targets(self) -> List[str]:
        return list(self.paths) if self.paths else [self.path]


@dataclass
class OperationResult:
    action: str
    path: str
    ok: bool
    value: Any = None
    key: Optional[str] = None
    new_path: Optional[str] = None
    total: Optional[int] = None
    materialized: bool = True
    mutated_paths: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"action": self.action, "path": self.path, "ok": self.ok}
        if self.ok:
            payload["value"] = self.value
            if self.key is not None:
                payload["key"] = self.key
            if self.new_path is not None:
                payload["newPath"] = self.new_path
            if self.total is not None:
                payload["total"] = self.total
            if not self.materialized:
                payload["materialized"] = False
            if self.mutated_paths:
                payload["mutatedPaths"] = list(self.mutated_paths)
        else:
            payload["error"] = self.error
        return payload


@dataclass
class BatchResult:
    results: List[OperationResult]
    document: Dict[str, Any]
    load_state: LoadState

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "results": [result.to_dict() for result in self.results],
            "memoryValues": self.document,
            "loadState": self.load_state.to_dict(),
        }


BatchInput = Union[Mapping[str, Any], Sequence[Any], MemoryOperation]


def normalize_batch(
    payload: BatchInput, default_limit: int = 50
) -> List[Union[MemoryOperation, InvalidOperationError]]:
    """
    Accept a single operation, a list, or an object with `ops`/`operations`.

    Entries that fail to parse are returned as errors in their slot so the
    rest of the batch still runs.
    """
    if isinstance(payload, MemoryOperation):
        raw_ops: Iterable[Any] = [payload]
    elif isinstance(payload, Mapping):
        if "ops" in payload:
            raw_ops = payload["ops"]
        elif "operations" in payload:
            raw_ops = payload["operations"]
        else:
            raw_ops = [payload]
    elif isinstance(payload, (list, tuple)):
        raw_ops = payload
    else:
        raise InvalidOperationError("Operations must be an object or a list of objects")
    if not isinstance(raw_ops, (list, tuple)):
        raise InvalidOperationError("'ops' must be a list")

    parsed: List[Union[MemoryOperation, InvalidOperationError]] = []
    for raw in raw_ops:
        if isinstance(raw, MemoryOperation):
            parsed.append(raw)
            continue
        try:
            parsed.append(MemoryOperation.from_dict(raw, default_limit))
        except InvalidOperationError as exc:
            parsed.append(exc)
        except Exception as exc:
            logger.warning("Rejected malformed operation %r: %s", raw, exc)
            parsed.append(InvalidOperationError(f"Malformed operation: {exc}"))
    return parsed


async def process_tool_calls(
    registry: FieldRegistry,
    operations: BatchInput,
    *,
    document: Optional[Dict[str, Any]] = None,
    load_state: Optional[LoadState] = None,
    base_context: Optional[Dict[str, Any]] = None,
    default_limit: int = 50,
    max_limit: int = 200,
) -> BatchResult:
    """
    Apply `operations` strictly in order. The document and load state are
    updated in place and returned with the per-operation results.
    """
    memory = document if document is not None else {}
    state = load_state if load_state is not None else LoadState()
    dispatcher = Dispatcher(
        registry,
        memory,
        state,
        base_context=base_context,
        default_limit=default_limit,
        max_limit=max_limit,
    )

    results: List[OperationResult] = []
    for entry in normalize_batch(operations, default_limit):
        if isinstance(entry, InvalidOperationError):
            results.append(
                OperationResult(action="unknown", path=ROOT, ok=False, error=entry.to_dict())
            )
            continue
        for target in entry.targets():
            results.append(await _apply(dispatcher, entry, target))

    return BatchResult(results=results, document=memory, load_state=state)


async def _apply(
    dispatcher: Dispatcher, op: MemoryOperation, target: str
) -> OperationResult:
    try:
        outcome = await dispatcher.dispatch(
            op.action,
            target,
            op.value,
            key=op.key,
            new_key=op.new_key,
            index=op.index,
            page=op.page,
        )
    except BridgeError as exc:
        logger.info("Memory operation %s %s failed: %s", op.action, target, exc.message)
        return OperationResult(
            action=op.action, path=target, ok=False, error=exc.to_dict()
        )
    except Exception as exc:
        logger.exception("Memory operation %s %s failed unexpectedly", op.action, target)
        error = StoreError(f"{type(exc).__name__}: {exc}")
        return OperationResult(
            action=op.action, path=target, ok=False, error=error.to_dict()
        )
    return OperationResult(
        action=op.action,
        path=target,
        ok=True,
        value=outcome.value,
        key=outcome.key,
        new_path=outcome.new_path,
        total=outcome.total,
        materialized=outcome.materialized,
        mutated_paths=outcome.mutated_paths,
    )


def _optional_str(value: Any, name: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidOperationError(f"'{name}' must be a string")
    text_value = str(value).strip()
    return text_value or None


def _optional_index(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidOperationError("'index' must be a non-negative integer")
    try:
        index = int(value)
    except (TypeError, ValueError):
        raise InvalidOperationError("'index' must be a non-negative integer") from None
    if index < 0:
        raise InvalidOperationError("'index' must be a non-negative integer")
    return index


def _parse_page(value: Any, default_limit: int) -> Optional[Page]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidOperationError("'page' must be an object with offset/limit")
    try:
        return Page(
            offset=int(value.get("offset", 0) or 0),
            limit=int(value.get("limit", default_limit) or default_limit),
        )
    except (TypeError, ValueError) as exc:
        raise InvalidOperationError(f"Invalid page: {exc}") from None
