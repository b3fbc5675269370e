"""
Raw access to the in-memory document.

Locations here are lists of raw tokens: strings for object properties and
map keys, integers for list positions. Array positions are relative to the
window held in the load state; translating absolute indexes is the
dispatcher's job.
"""

from typing import Any, Dict, Optional, Sequence, Union


Token = Union[str, int]
_MISSING = object()


def get_at(document: Any, tokens: Sequence[Token]) -> Any:
    current = document
    for token in tokens:
        if isinstance(current, dict):
            current = current.get(token, _MISSING)
        elif isinstance(current, list) and isinstance(token, int):
            current = current[token] if 0 <= token < len(current) else _MISSING
        else:
            return None
        if current is _MISSING:
            return None
    return current


def merge_preserving_children(existing: Any, incoming: Any) -> Any:
    """
    Replace `existing` with `incoming` but keep nested collections that were
    materialized under `existing` and are absent from `incoming`.
    """
    if not isinstance(existing, dict) or not isinstance(incoming, dict):
        return incoming
    merged = dict(incoming)
    for name, value in existing.items():
        if name not in merged and isinstance(value, (dict, list)):
            merged[name] = value
    return merged


def set_at(
    document: Dict[str, Any],
    tokens: Sequence[Token],
    value: Any,
    merge: bool = True,
) -> bool:
    """
    Store `value` at `tokens`. Intermediate objects are created on demand;
    a missing list slot is never created. Returns False when the parent
    location is not materialized.
    """
    if not tokens:
        raise ValueError("Cannot replace the document root")
    parent = get_at(document, tokens[:-1]) if len(tokens) > 1 else document
    if parent is None and len(tokens) > 1:
        parent = _ensure_objects(document, tokens[:-1])
        if parent is None:
            return False
    last = tokens[-1]
    if isinstance(parent, dict):
        current = parent.get(last)
        parent[last] = merge_preserving_children(current, value) if merge else value
        return True
    if isinstance(parent, list) and isinstance(last, int):
        if 0 <= last < len(parent):
            current = parent[last]
            parent[last] = merge_preserving_children(current, value) if merge else value
            return True
        if last == len(parent):
            parent.append(value)
            return True
    return False


def delete_at(document: Dict[str, Any], tokens: Sequence[Token]) -> bool:
    if not tokens:
        return False
    parent = get_at(document, tokens[:-1]) if len(tokens) > 1 else document
    last = tokens[-1]
    if isinstance(parent, dict) and last in parent:
        del parent[last]
        return True
    if isinstance(parent, list) and isinstance(last, int) and 0 <= last < len(parent):
        parent.pop(last)
        return True
    return False


def insert_at(document: Dict[str, Any], tokens: Sequence[Token], value: Any) -> bool:
    parent = get_at(document, tokens[:-1])
    position = tokens[-1]
    if isinstance(parent, list) and isinstance(position, int) and 0 <= position <= len(parent):
        parent.insert(position, value)
        return True
    return False


def _ensure_objects(document: Dict[str, Any], tokens: Sequence[Token]) -> Optional[Any]:
    current: Any = document
    for token in tokens:
        if isinstance(current, dict):
            nxt = current.get(token)
            if nxt is None:
                if isinstance(token, int):
                    return None
                nxt = {}
                current[token] = nxt
            current = nxt
        elif isinstance(current, list) and isinstance(token, int):
            if not 0 <= token < len(current) or current[token] is None:
                return None
            current = current[token]
        else:
            return None
    return current
