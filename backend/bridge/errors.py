"""Typed failures raised by the bridge and its operation sets."""

from typing import Any, Dict, Optional, Union


class BridgeError(Exception):
    """Base class for every failure surfaced in a per-operation result."""

    code = "bridge_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class MissingContextError(BridgeError):
    """An operation needed an ancestor-derived key that was never produced."""

    code = "missing_context"

    def __init__(self, key: str, path: Optional[str] = None):
        self.key = key
        self.path = path
        where = f" at '{path}'" if path else ""
        super().__init__(f"Missing required context key '{key}'{where}")


class NotFoundError(BridgeError):
    """An index or map key resolved to nothing under the current scope."""

    code = "not_found"

    def __init__(self, collection: str, key: Union[int, str]):
        self.collection = collection
        self.key = key
        super().__init__(f"No entry {key!r} in collection '{collection}'")


class UnresolvedPathError(BridgeError):
    """A path segment does not exist in the field schema."""

    code = "unresolved_path"

    def __init__(self, path: str, reason: str = "no such field"):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot resolve path '{path}': {reason}")


class StoreError(BridgeError):
    """The relational call itself failed."""

    code = "store_error"


class UnsupportedOperationError(BridgeError):
    """The node's operation set does not provide the requested capability."""

    code = "unsupported_operation"

    def __init__(self, action: str, path: str, detail: str = ""):
        self.action = action
        self.path = path
        suffix = f" ({detail})" if detail else ""
        super().__init__(f"Action '{action}' is not supported at '{path}'{suffix}")


class InvalidOperationError(BridgeError):
    """Malformed tool-call input."""

    code = "invalid_operation"
