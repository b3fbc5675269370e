"""
Context propagation for operation calls.

A context is rebuilt on every descent: `base` is the caller-supplied,
already-authorized context, `ancestors` holds what each ancestor node
contributed (root first), and `inherited` is only the contribution of the
immediate parent.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import MissingContextError
from .paths import ROOT


@dataclass(frozen=True)
class OperationContext:
    base: Mapping[str, Any] = field(default_factory=dict)
    inherited: Mapping[str, Any] = field(default_factory=dict)
    ancestors: Tuple[Mapping[str, Any], ...] = ()
    path: str = ROOT
    current_key: Optional[Union[int, str]] = None

    @classmethod
    def root(cls, base: Optional[Mapping[str, Any]] = None) -> "OperationContext":
        return cls(base=dict(base or {}))

    @property
    def all(self) -> Dict[str, Any]:
        """Base context plus every ancestor contribution; deeper keys win."""
        merged: Dict[str, Any] = dict(self.base)
        for contribution in self.ancestors:
            merged.update(contribution)
        return merged

    def get(self, key: str, default: Any = None) -> Any:
        return self.all.get(key, default)

    def require(self, key: str) -> Any:
        value = self.all.get(key)
        if value is None:
            raise MissingContextError(key, self.path)
        return value

    def descend(
        self,
        contributed: Optional[Mapping[str, Any]],
        path: str,
        key: Optional[Union[int, str]] = None,
    ) -> "OperationContext":
        """Enter the children of a node that contributed `contributed`."""
        contribution = dict(contributed or {})
        return OperationContext(
            base=self.base,
            inherited=contribution,
            ancestors=self.ancestors + (contribution,),
            path=path,
            current_key=key,
        )

    def at(
        self, path: str, key: Optional[Union[int, str]] = None
    ) -> "OperationContext":
        """Move to `path` without a new contribution."""
        return OperationContext(
            base=self.base,
            inherited=self.inherited,
            ancestors=self.ancestors,
            path=path,
            current_key=key,
        )
