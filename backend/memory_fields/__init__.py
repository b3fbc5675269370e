"""Concrete memory schemas bound to the SQLite store."""

from typing import Any, Callable, Dict, List, Optional

from bridge.schema import FieldNode, FieldRegistry
from bridge.settings import BridgeSettings

from .program import build_program_fields
from .roster import build_roster_fields

FieldBuilder = Callable[[Any, BridgeSettings], List[FieldNode]]

SCHEMAS: Dict[str, FieldBuilder] = {
    "program": build_program_fields,
    "roster": build_roster_fields,
}


def build_registry(
    client: Any, settings: Optional[BridgeSettings] = None, schema: Optional[str] = None
) -> FieldRegistry:
    """Build a fresh registry for `schema` (defaults to the configured one)."""
    settings = settings or BridgeSettings.from_env()
    name = (schema or settings.schema).strip().lower()
    builder = SCHEMAS.get(name)
    if builder is None:
        raise ValueError(
            f"Unknown memory schema '{name}'. Expected one of: {', '.join(sorted(SCHEMAS))}"
        )
    return FieldRegistry(builder(client, settings), name=name)


__all__ = ["SCHEMAS", "build_program_fields", "build_registry", "build_roster_fields"]
