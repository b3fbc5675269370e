"""
MCP Server for the Memory Bridge (SQLite Backend)

This module provides the MCP (Model Context Protocol) interface through
which an agent reads and edits its working memory. Memory is a
path-addressed document:

- /Context_Program                       - the student's current program
- /Context_Program/goals/ab12cd34_...    - one goal, keyed by id prefix + label
- /students/0/goals                      - array items are addressed by index

The caller supplies the already-authorized base context (for example
{"studentId": "..."}); this server never decides who may act.
"""

import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import find_dotenv, load_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from bridge.errors import BridgeError
from bridge.manager import MemorySession
from bridge.settings import BridgeSettings
from db.migration_runner import MigrationRunner
from db.sqlite_client import get_sqlite_client
from memory_fields import build_registry
from runtime_state import runtime_state

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

# Initialize FastMCP server
mcp = FastMCP("Memory Bridge Interface")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _utc_iso_now() -> str:
    """Return current UTC timestamp in ISO-8601 format with trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


ENABLE_WRITE_LANE_QUEUE = _env_bool("RUNTIME_WRITE_LANE_QUEUE", True)


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _error_response(exc: Exception) -> str:
    if isinstance(exc, BridgeError):
        return _tool_response(ok=False, message=exc.message, error=exc.to_dict())
    return _tool_response(
        ok=False,
        message=str(exc),
        error={"code": "internal_error", "message": str(exc)},
    )


def _parse_json_arg(raw: Union[str, Dict[str, Any], List[Any], None], name: str) -> Any:
    """MCP clients may send structured arguments either decoded or as a JSON string."""
    if raw is None or not isinstance(raw, str):
        return raw
    text_value = raw.strip()
    if not text_value:
        return None
    try:
        return json.loads(text_value)
    except json.JSONDecodeError as exc:
        raise ValueError(f"'{name}' is not valid JSON: {exc.msg}") from exc


async def _run_write_lane(session_id: Optional[str], operation: str, fn):
    if not ENABLE_WRITE_LANE_QUEUE:
        return await fn()
    return await runtime_state.write_lanes.run_write(
        session_id=session_id,
        operation=operation,
        task=fn,
    )


async def _require_session(session_id: Optional[str]) -> MemorySession:
    session = await runtime_state.sessions.get(session_id)
    if session is None:
        raise LookupError(
            f"No memory loaded for session '{session_id or 'default'}'. Call load_memory first."
        )
    return session


# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool()
async def load_memory(
    context: Union[str, Dict[str, Any]],
    session_id: Optional[str] = None,
    schema: Optional[str] = None,
    force_refresh: bool = False,
) -> str:
    """
    Load the working memory for one session.

    Every auto-open part of the memory tree is materialized with a bounded
    first page. Parts that fail to load are reported in `errors` and can be
    viewed later with manage_memory.

    Args:
        context: Base context for the session, e.g. {"studentId": "..."}.
        session_id: Session to (re)load. Defaults to "default".
        schema: "program" or "roster". Defaults to MEMORY_SCHEMA.
        force_refresh: Reload paths that are already visible.

    Returns:
        JSON with memoryValues, loadState, loadedPaths and errors.

    Examples:
        load_memory({"studentId": "7f3a..."})
        load_memory({"agentInstanceId": "tutor-1"}, schema="roster")
    """
    try:
        base_context = _parse_json_arg(context, "context") or {}
        if not isinstance(base_context, dict):
            raise ValueError("'context' must be an object")
        settings = BridgeSettings.from_env()
        client = get_sqlite_client()

        async def _load_task():
            existing = await runtime_state.sessions.get(session_id)
            same_schema = existing is not None and existing.registry.name == (
                schema or settings.schema
            )
            if same_schema and existing.base_context == base_context:
                session = existing
            else:
                session = MemorySession(
                    build_registry(client, settings, schema),
                    base_context,
                    default_limit=settings.default_page_limit,
                    max_limit=settings.max_page_limit,
                )
            result = await session.initialize(force_refresh=force_refresh)
            await runtime_state.sessions.put(session_id, session)
            return session, result

        session, result = await _run_write_lane(session_id, "load_memory", _load_task)
        return _tool_response(
            ok=not result.errors,
            message=(
                f"Loaded {len(result.loaded_paths)} path(s)"
                + (f", {len(result.errors)} failed" if result.errors else "")
            ),
            schema=session.registry.name,
            timestamp=_utc_iso_now(),
            **result.to_dict(),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def manage_memory(
    ops: Union[str, Dict[str, Any], List[Any]],
    session_id: Optional[str] = None,
) -> str:
    """
    Apply a batch of memory operations, in order.

    Each operation is {"action", "path", ...}. Actions:
    view, hide, set, update, upsert, add, insert, delete, clear, rename.
    Optional fields: value, key, new_key, index, page {offset, limit}.
    A failing operation does not stop the ones after it.

    Args:
        ops: One operation, a list, or {"ops": [...]}; a JSON string is accepted.
        session_id: Session loaded with load_memory.

    Returns:
        JSON with per-operation results and the updated memory.

    Examples:
        manage_memory([{"action": "view", "path": "/Context_Program/goals"}])
        manage_memory({"action": "add", "path": "/Context_Program/goals",
                       "value": {"goalStatement": "Student will use 2-3 word phrases"}})
    """
    try:
        payload = _parse_json_arg(ops, "ops")
        if payload is None:
            raise ValueError("'ops' is required")
        session = await _require_session(session_id)

        async def _write_task():
            return await session.apply(payload)

        batch = await _run_write_lane(session_id, "manage_memory", _write_task)
        failed = sum(1 for result in batch.results if not result.ok)
        return _tool_response(
            ok=batch.ok,
            message=(
                f"Applied {len(batch.results)} operation(s)"
                + (f", {failed} failed" if failed else "")
            ),
            **batch.to_dict(),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def invalidate_memory(
    path: str,
    session_id: Optional[str] = None,
    include_descendants: bool = True,
    refresh: bool = False,
) -> str:
    """
    Mark a memory path as changed outside this session.

    Stale paths are reloaded on their next view, or immediately when
    `refresh` is set.

    Args:
        path: Path that changed, e.g. "/Context_Program/goals".
        session_id: Session loaded with load_memory.
        include_descendants: Also mark everything below `path`.
        refresh: Re-view every stale path right away.

    Returns:
        JSON with the stale paths (and refresh results when requested).
    """
    try:
        session = await _require_session(session_id)

        async def _write_task():
            session.invalidate(path, include_descendants=include_descendants)
            if refresh:
                return await session.refresh_stale()
            return None

        batch = await _run_write_lane(session_id, "invalidate_memory", _write_task)
        extra: Dict[str, Any] = {"stale": sorted(session.load_state.stale)}
        if batch is not None:
            extra["refresh"] = [result.to_dict() for result in batch.results]
            extra["memoryValues"] = batch.document
        return _tool_response(
            ok=batch is None or batch.ok,
            message=f"Invalidated '{path}'",
            **extra,
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def memory_status(session_id: Optional[str] = None) -> str:
    """
    Report runtime state: write lanes, live sessions, pending migrations
    and, when the session is loaded, its load state.
    """
    try:
        settings = BridgeSettings.from_env()
        payload: Dict[str, Any] = {
            "ok": True,
            "timestamp": _utc_iso_now(),
            "schema": settings.schema,
            "write_lane_queue_enabled": ENABLE_WRITE_LANE_QUEUE,
            "write_lanes": await runtime_state.write_lanes.status(),
            "sessions": await runtime_state.sessions.status(),
        }
        if settings.database_url:
            runner = MigrationRunner(settings.database_url)
            payload["pending_migrations"] = await runner.pending_versions()
        session = await runtime_state.sessions.get(session_id)
        if session is not None:
            payload["loadState"] = session.load_state.to_dict()
        return _to_json(payload)
    except Exception as exc:
        return _error_response(exc)


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the database on startup."""
    client = get_sqlite_client()
    await client.init_db()


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
