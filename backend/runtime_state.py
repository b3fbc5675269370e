"""
Runtime state helpers for memory sessions.

This module provides:
1) Write-lane coordination: batches for one session run one at a time,
   and only a bounded number run at once. The bridge itself does not
   serialize.
2) A process-local registry of live memory sessions.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from bridge.manager import MemorySession

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_session_id(session_id: Optional[str]) -> str:
    value = (session_id or "").strip()
    return value if value else "default"


@dataclass
class _Lane:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class WriteLaneCoordinator:
    """
    Serializes batches of one memory session and bounds how many batches
    run at once across sessions. A session's lane only exists while some
    batch holds or waits for it, so idle sessions cost nothing here.
    """

    def __init__(self) -> None:
        self._global_concurrency = _env_int(
            "RUNTIME_WRITE_GLOBAL_CONCURRENCY", 4, minimum=1
        )
        self._wait_warn_ms = _env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1)
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._lanes: Dict[str, _Lane] = {}
        self._active = 0

    @asynccontextmanager
    async def _lane(self, name: str) -> AsyncIterator[None]:
        lane = self._lanes.setdefault(name, _Lane())
        lane.users += 1
        try:
            async with lane.lock:
                yield
        finally:
            lane.users -= 1
            if lane.users == 0 and self._lanes.get(name) is lane:
                del self._lanes[name]

    async def run_write(
        self,
        *,
        session_id: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        name = _normalize_session_id(session_id)
        started = time.monotonic()
        async with self._lane(name), self._global_sem:
            waited_ms = int((time.monotonic() - started) * 1000)
            if waited_ms >= self._wait_warn_ms:
                logger.warning("%s for session %s waited %d ms", operation, name, waited_ms)
            self._active += 1
            try:
                return await task()
            finally:
                self._active -= 1

    async def status(self) -> Dict[str, Any]:
        waiting = {
            name: lane.users - (1 if lane.lock.locked() else 0)
            for name, lane in self._lanes.items()
        }
        busy = {name: count for name, count in waiting.items() if count > 0}
        return {
            "global_concurrency": self._global_concurrency,
            "global_active": self._active,
            "lanes": len(self._lanes),
            "session_waiting_count": sum(busy.values()),
            "session_waiting_sessions": len(busy),
            "max_session_waiting": max(busy.values(), default=0),
            "wait_warn_ms": self._wait_warn_ms,
        }


class MemorySessionRegistry:
    """Live memory sessions keyed by session id, least recently used evicted first."""

    def __init__(self) -> None:
        self._max_sessions = _env_int("RUNTIME_MEMORY_MAX_SESSIONS", 256, minimum=1)
        self._sessions: "OrderedDict[str, MemorySession]" = OrderedDict()
        self._created_at: Dict[str, str] = {}
        self._guard = asyncio.Lock()

    async def get(self, session_id: Optional[str]) -> Optional[MemorySession]:
        lane = _normalize_session_id(session_id)
        async with self._guard:
            session = self._sessions.get(lane)
            if session is not None:
                self._sessions.move_to_end(lane)
            return session

    async def put(self, session_id: Optional[str], session: MemorySession) -> None:
        lane = _normalize_session_id(session_id)
        async with self._guard:
            self._sessions[lane] = session
            self._sessions.move_to_end(lane)
            self._created_at[lane] = _utc_iso_now()
            while len(self._sessions) > self._max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                self._created_at.pop(evicted, None)
                logger.info("Evicted idle memory session %s", evicted)

    async def drop(self, session_id: Optional[str]) -> bool:
        lane = _normalize_session_id(session_id)
        async with self._guard:
            self._created_at.pop(lane, None)
            return self._sessions.pop(lane, None) is not None

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "sessions": len(self._sessions),
                "max_sessions": self._max_sessions,
                "created_at": dict(self._created_at),
            }


class RuntimeState:
    def __init__(self) -> None:
        self.write_lanes = WriteLaneCoordinator()
        self.sessions = MemorySessionRegistry()


runtime_state = RuntimeState()
