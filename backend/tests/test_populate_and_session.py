import asyncio

import pytest

from bridge.load_state import LoadState
from bridge.manager import MemorySession
from bridge.populate import populate_memory
from runtime_state import MemorySessionRegistry, WriteLaneCoordinator
from memory_fakes import program_env, roster_env

BASE = {"agentInstanceId": "tutor-1"}


@pytest.mark.asyncio
async def test_populate_opens_every_auto_open_node() -> None:
    env = roster_env()

    result = await populate_memory(env.registry, BASE, default_limit=10)

    assert result.errors == []
    assert result.loaded_paths == [
        "/profile",
        "/students",
        "/students/0/goals",
        "/students/1/goals",
        "/students/2/goals",
    ]
    document = result.memory_values
    assert document["profile"]["tone"] == "calm"
    assert document["students"][1]["goals"][0]["id"] == "g-1"
    assert document["students"][2]["goals"] == []
    assert result.load_state.total("/students") == 3
    assert result.to_dict()["loadState"]["page"]["/students"] == {"offset": 0, "limit": 10}


@pytest.mark.asyncio
async def test_populate_isolates_failing_subtrees() -> None:
    env = program_env()

    result = await populate_memory(env.registry, {})

    assert result.loaded_paths == []
    assert len(result.errors) == 1
    assert result.errors[0]["path"] == "/Context_Program"
    assert "studentId" in result.errors[0]["error"]
    assert "Context_Program" not in result.memory_values


@pytest.mark.asyncio
async def test_populate_resumes_without_refetching_visible_paths() -> None:
    env = roster_env()
    document: dict = {}
    state = LoadState()
    await populate_memory(env.registry, BASE, document=document, load_state=state)
    calls = len(env.students_ops.calls) + len(env.goals_ops.calls)

    again = await populate_memory(env.registry, BASE, document=document, load_state=state)
    assert again.loaded_paths == []
    assert len(env.students_ops.calls) + len(env.goals_ops.calls) == calls

    forced = await populate_memory(
        env.registry, BASE, document=document, load_state=state, force_refresh=True
    )
    assert "/students" in forced.loaded_paths
    assert len(env.students_ops.calls) > 1


@pytest.mark.asyncio
async def test_populate_honours_open_predicate() -> None:
    env = roster_env()

    result = await populate_memory(
        env.registry, BASE, should_open=lambda node, path: path == "/profile"
    )

    assert result.loaded_paths == ["/profile"]
    assert env.students_ops.calls == []


@pytest.mark.asyncio
async def test_populate_walks_map_entries() -> None:
    env = program_env()
    env.goals_ops.rows["p-1"].append(
        {"id": "ab12cd34-0000-4000-8000-000000000000", "goalStatement": "Ask for a break"}
    )

    result = await populate_memory(env.registry, {"studentId": "s-1"})

    assert result.loaded_paths == ["/Context_Program", "/Context_Program/goals"]
    goals = result.memory_values["Context_Program"]["goals"]
    assert list(goals) == ["ab12cd34_ask_for_a_break"]


# =============================================================================
# MemorySession
# =============================================================================


@pytest.mark.asyncio
async def test_session_snapshot_restore_and_refresh_stale() -> None:
    env = roster_env()
    session = MemorySession(env.registry, BASE)
    await session.initialize()
    await session.apply([{"action": "set", "path": "/students/0/name", "value": "Jordan"}])

    stored = session.snapshot()
    restored = MemorySession.restore(env.registry, BASE, stored)
    assert restored.document["students"][0]["name"] == "Jordan"
    assert restored.load_state.is_visible("/students/0/goals")

    env.students_ops.rows["tutor-1"][1]["name"] = "Changed elsewhere"
    restored.invalidate("/students")
    assert restored.load_state.is_stale("/students/1/goals")

    batch = await restored.refresh_stale()

    assert batch.ok
    assert restored.load_state.stale == set()
    assert restored.document["students"][1]["name"] == "Changed elsewhere"
    assert restored.document["students"][1]["goals"][0]["id"] == "g-1"


# =============================================================================
# Runtime state
# =============================================================================


@pytest.mark.asyncio
async def test_write_lanes_serialize_batches_of_one_session() -> None:
    lanes = WriteLaneCoordinator()
    active = 0
    peak = 0

    async def _task():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return "done"

    results = await asyncio.gather(
        *[lanes.run_write(session_id="s", operation="test", task=_task) for _ in range(3)]
    )

    assert results == ["done", "done", "done"]
    assert peak == 1
    status = await lanes.status()
    assert status["global_active"] == 0
    assert status["session_waiting_count"] == 0
    assert status["lanes"] == 0


@pytest.mark.asyncio
async def test_write_lanes_are_released_after_each_session() -> None:
    lanes = WriteLaneCoordinator()

    async def _noop():
        return None

    async def _fail():
        raise RuntimeError("boom")

    for n in range(50):
        await lanes.run_write(session_id=f"session-{n}", operation="test", task=_noop)
    with pytest.raises(RuntimeError):
        await lanes.run_write(session_id="session-x", operation="test", task=_fail)

    status = await lanes.status()
    assert status["lanes"] == 0
    assert status["global_active"] == 0


@pytest.mark.asyncio
async def test_session_registry_evicts_least_recently_used(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_MEMORY_MAX_SESSIONS", "2")
    registry = MemorySessionRegistry()
    env = roster_env()
    sessions = [MemorySession(env.registry, BASE) for _ in range(3)]

    await registry.put("a", sessions[0])
    await registry.put("b", sessions[1])
    assert await registry.get("a") is sessions[0]
    await registry.put("c", sessions[2])

    assert await registry.get("b") is None
    assert await registry.get("a") is sessions[0]
    assert (await registry.status())["sessions"] == 2
    assert await registry.drop("a") is True
    assert await registry.drop("a") is False
