import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterator, List

import pytest
from sqlalchemy import select

from bridge.manager import MemorySession
from bridge.settings import BridgeSettings
from db.sqlite_client import Contact, Goal, Program, SQLiteClient, Student
from memory_fields import build_registry

ROSTER = {"agentInstanceId": "tutor-1"}


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / "bridge.db"))
    await client.init_db()
    return client


def _session(client: SQLiteClient, schema: str, base: dict) -> MemorySession:
    settings = BridgeSettings(database_url=client.database_url)
    return MemorySession(build_registry(client, settings, schema), base)


def _uuid_sequence(prefix: str = "ab12cd34") -> Iterator[uuid.UUID]:
    n = 0
    while True:
        n += 1
        yield uuid.UUID(f"{prefix}-0000-4000-8000-{n:012d}")


async def _add_program(client: SQLiteClient, **fields) -> None:
    async with client.session() as session:
        session.add(Program(**fields))


async def _add_students(memory: MemorySession, names: List[str]) -> None:
    batch = await memory.apply(
        [{"action": "add", "path": "/students", "value": {"name": name}} for name in names]
    )
    assert batch.ok


# =============================================================================
# program schema
# =============================================================================


@pytest.mark.asyncio
async def test_goal_key_is_id_prefix_plus_statement(tmp_path: Path, monkeypatch) -> None:
    client = await _client(tmp_path)
    await _add_program(client, id="prog-a", student_id="stu-1", title="Fall", status="active")
    monkeypatch.setattr(uuid, "uuid4", lambda: uuid.UUID("AB12CD34-9f1e-4c1a-8c55-0d2f6a7b8c9d"))

    memory = _session(client, "program", {"studentId": "stu-1"})
    await memory.initialize()
    batch = await memory.apply(
        {
            "action": "add",
            "path": "/Context_Program/goals",
            "value": {"goalStatement": "Student will use 2-3 word phrases", "domain": "language"},
        }
    )

    result = batch.results[0]
    assert result.ok, result.error
    assert result.key == "ab12cd34_student_will_use_23_word_ph"
    goal = memory.document["Context_Program"]["goals"][result.key]
    assert goal["programId"] == "prog-a"
    assert goal["domain"] == "language"
    assert "createdAt" not in goal and "updatedAt" not in goal

    fresh = _session(client, "program", {"studentId": "stu-1"})
    await fresh.initialize()
    assert list(fresh.document["Context_Program"]["goals"]) == [result.key]
    await client.close()


@pytest.mark.asyncio
async def test_context_program_prefers_active_then_newest_draft(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    await _add_program(
        client, id="p-old-draft", student_id="stu-1", status="draft",
        created_at=datetime(2024, 1, 1),
    )
    await _add_program(
        client, id="p-new-draft", student_id="stu-1", status="draft",
        created_at=datetime(2025, 1, 1),
    )

    memory = _session(client, "program", {"studentId": "stu-1"})
    await memory.initialize()
    assert memory.document["Context_Program"]["id"] == "p-new-draft"

    await _add_program(
        client, id="p-active", student_id="stu-1", status="active",
        created_at=datetime(2023, 6, 1),
    )
    memory.invalidate("/Context_Program")
    await memory.refresh_stale()
    assert memory.document["Context_Program"]["id"] == "p-active"
    await client.close()


@pytest.mark.asyncio
async def test_object_write_ignores_identity_and_unknown_fields(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    await _add_program(client, id="prog-a", student_id="stu-1", title="Fall", status="draft")

    memory = _session(client, "program", {"studentId": "stu-1"})
    await memory.initialize()
    batch = await memory.apply(
        [
            {
                "action": "update",
                "path": "/Context_Program",
                "value": {"title": "Spring", "id": "hijack", "studentId": "stu-9", "bogus": 1},
            },
            {"action": "set", "path": "/Context_Program/status", "value": "active"},
        ]
    )

    assert batch.ok
    program = memory.document["Context_Program"]
    assert program["id"] == "prog-a"
    assert program["studentId"] == "stu-1"
    assert program["title"] == "Spring"
    assert program["status"] == "active"
    await client.close()


@pytest.mark.asyncio
async def test_map_keys_resolve_only_inside_their_scope(tmp_path: Path, monkeypatch) -> None:
    client = await _client(tmp_path)
    await _add_program(client, id="prog-a", student_id="stu-1", status="active")
    await _add_program(client, id="prog-b", student_id="stu-2", status="active")
    ids = _uuid_sequence()
    monkeypatch.setattr(uuid, "uuid4", lambda: next(ids))

    first = _session(client, "program", {"studentId": "stu-1"})
    second = _session(client, "program", {"studentId": "stu-2"})
    await first.initialize()
    await second.initialize()
    add = {"action": "add", "path": "/Context_Program/goals", "value": {"goalStatement": "Ask for a break"}}
    key_a = (await first.apply(add)).results[0].key
    key_b = (await second.apply(add)).results[0].key
    other = (
        await first.apply(
            {"action": "add", "path": "/Context_Program/goals", "value": {"goalStatement": "Use full sentences"}}
        )
    ).results[0].key

    assert key_a == key_b == "ab12cd34_ask_for_a_break"
    assert other == "ab12cd34_use_full_sentences"

    await second.apply(
        {"action": "update", "path": f"/Context_Program/goals/{key_b}", "value": {"domain": "behavior"}}
    )

    async with client.session() as session:
        rows = (await session.execute(select(Goal).order_by(Goal.id))).scalars().all()
        by_program = {(row.program_id, row.goal_statement): row.domain for row in rows}
    assert by_program[("prog-a", "Ask for a break")] is None
    assert by_program[("prog-b", "Ask for a break")] == "behavior"

    viewed = await first.apply({"action": "view", "path": f"/Context_Program/goals/{other}"})
    assert viewed.results[0].value["goalStatement"] == "Use full sentences"
    await client.close()


@pytest.mark.asyncio
async def test_short_key_prefixes_never_resolve_to_a_row(tmp_path: Path, monkeypatch) -> None:
    client = await _client(tmp_path)
    await _add_program(client, id="prog-a", student_id="stu-1", status="active")
    monkeypatch.setattr(uuid, "uuid4", lambda: uuid.UUID("e46940a0-1111-4000-8000-000000000001"))
    memory = _session(client, "program", {"studentId": "stu-1"})
    await memory.initialize()
    key = (
        await memory.apply(
            {"action": "add", "path": "/Context_Program/goals", "value": {"goalStatement": "Real goal"}}
        )
    ).results[0].key
    assert key == "e46940a0_real_goal"

    batch = await memory.apply(
        [
            {"action": "view", "path": "/Context_Program/goals/e_totally_other_goal"},
            {
                "action": "update",
                "path": "/Context_Program/goals/e46940a_real_goal",
                "value": {"domain": "behavior"},
            },
            {"action": "delete", "path": "/Context_Program/goals/e_totally_other_goal"},
            {"action": "delete", "path": "/Context_Program/goals/_real_goal"},
        ]
    )

    assert [r.ok for r in batch.results] == [False, False, False, False]
    assert {r.error["code"] for r in batch.results} == {"not_found"}
    assert list(memory.document["Context_Program"]["goals"]) == [key]

    listed = await memory.apply({"action": "view", "path": "/Context_Program/goals"})
    assert listed.results[0].total == 1
    assert listed.results[0].value[key]["domain"] is None
    await client.close()


@pytest.mark.asyncio
async def test_updating_goal_statement_rekeys_entry(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    await _add_program(client, id="prog-a", student_id="stu-1", status="active")
    memory = _session(client, "program", {"studentId": "stu-1"})
    await memory.initialize()
    added = (
        await memory.apply(
            {"action": "add", "path": "/Context_Program/goals", "value": {"goalStatement": "Ask for a break"}}
        )
    ).results[0]

    batch = await memory.apply(
        [
            {"action": "update", "path": added.new_path, "value": {"goalStatement": "Ask for help"}},
            {"action": "rename", "path": added.new_path, "new_key": "anything"},
        ]
    )

    updated, renamed = batch.results
    assert updated.ok
    assert updated.key.endswith("_ask_for_help")
    assert list(memory.document["Context_Program"]["goals"]) == [updated.key]
    assert renamed.ok is False
    assert renamed.error["code"] == "unsupported_operation"
    await client.close()


@pytest.mark.asyncio
async def test_objectives_follow_sequence_order_under_their_goal(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    await _add_program(client, id="prog-a", student_id="stu-1", status="active")
    memory = _session(client, "program", {"studentId": "stu-1"})
    await memory.initialize()
    key = (
        await memory.apply(
            {"action": "add", "path": "/Context_Program/goals", "value": {"goalStatement": "Ask for a break"}}
        )
    ).results[0].key
    path = f"/Context_Program/goals/{key}/objectives"

    batch = await memory.apply(
        [
            {"action": "add", "path": path, "value": {"description": "Points to break card"}},
            {"action": "add", "path": path, "value": {"description": "Says 'break please'"}},
            {"action": "insert", "path": path, "index": 0, "value": {"description": "Tolerates a 1 minute wait"}},
            {"action": "view", "path": path},
        ]
    )

    assert batch.ok
    listed = batch.results[-1].value
    assert [o["description"] for o in listed] == [
        "Tolerates a 1 minute wait",
        "Points to break card",
        "Says 'break please'",
    ]
    assert [o["sequenceOrder"] for o in listed] == [0, 1, 2]
    await client.close()


# =============================================================================
# roster schema
# =============================================================================


@pytest.mark.asyncio
async def test_array_pages_report_full_total(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)
    await _add_students(memory, [f"Student {n}" for n in range(12)])

    batch = await memory.apply(
        {"action": "view", "path": "/students", "page": {"offset": 10, "limit": 5}}
    )

    result = batch.results[0]
    assert [s["name"] for s in result.value] == ["Student 10", "Student 11"]
    assert result.total == 12
    await client.close()


@pytest.mark.asyncio
async def test_sequential_adds_get_increasing_sort_order(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)
    await _add_students(memory, ["Avery", "Blake"])

    batch = await memory.apply({"action": "view", "path": "/students"})

    assert [s["name"] for s in batch.results[0].value] == ["Avery", "Blake"]
    assert [s["sortOrder"] for s in batch.results[0].value] == [0, 1]
    await client.close()


@pytest.mark.asyncio
async def test_student_goals_need_the_student_in_memory(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)
    await _add_students(memory, ["Avery", "Blake"])

    missing = await memory.apply({"action": "view", "path": "/students/1/goals"})
    assert missing.results[0].error["code"] == "missing_context"

    batch = await memory.apply(
        [
            {"action": "view", "path": "/students"},
            {"action": "add", "path": "/students/1/goals", "value": {"description": "Count to 50"}},
            {"action": "view", "path": "/students/1/goals"},
            {"action": "view", "path": "/students/0/goals"},
        ]
    )

    assert batch.ok
    blake = memory.document["students"][1]
    assert [g["description"] for g in blake["goals"]] == ["Count to 50"]
    assert blake["goals"][0]["studentId"] == blake["id"]
    assert memory.document["students"][0]["goals"] == []
    await client.close()


@pytest.mark.asyncio
async def test_insert_and_delete_renumber_rows(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)
    await _add_students(memory, ["A", "B", "C"])
    await memory.apply({"action": "view", "path": "/students"})

    batch = await memory.apply(
        [
            {"action": "insert", "path": "/students", "index": 1, "value": {"name": "Inserted"}},
            {"action": "delete", "path": "/students/0"},
            {"action": "delete", "path": "/students/9"},
        ]
    )

    assert [r.ok for r in batch.results] == [True, True, False]
    assert batch.results[2].error["code"] == "not_found"
    assert [s["name"] for s in memory.document["students"]] == ["Inserted", "B", "C"]

    async with client.session() as session:
        rows = (
            await session.execute(select(Student.name, Student.sort_order).order_by(Student.sort_order))
        ).all()
    assert [row.name for row in rows] == ["Inserted", "B", "C"]
    assert [row.sort_order for row in rows] == [1, 2, 3]
    assert memory.load_state.total("/students") == 3
    await client.close()


@pytest.mark.asyncio
async def test_profile_write_creates_scoped_row(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)
    await memory.initialize()
    assert "profile" not in memory.document

    batch = await memory.apply(
        {"action": "set", "path": "/profile", "value": {"displayName": "Ms. Rivera", "tone": "warm"}}
    )

    assert batch.ok
    assert memory.document["profile"]["agentInstanceId"] == "tutor-1"
    assert memory.document["profile"]["displayName"] == "Ms. Rivera"

    other = _session(client, "roster", {"agentInstanceId": "tutor-2"})
    await other.initialize()
    assert "profile" not in other.document
    await client.close()


@pytest.mark.asyncio
async def test_contacts_use_stored_keys(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)
    await memory.initialize()

    batch = await memory.apply(
        [
            {"action": "add", "path": "/contacts", "value": {"key": "mom", "name": "Dana"}},
            {"action": "add", "path": "/contacts", "value": {"key": "mom", "name": "Again"}},
            {"action": "rename", "path": "/contacts/mom", "new_key": "guardian"},
            {"action": "upsert", "path": "/contacts", "key": "coach", "value": {"name": "Lee"}},
            {"action": "upsert", "path": "/contacts/coach", "value": {"phone": "555-0100"}},
            {"action": "delete", "path": "/contacts/nobody"},
        ]
    )

    assert [r.ok for r in batch.results] == [True, False, True, True, True, False]
    assert batch.results[1].error["code"] == "invalid_operation"
    assert batch.results[5].error["code"] == "not_found"
    contacts = memory.document["contacts"]
    assert set(contacts) == {"guardian", "coach"}
    assert contacts["guardian"]["name"] == "Dana"
    assert contacts["coach"]["phone"] == "555-0100"
    assert memory.load_state.total("/contacts") == 2

    async with client.session() as session:
        keys = (await session.execute(select(Contact.key).order_by(Contact.key))).scalars().all()
    assert keys == ["coach", "guardian"]
    await client.close()


@pytest.mark.asyncio
async def test_constraint_violations_surface_as_store_errors(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    memory = _session(client, "roster", ROSTER)

    batch = await memory.apply({"action": "add", "path": "/students", "value": {"grade": "3"}})

    assert batch.results[0].ok is False
    assert batch.results[0].error["code"] == "store_error"
    await client.close()
