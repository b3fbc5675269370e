import asyncio
import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from db.migration_runner import MigrationRunner, split_statements
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _create_legacy_contacts_table(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                id VARCHAR(36) PRIMARY KEY,
                agent_instance_id VARCHAR(64) NOT NULL,
                key VARCHAR(128) NOT NULL,
                name VARCHAR(200),
                relationship VARCHAR(100),
                email VARCHAR(200),
                created_at DATETIME,
                updated_at DATETIME,
                UNIQUE (agent_instance_id, key)
            )
            """
        )
        conn.execute(
            "INSERT INTO contacts (id, agent_instance_id, key, name, created_at) "
            "VALUES (?, ?, ?, ?, datetime('now'))",
            ("c0ffee00-0000-4000-8000-000000000001", "tutor-1", "mom", "Dana"),
        )
        conn.commit()


def _write_test_migration(tmp_path: Path) -> Path:
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir(parents=True, exist_ok=True)
    (migrations_dir / "0001_test.sql").write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
        encoding="utf-8",
    )
    return migrations_dir


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    _create_legacy_contacts_table(db_path)
    migrations_dir = _write_test_migration(tmp_path)

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    assert await runner.pending_versions() == ["0001"]

    first_applied = await runner.apply_pending()
    second_applied = await runner.apply_pending()

    assert first_applied == ["0001"]
    assert second_applied == []
    assert await runner.pending_versions() == []

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1


@pytest.mark.asyncio
async def test_migration_runner_detects_checksum_mismatch(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = _write_test_migration(tmp_path)

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    (migrations_dir / "0001_test.sql").write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY, x TEXT);",
        encoding="utf-8",
    )

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_sqlite_client_init_db_upgrades_legacy_contacts(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    _create_legacy_contacts_table(db_path)

    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    await client.close()

    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        versions = {
            row["version"]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        assert {"0001", "0002"} <= versions

        columns = {
            col["name"]: col
            for col in conn.execute("PRAGMA table_info(contacts)").fetchall()
        }
        assert "phone" in columns
        assert "sort_order" in columns

        legacy = conn.execute("SELECT key, sort_order FROM contacts").fetchone()
        assert legacy["key"] == "mom"
        assert int(legacy["sort_order"]) == 0

        index_names = {
            row["name"]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        assert "idx_contacts_agent_order" in index_names
        assert "idx_goals_program_order" in index_names
        assert "idx_objectives_goal_sequence" in index_names


@pytest.mark.asyncio
async def test_sqlite_client_init_db_on_fresh_database_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"
    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    await client.init_db()
    await client.close()

    with sqlite3.connect(db_path) as conn:
        for version in ("0001", "0002"):
            count = conn.execute(
                "SELECT COUNT(*) FROM schema_migrations WHERE version=?", (version,)
            ).fetchone()[0]
            assert count == 1

        table_names = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {
            "agent_profiles",
            "students",
            "student_goals",
            "contacts",
            "programs",
            "goals",
            "objectives",
            "team_members",
        } <= table_names


@pytest.mark.asyncio
async def test_migration_runner_handles_database_url_query_params(
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "memory-with-query.db"
    migrations_dir = _write_test_migration(tmp_path)

    database_url = f"{_sqlite_url(db_path)}?cache=shared"
    runner = MigrationRunner(database_url, migrations_dir=migrations_dir)
    applied = await runner.apply_pending()

    assert applied == ["0001"]
    assert db_path.exists()


@pytest.mark.asyncio
async def test_migration_runner_serializes_concurrent_apply(tmp_path: Path) -> None:
    db_path = tmp_path / "concurrent.db"
    migrations_dir = _write_test_migration(tmp_path)

    runner_a = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    runner_b = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    results = await asyncio.gather(runner_a.apply_pending(), runner_b.apply_pending())

    flattened = [version for batch in results for version in batch]
    assert flattened.count("0001") == 1


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(tmp_path: Path) -> None:
    db_path = tmp_path / "timeout.db"
    migrations_dir = _write_test_migration(tmp_path)

    lock_path = tmp_path / "migration.lock"
    with FileLock(str(lock_path), timeout=1):
        runner = MigrationRunner(
            _sqlite_url(db_path),
            migrations_dir=migrations_dir,
            lock_file_path=lock_path,
            lock_timeout_seconds=0.01,
        )
        with pytest.raises(RuntimeError, match="Timed out waiting for migration lock"):
            await runner.apply_pending()


def test_migration_runner_normalizes_relative_env_lock_path(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "dbdir" / "memory.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("DB_MIGRATION_LOCK_FILE", "locks/migrate.lock")
    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=tmp_path / "migrations")

    expected = (db_path.parent / "locks/migrate.lock").resolve()
    assert runner.lock_file_path == expected


@pytest.mark.asyncio
async def test_migration_runner_skips_in_memory_database(tmp_path: Path) -> None:
    migrations_dir = _write_test_migration(tmp_path)

    runner = MigrationRunner(
        "sqlite+aiosqlite:///:memory:", migrations_dir=migrations_dir
    )
    applied = await runner.apply_pending()
    assert applied == []


def test_split_statements_respects_quotes_and_comments() -> None:
    script = (
        "-- seed; not a statement\n"
        "INSERT INTO notes(body) VALUES ('a; b');\n"
        "CREATE INDEX IF NOT EXISTS idx_notes ON notes(body);\n"
        "-- trailing comment\n"
    )

    assert split_statements(script) == [
        "INSERT INTO notes(body) VALUES ('a; b');",
        "CREATE INDEX IF NOT EXISTS idx_notes ON notes(body);",
    ]
