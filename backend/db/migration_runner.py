"""
Schema migrations for the memory store.

`SQLiteClient.init_db` creates tables from the ORM models first, so a fresh
database already carries every column. Migrations bring databases created
by older releases up to date: plain SQL files named `NNNN_description.sql`,
applied once each in version order under a file lock. Applied versions are
recorded in `schema_migrations` with a checksum; editing a migration after it
was applied is refused.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_SQLITE_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_NAME = re.compile(r"^(?P<version>\d{4,})_.+\.sql$")
_ADD_COLUMN = re.compile(
    r"^ALTER\s+TABLE\s+[\"`\[]?(?P<table>\w+)[\"`\]]?\s+ADD\s+(?:COLUMN\s+)?"
    r"[\"`\[]?(?P<column>\w+)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """File behind a SQLite URL, or None for an in-memory database."""
    for prefix in _SQLITE_URL_PREFIXES:
        if database_url.startswith(prefix):
            raw = unquote(database_url[len(prefix):].split("?", 1)[0].split("#", 1)[0])
            if not raw or raw == ":memory:":
                return None
            return Path(raw)
    raise ValueError(
        "Unsupported DATABASE_URL for migrations. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def _checksum(content: bytes) -> str:
    # CRLF and LF checkouts of the same file hash the same.
    try:
        content = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
    except UnicodeDecodeError:
        pass
    return hashlib.sha256(content).hexdigest()


def _strip_comments(statement: str) -> str:
    lines = [line for line in statement.splitlines() if not line.strip().startswith("--")]
    return "\n".join(lines).strip()


def split_statements(script: str) -> List[str]:
    """Split a script on statement boundaries, honouring quotes and comments."""
    statements: List[str] = []
    buffer = ""
    for part in script.split(";"):
        buffer += part + ";"
        if not sqlite3.complete_statement(buffer):
            continue
        statement = _strip_comments(buffer)
        if statement.strip("; \n\t"):
            statements.append(statement)
        buffer = ""
    return statements


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _resolve_lock_path(
    raw: Optional[Union[Path, str]], database_file: Optional[Path]
) -> Optional[Path]:
    """Relative lock paths are taken relative to the database directory."""
    if raw is None or not str(raw).strip():
        return None
    candidate = Path(str(raw).strip()).expanduser()
    if not candidate.is_absolute() and database_file is not None:
        candidate = database_file.parent / candidate
    return candidate.resolve()


class MigrationRunner:
    """Discover, check and apply SQL migrations for one database URL."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir) if migrations_dir is not None else MIGRATIONS_DIR

        self.lock_file_path = _resolve_lock_path(
            lock_file_path, self.database_file
        ) or _resolve_lock_path(os.getenv("DB_MIGRATION_LOCK_FILE"), self.database_file)
        if self.lock_file_path is None and self.database_file is not None:
            self.lock_file_path = Path(f"{self.database_file}.migrate.lock")

        env_timeout = _env_float("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            lock_timeout_seconds = env_timeout
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def apply_pending(self) -> List[str]:
        """Apply every migration not yet recorded; returns the applied versions."""
        return await asyncio.to_thread(self._apply_pending_locked)

    async def pending_versions(self) -> List[str]:
        """Versions on disk that are not recorded yet. Nothing is applied."""
        return await asyncio.to_thread(self._pending_versions)

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.is_dir():
            return []
        migrations = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_NAME.match(path.name)
            if match:
                migrations.append(
                    Migration(match.group("version"), path, _checksum(path.read_bytes()))
                )
        return migrations

    # ------------------------------------------------------------------

    def _pending_versions(self) -> List[str]:
        migrations = self.discover()
        if self.database_file is None or not self.database_file.exists():
            return [m.version for m in migrations]
        with sqlite3.connect(self.database_file) as conn:
            try:
                recorded = self._recorded(conn)
            except sqlite3.OperationalError:
                recorded = {}
        return [m.version for m in migrations if m.version not in recorded]

    def _apply_pending_locked(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are built from the current models on every start.
        if not migrations or self.database_file is None:
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock: {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            conn.commit()
            recorded = self._recorded(conn)

            for migration in migrations:
                previous = recorded.get(migration.version)
                if previous is not None:
                    if previous != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={previous} current={migration.checksum}"
                        )
                    continue
                for statement in split_statements(migration.read()):
                    self._execute(conn, statement)
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
                logger.info("Applied migration %s (%s)", migration.version, migration.path.name)
        return applied

    @staticmethod
    def _recorded(conn: sqlite3.Connection) -> Dict[str, str]:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {str(version): str(checksum) for version, checksum in rows}

    @staticmethod
    def _execute(conn: sqlite3.Connection, statement: str) -> None:
        # Tables created from the current models already have the added columns.
        match = _ADD_COLUMN.match(statement)
        if match:
            columns = {
                row[1] for row in conn.execute(f"PRAGMA table_info({match.group('table')})")
            }
            if match.group("column") in columns:
                logger.debug("Column %s already present, skipping", match.group("column"))
                return
        conn.execute(statement)


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Called by SQLiteClient.init_db after create_all."""
    return await MigrationRunner(database_url, migrations_dir=migrations_dir).apply_pending()
