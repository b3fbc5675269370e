"""
SQLite Client for the memory bridge

This module implements the relational store behind the agent memory:
- Roster tables (agent profile, students, student goals, contacts)
- Program tables (programs, goals, objectives, team members)
- Async session handling and schema bootstrap with SQL migrations
"""

import os
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship
from dotenv import load_dotenv, find_dotenv
from .migration_runner import apply_pending_migrations

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB columns."""
    return _utc_now().replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ORM Models: roster
# =============================================================================


class AgentProfile(Base):
    """Per-agent-instance profile. One row per agent instance."""

    __tablename__ = "agent_profiles"

    id = Column(String(36), primary_key=True, default=_new_id)
    agent_instance_id = Column(String(64), nullable=False, unique=True)
    display_name = Column(String(200), nullable=True)
    role = Column(String(100), nullable=True)
    tone = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=_new_id)
    agent_instance_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    grade = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)

    goals = relationship("StudentGoal", back_populates="student", cascade="all, delete-orphan")


class StudentGoal(Base):
    __tablename__ = "student_goals"

    id = Column(String(36), primary_key=True, default=_new_id)
    student_id = Column(
        String(36), ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    description = Column(Text, nullable=False)
    status = Column(String(32), nullable=True, default="open")
    target_date = Column(String(10), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)

    student = relationship("Student", back_populates="goals")


class Contact(Base):
    """Contacts are a map with an explicit, stored key."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("agent_instance_id", "key"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    agent_instance_id = Column(String(64), nullable=False, index=True)
    key = Column(String(128), nullable=False)
    name = Column(String(200), nullable=True)
    relationship_type = Column("relationship", String(100), nullable=True)
    email = Column(String(200), nullable=True)
    phone = Column(String(64), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


# =============================================================================
# ORM Models: program
# =============================================================================


class Program(Base):
    """A student's program; at most one is expected to be active."""

    __tablename__ = "programs"

    id = Column(String(36), primary_key=True, default=_new_id)
    student_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=True)
    status = Column(String(16), nullable=False, default="draft", server_default="draft")
    start_date = Column(String(10), nullable=True)
    end_date = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class Goal(Base):
    __tablename__ = "goals"

    id = Column(String(36), primary_key=True, default=_new_id)
    program_id = Column(
        String(36), ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    goal_statement = Column(Text, nullable=False)
    domain = Column(String(100), nullable=True)
    status = Column(String(32), nullable=True, default="active")
    sort_order = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)

    objectives = relationship("Objective", back_populates="goal", cascade="all, delete-orphan")


class Objective(Base):
    __tablename__ = "objectives"

    id = Column(String(36), primary_key=True, default=_new_id)
    goal_id = Column(
        String(36), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    description = Column(Text, nullable=False)
    criteria = Column(Text, nullable=True)
    sequence_order = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)

    goal = relationship("Goal", back_populates="objectives")


class TeamMember(Base):
    __tablename__ = "team_members"

    id = Column(String(36), primary_key=True, default=_new_id)
    program_id = Column(
        String(36), ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(200), nullable=False)
    role = Column(String(100), nullable=True)
    email = Column(String(200), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


# =============================================================================
# Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client shared by every memory operation set.

    The client only owns the engine and session lifecycle; row-level
    semantics live in the operation sets (db/operations.py).
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_bridge.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """Create tables if they don't exist, then apply pending SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# =============================================================================
# Global client
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
