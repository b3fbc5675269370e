"""
Roster memory: the agent's own profile, its students (each with goals)
and its contacts.

Base context: {"agentInstanceId": ...}
"""

from typing import Any, List

from bridge.schema import ArrayField, FieldNode, MapField, ObjectField, PrimitiveField
from bridge.settings import BridgeSettings
from db.operations import SqlArrayOperations, SqlObjectOperations, StoredKeyMapOperations
from db.sqlite_client import AgentProfile, Contact, Student, StudentGoal

SCOPE_KEY = "agentInstanceId"


def build_roster_fields(client: Any, settings: BridgeSettings) -> List[FieldNode]:
    profile = ObjectField(
        id="profile",
        description="How this agent presents itself.",
        properties=(
            PrimitiveField("id"),
            PrimitiveField("displayName"),
            PrimitiveField("role"),
            PrimitiveField("tone"),
            PrimitiveField("notes"),
        ),
        ops=SqlObjectOperations(
            client,
            AgentProfile,
            name="profile",
            scope_column="agent_instance_id",
            scope_key=SCOPE_KEY,
        ),
        auto_open=True,
    )

    student_goals = ArrayField(
        id="goals",
        description="Goals tracked for one student, in priority order.",
        items=ObjectField(
            id="goal",
            properties=(
                PrimitiveField("id"),
                PrimitiveField("description", required=True),
                PrimitiveField("status", enum=("open", "met", "dropped")),
                PrimitiveField("targetDate", format="date"),
            ),
        ),
        ops=SqlArrayOperations(
            client,
            StudentGoal,
            name="student_goals",
            scope_column="student_id",
            scope_key="studentId",
        ),
        auto_open=True,
    )

    students = ArrayField(
        id="students",
        items=ObjectField(
            id="student",
            properties=(
                PrimitiveField("id"),
                PrimitiveField("name", required=True),
                PrimitiveField("grade"),
                PrimitiveField("notes"),
                student_goals,
            ),
        ),
        ops=SqlArrayOperations(
            client,
            Student,
            name="students",
            scope_column="agent_instance_id",
            scope_key=SCOPE_KEY,
            child_context={"studentId": "id"},
        ),
        auto_open=True,
    )

    contacts = MapField(
        id="contacts",
        description="People the agent keeps in touch with, keyed by a short handle.",
        values=ObjectField(
            id="contact",
            properties=(
                PrimitiveField("id"),
                PrimitiveField("key"),
                PrimitiveField("name"),
                PrimitiveField("relationshipType"),
                PrimitiveField("email", format="email"),
                PrimitiveField("phone"),
            ),
        ),
        ops=StoredKeyMapOperations(
            client,
            Contact,
            name="contacts",
            key_column="key",
            scope_column="agent_instance_id",
            scope_key=SCOPE_KEY,
        ),
        auto_open=True,
    )

    return [profile, students, contacts]
