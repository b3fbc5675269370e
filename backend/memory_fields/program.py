"""
Program memory for one student.

Base context: {"studentId": ...}

/Context_Program                     the active program (or newest draft)
/Context_Program/goals/{key}         goals keyed "{shortId}_{goal statement}"
/Context_Program/goals/{key}/objectives/{n}
/Context_Program/teamMembers/{key}   team keyed "{shortId}_{name}"
"""

from typing import Any, List

from sqlalchemy import case

from bridge.keys import MapKeyCodec
from bridge.schema import ArrayField, FieldNode, MapField, ObjectField, PrimitiveField
from bridge.settings import BridgeSettings
from db.operations import SqlArrayOperations, SqlMapOperations, SqlObjectOperations
from db.sqlite_client import Goal, Objective, Program, TeamMember

GOAL_LABEL_LENGTH = 27
TEAM_LABEL_LENGTH = 20

PROGRAM_STATUSES = ("draft", "active", "closed")


def program_ordering():
    """Active program first, then drafts, newest first within each."""
    rank = case(
        (Program.status == "active", 0),
        (Program.status == "draft", 1),
        else_=2,
    )
    return (rank.asc(), Program.created_at.desc(), Program.id.desc())


def build_program_fields(client: Any, settings: BridgeSettings) -> List[FieldNode]:
    objectives = ArrayField(
        id="objectives",
        description="Measurable steps toward the goal, in sequence.",
        items=ObjectField(
            id="objective",
            properties=(
                PrimitiveField("id"),
                PrimitiveField("description", required=True),
                PrimitiveField("criteria"),
            ),
        ),
        ops=SqlArrayOperations(
            client,
            Objective,
            name="objectives",
            order_column="sequence_order",
            scope_column="goal_id",
            scope_key="goalId",
        ),
        auto_open=True,
    )

    goals = MapField(
        id="goals",
        values=ObjectField(
            id="goal",
            properties=(
                PrimitiveField("id"),
                PrimitiveField("goalStatement", required=True),
                PrimitiveField("domain"),
                PrimitiveField("status", enum=("active", "met", "discontinued")),
                objectives,
            ),
        ),
        ops=SqlMapOperations(
            client,
            Goal,
            name="goals",
            codec=MapKeyCodec(
                label_field="goalStatement",
                prefix_length=settings.key_prefix_length,
                label_max_length=GOAL_LABEL_LENGTH,
            ),
            scope_column="program_id",
            scope_key="programId",
            child_context={"goalId": "id"},
        ),
        auto_open=True,
    )

    team_members = MapField(
        id="teamMembers",
        values=ObjectField(
            id="teamMember",
            properties=(
                PrimitiveField("id"),
                PrimitiveField("name", required=True),
                PrimitiveField("role"),
                PrimitiveField("email", format="email"),
            ),
        ),
        ops=SqlMapOperations(
            client,
            TeamMember,
            name="team_members",
            codec=MapKeyCodec(
                label_field="name",
                prefix_length=settings.key_prefix_length,
                label_max_length=TEAM_LABEL_LENGTH,
            ),
            scope_column="program_id",
            scope_key="programId",
        ),
        auto_open=True,
    )

    context_program = ObjectField(
        id="Context_Program",
        description="The student's current program.",
        properties=(
            PrimitiveField("id"),
            PrimitiveField("title"),
            PrimitiveField("status", enum=PROGRAM_STATUSES),
            PrimitiveField("startDate", format="date"),
            PrimitiveField("endDate", format="date"),
            goals,
            team_members,
        ),
        ops=SqlObjectOperations(
            client,
            Program,
            name="program",
            order_by=program_ordering(),
            scope_column="student_id",
            scope_key="studentId",
            child_context={"programId": "id"},
        ),
        auto_open=True,
    )

    return [context_program]
