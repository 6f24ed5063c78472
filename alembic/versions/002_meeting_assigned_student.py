"""Add meetings.assigned_student_id for one active assignment per student.

Revision ID: 002_meeting_assigned_student
Revises: 001_scheduling_tables
Create Date: 2026-10-19

The column is set only on meetings created by the admin assignment console
and cleared when the meeting leaves scheduled/confirmed. The unique
constraint ignores NULLs, so only active assignments collide.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_meeting_assigned_student"
down_revision: Union[str, None] = "001_scheduling_tables"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("meetings") as batch_op:
        batch_op.add_column(sa.Column("assigned_student_id", sa.String(100), nullable=True))
        batch_op.create_unique_constraint(
            "uq_meeting_assigned_student", ["assigned_student_id"]
        )


def downgrade() -> None:
    with op.batch_alter_table("meetings") as batch_op:
        batch_op.drop_constraint("uq_meeting_assigned_student", type_="unique")
        batch_op.drop_column("assigned_student_id")
