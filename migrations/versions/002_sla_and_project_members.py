"""Add incident communication SLAs and project team members.

Revision ID: 002_sla_and_project_members
Revises: 001_initial
Create Date: 2026-10-20

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_sla_and_project_members"
down_revision: str | None = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "projects",
        sa.Column("members", sa.JSON(), nullable=False, server_default="[]"),
    )
    op.add_column(
        "projects",
        sa.Column("billing_plan_id", sa.String(length=100), nullable=True),
    )

    op.create_table(
        "incident_communication_slas",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("alert_time", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_incident_communication_slas_project_id"),
        "incident_communication_slas",
        ["project_id"],
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_incident_communication_slas_project_id"),
        table_name="incident_communication_slas",
    )
    op.drop_table("incident_communication_slas")
    op.drop_column("projects", "billing_plan_id")
    op.drop_column("projects", "members")
