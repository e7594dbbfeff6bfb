"""Initial schema: workspaces, review flow and reward issuance

Revision ID: 3c1f0a7e9b42
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1f0a7e9b42"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create every table used by the submission → reward pipeline."""
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("reward_stack_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reward_stack_program_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_environment", sa.String(20), nullable=False, server_default="QA"),
        _created_at(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("address_line1", sa.String(255), nullable=True),
        sa.Column("address_line2", sa.String(255), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("zip_code", sa.String(20), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("phone", sa.String(40), nullable=True),
        sa.Column("reward_stack_participant_id", sa.String(100), nullable=True),
        sa.Column(
            "reward_stack_sync_status", sa.String(20), nullable=False, server_default="NOT_SYNCED"
        ),
        sa.Column("reward_stack_last_sync", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "workspace_memberships",
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "workspace_id", sa.String(36),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("role", sa.String(20), nullable=False, server_default="PARTICIPANT"),
    )

    op.create_table(
        "challenges",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "workspace_id", sa.String(36),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column(
            "require_manager_approval", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        _created_at(),
    )
    op.create_index("ix_challenges_workspace", "challenges", ["workspace_id"])

    op.create_table(
        "challenge_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "challenge_id", sa.String(36),
            sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "manager_id", sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "workspace_id", sa.String(36),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "assigned_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("challenge_id", "manager_id", name="uq_assignment_challenge_manager"),
    )
    op.create_index(
        "ix_assignment_manager", "challenge_assignments", ["manager_id", "workspace_id"]
    )

    op.create_table(
        "activities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "challenge_id", sa.String(36),
            sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("reward_type", sa.String(20), nullable=True),
        sa.Column("reward_amount", sa.Integer(), nullable=True),
        sa.Column("reward_sku_id", sa.String(100), nullable=True),
    )

    op.create_table(
        "submissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("activity_id", sa.String(36), sa.ForeignKey("activities.id"), nullable=False),
        sa.Column("enrollment_id", sa.String(36), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("manager_notes", sa.Text(), nullable=True),
        sa.Column("manager_reviewed_by", sa.String(36), nullable=True),
        sa.Column("manager_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(36), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_submissions_activity_status", "submissions", ["activity_id", "status"]
    )
    op.create_index("ix_submissions_user", "submissions", ["user_id"])

    op.create_table(
        "reward_issuances",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "workspace_id", sa.String(36), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column("challenge_id", sa.String(36), sa.ForeignKey("challenges.id"), nullable=True),
        sa.Column(
            "submission_id", sa.String(36),
            sa.ForeignKey("submissions.id"), nullable=True, unique=True,
        ),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("sku_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("reward_stack_status", sa.String(20), nullable=True),
        sa.Column("reward_stack_transaction_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_adjustment_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_error_message", sa.Text(), nullable=True),
        sa.Column("external_response", postgresql.JSONB(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("address_retry_count", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_reward_issuances_workspace_status", "reward_issuances", ["workspace_id", "status"]
    )
    op.create_index(
        "ix_reward_issuances_user_status", "reward_issuances", ["user_id", "status"]
    )
    op.create_index(
        "ix_reward_issuances_transaction", "reward_issuances", ["reward_stack_transaction_id"]
    )
    op.create_index(
        "ix_reward_issuances_adjustment", "reward_issuances", ["reward_stack_adjustment_id"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "workspace_id", sa.String(36),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("action_url", sa.String(500), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_notifications_user_workspace", "notifications", ["user_id", "workspace_id"]
    )

    op.create_table(
        "activity_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("actor_user_id", sa.String(36), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_activity_events_workspace_time", "activity_events", ["workspace_id", "created_at"]
    )


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_index("ix_activity_events_workspace_time", table_name="activity_events")
    op.drop_table("activity_events")
    op.drop_index("ix_notifications_user_workspace", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_reward_issuances_adjustment", table_name="reward_issuances")
    op.drop_index("ix_reward_issuances_transaction", table_name="reward_issuances")
    op.drop_index("ix_reward_issuances_user_status", table_name="reward_issuances")
    op.drop_index("ix_reward_issuances_workspace_status", table_name="reward_issuances")
    op.drop_table("reward_issuances")
    op.drop_index("ix_submissions_user", table_name="submissions")
    op.drop_index("ix_submissions_activity_status", table_name="submissions")
    op.drop_table("submissions")
    op.drop_table("activities")
    op.drop_index("ix_assignment_manager", table_name="challenge_assignments")
    op.drop_table("challenge_assignments")
    op.drop_index("ix_challenges_workspace", table_name="challenges")
    op.drop_table("challenges")
    op.drop_table("workspace_memberships")
    op.drop_table("users")
    op.drop_table("workspaces")
