"""
changemaker.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- workspaces             — Tenant boundary + rewards program configuration
- users                  — Participants, shipping address, provider-sync state
- workspace_memberships  — Per-workspace role (ADMIN / MANAGER / PARTICIPANT)
- challenges             — Engagement campaigns
- challenge_assignments  — Manager ↔ challenge review scope
- activities             — Units of work with a configured reward
- submissions            — Participant attempts, moved through review states
- reward_issuances       — One reward owed to one user (financial record)
- notifications          — In-app notices for participants
- activity_events        — Append-only audit trail
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Changemaker ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class MembershipRole(enum.StrEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    PARTICIPANT = "PARTICIPANT"


class SubmissionStatus(enum.StrEnum):
    """Review states a submission moves through."""
    PENDING = "PENDING"
    MANAGER_APPROVED = "MANAGER_APPROVED"
    NEEDS_REVISION = "NEEDS_REVISION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RewardType(enum.StrEnum):
    POINTS = "points"
    SKU = "sku"
    MONETARY = "monetary"


class RewardStatus(enum.StrEnum):
    """Local lifecycle of a RewardIssuance."""
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RewardStackStatus(enum.StrEnum):
    """Mirror of the provider-side transaction status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETURNED = "RETURNED"


class SyncStatus(enum.StrEnum):
    NOT_SYNCED = "NOT_SYNCED"
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class RewardStackEnvironment(enum.StrEnum):
    QA = "QA"
    PRODUCTION = "PRODUCTION"


class NotificationType(enum.StrEnum):
    SHIPPING_ADDRESS_REQUIRED = "SHIPPING_ADDRESS_REQUIRED"
    REWARD_ISSUED = "REWARD_ISSUED"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_NEEDS_REVISION = "SUBMISSION_NEEDS_REVISION"


class ActivityEventType(enum.StrEnum):
    """Categories of audit rows recorded in activity_events."""
    SUBMISSION_CREATED = "SUBMISSION_CREATED"
    SUBMISSION_MANAGER_APPROVED = "SUBMISSION_MANAGER_APPROVED"
    SUBMISSION_NEEDS_REVISION = "SUBMISSION_NEEDS_REVISION"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    REWARD_ISSUED = "REWARD_ISSUED"
    REWARD_FAILED = "REWARD_FAILED"
    REWARD_RETRY = "REWARD_RETRY"
    REWARD_STATUS_UPDATED = "REWARD_STATUS_UPDATED"


# ---------------------------------------------------------------------------
# Workspace: tenant boundary
# ---------------------------------------------------------------------------
class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    reward_stack_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    reward_stack_program_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_environment: Mapped[str] = mapped_column(
        String(20), default=RewardStackEnvironment.QA
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Workspace id={self.id} slug={self.slug!r}>"


# ---------------------------------------------------------------------------
# Users: participants with shipping + provider-sync fields
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), default=None)
    last_name: Mapped[str | None] = mapped_column(String(100), default=None)

    # Shipping address
    address_line1: Mapped[str | None] = mapped_column(String(255), default=None)
    address_line2: Mapped[str | None] = mapped_column(String(255), default=None)
    city: Mapped[str | None] = mapped_column(String(100), default=None)
    state: Mapped[str | None] = mapped_column(String(100), default=None)
    zip_code: Mapped[str | None] = mapped_column(String(20), default=None)
    country: Mapped[str | None] = mapped_column(String(100), default=None)
    phone: Mapped[str | None] = mapped_column(String(40), default=None)

    # Provider sync
    reward_stack_participant_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_sync_status: Mapped[str] = mapped_column(
        String(20), default=SyncStatus.NOT_SYNCED
    )
    reward_stack_last_sync: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    memberships: Mapped[list[WorkspaceMembership]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"


class WorkspaceMembership(Base):
    __tablename__ = "workspace_memberships"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[str] = mapped_column(String(20), default=MembershipRole.PARTICIPANT)

    user: Mapped[User] = relationship(back_populates="memberships")

    def __repr__(self) -> str:
        return (
            f"<WorkspaceMembership user={self.user_id} "
            f"workspace={self.workspace_id} role={self.role}>"
        )


# ---------------------------------------------------------------------------
# Challenges, assignments, activities
# ---------------------------------------------------------------------------
class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    # False → single-tier approval: admins may approve PENDING directly.
    require_manager_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    activities: Mapped[list[Activity]] = relationship(back_populates="challenge")

    __table_args__ = (
        Index("ix_challenges_workspace", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<Challenge id={self.id} title={self.title!r}>"


class ChallengeAssignment(Base):
    """Grants a manager review rights over one challenge."""
    __tablename__ = "challenge_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    manager_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("challenge_id", "manager_id", name="uq_assignment_challenge_manager"),
        Index("ix_assignment_manager", "manager_id", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<ChallengeAssignment challenge={self.challenge_id} manager={self.manager_id}>"


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    reward_type: Mapped[str | None] = mapped_column(String(20), default=None)
    reward_amount: Mapped[int | None] = mapped_column(Integer, default=None)
    reward_sku_id: Mapped[str | None] = mapped_column(String(100), default=None)

    challenge: Mapped[Challenge] = relationship(back_populates="activities")

    def __repr__(self) -> str:
        return f"<Activity id={self.id} name={self.name!r} reward={self.reward_type}>"


# ---------------------------------------------------------------------------
# Submissions: never hard-deleted
# ---------------------------------------------------------------------------
class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False
    )
    activity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activities.id"), nullable=False
    )
    enrollment_id: Mapped[str | None] = mapped_column(String(36), default=None)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), default=SubmissionStatus.PENDING)

    manager_notes: Mapped[str | None] = mapped_column(Text, default=None)
    manager_reviewed_by: Mapped[str | None] = mapped_column(String(36), default=None)
    manager_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    review_notes: Mapped[str | None] = mapped_column(Text, default=None)
    reviewed_by: Mapped[str | None] = mapped_column(String(36), default=None)
    reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    activity: Mapped[Activity] = relationship()

    __table_args__ = (
        Index("ix_submissions_activity_status", "activity_id", "status"),
        Index("ix_submissions_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<Submission id={self.id} user={self.user_id} status={self.status}>"


# ---------------------------------------------------------------------------
# RewardIssuance: financial/audit record, never deleted
# ---------------------------------------------------------------------------
class RewardIssuance(Base):
    """One unit of reward owed to one user.

    ``status`` is the local lifecycle; ``reward_stack_status`` mirrors the
    provider.  A row is *claimed* for an issuance attempt by moving
    ``reward_stack_status`` to PROCESSING while ``status`` is still PENDING,
    so at most one attempt talks to the provider at a time.
    """
    __tablename__ = "reward_issuances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("challenges.id"), nullable=True
    )
    # One issuance per approved submission
    submission_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("submissions.id"), nullable=True, unique=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int | None] = mapped_column(Integer, default=None)
    sku_id: Mapped[str | None] = mapped_column(String(100), default=None)
    status: Mapped[str] = mapped_column(String(20), default=RewardStatus.PENDING)

    reward_stack_status: Mapped[str | None] = mapped_column(String(20), default=None)
    reward_stack_transaction_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_adjustment_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_error_message: Mapped[str | None] = mapped_column(Text, default=None)
    external_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    address_retry_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        Index("ix_reward_issuances_workspace_status", "workspace_id", "status"),
        Index("ix_reward_issuances_user_status", "user_id", "status"),
        Index("ix_reward_issuances_transaction", "reward_stack_transaction_id"),
        Index("ix_reward_issuances_adjustment", "reward_stack_adjustment_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<RewardIssuance id={self.id} type={self.type} "
            f"status={self.status} rs={self.reward_stack_status}>"
        )


# ---------------------------------------------------------------------------
# Notifications: in-app notices
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(500), default=None)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_notifications_user_workspace", "user_id", "workspace_id"),
    )

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user={self.user_id} type={self.type}>"


# ---------------------------------------------------------------------------
# ActivityEvent: append-only audit trail
# ---------------------------------------------------------------------------
class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    actor_user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_events_workspace_time", "workspace_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEvent id={self.id} type={self.type}>"
