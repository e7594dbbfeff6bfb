"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of changemaker.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from changemaker.database.models import (  # noqa: E402
    Activity,
    Base,
    Challenge,
    ChallengeAssignment,
    MembershipRole,
    RewardIssuance,
    RewardStatus,
    RewardType,
    Submission,
    SubmissionStatus,
    SyncStatus,
    User,
    Workspace,
    WorkspaceMembership,
)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Changemaker tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine for tests where threads really race."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'changemaker.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------
FULL_ADDRESS = {
    "address_line1": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "country": "US",
}


@dataclass
class Seed:
    """Ids of a ready-made workspace with one user per role."""

    workspace_id: str
    slug: str
    admin_id: str
    manager_id: str
    participant_id: str
    outsider_id: str
    challenge_id: str
    points_activity_id: str
    sku_activity_id: str


def seed_workspace(
    engine: Engine,
    *,
    slug: str = "acme",
    enabled: bool = True,
    program_id: str | None = "prog-1",
    require_manager_approval: bool = False,
    participant_synced: bool = True,
    participant_address: dict | None = None,
) -> Seed:
    """Insert a workspace, its members, one challenge and two activities."""
    with Session(engine) as session:
        ws = Workspace(
            slug=slug,
            name=f"{slug.title()} Inc",
            reward_stack_enabled=enabled,
            reward_stack_program_id=program_id,
            reward_stack_environment="QA",
        )
        admin = User(email=f"admin@{slug}.test", first_name="Ada", last_name="Admin")
        manager = User(email=f"manager@{slug}.test", first_name="Max", last_name="Manager")
        participant = User(
            email=f"pat@{slug}.test",
            first_name="Pat",
            last_name="Participant",
            **(participant_address if participant_address is not None else FULL_ADDRESS),
        )
        if participant_synced:
            participant.reward_stack_participant_id = "rs-pat"
            participant.reward_stack_sync_status = SyncStatus.SYNCED
        outsider = User(email=f"outsider@{slug}.test")
        session.add_all([ws, admin, manager, participant, outsider])
        session.flush()

        session.add_all([
            WorkspaceMembership(user_id=admin.id, workspace_id=ws.id, role=MembershipRole.ADMIN),
            WorkspaceMembership(
                user_id=manager.id, workspace_id=ws.id, role=MembershipRole.MANAGER
            ),
            WorkspaceMembership(
                user_id=participant.id, workspace_id=ws.id, role=MembershipRole.PARTICIPANT
            ),
        ])
        challenge = Challenge(
            workspace_id=ws.id,
            title="Green Week",
            require_manager_approval=require_manager_approval,
        )
        session.add(challenge)
        session.flush()
        points = Activity(
            challenge_id=challenge.id, name="Bike to work",
            reward_type=RewardType.POINTS, reward_amount=100,
        )
        sku = Activity(
            challenge_id=challenge.id, name="Plant a tree",
            reward_type=RewardType.SKU, reward_sku_id="SKU-MUG",
        )
        session.add_all([points, sku])
        session.add(ChallengeAssignment(
            challenge_id=challenge.id, manager_id=manager.id, workspace_id=ws.id
        ))
        session.commit()
        return Seed(
            workspace_id=ws.id,
            slug=ws.slug,
            admin_id=admin.id,
            manager_id=manager.id,
            participant_id=participant.id,
            outsider_id=outsider.id,
            challenge_id=challenge.id,
            points_activity_id=points.id,
            sku_activity_id=sku.id,
        )


def add_submission(
    engine: Engine,
    seed: Seed,
    *,
    activity_id: str | None = None,
    status: str = SubmissionStatus.PENDING,
    user_id: str | None = None,
) -> str:
    with Session(engine) as session:
        submission = Submission(
            user_id=user_id or seed.participant_id,
            activity_id=activity_id or seed.points_activity_id,
            content="Rode 12km",
            status=status,
        )
        session.add(submission)
        session.commit()
        return submission.id


def add_reward(
    engine: Engine,
    seed: Seed,
    *,
    type: str = RewardType.POINTS,
    amount: int | None = 100,
    sku_id: str | None = None,
    status: str = RewardStatus.PENDING,
    reward_stack_status: str | None = None,
    error: str | None = None,
    address_retry_count: int = 0,
    user_id: str | None = None,
) -> str:
    with Session(engine) as session:
        reward = RewardIssuance(
            user_id=user_id or seed.participant_id,
            workspace_id=seed.workspace_id,
            challenge_id=seed.challenge_id,
            type=type,
            amount=amount,
            sku_id=sku_id,
            status=status,
            reward_stack_status=reward_stack_status,
            reward_stack_error_message=error,
            address_retry_count=address_retry_count,
        )
        session.add(reward)
        session.commit()
        return reward.id


@pytest.fixture
def seed(db_engine: Engine) -> Seed:
    return seed_workspace(db_engine)


def make_token(sub: str) -> str:
    """Create a JWT for *sub* signed with the running secret."""
    import jwt

    from changemaker.api import deps

    return jwt.encode({"sub": sub}, deps.JWT_SECRET, algorithm=deps.JWT_ALGORITHM)
