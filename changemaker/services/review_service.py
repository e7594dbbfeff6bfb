"""
changemaker.services.review_service — Submission review transitions
====================================================================

Every mutation follows the same pattern:
  1. Load submission → activity → challenge, scoped to the workspace
  2. Resolve the reviewer (role, assignment) and run the pure rules
     in :mod:`changemaker.engine.review` (raises before any write)
  3. Conditional UPDATE ``WHERE status IN (allowed_from)``; zero rows →
     :class:`ConflictError` (someone else moved it first)
  4. On final approval, create the ``RewardIssuance`` in the same
     transaction, then notify + audit, then commit

:func:`review_and_issue` runs the issuance transaction after the commit;
its outcome never changes the approval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from changemaker.database.engine import run_db
from changemaker.database.models import (
    Activity,
    ActivityEventType,
    Challenge,
    ChallengeAssignment,
    RewardIssuance,
    RewardStatus,
    RewardType,
    Submission,
    SubmissionStatus,
    Workspace,
    WorkspaceMembership,
)
from changemaker.engine.results import Err, Ok
from changemaker.engine.review import (
    Reviewer,
    admin_transition,
    check_admin_reviewer,
    check_manager_reviewer,
    manager_transition,
)
from changemaker.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from changemaker.rewardstack.issuance import IssuanceDeps, execute_issuance
from changemaker.services.audit_service import record_event
from changemaker.services.notification_service import (
    notify_submission_approved,
    notify_submission_needs_revision,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    submission_id: str
    status: str
    reward_id: str | None = None


@dataclass(slots=True)
class _Context:
    submission: Submission
    activity: Activity
    challenge: Challenge
    workspace: Workspace
    reviewer: Reviewer


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _member_role(session: Session, user_id: str, workspace_id: str) -> str | None:
    return session.scalar(
        select(WorkspaceMembership.role).where(
            WorkspaceMembership.user_id == user_id,
            WorkspaceMembership.workspace_id == workspace_id,
        )
    )


def _load_context(
    session: Session, workspace_id: str, submission_id: str, reviewer_id: str
) -> _Context:
    row = session.execute(
        select(Submission, Activity, Challenge)
        .join(Activity, Activity.id == Submission.activity_id)
        .join(Challenge, Challenge.id == Activity.challenge_id)
        .where(Submission.id == submission_id, Challenge.workspace_id == workspace_id)
    ).first()
    if row is None:
        raise NotFoundError("Submission not found")
    submission, activity, challenge = row

    assigned = session.scalar(
        select(ChallengeAssignment.id).where(
            ChallengeAssignment.challenge_id == challenge.id,
            ChallengeAssignment.manager_id == reviewer_id,
            ChallengeAssignment.workspace_id == workspace_id,
        )
    ) is not None

    return _Context(
        submission=submission,
        activity=activity,
        challenge=challenge,
        workspace=session.get(Workspace, workspace_id),
        reviewer=Reviewer(
            user_id=reviewer_id,
            role=_member_role(session, reviewer_id, workspace_id),
            submission_author_id=submission.user_id,
            assigned_to_challenge=assigned,
        ),
    )


def _transition(
    session: Session,
    submission: Submission,
    allowed_from: tuple[SubmissionStatus, ...],
    target: SubmissionStatus,
    **values,
) -> None:
    """Compare-and-swap the submission status or raise ConflictError."""
    current = submission.status
    result = session.execute(
        update(Submission)
        .where(Submission.id == submission.id, Submission.status.in_(allowed_from))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Submission is {current} and cannot be moved to {target}")


def _clean_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    return notes.strip() or None


def _create_reward(session: Session, ctx: _Context) -> RewardIssuance | None:
    """Build the reward owed for an approved submission, if one is configured."""
    activity = ctx.activity
    if not activity.reward_type:
        return None
    reward = RewardIssuance(
        user_id=ctx.submission.user_id,
        workspace_id=ctx.workspace.id,
        challenge_id=ctx.challenge.id,
        submission_id=ctx.submission.id,
        type=activity.reward_type,
        amount=activity.reward_amount,
        sku_id=activity.reward_sku_id if activity.reward_type == RewardType.SKU else None,
        status=RewardStatus.PENDING,
        created_at=datetime.now(UTC),
    )
    session.add(reward)
    session.flush()
    return reward


# ---------------------------------------------------------------------------
# Participant side
# ---------------------------------------------------------------------------
def create_submission(
    engine: Engine,
    *,
    workspace_id: str,
    activity_id: str,
    user_id: str,
    content: str,
    enrollment_id: str | None = None,
) -> Submission:
    """Record a participant's attempt at an activity (status PENDING)."""
    with Session(engine, expire_on_commit=False) as session:
        activity = session.scalar(
            select(Activity)
            .join(Challenge, Challenge.id == Activity.challenge_id)
            .where(Activity.id == activity_id, Challenge.workspace_id == workspace_id)
        )
        if activity is None:
            raise NotFoundError("Activity not found")
        if _member_role(session, user_id, workspace_id) is None:
            raise AuthorizationError("Not a member of this workspace")
        if not content or not content.strip():
            raise ValidationError("Submission content is required")

        submission = Submission(
            user_id=user_id,
            activity_id=activity_id,
            enrollment_id=enrollment_id,
            content=content.strip(),
            status=SubmissionStatus.PENDING,
            created_at=datetime.now(UTC),
        )
        session.add(submission)
        session.flush()
        record_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.SUBMISSION_CREATED,
            user_id=user_id,
            actor_user_id=user_id,
            metadata={"submission_id": submission.id, "activity_id": activity_id},
        )
        session.commit()
        return submission


def resubmit(
    engine: Engine, *, workspace_id: str, submission_id: str, user_id: str, content: str
) -> ReviewOutcome:
    """NEEDS_REVISION → PENDING with new content; author only."""
    if not content or not content.strip():
        raise ValidationError("Submission content is required")
    with Session(engine) as session:
        ctx = _load_context(session, workspace_id, submission_id, user_id)
        if ctx.submission.user_id != user_id:
            raise AuthorizationError("Only the author can resubmit")
        _transition(
            session,
            ctx.submission,
            (SubmissionStatus.NEEDS_REVISION,),
            SubmissionStatus.PENDING,
            content=content.strip(),
        )
        record_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.SUBMISSION_CREATED,
            user_id=user_id,
            actor_user_id=user_id,
            metadata={"submission_id": submission_id, "resubmission": True},
        )
        session.commit()
    return ReviewOutcome(submission_id, SubmissionStatus.PENDING)


# ---------------------------------------------------------------------------
# Manager tier
# ---------------------------------------------------------------------------
def manager_review(
    engine: Engine,
    *,
    workspace_id: str,
    submission_id: str,
    reviewer_id: str,
    action: str,
    notes: str | None = None,
) -> ReviewOutcome:
    """``approve`` → MANAGER_APPROVED, ``reject`` → NEEDS_REVISION."""
    with Session(engine) as session:
        ctx = _load_context(session, workspace_id, submission_id, reviewer_id)
        check_manager_reviewer(ctx.reviewer)
        allowed_from, target = manager_transition(action, notes)

        _transition(
            session,
            ctx.submission,
            allowed_from,
            target,
            manager_notes=_clean_notes(notes),
            manager_reviewed_by=reviewer_id,
            manager_reviewed_at=datetime.now(UTC),
        )

        if target == SubmissionStatus.NEEDS_REVISION:
            notify_submission_needs_revision(
                session,
                user_id=ctx.submission.user_id,
                workspace_id=workspace_id,
                workspace_slug=ctx.workspace.slug,
                activity_name=ctx.activity.name,
                challenge_id=ctx.challenge.id,
                notes=_clean_notes(notes) or "",
            )
            event_type = ActivityEventType.SUBMISSION_NEEDS_REVISION
        else:
            event_type = ActivityEventType.SUBMISSION_MANAGER_APPROVED

        record_event(
            session,
            workspace_id=workspace_id,
            type=event_type,
            user_id=ctx.submission.user_id,
            actor_user_id=reviewer_id,
            metadata={"submission_id": submission_id, "notes": _clean_notes(notes)},
        )
        session.commit()

    logger.info("Manager %s moved submission %s → %s", reviewer_id, submission_id, target)
    return ReviewOutcome(submission_id, target)


# ---------------------------------------------------------------------------
# Admin tier
# ---------------------------------------------------------------------------
def admin_review(
    engine: Engine,
    *,
    workspace_id: str,
    submission_id: str,
    reviewer_id: str,
    decision: str,
    notes: str | None = None,
) -> ReviewOutcome:
    """Final decision.  APPROVED creates the reward row in the same commit."""
    with Session(engine) as session:
        ctx = _load_context(session, workspace_id, submission_id, reviewer_id)
        check_admin_reviewer(ctx.reviewer)
        allowed_from, target = admin_transition(
            decision, require_manager_approval=ctx.challenge.require_manager_approval
        )

        _transition(
            session,
            ctx.submission,
            allowed_from,
            target,
            review_notes=_clean_notes(notes),
            reviewed_by=reviewer_id,
            reviewed_at=datetime.now(UTC),
        )

        reward_id = None
        if target == SubmissionStatus.APPROVED:
            reward = _create_reward(session, ctx)
            reward_id = reward.id if reward else None
            notify_submission_approved(
                session,
                user_id=ctx.submission.user_id,
                workspace_id=workspace_id,
                workspace_slug=ctx.workspace.slug,
                activity_name=ctx.activity.name,
                challenge_id=ctx.challenge.id,
                points_awarded=(
                    ctx.activity.reward_amount
                    if ctx.activity.reward_type == RewardType.POINTS
                    else None
                ),
            )
            event_type = ActivityEventType.SUBMISSION_APPROVED
        else:
            event_type = ActivityEventType.SUBMISSION_REJECTED

        record_event(
            session,
            workspace_id=workspace_id,
            type=event_type,
            user_id=ctx.submission.user_id,
            actor_user_id=reviewer_id,
            metadata={
                "submission_id": submission_id,
                "reward_id": reward_id,
                "notes": _clean_notes(notes),
            },
        )
        session.commit()

    logger.info(
        "Admin %s moved submission %s → %s (reward=%s)",
        reviewer_id, submission_id, target, reward_id,
    )
    return ReviewOutcome(submission_id, target, reward_id)


async def review_and_issue(
    deps: IssuanceDeps,
    *,
    workspace_id: str,
    submission_id: str,
    reviewer_id: str,
    decision: str,
    notes: str | None = None,
) -> tuple[ReviewOutcome, Ok[str] | Err | None]:
    """:func:`admin_review`, then run issuance for the new reward inline.

    Review errors propagate; issuance errors come back as ``Err`` and are
    already recorded on the reward row.
    """
    outcome = await run_db(
        admin_review,
        deps.engine,
        workspace_id=workspace_id,
        submission_id=submission_id,
        reviewer_id=reviewer_id,
        decision=decision,
        notes=notes,
    )
    if outcome.reward_id is None:
        return outcome, None
    return outcome, await execute_issuance(deps, outcome.reward_id)
