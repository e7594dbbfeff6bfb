"""
changemaker.engine.review — Review workflow rules
==================================================

Pure functions, no database access.  The review service gathers the facts
(reviewer role, assignment, submission author, challenge settings), asks
these rules what is allowed, and only then issues a conditional UPDATE.

Two tiers:

* **Manager tier** — ``approve`` moves PENDING → MANAGER_APPROVED,
  ``reject`` moves PENDING → NEEDS_REVISION and requires feedback notes.
* **Admin tier** — APPROVED from MANAGER_APPROVED (or straight from PENDING
  when the challenge does not require manager approval), REJECTED from
  PENDING or MANAGER_APPROVED.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from changemaker.database.models import MembershipRole, SubmissionStatus
from changemaker.errors import AuthorizationError, ValidationError

__all__ = [
    "ManagerAction",
    "AdminDecision",
    "Reviewer",
    "check_manager_reviewer",
    "check_admin_reviewer",
    "manager_transition",
    "admin_transition",
]


class ManagerAction(enum.StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


class AdminDecision(enum.StrEnum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True, slots=True)
class Reviewer:
    """Everything the rules need to know about who is reviewing what."""

    user_id: str
    role: str | None            # None → not a workspace member
    submission_author_id: str
    assigned_to_challenge: bool = False


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------
def _reject_self_review(reviewer: Reviewer) -> None:
    if reviewer.user_id == reviewer.submission_author_id:
        raise AuthorizationError("You cannot review your own submission")


def check_manager_reviewer(reviewer: Reviewer) -> None:
    """Raise :class:`AuthorizationError` unless *reviewer* may act at the
    manager tier.

    Self-review is checked first and is refused whatever the role.  Admins
    need no assignment; managers must be assigned to the challenge.
    """
    _reject_self_review(reviewer)
    if reviewer.role == MembershipRole.ADMIN:
        return
    if reviewer.role != MembershipRole.MANAGER:
        raise AuthorizationError("Manager or admin role required")
    if not reviewer.assigned_to_challenge:
        raise AuthorizationError("You are not assigned to this challenge")


def check_admin_reviewer(reviewer: Reviewer) -> None:
    """Raise :class:`AuthorizationError` unless *reviewer* may finalize."""
    _reject_self_review(reviewer)
    if reviewer.role != MembershipRole.ADMIN:
        raise AuthorizationError("Admin role required")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def manager_transition(
    action: ManagerAction | str, notes: str | None
) -> tuple[tuple[SubmissionStatus, ...], SubmissionStatus]:
    """Return ``(allowed_from, target)`` for a manager *action*.

    Raises
    ------
    ValidationError
        Unknown action, or ``reject`` without non-blank notes.
    """
    try:
        action = ManagerAction(action)
    except ValueError:
        raise ValidationError("action must be 'approve' or 'reject'") from None

    if action is ManagerAction.REJECT:
        if notes is None or not notes.strip():
            raise ValidationError("Feedback notes are required when requesting a revision")
        return (SubmissionStatus.PENDING,), SubmissionStatus.NEEDS_REVISION
    return (SubmissionStatus.PENDING,), SubmissionStatus.MANAGER_APPROVED


def admin_transition(
    decision: AdminDecision | str, *, require_manager_approval: bool
) -> tuple[tuple[SubmissionStatus, ...], SubmissionStatus]:
    """Return ``(allowed_from, target)`` for an admin *decision*."""
    try:
        decision = AdminDecision(decision)
    except ValueError:
        raise ValidationError("status must be 'APPROVED' or 'REJECTED'") from None

    if decision is AdminDecision.REJECTED:
        return (
            (SubmissionStatus.PENDING, SubmissionStatus.MANAGER_APPROVED),
            SubmissionStatus.REJECTED,
        )
    if require_manager_approval:
        return (SubmissionStatus.MANAGER_APPROVED,), SubmissionStatus.APPROVED
    return (
        (SubmissionStatus.PENDING, SubmissionStatus.MANAGER_APPROVED),
        SubmissionStatus.APPROVED,
    )
