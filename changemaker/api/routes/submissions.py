"""
changemaker.api.routes.submissions — Submission + review endpoints
===================================================================
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from changemaker.api.deps import WorkspaceContext, get_engine, get_issuance_deps, get_workspace_context
from changemaker.rewardstack.issuance import IssuanceDeps
from changemaker.services import review_service

router = APIRouter(prefix="/workspaces/{slug}/submissions", tags=["submissions"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SubmissionCreate(BaseModel):
    activity_id: str
    content: str
    enrollment_id: str | None = None


class Resubmission(BaseModel):
    content: str


class ManagerReview(BaseModel):
    action: Literal["approve", "reject"]
    notes: str | None = None


class AdminReview(BaseModel):
    status: Literal["APPROVED", "REJECTED"]
    notes: str | None = None


# ---------------------------------------------------------------------------
# Participant
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_submission(
    body: SubmissionCreate,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    engine: Engine = Depends(get_engine),
):
    submission = review_service.create_submission(
        engine,
        workspace_id=ctx.workspace_id,
        activity_id=body.activity_id,
        user_id=ctx.user_id,
        content=body.content,
        enrollment_id=body.enrollment_id,
    )
    return {"id": submission.id, "status": submission.status}


@router.post("/{submission_id}/resubmit")
def resubmit(
    submission_id: str,
    body: Resubmission,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    engine: Engine = Depends(get_engine),
):
    outcome = review_service.resubmit(
        engine,
        workspace_id=ctx.workspace_id,
        submission_id=submission_id,
        user_id=ctx.user_id,
        content=body.content,
    )
    return {"id": outcome.submission_id, "status": outcome.status}


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------
@router.post("/{submission_id}/manager-review")
def manager_review(
    submission_id: str,
    body: ManagerReview,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    engine: Engine = Depends(get_engine),
):
    outcome = review_service.manager_review(
        engine,
        workspace_id=ctx.workspace_id,
        submission_id=submission_id,
        reviewer_id=ctx.user_id,
        action=body.action,
        notes=body.notes,
    )
    return {"id": outcome.submission_id, "status": outcome.status}


@router.post("/{submission_id}/review")
async def admin_review(
    submission_id: str,
    body: AdminReview,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    deps: IssuanceDeps = Depends(get_issuance_deps),
):
    """Final decision.  Approval succeeds even when issuance fails."""
    outcome, issuance = await review_service.review_and_issue(
        deps,
        workspace_id=ctx.workspace_id,
        submission_id=submission_id,
        reviewer_id=ctx.user_id,
        decision=body.status,
        notes=body.notes,
    )
    reward = None
    if outcome.reward_id is not None:
        reward = {"id": outcome.reward_id, "issued": bool(issuance and issuance.ok)}
        if issuance is not None and not issuance.ok:
            reward["error_kind"] = issuance.kind
            reward["error"] = issuance.message
    return {"id": outcome.submission_id, "status": outcome.status, "reward": reward}
