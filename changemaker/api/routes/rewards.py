"""
changemaker.api.routes.rewards — Reward status + admin recovery endpoints
==========================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from changemaker.api.deps import (
    WorkspaceContext,
    get_config,
    get_engine,
    get_issuance_deps,
    get_rewardstack_client,
    get_workspace_context,
    require_workspace_admin,
)
from changemaker.config import ChangemakerConfig
from changemaker.database.models import RewardStatus
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.issuance import IssuanceDeps
from changemaker.rewardstack.participant_sync import bulk_sync_participants
from changemaker.services import reward_service

router = APIRouter(prefix="/workspaces/{slug}", tags=["rewards"])


class RetryRequest(BaseModel):
    reward_ids: list[str] = Field(min_length=1)


class BulkSyncRequest(BaseModel):
    force: bool = False


@router.get("/rewards")
def list_rewards(
    status: RewardStatus | None = Query(default=None),
    user_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    ctx: WorkspaceContext = Depends(get_workspace_context),
    engine: Engine = Depends(get_engine),
):
    """Admins see every reward; participants only their own."""
    if not ctx.is_admin:
        user_id = ctx.user_id
    rewards = reward_service.list_rewards(
        engine, ctx.workspace_id, status=status, user_id=user_id, limit=limit
    )
    return {"rewards": rewards}


@router.post("/rewards/retry")
async def retry_rewards(
    body: RetryRequest,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    deps: IssuanceDeps = Depends(get_issuance_deps),
):
    return await reward_service.retry_rewards(
        deps,
        workspace_id=ctx.workspace_id,
        reward_ids=body.reward_ids,
        actor_id=ctx.user_id,
    )


@router.post("/rewardstack/sync-participants")
async def sync_participants(
    body: BulkSyncRequest | None = None,
    ctx: WorkspaceContext = Depends(require_workspace_admin),
    engine: Engine = Depends(get_engine),
    client: RewardStackClient = Depends(get_rewardstack_client),
    cfg: ChangemakerConfig = Depends(get_config),
):
    report = await bulk_sync_participants(
        engine,
        client,
        ctx.workspace_id,
        force=bool(body and body.force),
        resync_minutes=cfg.participant_resync_minutes,
    )
    return {
        "total": report.total,
        "synced": report.synced,
        "failed": report.failed,
        "skipped": report.skipped,
        "errors": report.errors,
    }
