"""
changemaker.api.routes.participants — Profile + RewardSTACK sync endpoints
===========================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import Engine

from changemaker.api.deps import (
    WorkspaceContext,
    get_config,
    get_engine,
    get_issuance_deps,
    get_rewardstack_client,
    get_task_runner,
    get_workspace_context,
    require_self_or_admin,
)
from changemaker.config import ChangemakerConfig
from changemaker.database.engine import run_db
from changemaker.engine.results import ErrorKind
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.issuance import IssuanceDeps
from changemaker.rewardstack.participant_sync import fetch_remote_participant, sync_participant
from changemaker.services import profile_service, reward_service
from changemaker.services.tasks import BackgroundTaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workspaces/{slug}/participants", tags=["participants"])

_SYNC_ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NOT_CONFIGURED: 400,
}


class ProfileUpdateBody(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


@router.patch("/{user_id}")
async def update_participant(
    user_id: str,
    body: ProfileUpdateBody,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    deps: IssuanceDeps = Depends(get_issuance_deps),
    runner: BackgroundTaskRunner = Depends(get_task_runner),
    cfg: ChangemakerConfig = Depends(get_config),
):
    """Update a profile; an address change retries address-failed SKU rewards
    in the background."""
    update = await run_db(
        profile_service.update_profile,
        deps.engine,
        workspace_id=ctx.workspace_id,
        user_id=user_id,
        actor_id=ctx.user_id,
        actor_role=ctx.role,
        changes=body.model_dump(exclude_unset=True),
    )

    retrying: list[str] = []
    if update.address_changed:
        retrying = await run_db(
            reward_service.reset_address_failures,
            deps.engine,
            user_id=user_id,
            workspace_id=ctx.workspace_id,
            retry_cap=cfg.address_retry_cap,
        )
        if retrying:
            runner.spawn(
                reward_service.retry_after_address_update(
                    deps, user_id=user_id, workspace_id=ctx.workspace_id, reward_ids=retrying
                ),
                name=f"address-retry:{user_id}",
            )

    return {
        "user_id": user_id,
        "changed_fields": list(update.changed_fields),
        "rewards_retrying": retrying,
    }


@router.post("/{user_id}/rewardstack-sync")
async def sync_to_rewardstack(
    user_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    engine: Engine = Depends(get_engine),
    client: RewardStackClient = Depends(get_rewardstack_client),
):
    require_self_or_admin(ctx, user_id)
    result = await sync_participant(engine, client, user_id, ctx.workspace_id, force=True)
    if not result.ok:
        raise HTTPException(_SYNC_ERROR_STATUS.get(result.kind, 502), result.message)
    return {"user_id": user_id, "participant_id": result.data, "sync_status": "SYNCED"}


@router.get("/{user_id}/rewardstack-status")
async def rewardstack_status(
    user_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    engine: Engine = Depends(get_engine),
    client: RewardStackClient = Depends(get_rewardstack_client),
):
    """Local sync state plus the address the provider currently holds."""
    require_self_or_admin(ctx, user_id)
    status = await run_db(
        profile_service.get_sync_status, engine, workspace_id=ctx.workspace_id, user_id=user_id
    )
    remote = await fetch_remote_participant(engine, client, user_id, ctx.workspace_id)
    address = remote.get("address") if remote else None
    status["reward_stack_address"] = address if isinstance(address, dict) else None
    return status
