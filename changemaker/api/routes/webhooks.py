"""
changemaker.api.routes.webhooks — RewardSTACK webhook receiver
===============================================================

Unauthenticated (no JWT); trust comes from the HMAC signature when
``REWARDSTACK_WEBHOOK_SECRET`` is configured.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.api.deps import get_engine, get_webhook_secret
from changemaker.database.engine import run_db
from changemaker.database.models import Workspace
from changemaker.rewardstack.webhooks import SIGNATURE_HEADER, apply_webhook_event, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _workspace_for_webhook(engine: Engine, slug: str) -> tuple[str, bool] | None:
    with Session(engine) as session:
        ws = session.scalar(select(Workspace).where(Workspace.slug == slug))
        return (ws.id, ws.reward_stack_enabled) if ws else None


@router.post("/rewardstack/{slug}")
async def rewardstack_webhook(
    slug: str,
    request: Request,
    engine: Engine = Depends(get_engine),
    secret: str | None = Depends(get_webhook_secret),
):
    found = await run_db(_workspace_for_webhook, engine, slug)
    if found is None:
        raise HTTPException(404, "Workspace not found")
    workspace_id, enabled = found
    if not enabled:
        raise HTTPException(400, "RewardSTACK integration not enabled for this workspace")

    raw = await request.body()
    if secret:
        if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), secret):
            logger.warning("Rejected RewardSTACK webhook for %s: bad signature", slug)
            raise HTTPException(401, "Invalid webhook signature")
    else:
        logger.warning("REWARDSTACK_WEBHOOK_SECRET not set; accepting unsigned webhook")

    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON payload")
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise HTTPException(400, "Webhook event must include a 'type'")

    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    outcome = await run_db(apply_webhook_event, engine, workspace_id, event["type"], data)
    return {"received": True, "event_id": event.get("id"), "handled": outcome.handled, "detail": outcome.detail}
