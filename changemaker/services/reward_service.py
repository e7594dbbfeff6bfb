"""
changemaker.services.reward_service — Reward listing + retry paths
===================================================================

Two ways a FAILED reward gets another attempt:

* **Manual** — an admin picks rewards in the dashboard
  (:func:`retry_rewards`).  Any FAILED reward qualifies.
* **Address-triggered** — a participant fixes their shipping address
  (:func:`reset_address_failures` + :func:`retry_after_address_update`).
  Only FAILED SKU rewards whose error mentions the address qualify, and
  each reward gets at most ``address_retry_cap`` such retries.

Both reset the row FAILED → PENDING with a conditional UPDATE and then
run the normal issuance transaction.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from changemaker.database.engine import run_db
from changemaker.database.models import (
    ActivityEventType,
    RewardIssuance,
    RewardStatus,
    RewardType,
)
from changemaker.engine.address import is_address_error
from changemaker.errors import ValidationError
from changemaker.rewardstack.issuance import IssuanceDeps, execute_issuance
from changemaker.rewardstack.participant_sync import sync_participant
from changemaker.services.audit_service import record_event

logger = logging.getLogger(__name__)

MAX_RETRY_BATCH = 50


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def reward_to_dict(r: RewardIssuance) -> dict[str, Any]:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "challenge_id": r.challenge_id,
        "submission_id": r.submission_id,
        "type": r.type,
        "amount": r.amount,
        "sku_id": r.sku_id,
        "status": r.status,
        "reward_stack_status": r.reward_stack_status,
        "reward_stack_transaction_id": r.reward_stack_transaction_id,
        "reward_stack_adjustment_id": r.reward_stack_adjustment_id,
        "error_message": r.reward_stack_error_message,
        "attempt_count": r.attempt_count,
        "address_retry_count": r.address_retry_count,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "issued_at": r.issued_at.isoformat() if r.issued_at else None,
    }


def list_rewards(
    engine: Engine,
    workspace_id: str,
    *,
    status: str | None = None,
    user_id: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    with Session(engine) as session:
        stmt = select(RewardIssuance).where(RewardIssuance.workspace_id == workspace_id)
        if status:
            stmt = stmt.where(RewardIssuance.status == status)
        if user_id:
            stmt = stmt.where(RewardIssuance.user_id == user_id)
        stmt = stmt.order_by(RewardIssuance.created_at.desc()).limit(limit)
        return [reward_to_dict(r) for r in session.scalars(stmt).all()]


# ---------------------------------------------------------------------------
# Reset FAILED → PENDING
# ---------------------------------------------------------------------------
def _reset_failed(session: Session, reward_id: str, *, address_retry: bool) -> bool:
    values: dict[str, Any] = {
        "status": RewardStatus.PENDING,
        "reward_stack_status": None,
        "reward_stack_error_message": None,
        "reward_stack_transaction_id": None,
        "reward_stack_adjustment_id": None,
    }
    if address_retry:
        values["address_retry_count"] = RewardIssuance.address_retry_count + 1
    result = session.execute(
        update(RewardIssuance)
        .where(RewardIssuance.id == reward_id, RewardIssuance.status == RewardStatus.FAILED)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _previous_state(row: RewardIssuance) -> dict[str, Any]:
    """Provider references a reset clears from the row, kept for the audit trail."""
    return {
        "previous_error": row.reward_stack_error_message,
        "previous_transaction_id": row.reward_stack_transaction_id,
        "previous_adjustment_id": row.reward_stack_adjustment_id,
    }


def reset_for_manual_retry(
    engine: Engine, workspace_id: str, reward_ids: list[str], actor_id: str
) -> tuple[list[str], dict[str, str]]:
    """Reset the FAILED rewards among *reward_ids*.

    Returns ``(reset_ids, skipped)`` where *skipped* maps id → reason.
    """
    reset: list[str] = []
    skipped: dict[str, str] = {}
    with Session(engine) as session:
        rows = {
            r.id: r
            for r in session.scalars(
                select(RewardIssuance).where(
                    RewardIssuance.id.in_(reward_ids),
                    RewardIssuance.workspace_id == workspace_id,
                )
            ).all()
        }
        for reward_id in reward_ids:
            row = rows.get(reward_id)
            if row is None:
                skipped[reward_id] = "not found"
            elif row.status != RewardStatus.FAILED:
                skipped[reward_id] = f"status is {row.status}"
            elif _reset_failed(session, reward_id, address_retry=False):
                reset.append(reward_id)
                record_event(
                    session,
                    workspace_id=workspace_id,
                    type=ActivityEventType.REWARD_RETRY,
                    user_id=row.user_id,
                    actor_user_id=actor_id,
                    metadata={"reward_id": reward_id, "trigger": "manual", **_previous_state(row)},
                )
            else:
                skipped[reward_id] = "state changed concurrently"
        session.commit()
    return reset, skipped


def reset_address_failures(
    engine: Engine, *, user_id: str, workspace_id: str, retry_cap: int
) -> list[str]:
    """Reset this user's address-related SKU failures; return the reset ids."""
    reset: list[str] = []
    with Session(engine) as session:
        candidates = session.scalars(
            select(RewardIssuance).where(
                RewardIssuance.user_id == user_id,
                RewardIssuance.workspace_id == workspace_id,
                RewardIssuance.status == RewardStatus.FAILED,
                RewardIssuance.type == RewardType.SKU,
                RewardIssuance.address_retry_count < retry_cap,
            )
        ).all()
        for reward in candidates:
            if not is_address_error(reward.reward_stack_error_message):
                continue
            if _reset_failed(session, reward.id, address_retry=True):
                reset.append(reward.id)
                record_event(
                    session,
                    workspace_id=workspace_id,
                    type=ActivityEventType.REWARD_RETRY,
                    user_id=user_id,
                    actor_user_id=user_id,
                    metadata={
                        "reward_id": reward.id,
                        "trigger": "address_update",
                        **_previous_state(reward),
                    },
                )
        session.commit()
    if reset:
        logger.info("Reset %d address-failed reward(s) for user %s", len(reset), user_id)
    return reset


# ---------------------------------------------------------------------------
# Re-run issuance
# ---------------------------------------------------------------------------
async def retry_after_address_update(
    deps: IssuanceDeps, *, user_id: str, workspace_id: str, reward_ids: list[str]
) -> None:
    """Background job: push the new address, then retry each reward."""
    synced = await sync_participant(
        deps.engine, deps.client, user_id, workspace_id, force=True
    )
    if not synced.ok:
        logger.warning(
            "Participant re-sync before address retry failed for %s: %s",
            user_id, synced.message,
        )
    for reward_id in reward_ids:
        result = await execute_issuance(deps, reward_id)
        if result.ok:
            logger.info("Address retry issued reward %s", reward_id)
        else:
            logger.warning(
                "Address retry of reward %s did not issue (%s): %s",
                reward_id, result.kind, result.message,
            )


async def retry_rewards(
    deps: IssuanceDeps,
    *,
    workspace_id: str,
    reward_ids: list[str],
    actor_id: str,
    concurrency: int = 5,
) -> dict[str, Any]:
    """Manual retry of FAILED rewards, *concurrency* issuances at a time."""
    if not reward_ids:
        raise ValidationError("reward_ids must not be empty")
    if len(reward_ids) > MAX_RETRY_BATCH:
        raise ValidationError(f"Cannot retry more than {MAX_RETRY_BATCH} rewards at once")

    reset, skipped = await run_db(
        reset_for_manual_retry, deps.engine, workspace_id, reward_ids, actor_id
    )
    semaphore = asyncio.Semaphore(concurrency)
    results: dict[str, dict[str, Any]] = {}

    async def _one(reward_id: str) -> None:
        async with semaphore:
            result = await execute_issuance(deps, reward_id)
        if result.ok:
            results[reward_id] = {"ok": True, "external_id": result.data}
        else:
            results[reward_id] = {"ok": False, "error_kind": result.kind, "error": result.message}

    await asyncio.gather(*(_one(rid) for rid in reset))
    succeeded = sum(1 for r in results.values() if r["ok"])
    logger.info(
        "Manual retry in workspace %s: %d issued, %d failed, %d skipped",
        workspace_id, succeeded, len(results) - succeeded, len(skipped),
    )
    return {
        "retried": len(reset),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
        "skipped": skipped,
    }
