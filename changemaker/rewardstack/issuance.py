"""
changemaker.rewardstack.issuance — Reward issuance transaction
===============================================================

Drives one ``reward_issuances`` row from PENDING to ISSUED or FAILED.

Pipeline (each DB step runs on a worker thread via ``run_db``):

    1. **Claim** — atomic conditional UPDATE moving ``reward_stack_status``
       to PROCESSING while ``status`` is PENDING.  Zero rows → somebody else
       owns the row (or it is terminal): no-op, ``Err(ALREADY_PROCESSED)``.
    2. **Validate** — workspace configured, reward amount / SKU sane.
    3. **Address** — SKU rewards need a complete shipping address; an
       incomplete one fails the row *before* any provider call and leaves
       the participant a notification (plus a best-effort email).
    4. **Participant sync** — see :mod:`changemaker.rewardstack.participant_sync`.
    5. **Provider call** — points → adjustment, SKU → catalog transaction.
    6. **Finish** — terminal write, conditional on still holding the claim.

Nothing here raises to the caller: every failure is written to the row
(``status=FAILED`` + ``reward_stack_error_message``) and returned as
``Err``, so approving a submission never fails because issuance did.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, or_, update
from sqlalchemy.orm import Session

from changemaker.database.engine import run_db
from changemaker.database.models import (
    ActivityEventType,
    RewardIssuance,
    RewardStackStatus,
    RewardStatus,
    RewardType,
    User,
    Workspace,
)
from changemaker.engine.address import missing_address_fields, missing_address_message
from changemaker.engine.results import Err, ErrorKind, Ok
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.errors import RewardStackError, error_kind_for
from changemaker.rewardstack.participant_sync import sync_participant
from changemaker.services.audit_service import record_event
from changemaker.services.email_service import EmailError, EmailSender, render_shipping_address_required
from changemaker.services.notification_service import (
    notify_reward_issued,
    notify_shipping_address_required,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IssuanceDeps:
    """Collaborators injected into :func:`execute_issuance`."""

    engine: Engine
    client: RewardStackClient
    email_sender: EmailSender | None = None
    app_base_url: str = ""


@dataclass(frozen=True, slots=True)
class _Plan:
    """Snapshot of everything the provider step needs, read after the claim."""

    reward_id: str
    user_id: str
    workspace_id: str
    workspace_slug: str
    workspace_name: str
    reward_stack_enabled: bool
    program_id: str | None
    environment: str
    type: str
    amount: int | None
    sku_id: str | None
    challenge_id: str | None
    attempt_count: int
    email: str
    first_name: str | None
    last_name: str | None
    address: dict[str, str | None] = field(default_factory=dict)
    missing_address: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# DB steps
# ---------------------------------------------------------------------------
def _claimed():
    """WHERE clause that matches only a row this attempt has claimed."""
    return (
        (RewardIssuance.status == RewardStatus.PENDING)
        & (RewardIssuance.reward_stack_status == RewardStackStatus.PROCESSING)
    )


def _claim(engine: Engine, reward_id: str) -> str:
    """Try to claim *reward_id*; return ``"claimed"``, ``"busy"`` or ``"missing"``."""
    with Session(engine) as session:
        result = session.execute(
            update(RewardIssuance)
            .where(
                RewardIssuance.id == reward_id,
                RewardIssuance.status == RewardStatus.PENDING,
                or_(
                    RewardIssuance.reward_stack_status.is_(None),
                    RewardIssuance.reward_stack_status == RewardStackStatus.PENDING,
                ),
            )
            .values(
                reward_stack_status=RewardStackStatus.PROCESSING,
                attempt_count=RewardIssuance.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount == 1:
            return "claimed"
        return "busy" if session.get(RewardIssuance, reward_id) else "missing"


def _load_plan(engine: Engine, reward_id: str) -> _Plan:
    with Session(engine) as session:
        reward = session.get(RewardIssuance, reward_id)
        user = session.get(User, reward.user_id)
        workspace = session.get(Workspace, reward.workspace_id)
        address = {
            "address_line1": user.address_line1,
            "address_line2": user.address_line2,
            "city": user.city,
            "state": user.state,
            "zip_code": user.zip_code,
            "country": user.country,
        }
        return _Plan(
            reward_id=reward.id,
            user_id=user.id,
            workspace_id=workspace.id,
            workspace_slug=workspace.slug,
            workspace_name=workspace.name,
            reward_stack_enabled=workspace.reward_stack_enabled,
            program_id=workspace.reward_stack_program_id,
            environment=workspace.reward_stack_environment,
            type=reward.type,
            amount=reward.amount,
            sku_id=reward.sku_id,
            challenge_id=reward.challenge_id,
            attempt_count=reward.attempt_count,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            address=address,
            missing_address=missing_address_fields(user),
        )


def _fail(engine: Engine, plan: _Plan, kind: ErrorKind, message: str) -> bool:
    """Terminal FAILED write; False if the claim was lost meanwhile."""
    with Session(engine) as session:
        result = session.execute(
            update(RewardIssuance)
            .where(RewardIssuance.id == plan.reward_id, _claimed())
            .values(
                status=RewardStatus.FAILED,
                reward_stack_status=RewardStackStatus.FAILED,
                reward_stack_error_message=message,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        record_event(
            session,
            workspace_id=plan.workspace_id,
            type=ActivityEventType.REWARD_FAILED,
            user_id=plan.user_id,
            metadata={
                "reward_id": plan.reward_id,
                "error_kind": str(kind),
                "error": message,
                "attempt": plan.attempt_count,
            },
        )
        if kind is ErrorKind.ADDRESS_INCOMPLETE:
            notify_shipping_address_required(
                session,
                user_id=plan.user_id,
                workspace_id=plan.workspace_id,
                workspace_slug=plan.workspace_slug,
                sku_id=plan.sku_id or "",
                reward_id=plan.reward_id,
            )
        session.commit()
        return True


def _fail_unplanned(engine: Engine, reward_id: str, message: str) -> bool:
    """FAILED write for a claimed row when no :class:`_Plan` is at hand."""
    with Session(engine) as session:
        result = session.execute(
            update(RewardIssuance)
            .where(RewardIssuance.id == reward_id, _claimed())
            .values(
                status=RewardStatus.FAILED,
                reward_stack_status=RewardStackStatus.FAILED,
                reward_stack_error_message=message,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        reward = session.get(RewardIssuance, reward_id)
        record_event(
            session,
            workspace_id=reward.workspace_id,
            type=ActivityEventType.REWARD_FAILED,
            user_id=reward.user_id,
            metadata={
                "reward_id": reward_id,
                "error_kind": str(ErrorKind.PROVIDER_ERROR),
                "error": message,
                "attempt": reward.attempt_count,
            },
        )
        session.commit()
        return True


def _complete(
    engine: Engine, plan: _Plan, external_id: str, response: dict[str, Any]
) -> bool:
    """Terminal ISSUED write; False if the claim was lost meanwhile."""
    id_column = (
        "reward_stack_adjustment_id"
        if plan.type == RewardType.POINTS
        else "reward_stack_transaction_id"
    )
    with Session(engine) as session:
        result = session.execute(
            update(RewardIssuance)
            .where(RewardIssuance.id == plan.reward_id, _claimed())
            .values(
                {
                    "status": RewardStatus.ISSUED,
                    "reward_stack_status": RewardStackStatus.COMPLETED,
                    "reward_stack_error_message": None,
                    "external_response": response,
                    "issued_at": datetime.now(UTC),
                    id_column: external_id,
                }
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        notify_reward_issued(
            session,
            user_id=plan.user_id,
            workspace_id=plan.workspace_id,
            workspace_slug=plan.workspace_slug,
            reward_type=plan.type,
            amount=plan.amount,
            sku_id=plan.sku_id,
        )
        record_event(
            session,
            workspace_id=plan.workspace_id,
            type=ActivityEventType.REWARD_ISSUED,
            user_id=plan.user_id,
            metadata={
                "reward_id": plan.reward_id,
                "type": plan.type,
                "external_id": external_id,
                "attempt": plan.attempt_count,
            },
        )
        session.commit()
        return True


# ---------------------------------------------------------------------------
# Validation + payloads
# ---------------------------------------------------------------------------
def _validate(plan: _Plan) -> Err | None:
    if not plan.reward_stack_enabled or not plan.program_id:
        return Err(
            ErrorKind.NOT_CONFIGURED,
            "RewardSTACK is not configured for this workspace",
        )
    if plan.type == RewardType.POINTS:
        if plan.amount is None or plan.amount <= 0:
            return Err(ErrorKind.INVALID_REWARD, f"Invalid points amount: {plan.amount}")
        return None
    if plan.type == RewardType.SKU:
        if not plan.sku_id:
            return Err(ErrorKind.INVALID_REWARD, "SKU reward has no sku_id configured")
        return None
    if plan.type == RewardType.MONETARY:
        return Err(
            ErrorKind.UNSUPPORTED,
            "Monetary rewards are not supported by the rewards provider",
        )
    return Err(ErrorKind.INVALID_REWARD, f"Unknown reward type: {plan.type}")


def _metadata(plan: _Plan) -> dict[str, Any]:
    return {
        "changemaker_reward_id": plan.reward_id,
        "changemaker_challenge_id": plan.challenge_id,
    }


def adjustment_payload(plan: _Plan) -> dict[str, Any]:
    return {
        "amount": plan.amount,
        "type": "credit",
        "description": f"Challenge reward - {plan.challenge_id or 'Manual'}",
        "metadata": _metadata(plan),
    }


def transaction_payload(plan: _Plan) -> dict[str, Any]:
    addr = plan.address
    return {
        "products": [{"sku": plan.sku_id, "quantity": 1}],
        "shipping": {
            "firstname": plan.first_name or "",
            "lastname": plan.last_name or "",
            "address1": addr.get("address_line1") or "",
            "address2": addr.get("address_line2") or "",
            "city": addr.get("city") or "",
            "state": addr.get("state") or "",
            "zip": addr.get("zip_code") or "",
            "country": addr.get("country") or "",
        },
        "issue_points": True,
        "metadata": _metadata(plan),
    }


# ---------------------------------------------------------------------------
# Side channel
# ---------------------------------------------------------------------------
async def _send_address_email(deps: IssuanceDeps, plan: _Plan) -> None:
    if deps.email_sender is None:
        return
    name = " ".join(p for p in (plan.first_name, plan.last_name) if p) or plan.email.split("@")[0]
    profile_url = (
        f"{deps.app_base_url.rstrip('/')}/w/{plan.workspace_slug}"
        f"/participant/profile?section=address&reward={plan.reward_id}"
    )
    subject, body = render_shipping_address_required(
        recipient_name=name,
        workspace_name=plan.workspace_name,
        sku_id=plan.sku_id or "",
        missing_fields=plan.missing_address,
        profile_url=profile_url,
    )
    try:
        await deps.email_sender.send(plan.email, subject, body)
    except EmailError as exc:
        logger.warning("Shipping-address email to %s failed: %s", plan.email, exc)
    except Exception:
        logger.exception("Shipping-address email to %s failed unexpectedly", plan.email)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
async def _fail_and_report(deps: IssuanceDeps, plan: _Plan, kind: ErrorKind, message: str) -> Err:
    applied = await run_db(_fail, deps.engine, plan, kind, message)
    if not applied:
        logger.warning("Reward %s changed state before FAILED could be recorded", plan.reward_id)
        return Err(ErrorKind.ALREADY_PROCESSED, "Reward was modified during issuance")
    logger.warning("Reward %s FAILED (%s): %s", plan.reward_id, kind, message)
    return Err(kind, message)


async def execute_issuance(deps: IssuanceDeps, reward_id: str) -> Ok[str] | Err:
    """Run one issuance attempt for *reward_id*.

    Returns ``Ok(external_id)`` once the row is ISSUED, otherwise ``Err``.
    Never raises.
    """
    claim = await run_db(_claim, deps.engine, reward_id)
    if claim == "missing":
        logger.warning("Reward %s not found", reward_id)
        return Err(ErrorKind.NOT_FOUND, f"Reward issuance not found: {reward_id}")
    if claim == "busy":
        logger.info("Reward %s is not claimable (in progress or terminal) — skipping", reward_id)
        return Err(ErrorKind.ALREADY_PROCESSED, "Reward is already being processed or is final")

    try:
        return await _issue_claimed(deps, reward_id)
    except Exception as exc:
        logger.exception("Unexpected error issuing reward %s", reward_id)
        message = f"Unexpected error: {exc}"
        if not await run_db(_fail_unplanned, deps.engine, reward_id, message):
            return Err(ErrorKind.ALREADY_PROCESSED, "Reward was modified during issuance")
        return Err(ErrorKind.PROVIDER_ERROR, message)


async def _issue_claimed(deps: IssuanceDeps, reward_id: str) -> Ok[str] | Err:
    plan = await run_db(_load_plan, deps.engine, reward_id)

    invalid = _validate(plan)
    if invalid is not None:
        return await _fail_and_report(deps, plan, invalid.kind, invalid.message)

    if plan.type == RewardType.SKU and plan.missing_address:
        result = await _fail_and_report(
            deps, plan, ErrorKind.ADDRESS_INCOMPLETE,
            missing_address_message(plan.missing_address),
        )
        if result.kind is ErrorKind.ADDRESS_INCOMPLETE:
            await _send_address_email(deps, plan)
        return result

    synced = await sync_participant(deps.engine, deps.client, plan.user_id, plan.workspace_id)
    if not synced.ok:
        return await _fail_and_report(
            deps, plan, ErrorKind.SYNC_FAILED,
            f"Failed to sync participant to RewardSTACK: {synced.message}",
        )
    participant_id = synced.data

    idempotency_key = f"changemaker-{plan.type}-{plan.reward_id}-{plan.attempt_count}"
    try:
        if plan.type == RewardType.POINTS:
            response = await deps.client.create_adjustment(
                plan.environment, plan.program_id, participant_id,
                adjustment_payload(plan), idempotency_key=idempotency_key,
            )
            external_id = response.get("id") or response.get("adjustmentId")
        else:
            response = await deps.client.create_transaction(
                plan.environment, plan.program_id, participant_id,
                transaction_payload(plan), idempotency_key=idempotency_key,
            )
            external_id = response.get("id") or response.get("transactionId")
    except RewardStackError as exc:
        return await _fail_and_report(deps, plan, error_kind_for(exc), exc.message)

    if not external_id:
        kind = "adjustment" if plan.type == RewardType.POINTS else "transaction"
        return await _fail_and_report(
            deps, plan, ErrorKind.PROVIDER_ERROR,
            f"RewardSTACK did not return {kind} ID",
        )

    if not await run_db(_complete, deps.engine, plan, str(external_id), response):
        logger.error(
            "Reward %s was issued remotely (%s) but the row changed state before it "
            "could be marked ISSUED",
            reward_id, external_id,
        )
        return Err(ErrorKind.ALREADY_PROCESSED, "Reward was modified during issuance")

    logger.info("Reward %s ISSUED (%s %s)", reward_id, plan.type, external_id)
    return Ok(str(external_id))
