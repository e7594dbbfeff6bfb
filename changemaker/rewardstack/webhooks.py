"""
changemaker.rewardstack.webhooks — Provider status callbacks
=============================================================

RewardSTACK posts ``transaction.*``, ``adjustment.*`` and ``participant.*``
events after the initial API call returns.  They keep the local mirror
(``reward_stack_status`` / user sync state) current, e.g. a catalog order
that ships days later or is returned.

Bodies are signed with HMAC-SHA256 (hex) in ``X-RewardStack-Signature``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    ActivityEventType,
    RewardIssuance,
    RewardStackStatus,
    RewardStatus,
    SyncStatus,
    User,
    WorkspaceMembership,
)
from changemaker.services.audit_service import record_event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-RewardStack-Signature"

_STATUS_MAP: dict[str, RewardStackStatus] = {
    "pending": RewardStackStatus.PENDING,
    "processing": RewardStackStatus.PROCESSING,
    "completed": RewardStackStatus.COMPLETED,
    "success": RewardStackStatus.COMPLETED,
    "delivered": RewardStackStatus.COMPLETED,
    "failed": RewardStackStatus.FAILED,
    "error": RewardStackStatus.FAILED,
    "returned": RewardStackStatus.RETURNED,
    "cancelled": RewardStackStatus.RETURNED,
}


def map_provider_status(status: str | None) -> RewardStackStatus:
    """Map a provider status string; unknown values count as PROCESSING."""
    if not status:
        return RewardStackStatus.PROCESSING
    mapped = _STATUS_MAP.get(status.lower())
    if mapped is None:
        logger.warning("Unknown RewardSTACK status %r — treating as PROCESSING", status)
        return RewardStackStatus.PROCESSING
    return mapped


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of *signature* against the body's HMAC."""
    if not signature:
        return False
    return hmac.compare_digest(signature.strip().lower(), sign_payload(raw_body, secret))


@dataclass(frozen=True, slots=True)
class WebhookOutcome:
    handled: bool
    detail: str


# ---------------------------------------------------------------------------
# Reward events
# ---------------------------------------------------------------------------
def _reward_transition(
    event_type: str, data: dict[str, Any]
) -> tuple[RewardStackStatus, RewardStatus | None] | None:
    action = event_type.split(".", 1)[1] if "." in event_type else ""
    if action == "created":
        return RewardStackStatus.PROCESSING, None
    if action == "completed":
        return RewardStackStatus.COMPLETED, RewardStatus.ISSUED
    if action == "failed":
        return RewardStackStatus.FAILED, RewardStatus.FAILED
    if action == "updated":
        rs_status = map_provider_status(data.get("status"))
        local = {
            RewardStackStatus.COMPLETED: RewardStatus.ISSUED,
            RewardStackStatus.FAILED: RewardStatus.FAILED,
        }.get(rs_status)
        return rs_status, local
    return None


def _apply_reward_event(
    session: Session, workspace_id: str, event_type: str, data: dict[str, Any]
) -> WebhookOutcome:
    category = event_type.split(".", 1)[0]
    external_id = str(data.get("id") or "")
    if not external_id:
        return WebhookOutcome(False, f"{category} event without an id")
    column = (
        RewardIssuance.reward_stack_transaction_id
        if category == "transaction"
        else RewardIssuance.reward_stack_adjustment_id
    )
    reward = session.scalar(
        select(RewardIssuance).where(
            RewardIssuance.workspace_id == workspace_id, column == external_id
        )
    )
    if reward is None:
        logger.warning("No reward for %s %s in workspace %s", category, external_id, workspace_id)
        return WebhookOutcome(False, f"No reward for {category} {external_id}")

    transition = _reward_transition(event_type, data)
    if transition is None:
        return WebhookOutcome(False, f"Ignored event type {event_type}")
    rs_status, local_status = transition

    old = (reward.status, reward.reward_stack_status)
    reward.reward_stack_status = rs_status
    if local_status is not None:
        reward.status = local_status
    if local_status == RewardStatus.ISSUED and reward.issued_at is None:
        reward.issued_at = datetime.now(UTC)
    if local_status == RewardStatus.FAILED and data.get("error"):
        reward.reward_stack_error_message = str(data["error"])

    if old != (reward.status, reward.reward_stack_status):
        record_event(
            session,
            workspace_id=workspace_id,
            type=ActivityEventType.REWARD_STATUS_UPDATED,
            user_id=reward.user_id,
            metadata={
                "reward_id": reward.id,
                "external_id": external_id,
                "event": event_type,
                "old_status": old[1],
                "new_status": str(rs_status),
            },
        )
    logger.info("Reward %s updated from %s: %s", reward.id, event_type, rs_status)
    return WebhookOutcome(True, f"Reward {reward.id} → {rs_status}")


# ---------------------------------------------------------------------------
# Participant events
# ---------------------------------------------------------------------------
def _apply_participant_event(
    session: Session, workspace_id: str, event_type: str, data: dict[str, Any]
) -> WebhookOutcome:
    participant_id = str(data.get("id") or "")
    user = session.scalar(
        select(User)
        .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
        .where(
            WorkspaceMembership.workspace_id == workspace_id,
            User.reward_stack_participant_id == participant_id,
        )
    )
    if user is None:
        return WebhookOutcome(False, f"No user for participant {participant_id}")

    if event_type in ("participant.created", "participant.updated"):
        user.reward_stack_sync_status = SyncStatus.SYNCED
        user.reward_stack_last_sync = datetime.now(UTC)
    elif event_type == "participant.deleted":
        user.reward_stack_sync_status = SyncStatus.NOT_SYNCED
        user.reward_stack_participant_id = None
    else:
        return WebhookOutcome(False, f"Ignored event type {event_type}")
    return WebhookOutcome(True, f"User {user.id} updated from {event_type}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def apply_webhook_event(
    engine, workspace_id: str, event_type: str, data: dict[str, Any]
) -> WebhookOutcome:
    """Apply one verified event in its own transaction."""
    category = event_type.split(".", 1)[0]
    with Session(engine) as session:
        if category in ("transaction", "adjustment"):
            outcome = _apply_reward_event(session, workspace_id, event_type, data)
        elif category == "participant":
            outcome = _apply_participant_event(session, workspace_id, event_type, data)
        else:
            logger.info("Unhandled RewardSTACK event type %s", event_type)
            return WebhookOutcome(False, f"Unhandled event type {event_type}")
        session.commit()
        return outcome
