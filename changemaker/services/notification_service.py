"""
changemaker.services.notification_service — In-app notifications
=================================================================

All helpers take an open :class:`Session` and only ``add`` rows, so the
notification commits (or rolls back) with the caller's transaction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from changemaker.database.models import Notification, NotificationType

logger = logging.getLogger(__name__)


def create_notification(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    type: NotificationType,
    title: str,
    message: str,
    action_url: str | None = None,
    expires_in_days: int | None = None,
) -> Notification:
    now = datetime.now(UTC)
    notification = Notification(
        user_id=user_id,
        workspace_id=workspace_id,
        type=type,
        title=title,
        message=message,
        action_url=action_url,
        created_at=now,
        expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    session.add(notification)
    return notification


def notification_exists(
    session: Session, user_id: str, workspace_id: str, type: NotificationType
) -> bool:
    """True if an unread, unexpired notification of *type* is outstanding."""
    now = datetime.now(UTC)
    row = session.scalar(
        select(Notification.id).where(
            Notification.user_id == user_id,
            Notification.workspace_id == workspace_id,
            Notification.type == type,
            Notification.read_at.is_(None),
            or_(Notification.expires_at.is_(None), Notification.expires_at > now),
        ).limit(1)
    )
    return row is not None


# ---------------------------------------------------------------------------
# Reward pipeline notices
# ---------------------------------------------------------------------------
def notify_shipping_address_required(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    sku_id: str,
    reward_id: str,
) -> Notification | None:
    """One outstanding address reminder per user and workspace."""
    if notification_exists(
        session, user_id, workspace_id, NotificationType.SHIPPING_ADDRESS_REQUIRED
    ):
        logger.debug("Shipping-address notice already outstanding for user %s", user_id)
        return None
    return create_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.SHIPPING_ADDRESS_REQUIRED,
        title="Shipping Address Required",
        message=(
            f'Your reward "{sku_id}" is ready! '
            "Please add your shipping address to complete delivery."
        ),
        action_url=(
            f"/w/{workspace_slug}/participant/profile?section=address&reward={reward_id}"
        ),
        expires_in_days=60,
    )


def notify_reward_issued(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    reward_type: str,
    amount: int | None = None,
    sku_id: str | None = None,
) -> Notification:
    if reward_type == "points":
        message = f"You've earned {amount} points!"
    else:
        message = f'You\'ve earned "{sku_id}"!'
    return create_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.REWARD_ISSUED,
        title="Reward Earned!",
        message=message,
        action_url=f"/w/{workspace_slug}/participant/dashboard",
        expires_in_days=30,
    )


# ---------------------------------------------------------------------------
# Review notices
# ---------------------------------------------------------------------------
def notify_submission_approved(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    activity_name: str,
    challenge_id: str,
    points_awarded: int | None = None,
) -> Notification:
    message = f'Your submission for "{activity_name}" was approved!'
    if points_awarded:
        message += f" You earned {points_awarded} points."
    return create_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.SUBMISSION_APPROVED,
        title="Submission Approved",
        message=message,
        action_url=f"/w/{workspace_slug}/participant/challenges/{challenge_id}",
        expires_in_days=14,
    )


def notify_submission_needs_revision(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    activity_name: str,
    challenge_id: str,
    notes: str,
) -> Notification:
    return create_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.SUBMISSION_NEEDS_REVISION,
        title="Revision Requested",
        message=f'Your submission for "{activity_name}" needs changes: {notes}',
        action_url=f"/w/{workspace_slug}/participant/challenges/{challenge_id}",
        expires_in_days=14,
    )
