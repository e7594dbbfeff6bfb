"""
changemaker.services.profile_service — Participant profile + sync state
========================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.models import MembershipRole, User, WorkspaceMembership
from changemaker.engine.address import ADDRESS_FIELDS, missing_address_fields
from changemaker.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PROFILE_FIELDS: tuple[str, ...] = ("first_name", "last_name", "phone", *ADDRESS_FIELDS)


@dataclass(frozen=True, slots=True)
class ProfileUpdate:
    user_id: str
    changed_fields: tuple[str, ...]

    @property
    def address_changed(self) -> bool:
        return any(f in ADDRESS_FIELDS for f in self.changed_fields)


def _normalize(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _load_member(session: Session, workspace_id: str, user_id: str) -> User:
    user = session.scalar(
        select(User)
        .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
        .where(User.id == user_id, WorkspaceMembership.workspace_id == workspace_id)
    )
    if user is None:
        raise NotFoundError("Participant not found")
    return user


def update_profile(
    engine: Engine,
    *,
    workspace_id: str,
    user_id: str,
    actor_id: str,
    actor_role: str | None,
    changes: dict[str, Any],
) -> ProfileUpdate:
    """Apply *changes* to a participant; return which fields actually changed.

    Participants may edit themselves, admins may edit anyone in the
    workspace.  Blank strings clear a field.
    """
    if actor_id != user_id and actor_role != MembershipRole.ADMIN:
        raise AuthorizationError("You can only update your own profile")
    unknown = set(changes) - set(PROFILE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

    with Session(engine) as session:
        user = _load_member(session, workspace_id, user_id)
        changed = []
        for field in PROFILE_FIELDS:
            if field not in changes:
                continue
            new = _normalize(changes[field])
            if getattr(user, field) != new:
                setattr(user, field, new)
                changed.append(field)
        session.commit()

    if changed:
        logger.info("Profile of %s updated by %s: %s", user_id, actor_id, ", ".join(changed))
    return ProfileUpdate(user_id=user_id, changed_fields=tuple(changed))


def get_sync_status(engine: Engine, *, workspace_id: str, user_id: str) -> dict:
    with Session(engine) as session:
        user = _load_member(session, workspace_id, user_id)
        return {
            "user_id": user.id,
            "participant_id": user.reward_stack_participant_id,
            "sync_status": user.reward_stack_sync_status,
            "last_sync": (
                user.reward_stack_last_sync.isoformat() if user.reward_stack_last_sync else None
            ),
            "address_complete": not missing_address_fields(user),
            "missing_address_fields": missing_address_fields(user),
        }
