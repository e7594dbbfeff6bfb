"""
changemaker.services.audit_service — Activity event trail
==========================================================

Append-only ``activity_events`` rows for review actions and reward
outcomes.  Written inside the caller's transaction so the audit row and the
state change commit together.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from changemaker.database.models import ActivityEvent, ActivityEventType


def record_event(
    session: Session,
    *,
    workspace_id: str,
    type: ActivityEventType,
    user_id: str | None = None,
    actor_user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Insert one audit row within the current transaction."""
    session.add(ActivityEvent(
        workspace_id=workspace_id,
        type=type,
        user_id=user_id,
        actor_user_id=actor_user_id,
        metadata_=metadata,
        created_at=datetime.now(UTC),
    ))
