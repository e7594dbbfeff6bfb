"""
changemaker.rewardstack.participant_sync — Local user → remote participant
===========================================================================

Every reward references a RewardSTACK *participant*.  Before issuing, the
pipeline calls :func:`sync_participant`, which guarantees the user has a
participant id in the workspace's program:

* Already ``SYNCED`` with an id → no provider call, no write.
* Known id → PATCH the participant; if the provider no longer knows it
  (404) or errors server-side, fall back to creating a new one.
* No id → POST a new participant.

Each sync attempt that reaches the provider ends in exactly one write to
the user row: ``SYNCED`` (id + timestamp) or ``FAILED``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session, run_db
from changemaker.database.models import SyncStatus, User, Workspace, WorkspaceMembership
from changemaker.engine.results import Err, ErrorKind, Ok
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode, error_kind_for

logger = logging.getLogger(__name__)

# Local user attribute → provider participant field
PARTICIPANT_FIELDS: tuple[tuple[str, str], ...] = (
    ("first_name", "firstname"),
    ("last_name", "lastname"),
    ("phone", "phone"),
    ("address_line1", "address1"),
    ("address_line2", "address2"),
    ("city", "city"),
    ("state", "state"),
    ("zip_code", "zip"),
    ("country", "country"),
)

_FALLBACK_TO_CREATE = frozenset({
    RewardStackErrorCode.NOT_FOUND,
    RewardStackErrorCode.SERVER_ERROR,
})


def map_user_to_participant(user: Any) -> dict[str, Any]:
    """Build the provider participant payload; empty fields are omitted."""
    payload: dict[str, Any] = {
        "email_address": user.email,
        "external_id": user.id,
    }
    for attr, field in PARTICIPANT_FIELDS:
        value = getattr(user, attr, None)
        if value:
            payload[field] = value
    return payload


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def should_sync_user(
    user: Any, *, resync_minutes: int = 60, now: datetime | None = None
) -> bool:
    """Whether a bulk sync should touch *user*.

    NOT_SYNCED / FAILED always sync, PENDING never (one is in flight),
    SYNCED only when the last sync is older than *resync_minutes*.
    """
    status = user.reward_stack_sync_status
    if status == SyncStatus.PENDING:
        return False
    if status in (SyncStatus.NOT_SYNCED, SyncStatus.FAILED) or not user.reward_stack_participant_id:
        return True
    if user.reward_stack_last_sync is None:
        return True
    now = now or datetime.now(UTC)
    return now - _normalize_dt(user.reward_stack_last_sync) > timedelta(minutes=resync_minutes)


# ---------------------------------------------------------------------------
# DB steps (run on worker threads)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class _SyncTarget:
    user_id: str
    participant_id: str | None
    already_synced: bool
    environment: str
    program_id: str
    payload: dict[str, Any]


def _load_target(engine: Engine, user_id: str, workspace_id: str) -> _SyncTarget | Err:
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return Err(ErrorKind.NOT_FOUND, f"User not found: {user_id}")
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            return Err(ErrorKind.NOT_FOUND, f"Workspace not found: {workspace_id}")
        if not workspace.reward_stack_enabled:
            return Err(
                ErrorKind.NOT_CONFIGURED,
                f"RewardSTACK not enabled for workspace: {workspace.slug}",
            )
        if not workspace.reward_stack_program_id:
            return Err(
                ErrorKind.NOT_CONFIGURED,
                f"RewardSTACK program id not configured for workspace: {workspace.slug}",
            )
        member = session.scalar(
            select(WorkspaceMembership.role).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        if member is None:
            return Err(ErrorKind.NOT_FOUND, "User is not a member of this workspace")

        return _SyncTarget(
            user_id=user.id,
            participant_id=user.reward_stack_participant_id,
            already_synced=(
                user.reward_stack_sync_status == SyncStatus.SYNCED
                and bool(user.reward_stack_participant_id)
            ),
            environment=workspace.reward_stack_environment,
            program_id=workspace.reward_stack_program_id,
            payload=map_user_to_participant(user),
        )


def _record_synced(engine: Engine, user_id: str, participant_id: str) -> None:
    with get_session(engine) as session:
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                reward_stack_participant_id=participant_id,
                reward_stack_sync_status=SyncStatus.SYNCED,
                reward_stack_last_sync=datetime.now(UTC),
            )
        )


def _record_failed(engine: Engine, user_id: str) -> None:
    with get_session(engine) as session:
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(reward_stack_sync_status=SyncStatus.FAILED)
        )


# ---------------------------------------------------------------------------
# Provider step
# ---------------------------------------------------------------------------
async def _push(client: RewardStackClient, target: _SyncTarget) -> str:
    """Create or update the remote participant; return its id."""
    if target.participant_id:
        try:
            await client.update_participant(
                target.environment, target.program_id, target.participant_id, target.payload
            )
            return target.participant_id
        except RewardStackError as exc:
            if exc.code not in _FALLBACK_TO_CREATE:
                raise
            logger.warning(
                "Participant %s update failed (%s) — creating a new participant",
                target.participant_id, exc.message,
            )

    data = await client.create_participant(
        target.environment,
        target.program_id,
        {**target.payload, "program": target.program_id},
    )
    participant_id = data.get("unique_id")
    if not participant_id:
        raise RewardStackError(
            "RewardSTACK did not return a participant id",
            RewardStackErrorCode.VALIDATION_ERROR,
            payload=data,
        )
    return str(participant_id)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
async def sync_participant(
    engine: Engine,
    client: RewardStackClient,
    user_id: str,
    workspace_id: str,
    *,
    force: bool = False,
) -> Ok[str] | Err:
    """Ensure *user_id* has a participant in *workspace_id*'s program.

    Returns ``Ok(participant_id)`` or ``Err``.  Lookup / configuration
    errors return before the provider is contacted and write nothing.
    """
    target = await run_db(_load_target, engine, user_id, workspace_id)
    if isinstance(target, Err):
        logger.warning("Participant sync skipped for user %s: %s", user_id, target.message)
        return target

    if target.already_synced and not force:
        return Ok(target.participant_id)

    try:
        participant_id = await _push(client, target)
    except RewardStackError as exc:
        await run_db(_record_failed, engine, user_id)
        logger.error("Participant sync failed for user %s: %s", user_id, exc.message)
        return Err(error_kind_for(exc), exc.message)

    await run_db(_record_synced, engine, user_id, participant_id)
    logger.info("Participant sync ok: user=%s participant=%s", user_id, participant_id)
    return Ok(participant_id)


async def fetch_remote_participant(
    engine: Engine, client: RewardStackClient, user_id: str, workspace_id: str
) -> dict[str, Any] | None:
    """Return the provider's view of a synced participant, or ``None``.

    Read-only: provider errors are logged, never recorded on the user.
    """
    target = await run_db(_load_target, engine, user_id, workspace_id)
    if isinstance(target, Err) or not target.already_synced:
        return None
    try:
        return await client.get_participant(
            target.environment, target.program_id, target.participant_id
        )
    except RewardStackError as exc:
        logger.warning("Could not fetch participant %s: %s", target.participant_id, exc.message)
        return None


@dataclass(slots=True)
class BulkSyncReport:
    total: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    errors: dict[str, str] | None = None


def _workspace_member_ids(
    engine: Engine, workspace_id: str, resync_minutes: int
) -> list[tuple[str, bool]]:
    """Return ``(user_id, needs_sync)`` for every member of the workspace."""
    with Session(engine) as session:
        users = session.scalars(
            select(User)
            .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
            .where(WorkspaceMembership.workspace_id == workspace_id)
        ).all()
        return [(u.id, should_sync_user(u, resync_minutes=resync_minutes)) for u in users]


async def bulk_sync_participants(
    engine: Engine,
    client: RewardStackClient,
    workspace_id: str,
    *,
    force: bool = False,
    concurrency: int = 5,
    resync_minutes: int = 60,
) -> BulkSyncReport:
    """Sync every member of a workspace that needs it, *concurrency* at a time."""
    members = await run_db(_workspace_member_ids, engine, workspace_id, resync_minutes)
    report = BulkSyncReport(total=len(members), errors={})
    semaphore = asyncio.Semaphore(concurrency)

    async def _one(user_id: str) -> None:
        async with semaphore:
            result = await sync_participant(engine, client, user_id, workspace_id, force=True)
        if result.ok:
            report.synced += 1
        else:
            report.failed += 1
            report.errors[user_id] = result.message

    todo = [uid for uid, needs in members if force or needs]
    report.skipped = len(members) - len(todo)
    await asyncio.gather(*(_one(uid) for uid in todo))
    logger.info(
        "Bulk participant sync for workspace %s: %d synced, %d failed, %d skipped",
        workspace_id, report.synced, report.failed, report.skipped,
    )
    return report
