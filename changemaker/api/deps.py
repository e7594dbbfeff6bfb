"""
changemaker.api.deps — FastAPI dependency injection
====================================================
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.config import ChangemakerConfig, load_config
from changemaker.database.engine import create_db_engine
from changemaker.database.models import MembershipRole, Workspace, WorkspaceMembership
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.issuance import IssuanceDeps
from changemaker.services.email_service import EmailSender
from changemaker.services.tasks import BackgroundTaskRunner

_WEAK_SECRETS = frozenset({
    "changemaker-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ChangemakerConfig:
    return load_config(os.getenv("CHANGEMAKER_CONFIG", "config.yaml"))


# ---------------------------------------------------------------------------
# Process-wide collaborators (created in the lifespan, kept on app.state)
# ---------------------------------------------------------------------------
def get_rewardstack_client(request: Request) -> RewardStackClient:
    return request.app.state.rewardstack_client


def get_email_sender(request: Request) -> EmailSender:
    return request.app.state.email_sender


def get_task_runner(request: Request) -> BackgroundTaskRunner:
    return request.app.state.task_runner


def get_webhook_secret() -> str | None:
    return os.getenv("REWARDSTACK_WEBHOOK_SECRET") or None


def get_issuance_deps(
    engine: Engine = Depends(get_engine),
    client: RewardStackClient = Depends(get_rewardstack_client),
    email_sender: EmailSender = Depends(get_email_sender),
) -> IssuanceDeps:
    return IssuanceDeps(
        engine=engine,
        client=client,
        email_sender=email_sender,
        app_base_url=os.getenv("APP_BASE_URL", ""),
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def get_current_user_id(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Validate the bearer JWT and return its subject (local user id)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return str(sub)


@dataclass(frozen=True, slots=True)
class WorkspaceContext:
    """The caller's identity inside one workspace."""

    workspace_id: str
    slug: str
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == MembershipRole.ADMIN


def get_workspace_context(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> WorkspaceContext:
    with Session(engine) as session:
        workspace = session.scalar(select(Workspace).where(Workspace.slug == slug))
        if workspace is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Workspace not found")
        role = session.scalar(
            select(WorkspaceMembership.role).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace.id,
            )
        )
        if role is None:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Not a member of this workspace")
        return WorkspaceContext(
            workspace_id=workspace.id, slug=workspace.slug, user_id=user_id, role=role
        )


def require_workspace_admin(
    ctx: WorkspaceContext = Depends(get_workspace_context),
) -> WorkspaceContext:
    if not ctx.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Workspace admin required")
    return ctx


def require_self_or_admin(ctx: WorkspaceContext, user_id: str) -> None:
    if ctx.user_id != user_id and not ctx.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not allowed for this participant")
