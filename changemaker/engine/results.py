"""
changemaker.engine.results — Ok / Err result objects
=====================================================

Participant sync and the issuance transaction report outcomes as values
instead of raising, so every caller has to look at ``result.ok``::

    result = await sync_participant(engine, client, user_id, workspace_id)
    if not result.ok:
        logger.warning("sync failed (%s): %s", result.kind, result.message)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import ClassVar, Generic, TypeVar

__all__ = ["ErrorKind", "Ok", "Err", "Result"]

T = TypeVar("T")


class ErrorKind(enum.StrEnum):
    """Why a pipeline step did not succeed."""
    NOT_FOUND = "NOT_FOUND"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    INVALID_REWARD = "INVALID_REWARD"
    ADDRESS_INCOMPLETE = "ADDRESS_INCOMPLETE"
    SYNC_FAILED = "SYNC_FAILED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    UNSUPPORTED = "UNSUPPORTED"


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    data: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class Err:
    kind: ErrorKind
    message: str
    ok: ClassVar[bool] = False


Result = Ok[T] | Err
