"""
changemaker.rewardstack.errors — Provider error type
=====================================================
"""

from __future__ import annotations

import enum
from typing import Any

from changemaker.engine.results import ErrorKind


class RewardStackErrorCode(enum.StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# Codes worth another try inside a single issuance attempt.
RETRYABLE_CODES = frozenset({RewardStackErrorCode.SERVER_ERROR, RewardStackErrorCode.NETWORK_ERROR})


class RewardStackError(Exception):
    """Raised by :class:`~changemaker.rewardstack.client.RewardStackClient`.

    ``message`` is human-readable and is what ends up in
    ``reward_issuances.reward_stack_error_message``.
    """

    def __init__(
        self,
        message: str,
        code: RewardStackErrorCode,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.payload = payload

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __repr__(self) -> str:
        return f"<RewardStackError code={self.code} status={self.status_code} {self.message!r}>"


def error_kind_for(exc: RewardStackError) -> ErrorKind:
    """Map a provider error onto the pipeline's :class:`ErrorKind`."""
    if exc.code is RewardStackErrorCode.TIMEOUT:
        return ErrorKind.TIMEOUT
    if exc.code is RewardStackErrorCode.NETWORK_ERROR:
        return ErrorKind.NETWORK_ERROR
    if exc.code is RewardStackErrorCode.CONFIGURATION_ERROR:
        return ErrorKind.NOT_CONFIGURED
    return ErrorKind.PROVIDER_ERROR


def json_object(resp: Any, context: str) -> dict[str, Any]:
    """Decode a successful provider response that must be a JSON object.

    An empty body decodes to ``{}``.  Anything else that is not a JSON
    object raises ``RewardStackError(VALIDATION_ERROR)``.
    """
    if not resp.content:
        return {}
    try:
        data = resp.json()
    except ValueError:
        raise RewardStackError(
            f"Unreadable {context} response from RewardSTACK: {resp.text[:200]!r}",
            RewardStackErrorCode.VALIDATION_ERROR,
            resp.status_code,
        ) from None
    if not isinstance(data, dict):
        raise RewardStackError(
            f"Unexpected {context} response from RewardSTACK: expected an object",
            RewardStackErrorCode.VALIDATION_ERROR,
            resp.status_code,
            data,
        )
    return data
