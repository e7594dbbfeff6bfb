"""
changemaker.rewardstack.auth — Provider token acquisition
==========================================================

RewardSTACK issues bearer tokens from ``POST {base}/token`` in exchange for
HTTP Basic credentials.  Tokens are long-lived, so one is cached per
environment (QA / PRODUCTION) and refreshed five minutes before it expires.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode, json_object

logger = logging.getLogger(__name__)

REWARDSTACK_ENDPOINTS: dict[str, str] = {
    "QA": "https://admin.adrqa.info",
    "PRODUCTION": "https://admin.adr.info",
}

TOKEN_REFRESH_BUFFER = 5 * 60   # seconds
TOKEN_HOURS_UNTIL_EXPIRY = 8760
TOKEN_NAME = "Changemaker Platform"


@dataclass(slots=True)
class _CachedToken:
    token: str
    refresh_at: float   # unix seconds, already minus the buffer


class TokenProvider:
    """Per-environment bearer token cache.

    Shares the caller's :class:`httpx.AsyncClient` so timeouts and the
    transport (and therefore test mocks) are the same as for API calls.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        username: str | None,
        password: str | None,
        endpoints: dict[str, str] | None = None,
    ) -> None:
        self._http = http
        self._username = username
        self._password = password
        self.endpoints = endpoints or REWARDSTACK_ENDPOINTS
        self._cache: dict[str, _CachedToken] = {}
        self._lock = asyncio.Lock()

    def base_url(self, environment: str) -> str:
        try:
            return self.endpoints[environment]
        except KeyError:
            raise RewardStackError(
                f"Unknown RewardSTACK environment: {environment}",
                RewardStackErrorCode.CONFIGURATION_ERROR,
            ) from None

    async def get_token(self, environment: str) -> str:
        """Return a valid token for *environment*, fetching one if needed."""
        cached = self._cache.get(environment)
        if cached and cached.refresh_at > time.time():
            return cached.token

        async with self._lock:
            # Another coroutine may have refreshed while we waited.
            cached = self._cache.get(environment)
            if cached and cached.refresh_at > time.time():
                return cached.token
            entry = await self._obtain(environment)
            self._cache[environment] = entry
            logger.info("Generated fresh RewardSTACK token for %s", environment)
            return entry.token

    def invalidate(self, environment: str | None = None) -> None:
        """Drop the cached token for *environment* (or all of them)."""
        if environment is None:
            self._cache.clear()
        else:
            self._cache.pop(environment, None)

    async def _obtain(self, environment: str) -> _CachedToken:
        if not self._username or not self._password:
            raise RewardStackError(
                "RewardSTACK credentials not configured. "
                "Set REWARDSTACK_USERNAME and REWARDSTACK_PASSWORD environment variables.",
                RewardStackErrorCode.CONFIGURATION_ERROR,
            )

        url = f"{self.base_url(environment)}/token"
        try:
            resp = await self._http.post(
                url,
                auth=(self._username, self._password),
                json={
                    "hoursUntilExpiry": TOKEN_HOURS_UNTIL_EXPIRY,
                    "tokenName": TOKEN_NAME,
                },
            )
        except httpx.TimeoutException as exc:
            raise RewardStackError(
                f"Failed to obtain RewardSTACK token: timed out ({exc})",
                RewardStackErrorCode.TIMEOUT,
            ) from exc
        except httpx.TransportError as exc:
            raise RewardStackError(
                f"Failed to obtain RewardSTACK token: {exc}",
                RewardStackErrorCode.NETWORK_ERROR,
            ) from exc

        if resp.status_code >= 500:
            raise RewardStackError(
                f"Failed to obtain RewardSTACK token: server error ({resp.status_code})",
                RewardStackErrorCode.SERVER_ERROR,
                resp.status_code,
            )
        if resp.status_code != 200:
            raise RewardStackError(
                f"RewardSTACK authentication failed ({resp.status_code}): {resp.text}",
                RewardStackErrorCode.UNAUTHORIZED,
                resp.status_code,
            )

        data = json_object(resp, "token")
        try:
            expires = float(data["expires"])
        except (KeyError, TypeError, ValueError):
            expires = None
        if not data.get("token") or not expires:
            raise RewardStackError(
                "Invalid token response from RewardSTACK API",
                RewardStackErrorCode.UNAUTHORIZED,
                resp.status_code,
                data,
            )
        return _CachedToken(token=data["token"], refresh_at=expires - TOKEN_REFRESH_BUFFER)
