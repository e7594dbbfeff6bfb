"""
changemaker.rewardstack.client — RewardSTACK HTTP client
=========================================================

Thin async wrapper over the provider's participant, adjustment (points)
and transaction (catalog SKU) endpoints.

* One :class:`httpx.AsyncClient` per process, created in the FastAPI
  lifespan and injected wherever it is needed.
* Every request carries an explicit timeout; a timeout is an error, never
  an open-ended wait.
* 5xx and network errors are retried with exponential backoff
  (``max_attempts`` tries, ``initial_delay`` doubling up to ``max_delay``).
  Timeouts and 4xx are not retried.
* A 401 clears the cached token and retries once with a fresh one.

Failures raise :class:`~changemaker.rewardstack.errors.RewardStackError`;
the participant-sync and issuance layers turn them into ``Err`` results.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from changemaker.rewardstack.auth import TokenProvider
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode, json_object

logger = logging.getLogger(__name__)


def _provider_message(resp: httpx.Response) -> str:
    """Pull the human-readable ``message`` out of an error payload.

    The provider sends either a string or a list of strings.
    """
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()
    if not isinstance(data, dict):
        return ""
    message = data.get("message") or data.get("error") or ""
    if isinstance(message, list):
        return "; ".join(str(m) for m in message)
    return str(message)


def _error_for_response(resp: httpx.Response, context: str) -> RewardStackError:
    status = resp.status_code
    msg = _provider_message(resp)
    try:
        payload = resp.json()
    except ValueError:
        payload = None

    if status == 401:
        return RewardStackError(
            f"Authentication failed: {msg or 'invalid credentials or expired token'}",
            RewardStackErrorCode.UNAUTHORIZED, status, payload,
        )
    if status == 403:
        return RewardStackError(
            "Access forbidden: Insufficient permissions",
            RewardStackErrorCode.FORBIDDEN, status, payload,
        )
    if status == 404:
        return RewardStackError(
            f"{context.capitalize()} not found: {msg or 'resource does not exist'}",
            RewardStackErrorCode.NOT_FOUND, status, payload,
        )
    if status == 409:
        return RewardStackError(
            f"Duplicate {context}: {msg or 'already exists'}",
            RewardStackErrorCode.CONFLICT, status, payload,
        )
    if status == 429:
        return RewardStackError(
            "Rate limit exceeded: Too many requests",
            RewardStackErrorCode.RATE_LIMIT, status, payload,
        )
    if status >= 500:
        return RewardStackError(
            f"RewardSTACK server error: {msg or status}",
            RewardStackErrorCode.SERVER_ERROR, status, payload,
        )
    return RewardStackError(
        f"Invalid {context} request: {msg or 'request rejected'}",
        RewardStackErrorCode.VALIDATION_ERROR, status, payload,
    )


class RewardStackClient:
    """Async client for one RewardSTACK account (all environments).

    Parameters
    ----------
    username, password:
        Basic-auth credentials for the token endpoint.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport; tests pass an :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        username: str | None,
        password: str | None,
        *,
        endpoints: dict[str, str] | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport or httpx.AsyncHTTPTransport(retries=1),
            headers={"Content-Type": "application/json"},
        )
        self.tokens = TokenProvider(self._http, username, password, endpoints)

    async def aclose(self) -> None:
        await self._http.aclose()

    # -----------------------------------------------------------------------
    # Request plumbing
    # -----------------------------------------------------------------------
    async def _send(
        self,
        method: str,
        environment: str,
        path: str,
        *,
        context: str,
        json: dict | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """One logical request: token, call, one re-auth on 401."""
        url = f"{self.tokens.base_url(environment)}{path}"
        reauthed = False
        while True:
            token = await self.tokens.get_token(environment)
            try:
                resp = await self._http.request(
                    method,
                    url,
                    json=json,
                    headers={"Authorization": f"Bearer {token}", **(headers or {})},
                )
            except httpx.TimeoutException as exc:
                raise RewardStackError(
                    f"RewardSTACK request timed out after {self.timeout:g}s",
                    RewardStackErrorCode.TIMEOUT,
                ) from exc
            except httpx.TransportError as exc:
                raise RewardStackError(
                    f"Network error: {exc}",
                    RewardStackErrorCode.NETWORK_ERROR,
                ) from exc

            if resp.status_code == 401 and not reauthed:
                logger.info("RewardSTACK returned 401 — refreshing %s token", environment)
                self.tokens.invalidate(environment)
                reauthed = True
                continue
            if resp.is_success:
                return json_object(resp, context)
            raise _error_for_response(resp, context)

    async def _request(self, method: str, environment: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """:meth:`_send` with exponential backoff on retryable errors."""
        delay = self.initial_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._send(method, environment, path, **kwargs)
            except RewardStackError as exc:
                if not exc.retryable or attempt == self.max_attempts:
                    raise
                logger.warning(
                    "RewardSTACK %s %s failed (attempt %d/%d): %s — retrying in %.1fs",
                    method, path, attempt, self.max_attempts, exc.message, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_delay)
        raise AssertionError("unreachable")

    @staticmethod
    def _participant_path(program_id: str, participant_id: str | None = None) -> str:
        path = f"/api/program/{quote(program_id, safe='')}/participant"
        if participant_id is not None:
            path += f"/{quote(participant_id, safe='')}"
        return path

    # -----------------------------------------------------------------------
    # Participants
    # -----------------------------------------------------------------------
    async def create_participant(
        self, environment: str, program_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "POST", environment, self._participant_path(program_id),
            context="participant", json=payload,
        )

    async def update_participant(
        self, environment: str, program_id: str, participant_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH", environment, self._participant_path(program_id, participant_id),
            context="participant", json=payload,
        )

    async def get_participant(
        self, environment: str, program_id: str, participant_id: str
    ) -> dict[str, Any]:
        return await self._request(
            "GET", environment, self._participant_path(program_id, participant_id),
            context="participant",
        )

    # -----------------------------------------------------------------------
    # Rewards
    # -----------------------------------------------------------------------
    async def create_adjustment(
        self,
        environment: str,
        program_id: str,
        participant_id: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Credit points to a participant."""
        return await self._request(
            "POST", environment,
            self._participant_path(program_id, participant_id) + "/adjustment",
            context="adjustment", json=payload,
            headers={"Idempotency-Key": idempotency_key} if idempotency_key else None,
        )

    async def create_transaction(
        self,
        environment: str,
        program_id: str,
        participant_id: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Place a catalog order (SKU) shipped to the participant."""
        return await self._request(
            "POST", environment,
            self._participant_path(program_id, participant_id) + "/transaction",
            context="transaction", json=payload,
            headers={"Idempotency-Key": idempotency_key} if idempotency_key else None,
        )
