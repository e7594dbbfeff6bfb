"""
changemaker.services.email_service — Transactional email
=========================================================

Sends through the Resend HTTP API (``POST /emails``).  Without an API key
the sender runs in log-only mode so local development needs no email
account.  Email is a side channel: the reward pipeline logs send failures
and carries on.
"""

from __future__ import annotations

import html
import logging

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com"


class EmailError(Exception):
    """The email provider rejected or failed to accept a message."""


class EmailSender:
    """Resend-compatible sender; one instance per process.

    Parameters
    ----------
    api_key:
        ``RESEND_API_KEY``.  ``None`` → log instead of sending.
    transport:
        Optional httpx transport (tests pass a :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        from_email: str = "notifications@changemaker.app",
        from_name: str = "Changemaker",
        base_url: str = RESEND_API_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = f"{from_name} <{from_email}>"
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=1),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send(self, to: str, subject: str, html_body: str) -> str | None:
        """Send one message; return the provider's message id.

        Raises
        ------
        EmailError
            On a non-2xx response or a transport failure.
        """
        if not self.enabled:
            logger.info("EMAIL (not sent, no RESEND_API_KEY) to=%s subject=%r", to, subject)
            return None

        try:
            resp = await self._http.post(
                "/emails",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_address,
                    "to": [to],
                    "subject": subject,
                    "html": html_body,
                },
            )
        except httpx.HTTPError as exc:
            raise EmailError(f"Resend API request failed: {exc}") from exc

        if not resp.is_success:
            try:
                detail = resp.json().get("message") or resp.reason_phrase
            except ValueError:
                detail = resp.reason_phrase
            raise EmailError(f"Resend API error: {detail}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise EmailError(
                f"Resend API returned an unreadable response: {resp.text[:200]!r}"
            ) from exc
        message_id = data.get("id") if isinstance(data, dict) else None
        logger.info("Email sent to %s (%s)", to, message_id)
        return message_id


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
def render_shipping_address_required(
    *,
    recipient_name: str,
    workspace_name: str,
    sku_id: str,
    missing_fields: list[str],
    profile_url: str,
) -> tuple[str, str]:
    """Return ``(subject, html)`` asking the participant for an address."""
    missing = ", ".join(f.replace("_", " ") for f in missing_fields)
    subject = f"Action needed: add a shipping address for {sku_id}"
    body = f"""\
<p>Hi {html.escape(recipient_name)},</p>
<p>Your reward <strong>{html.escape(sku_id)}</strong> from
{html.escape(workspace_name)} is ready to ship, but your profile is missing
part of your shipping address ({html.escape(missing)}).</p>
<p><a href="{html.escape(profile_url, quote=True)}">Add your shipping address</a>
and we will send your reward automatically.</p>
"""
    return subject, body
