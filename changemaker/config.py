"""
changemaker.config — YAML Configuration Loader
===============================================

Reads ``config.yaml`` for **infrastructure-only** settings (provider
timeouts, retry bounds, email identity).  Secrets and URLs come from the
environment (``.env``), never from this file.

Usage::

    from changemaker.config import load_config

    cfg = load_config()                   # reads ./config.yaml by default
    print(cfg.provider_timeout_seconds)   # 30.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChangemakerConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default, so a missing file yields a usable config.
    """

    # Identity
    app_name: str = "Changemaker"

    # RewardSTACK provider bounds
    provider_timeout_seconds: float = 30.0
    provider_max_attempts: int = 3    # in-attempt retries for 5xx / network
    participant_resync_minutes: int = 60

    # Address-triggered retry: max FAILED → PENDING cycles per reward
    address_retry_cap: int = 3

    # Email identity
    email_from: str = "notifications@changemaker.app"
    email_from_name: str = "Changemaker"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ChangemakerConfig:
    """Read *path* and return a :class:`ChangemakerConfig` instance.

    A missing file is not an error: defaults are used and a warning is
    logged.  Unknown keys are ignored.

    Raises
    ------
    ValueError
        If a numeric key holds a value that cannot be converted.
    """
    config_path = Path(path)
    if not config_path.exists():
        logger.warning(
            "Configuration file not found: %s — using defaults. "
            "Hint: copy config.yaml.example → config.yaml and edit it.",
            config_path.resolve(),
        )
        return ChangemakerConfig()

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = ChangemakerConfig()
    return ChangemakerConfig(
        app_name=raw.get("app_name", defaults.app_name),
        provider_timeout_seconds=float(
            raw.get("provider_timeout_seconds", defaults.provider_timeout_seconds)
        ),
        provider_max_attempts=int(
            raw.get("provider_max_attempts", defaults.provider_max_attempts)
        ),
        participant_resync_minutes=int(
            raw.get("participant_resync_minutes", defaults.participant_resync_minutes)
        ),
        address_retry_cap=int(raw.get("address_retry_cap", defaults.address_retry_cap)),
        email_from=raw.get("email_from", defaults.email_from),
        email_from_name=raw.get("email_from_name", defaults.email_from_name),
    )
