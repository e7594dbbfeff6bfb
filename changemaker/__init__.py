"""
Changemaker — Challenge Review & Reward Issuance Service
=========================================================
Workspace admins run engagement challenges, participants submit work,
managers and admins review it, and approved submissions are paid out
through the RewardSTACK rewards provider.

Package layout::

    changemaker/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Request-layer exception taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── results.py     # Ok / Err result objects
    │   ├── review.py      # Pure review-workflow rules
    │   └── address.py     # Shipping-address rules + retry keyword match
    ├── rewardstack/
    │   ├── errors.py      # Provider error codes + retryability
    │   ├── auth.py        # Provider token acquisition + cache
    │   ├── client.py      # httpx client for the provider API
    │   ├── participant_sync.py  # Local user → remote participant
    │   ├── issuance.py    # RewardIssuance state machine
    │   └── webhooks.py    # Provider status callbacks
    ├── services/
    │   ├── review_service.py        # Manager / admin review transitions
    │   ├── reward_service.py        # Listing, manual + address retry
    │   ├── profile_service.py       # Participant profile updates
    │   ├── notification_service.py  # In-app notifications
    │   ├── email_service.py         # Transactional email sender
    │   ├── audit_service.py         # Append-only activity events
    │   └── tasks.py                 # Background task runner
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Auth + injected collaborators
        └── routes/        # Workspace-scoped REST endpoints
"""

__version__ = "0.1.0"
