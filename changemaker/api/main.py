"""
changemaker.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn changemaker.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from changemaker.api.deps import get_config  # noqa: E402
from changemaker.api.routes.participants import router as participants_router  # noqa: E402
from changemaker.api.routes.rewards import router as rewards_router  # noqa: E402
from changemaker.api.routes.submissions import router as submissions_router  # noqa: E402
from changemaker.api.routes.webhooks import router as webhooks_router  # noqa: E402
from changemaker.errors import ChangemakerError  # noqa: E402
from changemaker.rewardstack.client import RewardStackClient  # noqa: E402
from changemaker.services.email_service import EmailSender  # noqa: E402
from changemaker.services.tasks import BackgroundTaskRunner  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) APP_BASE_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    app_url = os.getenv("APP_BASE_URL", "").strip()
    if app_url:
        return [app_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — build the outbound clients."""
    cfg = get_config()
    app.state.rewardstack_client = RewardStackClient(
        os.getenv("REWARDSTACK_USERNAME"),
        os.getenv("REWARDSTACK_PASSWORD"),
        timeout=cfg.provider_timeout_seconds,
        max_attempts=cfg.provider_max_attempts,
    )
    app.state.email_sender = EmailSender(
        os.getenv("RESEND_API_KEY"),
        from_email=cfg.email_from,
        from_name=cfg.email_from_name,
    )
    app.state.task_runner = BackgroundTaskRunner()
    logger.info("%s API started", cfg.app_name)
    yield
    logger.info("%s API shutting down", cfg.app_name)
    await app.state.task_runner.shutdown()
    await app.state.rewardstack_client.aclose()
    await app.state.email_sender.aclose()


app = FastAPI(
    title="Changemaker API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChangemakerError)
async def changemaker_error_handler(request: Request, exc: ChangemakerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Mount routers
app.include_router(submissions_router, prefix="/api")
app.include_router(participants_router, prefix="/api")
app.include_router(rewards_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
