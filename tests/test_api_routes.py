"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Drives the workspace-scoped routes through the FastAPI TestClient.

The lifespan is not run: the engine, provider client, email sender and
task runner are swapped in through ``app.dependency_overrides``.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from changemaker.api.routes import participants as participant_routes
from changemaker.api.routes import webhooks as webhook_routes
from changemaker.config import ChangemakerConfig
from changemaker.database.models import (
    RewardIssuance,
    RewardStackStatus,
    RewardStatus,
    RewardType,
    SubmissionStatus,
    Workspace,
)
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode
from changemaker.rewardstack.issuance import IssuanceDeps
from changemaker.rewardstack.webhooks import SIGNATURE_HEADER, sign_payload
from conftest import add_reward, add_submission, make_token, seed_workspace

ADDRESS_ERROR = (
    "Participant missing required shipping address fields: city. "
    "Please update participant profile before issuing catalog rewards."
)


class _RecordingRunner:
    """Stands in for BackgroundTaskRunner; records jobs without running them."""

    def __init__(self):
        self.spawned: list[str] = []

    def spawn(self, job, *, name):
        self.spawned.append(name)
        job.close()


def _provider() -> MagicMock:
    client = MagicMock()
    client.create_adjustment = AsyncMock(return_value={"id": "adj-1"})
    client.create_transaction = AsyncMock(return_value={"id": "txn-1"})
    client.create_participant = AsyncMock(return_value={"unique_id": "rs-new"})
    client.update_participant = AsyncMock(return_value={})
    client.get_participant = AsyncMock(
        return_value={"unique_id": "rs-pat", "address": {"city": "Springfield"}}
    )
    return client


@pytest.fixture
def env(file_engine):
    """Seeded workspace + TestClient with all collaborators overridden."""
    from changemaker.api.main import app

    seed = seed_workspace(file_engine)
    provider = _provider()
    runner = _RecordingRunner()
    secret = {"value": None}

    # Keys come from a route module so they match the callables the routes captured.
    app.dependency_overrides[participant_routes.get_engine] = lambda: file_engine
    app.dependency_overrides[participant_routes.get_rewardstack_client] = lambda: provider
    app.dependency_overrides[participant_routes.get_task_runner] = lambda: runner
    app.dependency_overrides[participant_routes.get_config] = lambda: ChangemakerConfig()
    app.dependency_overrides[webhook_routes.get_webhook_secret] = lambda: secret["value"]
    app.dependency_overrides[participant_routes.get_issuance_deps] = (
        lambda: IssuanceDeps(file_engine, provider)
    )

    client = TestClient(app, raise_server_exceptions=False)
    yield client, seed, provider, runner, secret, file_engine
    app.dependency_overrides.clear()


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


# ===========================================================================
# Health + auth guards
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, env):
        client = env[0]
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestAuthGuards:
    def test_missing_token(self, env):
        client, seed = env[0], env[1]
        resp = client.get(f"/api/workspaces/{seed.slug}/rewards")
        assert resp.status_code == 401

    def test_invalid_token(self, env):
        client, seed = env[0], env[1]
        resp = client.get(
            f"/api/workspaces/{seed.slug}/rewards",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    def test_unknown_workspace(self, env):
        client, seed = env[0], env[1]
        resp = client.get("/api/workspaces/nope/rewards", headers=_auth(seed.admin_id))
        assert resp.status_code == 404

    def test_non_member(self, env):
        client, seed = env[0], env[1]
        resp = client.get(f"/api/workspaces/{seed.slug}/rewards", headers=_auth(seed.outsider_id))
        assert resp.status_code == 403

    @pytest.mark.parametrize("path,body", [
        ("rewards/retry", {"reward_ids": ["x"]}),
        ("rewardstack/sync-participants", {}),
    ])
    def test_admin_only_endpoints(self, env, path, body):
        client, seed = env[0], env[1]
        resp = client.post(
            f"/api/workspaces/{seed.slug}/{path}", json=body, headers=_auth(seed.participant_id)
        )
        assert resp.status_code == 403


# ===========================================================================
# Submissions + review
# ===========================================================================
class TestSubmissionRoutes:
    def test_participant_submits(self, env):
        client, seed = env[0], env[1]
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions",
            json={"activity_id": seed.points_activity_id, "content": "Rode 12km"},
            headers=_auth(seed.participant_id),
        )
        assert resp.status_code == 201
        assert resp.json()["status"] == SubmissionStatus.PENDING

    def test_manager_reject_without_notes_is_400(self, env):
        client, seed, engine = env[0], env[1], env[5]
        sid = add_submission(engine, seed)
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions/{sid}/manager-review",
            json={"action": "reject"},
            headers=_auth(seed.manager_id),
        )
        assert resp.status_code == 400
        assert "Feedback notes are required" in resp.json()["detail"]

    def test_manager_approves(self, env):
        client, seed, engine = env[0], env[1], env[5]
        sid = add_submission(engine, seed)
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions/{sid}/manager-review",
            json={"action": "approve"},
            headers=_auth(seed.manager_id),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == SubmissionStatus.MANAGER_APPROVED

    def test_admin_approval_issues_reward(self, env):
        client, seed, provider, engine = env[0], env[1], env[2], env[5]
        sid = add_submission(engine, seed)
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions/{sid}/review",
            json={"status": "APPROVED"},
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == SubmissionStatus.APPROVED
        assert body["reward"]["issued"] is True
        provider.create_adjustment.assert_awaited_once()

    def test_approval_survives_issuance_failure(self, env):
        client, seed, provider, engine = env[0], env[1], env[2], env[5]
        sid = add_submission(engine, seed, activity_id=seed.sku_activity_id)
        with Session(engine) as session:
            session.get(Workspace, seed.workspace_id).reward_stack_program_id = None
            session.commit()
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions/{sid}/review",
            json={"status": "APPROVED"},
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 200
        reward = resp.json()["reward"]
        assert reward["issued"] is False
        assert reward["error_kind"] == "NOT_CONFIGURED"
        provider.create_transaction.assert_not_called()

    def test_manager_cannot_finalize(self, env):
        client, seed, engine = env[0], env[1], env[5]
        sid = add_submission(engine, seed)
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions/{sid}/review",
            json={"status": "APPROVED"},
            headers=_auth(seed.manager_id),
        )
        assert resp.status_code == 403

    def test_double_approval_conflicts(self, env):
        client, seed, engine = env[0], env[1], env[5]
        sid = add_submission(engine, seed)
        url = f"/api/workspaces/{seed.slug}/submissions/{sid}/review"
        assert client.post(url, json={"status": "APPROVED"}, headers=_auth(seed.admin_id)).status_code == 200
        resp = client.post(url, json={"status": "APPROVED"}, headers=_auth(seed.admin_id))
        assert resp.status_code == 409

    def test_invalid_status_is_422(self, env):
        client, seed, engine = env[0], env[1], env[5]
        sid = add_submission(engine, seed)
        resp = client.post(
            f"/api/workspaces/{seed.slug}/submissions/{sid}/review",
            json={"status": "MAYBE"},
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 422


# ===========================================================================
# Participants
# ===========================================================================
class TestParticipantRoutes:
    def test_address_change_schedules_retry(self, env):
        client, seed, _, runner, _, engine = env
        rid = add_reward(
            engine, seed, type=RewardType.SKU, amount=None, sku_id="SKU-MUG",
            status=RewardStatus.FAILED, reward_stack_status=RewardStackStatus.FAILED,
            error=ADDRESS_ERROR,
        )
        resp = client.patch(
            f"/api/workspaces/{seed.slug}/participants/{seed.participant_id}",
            json={"city": "Chicago"},
            headers=_auth(seed.participant_id),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["changed_fields"] == ["city"]
        assert body["rewards_retrying"] == [rid]
        assert runner.spawned == [f"address-retry:{seed.participant_id}"]
        with Session(engine) as session:
            assert session.get(RewardIssuance, rid).status == RewardStatus.PENDING

    def test_non_address_change_does_not_retry(self, env):
        client, seed, _, runner, _, engine = env
        add_reward(
            engine, seed, type=RewardType.SKU, amount=None, sku_id="SKU-MUG",
            status=RewardStatus.FAILED, reward_stack_status=RewardStackStatus.FAILED,
            error=ADDRESS_ERROR,
        )
        resp = client.patch(
            f"/api/workspaces/{seed.slug}/participants/{seed.participant_id}",
            json={"first_name": "Patricia"},
            headers=_auth(seed.participant_id),
        )
        assert resp.json()["rewards_retrying"] == []
        assert runner.spawned == []

    def test_cannot_edit_another_participant(self, env):
        client, seed = env[0], env[1]
        resp = client.patch(
            f"/api/workspaces/{seed.slug}/participants/{seed.admin_id}",
            json={"city": "X"},
            headers=_auth(seed.participant_id),
        )
        assert resp.status_code == 403

    def test_manual_sync(self, env):
        client, seed, provider = env[0], env[1], env[2]
        resp = client.post(
            f"/api/workspaces/{seed.slug}/participants/{seed.participant_id}/rewardstack-sync",
            headers=_auth(seed.participant_id),
        )
        assert resp.status_code == 200
        assert resp.json()["participant_id"] == "rs-pat"
        provider.update_participant.assert_awaited_once()

    def test_manual_sync_not_configured(self, env):
        client, seed, engine = env[0], env[1], env[5]
        with Session(engine) as session:
            session.get(Workspace, seed.workspace_id).reward_stack_enabled = False
            session.commit()
        resp = client.post(
            f"/api/workspaces/{seed.slug}/participants/{seed.participant_id}/rewardstack-sync",
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 400

    def test_sync_status(self, env):
        client, seed = env[0], env[1]
        resp = client.get(
            f"/api/workspaces/{seed.slug}/participants/{seed.participant_id}/rewardstack-status",
            headers=_auth(seed.participant_id),
        )
        assert resp.status_code == 200
        assert resp.json()["address_complete"] is True
        assert resp.json()["reward_stack_address"] == {"city": "Springfield"}
        env[2].get_participant.assert_awaited_once_with("QA", "prog-1", "rs-pat")

    def test_sync_status_survives_provider_error(self, env):
        client, seed, provider = env[0], env[1], env[2]
        provider.get_participant.side_effect = RewardStackError(
            "down", RewardStackErrorCode.SERVER_ERROR, 503
        )
        resp = client.get(
            f"/api/workspaces/{seed.slug}/participants/{seed.participant_id}/rewardstack-status",
            headers=_auth(seed.participant_id),
        )
        assert resp.status_code == 200
        assert resp.json()["reward_stack_address"] is None


# ===========================================================================
# Rewards
# ===========================================================================
class TestRewardRoutes:
    def test_participant_sees_only_own_rewards(self, env):
        client, seed, engine = env[0], env[1], env[5]
        mine = add_reward(engine, seed)
        add_reward(engine, seed, user_id=seed.admin_id)
        resp = client.get(
            f"/api/workspaces/{seed.slug}/rewards?user_id={seed.admin_id}",
            headers=_auth(seed.participant_id),
        )
        assert [r["id"] for r in resp.json()["rewards"]] == [mine]

    def test_admin_retry(self, env):
        client, seed, provider, engine = env[0], env[1], env[2], env[5]
        rid = add_reward(
            engine, seed, status=RewardStatus.FAILED,
            reward_stack_status=RewardStackStatus.FAILED, error="RewardSTACK server error: 502",
        )
        resp = client.post(
            f"/api/workspaces/{seed.slug}/rewards/retry",
            json={"reward_ids": [rid]},
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 200
        assert resp.json()["succeeded"] == 1
        provider.create_adjustment.assert_awaited_once()

    def test_retry_requires_ids(self, env):
        client, seed = env[0], env[1]
        resp = client.post(
            f"/api/workspaces/{seed.slug}/rewards/retry",
            json={"reward_ids": []},
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 422

    def test_bulk_participant_sync(self, env):
        client, seed = env[0], env[1]
        resp = client.post(
            f"/api/workspaces/{seed.slug}/rewardstack/sync-participants",
            json={"force": True},
            headers=_auth(seed.admin_id),
        )
        assert resp.status_code == 200
        assert resp.json()["total"] == 3
        assert resp.json()["synced"] == 3


# ===========================================================================
# Webhooks
# ===========================================================================
class TestWebhookRoute:
    def _event(self) -> bytes:
        return json.dumps(
            {"id": "evt-1", "type": "transaction.completed", "data": {"id": "txn-1"}}
        ).encode()

    def test_unknown_workspace(self, env):
        client = env[0]
        resp = client.post("/api/webhooks/rewardstack/nope", content=self._event())
        assert resp.status_code == 404

    def test_bad_signature_rejected(self, env):
        client, seed, secret = env[0], env[1], env[4]
        secret["value"] = "whsec"
        resp = client.post(
            f"/api/webhooks/rewardstack/{seed.slug}",
            content=self._event(),
            headers={SIGNATURE_HEADER: "deadbeef"},
        )
        assert resp.status_code == 401

    def test_signed_event_applied(self, env):
        client, seed, secret, engine = env[0], env[1], env[4], env[5]
        secret["value"] = "whsec"
        rid = add_reward(
            engine, seed, type=RewardType.SKU, amount=None, sku_id="SKU-MUG",
            reward_stack_status=RewardStackStatus.PROCESSING,
        )
        with Session(engine) as session:
            session.get(RewardIssuance, rid).reward_stack_transaction_id = "txn-1"
            session.commit()
        body = self._event()
        resp = client.post(
            f"/api/webhooks/rewardstack/{seed.slug}",
            content=body,
            headers={SIGNATURE_HEADER: sign_payload(body, "whsec")},
        )
        assert resp.status_code == 200
        assert resp.json()["handled"] is True
        with Session(engine) as session:
            assert session.get(RewardIssuance, rid).status == RewardStatus.ISSUED

    def test_unsigned_accepted_without_secret(self, env):
        client, seed = env[0], env[1]
        resp = client.post(f"/api/webhooks/rewardstack/{seed.slug}", content=self._event())
        assert resp.status_code == 200
        assert resp.json()["received"] is True

    def test_invalid_json(self, env):
        client, seed = env[0], env[1]
        resp = client.post(f"/api/webhooks/rewardstack/{seed.slug}", content=b"{not json")
        assert resp.status_code == 400

    def test_missing_type(self, env):
        client, seed = env[0], env[1]
        resp = client.post(f"/api/webhooks/rewardstack/{seed.slug}", content=b'{"data": {}}')
        assert resp.status_code == 400
