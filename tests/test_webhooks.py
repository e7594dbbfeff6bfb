"""
tests/test_webhooks.py — RewardSTACK status callbacks
======================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from changemaker.database.models import (
    ActivityEvent,
    ActivityEventType,
    RewardIssuance,
    RewardStackStatus,
    RewardStatus,
    RewardType,
    SyncStatus,
    User,
)
from changemaker.rewardstack.webhooks import (
    apply_webhook_event,
    map_provider_status,
    sign_payload,
    verify_signature,
)
from conftest import add_reward, seed_workspace


def _issued_transaction(engine, seed, txn_id="txn-1") -> str:
    rid = add_reward(
        engine, seed, type=RewardType.SKU, amount=None, sku_id="SKU-MUG",
        status=RewardStatus.PENDING, reward_stack_status=RewardStackStatus.PROCESSING,
    )
    with Session(engine) as session:
        session.execute(
            update(RewardIssuance)
            .where(RewardIssuance.id == rid)
            .values(reward_stack_transaction_id=txn_id)
        )
        session.commit()
    return rid


def _reward(engine, reward_id) -> RewardIssuance:
    with Session(engine) as session:
        return session.get(RewardIssuance, reward_id)


class TestStatusMapping:
    @pytest.mark.parametrize("raw,expected", [
        ("pending", RewardStackStatus.PENDING),
        ("PROCESSING", RewardStackStatus.PROCESSING),
        ("completed", RewardStackStatus.COMPLETED),
        ("success", RewardStackStatus.COMPLETED),
        ("delivered", RewardStackStatus.COMPLETED),
        ("failed", RewardStackStatus.FAILED),
        ("error", RewardStackStatus.FAILED),
        ("returned", RewardStackStatus.RETURNED),
        ("cancelled", RewardStackStatus.RETURNED),
        ("on_hold", RewardStackStatus.PROCESSING),
        (None, RewardStackStatus.PROCESSING),
    ])
    def test_mapping(self, raw, expected):
        assert map_provider_status(raw) is expected


class TestSignature:
    def test_round_trip(self):
        body = b'{"type":"transaction.completed"}'
        assert verify_signature(body, sign_payload(body, "s3cret"), "s3cret")

    def test_wrong_secret_or_tampered_body(self):
        body = b'{"type":"transaction.completed"}'
        sig = sign_payload(body, "s3cret")
        assert not verify_signature(body, sig, "other")
        assert not verify_signature(body + b" ", sig, "s3cret")

    def test_missing_signature(self):
        assert not verify_signature(b"{}", None, "s3cret")
        assert not verify_signature(b"{}", "", "s3cret")


class TestRewardEvents:
    def test_transaction_completed_marks_issued(self, db_engine, seed):
        rid = _issued_transaction(db_engine, seed)
        outcome = apply_webhook_event(
            db_engine, seed.workspace_id, "transaction.completed", {"id": "txn-1"}
        )
        assert outcome.handled
        reward = _reward(db_engine, rid)
        assert reward.status == RewardStatus.ISSUED
        assert reward.reward_stack_status == RewardStackStatus.COMPLETED
        assert reward.issued_at is not None

    def test_transaction_failed_records_error(self, db_engine, seed):
        rid = _issued_transaction(db_engine, seed)
        apply_webhook_event(
            db_engine, seed.workspace_id, "transaction.failed",
            {"id": "txn-1", "error": "Undeliverable shipping address"},
        )
        reward = _reward(db_engine, rid)
        assert reward.status == RewardStatus.FAILED
        assert reward.reward_stack_error_message == "Undeliverable shipping address"

    def test_transaction_updated_returned(self, db_engine, seed):
        rid = _issued_transaction(db_engine, seed)
        apply_webhook_event(
            db_engine, seed.workspace_id, "transaction.updated",
            {"id": "txn-1", "status": "returned"},
        )
        reward = _reward(db_engine, rid)
        assert reward.reward_stack_status == RewardStackStatus.RETURNED
        assert reward.status == RewardStatus.PENDING

    def test_status_change_is_audited(self, db_engine, seed):
        _issued_transaction(db_engine, seed)
        apply_webhook_event(db_engine, seed.workspace_id, "transaction.completed", {"id": "txn-1"})
        with Session(db_engine) as session:
            events = session.scalars(
                select(ActivityEvent).where(
                    ActivityEvent.type == ActivityEventType.REWARD_STATUS_UPDATED
                )
            ).all()
        assert len(events) == 1
        assert events[0].metadata_["new_status"] == "COMPLETED"

    def test_adjustment_events_match_adjustment_id(self, db_engine, seed):
        rid = add_reward(db_engine, seed, reward_stack_status=RewardStackStatus.PROCESSING)
        with Session(db_engine) as session:
            session.execute(
                update(RewardIssuance)
                .where(RewardIssuance.id == rid)
                .values(reward_stack_adjustment_id="adj-5")
            )
            session.commit()
        outcome = apply_webhook_event(
            db_engine, seed.workspace_id, "adjustment.completed", {"id": "adj-5"}
        )
        assert outcome.handled
        assert _reward(db_engine, rid).status == RewardStatus.ISSUED

    def test_unknown_transaction_is_ignored(self, db_engine, seed):
        outcome = apply_webhook_event(
            db_engine, seed.workspace_id, "transaction.completed", {"id": "nope"}
        )
        assert not outcome.handled

    def test_event_without_id_is_ignored(self, db_engine, seed):
        outcome = apply_webhook_event(db_engine, seed.workspace_id, "transaction.completed", {})
        assert not outcome.handled

    def test_other_workspace_reward_not_touched(self, db_engine, seed):
        other = seed_workspace(db_engine, slug="other")
        rid = _issued_transaction(db_engine, other)
        outcome = apply_webhook_event(
            db_engine, seed.workspace_id, "transaction.completed", {"id": "txn-1"}
        )
        assert not outcome.handled
        assert _reward(db_engine, rid).status == RewardStatus.PENDING


class TestParticipantEvents:
    def test_deleted_clears_participant(self, db_engine, seed):
        outcome = apply_webhook_event(
            db_engine, seed.workspace_id, "participant.deleted", {"id": "rs-pat"}
        )
        assert outcome.handled
        with Session(db_engine) as session:
            user = session.get(User, seed.participant_id)
        assert user.reward_stack_participant_id is None
        assert user.reward_stack_sync_status == SyncStatus.NOT_SYNCED

    def test_updated_marks_synced(self, db_engine, seed):
        with Session(db_engine) as session:
            session.execute(
                update(User)
                .where(User.id == seed.participant_id)
                .values(reward_stack_sync_status=SyncStatus.FAILED)
            )
            session.commit()
        apply_webhook_event(db_engine, seed.workspace_id, "participant.updated", {"id": "rs-pat"})
        with Session(db_engine) as session:
            user = session.get(User, seed.participant_id)
        assert user.reward_stack_sync_status == SyncStatus.SYNCED

    def test_unhandled_category(self, db_engine, seed):
        outcome = apply_webhook_event(db_engine, seed.workspace_id, "program.updated", {})
        assert not outcome.handled
