"""Submission workflow: idempotent replay, write-before-publish, outbox relay."""

import json
from uuid import uuid4

import pytest

from giftflow.common.state_machine import PENDING
from giftflow.services.vouchers.idempotency import IdempotencyStore
from giftflow.services.vouchers.models import OutboxEvent
from giftflow.services.vouchers.service import SubmissionFailed, SubmissionInProgress, SubmissionService
from giftflow.services.vouchers.validation import GiftValidationError


class BrokenQueue:
    """Queue stand-in whose publish always fails."""

    name = "broken"

    def __init__(self) -> None:
        self.calls = 0

    def publish(self, body):
        self.calls += 1
        raise ConnectionError("queue unavailable")


class BrokenIdempotencyStore:
    def generate_key(self):
        return str(uuid4())

    def get(self, key):
        raise ConnectionError("redis down")

    def reserve(self, key, resource_id):
        raise ConnectionError("redis down")

    def complete(self, key, resource_id):
        raise ConnectionError("redis down")

    def release(self, key, resource_id):
        raise ConnectionError("redis down")


def _outbox_rows(session_factory):
    with session_factory() as db:
        return db.query(OutboxEvent).all()


def test_submit_creates_pending_voucher_and_queues_message(submission, queue):
    result = submission.submit({"recipientEmail": "a@b.com", "amount": 100})

    assert result.status == PENDING
    assert result.idempotent is False
    assert result.is_high_value is False
    assert result.idempotency_key

    stored = submission.get_voucher(result.id)
    assert stored is not None
    assert stored.status == PENDING
    assert stored.recipient_email == "a@b.com"

    [msg] = queue.receive()
    assert json.loads(msg.body) == {
        "voucherId": result.id,
        "recipientEmail": "a@b.com",
        "walletAddress": None,
        "amount": 100.0,
        "message": None,
    }


def test_submit_marks_outbox_row_sent(submission, session_factory):
    result = submission.submit({"walletAddress": "0xabc", "amount": 10})

    [row] = _outbox_rows(session_factory)
    assert row.voucher_id == result.id
    assert row.status == "SENT"
    assert row.message_id


def test_same_idempotency_key_returns_same_voucher_without_republishing(submission, queue):
    key = str(uuid4())
    payload = {"recipientEmail": "a@b.com", "amount": 100, "idempotencyKey": key}

    first = submission.submit(payload)
    second = submission.submit(payload)

    assert second.id == first.id
    assert second.idempotent is True
    assert second.idempotency_key == key
    assert queue.depth()["ready"] == 1


def test_replay_skips_validation(submission):
    key = str(uuid4())
    first = submission.submit({"recipientEmail": "a@b.com", "amount": 100, "idempotencyKey": key})

    replay = submission.submit({"amount": -1, "idempotencyKey": key})

    assert replay.id == first.id
    assert replay.idempotent is True


def test_generated_key_is_returned_and_replayable(submission, queue):
    first = submission.submit({"recipientEmail": "a@b.com", "amount": 50})

    again = submission.submit({"recipientEmail": "a@b.com", "amount": 50, "idempotencyKey": first.idempotency_key})

    assert again.id == first.id
    assert queue.depth()["ready"] == 1


def test_mapping_to_missing_voucher_falls_through_to_creation(submission, idempotency):
    key = str(uuid4())
    idempotency.complete(key, "ghost-voucher")

    result = submission.submit({"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key})

    assert result.id != "ghost-voucher"
    assert result.idempotent is False
    assert submission.get_voucher(result.id) is not None


def test_expired_mapping_creates_new_voucher_by_default(submission, rdb):
    key = str(uuid4())
    payload = {"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key}
    first = submission.submit(payload)
    rdb.delete(f"idempotency:voucher:{key}")

    second = submission.submit(payload)

    assert second.id != first.id


def test_durable_fallback_finds_voucher_after_mapping_expired(session_factory, idempotency, queue, policy, rdb):
    service = SubmissionService(session_factory, idempotency, queue, policy=policy, durable_idempotency=True)
    key = str(uuid4())
    payload = {"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key}
    first = service.submit(payload)
    rdb.delete(f"idempotency:voucher:{key}")

    second = service.submit(payload)

    assert second.id == first.id
    assert second.idempotent is True


def test_validation_failure_creates_nothing(submission, queue, session_factory):
    with pytest.raises(GiftValidationError):
        submission.submit({"amount": 2_000})

    assert _outbox_rows(session_factory) == []
    assert queue.depth()["ready"] == 0


def test_high_value_is_flagged(submission):
    result = submission.submit({"recipientEmail": "a@b.com", "amount": 1_500, "confirmHighValue": True})

    assert result.is_high_value is True


def test_idempotency_store_outage_does_not_fail_request(session_factory, queue, policy):
    service = SubmissionService(session_factory, BrokenIdempotencyStore(), queue, policy=policy)

    result = service.submit({"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": str(uuid4())})

    assert service.get_voucher(result.id) is not None
    assert queue.depth()["ready"] == 1


def test_persistence_failure_is_opaque(submission, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("db password=hunter2 rejected")

    monkeypatch.setattr(submission.repository, "create", explode)

    with pytest.raises(SubmissionFailed) as exc_info:
        submission.submit({"recipientEmail": "a@b.com", "amount": 10})

    assert str(exc_info.value) == "Failed to process voucher gift"


def test_publish_failure_leaves_outbox_row_for_relay(session_factory, idempotency, queue, policy):
    broken = BrokenQueue()
    service = SubmissionService(session_factory, idempotency, broken, policy=policy, outbox_grace_seconds=0)

    result = service.submit({"recipientEmail": "a@b.com", "amount": 10})

    assert service.get_voucher(result.id).status == PENDING
    [row] = _outbox_rows(session_factory)
    assert row.status == "PENDING"

    service.queue = queue
    assert service.publish_pending_once() == 1

    [msg] = queue.receive()
    assert json.loads(msg.body)["voucherId"] == result.id
    [row] = _outbox_rows(session_factory)
    assert row.status == "SENT"


def test_relay_requeues_row_when_publish_keeps_failing(session_factory, idempotency, policy):
    broken = BrokenQueue()
    service = SubmissionService(session_factory, idempotency, broken, policy=policy, outbox_grace_seconds=0)
    service.submit({"recipientEmail": "a@b.com", "amount": 10})

    assert service.publish_pending_once() == 0

    [row] = _outbox_rows(session_factory)
    assert row.status == "PENDING"
    assert broken.calls == 2


def test_relay_ignores_already_sent_rows(submission):
    submission.submit({"recipientEmail": "a@b.com", "amount": 10})

    assert submission.publish_pending_once() == 0


def test_resend_while_first_request_in_flight_is_refused(submission, queue, monkeypatch):
    key = str(uuid4())
    payload = {"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key}
    create = submission.repository.create
    inner = []

    def create_with_resend(voucher, delivery_payload):
        with pytest.raises(SubmissionInProgress):
            submission.submit(payload)
        inner.append(voucher.id)
        return create(voucher, delivery_payload)

    monkeypatch.setattr(submission.repository, "create", create_with_resend)
    first = submission.submit(payload)
    monkeypatch.undo()

    assert inner == [first.id]
    assert queue.depth()["ready"] == 1

    replay = submission.submit(payload)
    assert replay.id == first.id
    assert replay.idempotent is True


def test_resend_after_commit_before_mapping_completed_replays(submission, queue, idempotency, monkeypatch):
    key = str(uuid4())
    payload = {"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key}
    replays = []

    def complete_after_resend(k, voucher_id):
        replays.append(submission.submit(payload))
        return IdempotencyStore.complete(idempotency, k, voucher_id)

    monkeypatch.setattr(idempotency, "complete", complete_after_resend)
    first = submission.submit(payload)

    [replay] = replays
    assert replay.id == first.id
    assert replay.idempotent is True
    assert queue.depth()["ready"] == 1


def test_persistence_failure_releases_reserved_key(submission, idempotency, monkeypatch):
    key = str(uuid4())
    payload = {"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key}

    def explode(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(submission.repository, "create", explode)
    with pytest.raises(SubmissionFailed):
        submission.submit(payload)
    monkeypatch.undo()

    assert idempotency.get(key) is None
    assert submission.submit(payload).idempotent is False
