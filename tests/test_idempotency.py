"""Idempotency store: reserve, complete and release with Redis-owned expiry."""

from datetime import timedelta

from giftflow.services.vouchers.idempotency import IdempotencyStore


def test_reserve_then_complete(rdb):
    store = IdempotencyStore(rdb, ttl_seconds=3600, reservation_seconds=30)

    assert store.reserve("key-1", "voucher-1") is None
    assert store.get("key-1").in_flight is True
    assert 0 < rdb.ttl("idempotency:voucher:key-1") <= 30

    assert store.complete("key-1", "voucher-1") is True
    record = store.get("key-1")

    assert record.resource_id == "voucher-1"
    assert record.in_flight is False
    assert record.expires_at - record.created_at == timedelta(seconds=3600)
    assert 30 < rdb.ttl("idempotency:voucher:key-1") <= 3600


def test_second_reservation_sees_the_holder(rdb):
    store = IdempotencyStore(rdb)
    store.reserve("key-1", "voucher-1")

    holder = store.reserve("key-1", "voucher-2")

    assert holder.resource_id == "voucher-1"
    assert holder.in_flight is True


def test_complete_refuses_key_held_by_other_resource(rdb):
    store = IdempotencyStore(rdb)
    store.reserve("key-1", "voucher-1")

    assert store.complete("key-1", "voucher-2") is False
    assert store.get("key-1").resource_id == "voucher-1"


def test_complete_after_reservation_expired(rdb):
    store = IdempotencyStore(rdb)
    store.reserve("key-1", "voucher-1")
    rdb.delete("idempotency:voucher:key-1")

    assert store.complete("key-1", "voucher-1") is True
    assert store.get("key-1").resource_id == "voucher-1"


def test_release_only_drops_own_mapping(rdb):
    store = IdempotencyStore(rdb)
    store.reserve("key-1", "voucher-1")

    assert store.release("key-1", "voucher-2") is False
    assert store.get("key-1") is not None

    assert store.release("key-1", "voucher-1") is True
    assert store.get("key-1") is None
    assert store.reserve("key-1", "voucher-2") is None


def test_unknown_key(rdb):
    assert IdempotencyStore(rdb).get("missing") is None


def test_generated_keys_are_unique():
    assert IdempotencyStore.generate_key() != IdempotencyStore.generate_key()
