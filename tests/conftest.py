"""Shared fixtures: in-memory SQLite, fakeredis, and wired services."""

import fakeredis
import pytest
from sqlalchemy.pool import StaticPool

from giftflow.common.db import Base, make_session_factory
from giftflow.common.queue import RedisDeliveryQueue
from giftflow.services.delivery.channels import EmailChannel, WalletChannel
from giftflow.services.delivery.service import DeliveryConsumer
from giftflow.services.delivery.stats import DeliveryStats
from giftflow.services.vouchers.idempotency import IdempotencyStore
from giftflow.services.vouchers.service import SubmissionService
from giftflow.services.vouchers.validation import AmountPolicy


class FakeClock:
    """Manually advanced time source for visibility-timeout tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def session_factory():
    factory = make_session_factory(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    engine = factory.kw["bind"]
    Base.metadata.create_all(bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def rdb():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(rdb, clock):
    return RedisDeliveryQueue(rdb, "test-gifts", max_receive_count=5, clock=clock)


@pytest.fixture
def idempotency(rdb):
    return IdempotencyStore(rdb, ttl_seconds=3600)


@pytest.fixture
def policy():
    return AmountPolicy(min_amount=1, max_amount=10_000, high_value_threshold=1_000)


@pytest.fixture
def submission(session_factory, idempotency, queue, policy):
    return SubmissionService(session_factory, idempotency, queue, policy=policy, outbox_grace_seconds=0)


@pytest.fixture
def consumer(submission, queue):
    return DeliveryConsumer(
        queue,
        submission.repository,
        {"email": EmailChannel(), "wallet": WalletChannel()},
        stats=DeliveryStats("test"),
        max_attempts=3,
        visibility_timeout=30,
    )
