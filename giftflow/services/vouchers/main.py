"""Process entrypoint for the voucher gift API (`uvicorn giftflow.services.vouchers.main:app`)."""

import redis

from giftflow.common.config import settings
from giftflow.common.db import SessionLocal
from giftflow.common.logging import configure_logging
from giftflow.common.queue import RedisDeliveryQueue
from giftflow.common.rate_limit import RateLimiter
from giftflow.common.startup import log_startup_config
from giftflow.common.tracing import instrument_app, setup_tracing
from giftflow.services.delivery.channels import default_channels
from giftflow.services.delivery.service import DeliveryConsumer
from giftflow.services.vouchers.api import create_app
from giftflow.services.vouchers.idempotency import IdempotencyStore
from giftflow.services.vouchers.service import SubmissionService
from giftflow.services.vouchers.validation import AmountPolicy

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "REDIS_URL",
        "API_KEY",
        "QUEUE_NAME",
        "IDEMPOTENCY_TTL_SECONDS",
        "RATE_LIMIT_MAX_REQUESTS",
    ],
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
queue = RedisDeliveryQueue(
    rdb,
    settings.queue_name,
    max_receive_count=settings.max_receive_count,
    service_name=settings.service_name,
)
service = SubmissionService(
    SessionLocal,
    IdempotencyStore(
        rdb,
        ttl_seconds=settings.idempotency_ttl_seconds,
        reservation_seconds=settings.idempotency_reservation_seconds,
    ),
    queue,
    policy=AmountPolicy(),
    service_name=settings.service_name,
    durable_idempotency=settings.idempotency_durable_fallback,
    outbox_grace_seconds=settings.outbox_grace_seconds,
)
limiter = RateLimiter(
    rdb,
    window_seconds=settings.rate_limit_window_seconds,
    max_requests=settings.rate_limit_max_requests,
    high_value_max_requests=settings.rate_limit_high_value_max_requests,
    high_value_threshold=settings.high_value_threshold,
)
local_consumer = DeliveryConsumer(
    queue,
    service.repository,
    default_channels(settings.email_relay_url),
    max_attempts=settings.delivery_max_attempts,
    service_name=settings.service_name,
)

app = create_app(
    service,
    rate_limiter=limiter,
    consumer=local_consumer,
    api_key=settings.api_key,
    service_name=settings.service_name,
)
instrument_app(app)
