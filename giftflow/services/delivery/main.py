"""Process entrypoint for the delivery worker (`uvicorn giftflow.services.delivery.main:app`)."""

import redis

from giftflow.common.config import settings
from giftflow.common.db import SessionLocal
from giftflow.common.logging import configure_logging
from giftflow.common.queue import RedisDeliveryQueue
from giftflow.common.startup import log_startup_config
from giftflow.common.tracing import instrument_app, setup_tracing
from giftflow.services.delivery.api import create_app
from giftflow.services.delivery.channels import default_channels
from giftflow.services.delivery.service import DeliveryConsumer
from giftflow.services.delivery.stats import DeliveryStats
from giftflow.services.vouchers.repository import VoucherRepository

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "REDIS_URL",
        "QUEUE_NAME",
        "VISIBILITY_TIMEOUT_SECONDS",
        "MAX_RECEIVE_COUNT",
        "DELIVERY_MAX_ATTEMPTS",
        "EMAIL_RELAY_URL",
    ],
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
consumer = DeliveryConsumer(
    RedisDeliveryQueue(
        rdb,
        settings.queue_name,
        max_receive_count=settings.max_receive_count,
        service_name=settings.service_name,
    ),
    VoucherRepository(SessionLocal, service_name=settings.service_name),
    default_channels(settings.email_relay_url),
    stats=DeliveryStats(settings.service_name),
    max_attempts=settings.delivery_max_attempts,
    batch_size=settings.delivery_batch_size,
    visibility_timeout=settings.visibility_timeout_seconds,
    poll_interval=settings.poll_interval_seconds,
    service_name=settings.service_name,
)

app = create_app(consumer)
instrument_app(app)
