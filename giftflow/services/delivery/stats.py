"""In-process delivery counters, mirrored to Prometheus.

Held by the consumer instance rather than at module level so each consumer
(and each test) starts from zero.
"""

from datetime import datetime, timezone
from time import time

from pydantic import BaseModel

from giftflow.common.metrics import (
    delivery_failed_total,
    delivery_last_failure_timestamp,
    delivery_last_success_timestamp,
    delivery_processed_total,
    delivery_processing_seconds,
    dlq_total,
    retries_total,
)


class DeliveryStatsSnapshot(BaseModel):
    processed: int
    succeeded: int
    failed: int
    retries: int
    dead_lettered: int
    processing_seconds: float
    last_success_at: datetime | None = None
    last_success_message: str | None = None
    last_failure_at: datetime | None = None
    last_failure_message: str | None = None


class DeliveryStats:
    def __init__(self, service_name: str = "delivery") -> None:
        self.service_name = service_name
        self.reset()

    def reset(self) -> None:
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.retries = 0
        self.dead_lettered = 0
        self.processing_seconds = 0.0
        self.last_success_at: datetime | None = None
        self.last_success_message: str | None = None
        self.last_failure_at: datetime | None = None
        self.last_failure_message: str | None = None

    def _observe(self, outcome: str, elapsed: float) -> None:
        self.processed += 1
        self.processing_seconds += elapsed
        delivery_processed_total.labels(service=self.service_name, outcome=outcome).inc()
        delivery_processing_seconds.labels(service=self.service_name).observe(elapsed)

    def record_success(self, voucher_id: str, channel: str, elapsed: float) -> None:
        self._observe("sent", elapsed)
        self.succeeded += 1
        self.last_success_at = datetime.now(timezone.utc)
        self.last_success_message = f"voucher {voucher_id} delivered via {channel}"
        delivery_last_success_timestamp.labels(service=self.service_name).set(time())

    def record_retry(self, voucher_id: str, error: BaseException, elapsed: float) -> None:
        self._observe("retry", elapsed)
        self.retries += 1
        retries_total.labels(service=self.service_name, dependency="delivery_channel").inc()
        self._last_failure(voucher_id, error)

    def record_failure(
        self, voucher_id: str | None, error: BaseException, elapsed: float, dead_lettered: bool = False
    ) -> None:
        self._observe("failed", elapsed)
        self.failed += 1
        error_type = "RETRY_EXHAUSTED" if dead_lettered else "NON_RETRYABLE"
        delivery_failed_total.labels(service=self.service_name, error_type=error_type).inc()
        if dead_lettered:
            self.dead_lettered += 1
            dlq_total.labels(service=self.service_name, reason="retries_exhausted").inc()
        self._last_failure(voucher_id, error)

    def _last_failure(self, voucher_id: str | None, error: BaseException) -> None:
        self.last_failure_at = datetime.now(timezone.utc)
        self.last_failure_message = f"voucher {voucher_id or '<unknown>'}: {type(error).__name__}: {error}"
        delivery_last_failure_timestamp.labels(service=self.service_name).set(time())

    def snapshot(self) -> DeliveryStatsSnapshot:
        return DeliveryStatsSnapshot(
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
            retries=self.retries,
            dead_lettered=self.dead_lettered,
            processing_seconds=self.processing_seconds,
            last_success_at=self.last_success_at,
            last_success_message=self.last_success_message,
            last_failure_at=self.last_failure_at,
            last_failure_message=self.last_failure_message,
        )
