"""Delivery consumer for queued voucher gifts.

Each message is delivered through its recipient's channel and the voucher is
moved to SENT or FAILED. Transient failures are left un-acked so the queue
redelivers them after the visibility window; once the receive count reaches
`max_attempts` the voucher is marked FAILED and the message is dropped.
"""

import asyncio
import json
from time import perf_counter
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from giftflow.common.logging import log_context, logger
from giftflow.common.queue import QueueMessage
from giftflow.common.state_machine import FAILED, SENT
from giftflow.common.tracing import get_tracer
from giftflow.services.delivery.channels import DeliveryChannel, is_transient
from giftflow.services.delivery.stats import DeliveryStats
from giftflow.services.vouchers.repository import VoucherRepository
from giftflow.services.vouchers.schemas import DeliveryMessage

tracer = get_tracer(__name__)


class RetryDelivery(Exception):
    """Signals that the message must stay un-acked and be redelivered."""


class BatchReport(BaseModel):
    acked: list[str] = []
    retried: list[str] = []
    errored: list[str] = []


class DeliveryConsumer:
    """Pulls delivery messages, runs the channel, reconciles voucher status."""

    def __init__(
        self,
        queue,
        repository: VoucherRepository,
        channels: dict[str, DeliveryChannel],
        stats: DeliveryStats | None = None,
        max_attempts: int = 3,
        batch_size: int = 10,
        visibility_timeout: int = 30,
        poll_interval: float = 1.0,
        service_name: str = "delivery",
    ) -> None:
        self.queue = queue
        self.repository = repository
        self.channels = channels
        self.stats = stats or DeliveryStats(service_name)
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.service_name = service_name

    async def handle_message(self, msg: QueueMessage) -> None:
        """Process one message. Raises `RetryDelivery` when it should be redelivered."""

        started = perf_counter()
        with log_context(message_id=msg.message_id):
            try:
                delivery = DeliveryMessage.model_validate_json(msg.body)
            except ValidationError as exc:
                self._fail_unparseable(msg, exc, started)
                return
            with log_context(voucher_id=delivery.voucher_id):
                logger.info(
                    "delivery_received voucher_id=%s message_id=%s receive_count=%s",
                    delivery.voucher_id,
                    msg.message_id,
                    msg.receive_count,
                )
                await self._deliver(delivery, msg, started)

    async def _deliver(self, delivery: DeliveryMessage, msg: QueueMessage, started: float) -> None:
        with tracer.start_as_current_span("voucher.deliver") as span:
            span.set_attribute("voucher.id", delivery.voucher_id)
            span.set_attribute("queue.receive_count", msg.receive_count)
            try:
                channel = self.channels[delivery.recipient.channel]
                receipt = await channel.deliver(delivery)
            except Exception as exc:
                span.record_exception(exc)
                self._handle_failure(delivery, msg, exc, started)
                return

            self.repository.transition(
                delivery.voucher_id,
                SENT,
                reason=f"delivered:{receipt.channel}",
                message_id=msg.message_id,
            )
            self.stats.record_success(delivery.voucher_id, receipt.channel, perf_counter() - started)
            logger.info(
                "delivery_succeeded voucher_id=%s channel=%s reference=%s",
                delivery.voucher_id,
                receipt.channel,
                receipt.reference,
            )

    def _handle_failure(
        self, delivery: DeliveryMessage, msg: QueueMessage, exc: Exception, started: float
    ) -> None:
        elapsed = perf_counter() - started
        transient = is_transient(exc)
        if transient and msg.receive_count < self.max_attempts:
            self.stats.record_retry(delivery.voucher_id, exc, elapsed)
            logger.warning(
                "delivery_retry voucher_id=%s receive_count=%s max_attempts=%s error=%s",
                delivery.voucher_id,
                msg.receive_count,
                self.max_attempts,
                exc,
            )
            raise RetryDelivery(f"transient failure for voucher {delivery.voucher_id}") from exc

        reason = "retries_exhausted" if transient else "non_retryable"
        self.repository.transition(
            delivery.voucher_id,
            FAILED,
            reason=f"{reason}:{type(exc).__name__}",
            message_id=msg.message_id,
        )
        self.stats.record_failure(delivery.voucher_id, exc, elapsed, dead_lettered=transient)
        logger.error(
            "delivery_failed voucher_id=%s reason=%s receive_count=%s error=%s",
            delivery.voucher_id,
            reason,
            msg.receive_count,
            exc,
        )

    def _fail_unparseable(self, msg: QueueMessage, exc: ValidationError, started: float) -> None:
        voucher_id = None
        try:
            raw = json.loads(msg.body)
        except ValueError:
            raw = None
        if isinstance(raw, dict) and isinstance(raw.get("voucherId"), str) and raw["voucherId"]:
            voucher_id = raw["voucherId"]
            self.repository.transition(voucher_id, FAILED, reason="unparseable_message", message_id=msg.message_id)
        self.stats.record_failure(voucher_id, exc, perf_counter() - started)
        logger.error(
            "delivery_message_unparseable message_id=%s voucher_id=%s error_count=%s",
            msg.message_id,
            voucher_id,
            exc.error_count(),
        )

    async def process_batch(self, messages: list[QueueMessage]) -> BatchReport:
        """Handle a batch with per-message isolation and ack what is done."""

        results = await asyncio.gather(
            *(self.handle_message(msg) for msg in messages),
            return_exceptions=True,
        )
        report = BatchReport()
        for msg, result in zip(messages, results):
            if result is None:
                self.queue.ack(msg.message_id)
                report.acked.append(msg.message_id)
            elif isinstance(result, RetryDelivery):
                report.retried.append(msg.message_id)
            else:
                logger.error(
                    "message_processing_error message_id=%s receive_count=%s error=%r",
                    msg.message_id,
                    msg.receive_count,
                    result,
                )
                report.errored.append(msg.message_id)
        logger.info(
            "batch_processed size=%s acked=%s retried=%s errored=%s",
            len(messages),
            len(report.acked),
            len(report.retried),
            len(report.errored),
        )
        return report

    async def poll_once(self) -> BatchReport | None:
        messages = self.queue.receive(max_messages=self.batch_size, visibility_timeout=self.visibility_timeout)
        if not messages:
            return None
        return await self.process_batch(messages)

    async def process_local(self, body: dict) -> None:
        """Run one message body through the handler without the queue (local dev)."""

        await self.handle_message(
            QueueMessage(message_id=f"local-{uuid4()}", body=json.dumps(body), receive_count=1)
        )

    async def run_forever(self) -> None:
        """Continuously receive and process batches until cancelled."""

        while True:
            try:
                report = await self.poll_once()
                if report is None:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("consumer_loop_error queue=%s error=%s", getattr(self.queue, "name", "?"), exc)
                await asyncio.sleep(2)
