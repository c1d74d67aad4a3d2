"""Voucher gift submission workflow.

Resolves idempotency keys, validates, reserves the key, writes the voucher
together with its outbox row, completes the idempotency mapping and publishes
the delivery message. A background relay republishes outbox rows whose inline publish
failed.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from giftflow.common.logging import logger, voucher_id_ctx
from giftflow.common.metrics import (
    gift_created_total,
    gift_rejected_total,
    idempotency_in_flight_total,
    idempotency_store_errors_total,
    idempotent_replays_total,
    publish_failures_total,
)
from giftflow.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from giftflow.common.state_machine import PENDING
from giftflow.services.vouchers.idempotency import IdempotencyRecord, IdempotencyStore
from giftflow.services.vouchers.models import OutboxEvent, VoucherGift
from giftflow.services.vouchers.repository import VoucherRepository
from giftflow.services.vouchers.schemas import DeliveryMessage, SubmissionResult, VoucherGiftRequest
from giftflow.services.vouchers.validation import AmountPolicy, GiftValidationError, validate_gift_request


class SubmissionFailed(RuntimeError):
    """Opaque server-side failure; details stay in the logs."""


class SubmissionInProgress(RuntimeError):
    """Another request holding the same idempotency key has not finished yet."""

    def __init__(self, key: str) -> None:
        super().__init__(f"idempotency key {key} is still being processed")
        self.key = key


class SubmissionService:
    """Owns voucher creation and hands delivery off to the queue."""

    def __init__(
        self,
        session_factory,
        idempotency: IdempotencyStore,
        queue,
        policy: AmountPolicy | None = None,
        service_name: str = "vouchers",
        durable_idempotency: bool = False,
        outbox_grace_seconds: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.repository = VoucherRepository(session_factory, service_name=service_name)
        self.idempotency = idempotency
        self.queue = queue
        self.policy = policy or AmountPolicy()
        self.service_name = service_name
        self.durable_idempotency = durable_idempotency
        self.outbox_grace_seconds = outbox_grace_seconds

    def submit(self, raw) -> SubmissionResult:
        """Create one voucher gift per logical request.

        Raises `GiftValidationError` for bad input, `SubmissionInProgress` when
        a request with the same key is still running and `SubmissionFailed`
        when the voucher could not be stored.
        """

        key = raw.get("idempotencyKey") if isinstance(raw, dict) else None
        if isinstance(key, str) and key:
            existing = self._resolve_existing(key)
            if existing is not None:
                return self._replay(existing, key)

        try:
            request = validate_gift_request(raw, self.policy)
        except GiftValidationError as exc:
            gift_rejected_total.labels(service=self.service_name, reason="validation").inc()
            logger.info("gift_validation_failed errors=%s", exc)
            raise

        key = str(request.idempotency_key) if request.idempotency_key else self.idempotency.generate_key()
        voucher = self._new_voucher(request, key)
        voucher_id_ctx.set(voucher.id)

        holder = self._reserve(key, voucher.id)
        if holder is not None:
            existing = self._resolve_record(key, holder)
            if existing is not None:
                return self._replay(existing, key)
            if self._reserve(key, voucher.id) is not None:
                raise SubmissionInProgress(key)

        delivery = DeliveryMessage(
            voucher_id=voucher.id,
            recipient_email=voucher.recipient_email,
            wallet_address=voucher.wallet_address,
            amount=request.amount,
            message=voucher.message,
        )
        payload = delivery.model_dump(by_alias=True)

        try:
            outbox_id = self.repository.create(voucher, payload)
        except Exception as exc:
            logger.exception("voucher_persist_failed voucher_id=%s", voucher.id)
            self._release(key, voucher.id)
            raise SubmissionFailed("Failed to process voucher gift") from exc
        gift_created_total.labels(service=self.service_name, high_value=str(voucher.is_high_value).lower()).inc()
        logger.info(
            "voucher_created voucher_id=%s amount=%s channel=%s high_value=%s",
            voucher.id,
            request.amount,
            request.recipient.channel,
            voucher.is_high_value,
        )

        self._commit_idempotency(key, voucher.id)
        self._publish(outbox_id, voucher.id, payload)
        return self._result(voucher, key, idempotent=False)

    def get_voucher(self, voucher_id: str) -> VoucherGift | None:
        return self.repository.get(voucher_id)

    def _new_voucher(self, request: VoucherGiftRequest, key: str) -> VoucherGift:
        now = datetime.now(timezone.utc)
        return VoucherGift(
            id=str(uuid4()),
            recipient_email=request.recipient_email,
            wallet_address=request.wallet_address,
            amount=Decimal(str(request.amount)),
            message=request.message,
            status=PENDING,
            is_high_value=self.policy.is_high_value(request.amount),
            idempotency_key=key,
            state_version=0,
            created_at=now,
            updated_at=now,
        )

    def _replay(self, voucher: VoucherGift, key: str) -> SubmissionResult:
        idempotent_replays_total.labels(service=self.service_name).inc()
        logger.info("idempotent_replay key=%s voucher_id=%s", key, voucher.id)
        return self._result(voucher, key, idempotent=True)

    def _resolve_existing(self, key: str) -> VoucherGift | None:
        try:
            record = self.idempotency.get(key)
        except Exception as exc:
            idempotency_store_errors_total.labels(service=self.service_name, operation="get").inc()
            logger.warning("idempotency_check_failed key=%s error=%s", key, exc)
            record = None

        if record is not None:
            return self._resolve_record(key, record)
        if self.durable_idempotency:
            return self.repository.find_by_idempotency_key(key)
        return None

    def _resolve_record(self, key: str, record: IdempotencyRecord) -> VoucherGift | None:
        voucher = self.repository.get(record.resource_id)
        if voucher is not None:
            return voucher
        if record.in_flight:
            idempotency_in_flight_total.labels(service=self.service_name).inc()
            logger.info("idempotency_key_in_flight key=%s resource_id=%s", key, record.resource_id)
            raise SubmissionInProgress(key)
        logger.warning(
            "idempotency_target_missing key=%s resource_id=%s; creating new voucher",
            key,
            record.resource_id,
        )
        self._release(key, record.resource_id)
        return None

    def _reserve(self, key: str, voucher_id: str) -> IdempotencyRecord | None:
        try:
            return self.idempotency.reserve(key, voucher_id)
        except Exception as exc:
            idempotency_store_errors_total.labels(service=self.service_name, operation="reserve").inc()
            logger.warning("idempotency_reserve_failed key=%s voucher_id=%s error=%s", key, voucher_id, exc)
            return None

    def _release(self, key: str, voucher_id: str) -> None:
        try:
            self.idempotency.release(key, voucher_id)
        except Exception as exc:
            idempotency_store_errors_total.labels(service=self.service_name, operation="release").inc()
            logger.warning("idempotency_release_failed key=%s error=%s", key, exc)

    def _commit_idempotency(self, key: str, voucher_id: str) -> None:
        try:
            completed = self.idempotency.complete(key, voucher_id)
        except Exception as exc:
            idempotency_store_errors_total.labels(service=self.service_name, operation="complete").inc()
            logger.warning("idempotency_save_failed key=%s voucher_id=%s error=%s", key, voucher_id, exc)
            return
        if not completed:
            idempotency_store_errors_total.labels(service=self.service_name, operation="conflict").inc()
            logger.error("idempotency_key_taken key=%s voucher_id=%s", key, voucher_id)

    def _publish(self, outbox_id: str, voucher_id: str, payload: dict) -> None:
        try:
            message_id = self.queue.publish(payload)
        except Exception as exc:
            publish_failures_total.labels(service=self.service_name).inc()
            logger.error("delivery_publish_failed voucher_id=%s error=%s; left for outbox relay", voucher_id, exc)
            return
        try:
            with self.session_factory() as db:
                mark_outbox_sent(db, OutboxEvent, outbox_id, message_id)
                db.commit()
        except Exception as exc:
            logger.warning("outbox_mark_failed outbox_id=%s error=%s", outbox_id, exc)

    def _result(self, voucher: VoucherGift, key: str | None, idempotent: bool) -> SubmissionResult:
        return SubmissionResult(
            id=voucher.id,
            status=voucher.status,
            is_high_value=voucher.is_high_value,
            idempotency_key=key,
            idempotent=idempotent,
        )

    def publish_pending_once(self, limit: int = 100) -> int:
        """Publish claimed outbox rows; returns how many reached the queue."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit, grace_seconds=self.outbox_grace_seconds)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        published = 0
        for row in rows:
            try:
                message_id = self.queue.publish(row["payload"])
                with self.session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"], message_id)
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
                published += 1
            except Exception as exc:
                logger.exception("outbox publish failed: %s", exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
        return published

    async def outbox_publisher(self, interval_seconds: float = 0.5) -> None:
        """Continuously republish outbox rows the request path could not publish."""

        while True:
            try:
                self.publish_pending_once()
            except Exception as exc:
                logger.error("outbox_relay_error error=%s", exc)
            await asyncio.sleep(interval_seconds)
