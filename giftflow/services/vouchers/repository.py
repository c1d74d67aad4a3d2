"""Voucher record store on SQLAlchemy sessions.

Status changes go through `transition`, a compare-and-swap on
`(id, status, state_version)` so that racing delivery attempts cannot move a
voucher backwards out of a terminal state.
"""

from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import select, update

from giftflow.common.logging import logger
from giftflow.common.metrics import stale_transitions_total
from giftflow.common.state_machine import PENDING, InvalidTransition, validate_transition
from giftflow.services.vouchers.models import OutboxEvent, VoucherGift, VoucherTimeline

APPLIED = "applied"
UNCHANGED = "unchanged"
REJECTED = "rejected"
MISSING = "missing"


class TransitionResult(BaseModel):
    outcome: str
    status: str | None = None


class VoucherRepository:
    """Persistence for vouchers, their timeline and their delivery outbox."""

    def __init__(self, session_factory, service_name: str = "vouchers", max_conflicts: int = 3) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.max_conflicts = max_conflicts

    def create(self, voucher: VoucherGift, delivery_payload: dict) -> str:
        """Write voucher, creation timeline row and outbox row in one transaction.

        Returns the outbox row id.
        """

        with self.session_factory() as db:
            db.add(voucher)
            db.flush()
            db.add(
                VoucherTimeline(
                    voucher_id=voucher.id,
                    from_state=None,
                    to_state=PENDING,
                    reason="voucher_created",
                )
            )
            outbox = OutboxEvent(voucher_id=voucher.id, payload=delivery_payload, status="PENDING")
            db.add(outbox)
            db.commit()
            return outbox.id

    def get(self, voucher_id: str) -> VoucherGift | None:
        with self.session_factory() as db:
            return db.get(VoucherGift, voucher_id)

    def find_by_idempotency_key(self, key: str) -> VoucherGift | None:
        with self.session_factory() as db:
            return db.execute(
                select(VoucherGift)
                .where(VoucherGift.idempotency_key == key)
                .order_by(VoucherGift.created_at)
                .limit(1)
            ).scalar_one_or_none()

    def timeline(self, voucher_id: str) -> list[VoucherTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(VoucherTimeline)
                    .where(VoucherTimeline.voucher_id == voucher_id)
                    .order_by(VoucherTimeline.created_at)
                ).scalars()
            )

    def transition(
        self, voucher_id: str, new_status: str, reason: str, message_id: str | None = None
    ) -> TransitionResult:
        """Move a voucher to `new_status` if the state machine allows it.

        Setting the status a voucher already has is a no-op. Backward moves
        (e.g. SENT -> FAILED) are rejected and logged, not raised.
        """

        for _ in range(self.max_conflicts):
            with self.session_factory() as db:
                voucher = db.get(VoucherGift, voucher_id)
                if voucher is None:
                    logger.warning("voucher_missing voucher_id=%s attempted=%s", voucher_id, new_status)
                    return TransitionResult(outcome=MISSING)
                if voucher.status == new_status:
                    return TransitionResult(outcome=UNCHANGED, status=voucher.status)
                try:
                    validate_transition(voucher.status, new_status)
                except InvalidTransition as exc:
                    stale_transitions_total.labels(service=self.service_name, attempted=new_status).inc()
                    logger.warning("stale_transition_ignored voucher_id=%s reason=%s", voucher_id, exc)
                    return TransitionResult(outcome=REJECTED, status=voucher.status)

                from_status = voucher.status
                current_version = voucher.state_version
                result = db.execute(
                    update(VoucherGift)
                    .where(
                        VoucherGift.id == voucher_id,
                        VoucherGift.status == from_status,
                        VoucherGift.state_version == current_version,
                    )
                    .values(
                        status=new_status,
                        state_version=current_version + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount != 1:
                    db.rollback()
                    logger.info(
                        "transition_conflict voucher_id=%s expected_version=%s", voucher_id, current_version
                    )
                    continue
                db.add(
                    VoucherTimeline(
                        voucher_id=voucher_id,
                        from_state=from_status,
                        to_state=new_status,
                        reason=reason,
                        message_id=message_id,
                    )
                )
                db.commit()
                return TransitionResult(outcome=APPLIED, status=new_status)

        raise RuntimeError(f"optimistic concurrency conflict persisted for voucher {voucher_id}")
