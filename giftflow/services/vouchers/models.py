"""Voucher database models.

This DB is the source of truth for voucher status, its transition timeline,
and the outbox of delivery messages waiting to be queued.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from giftflow.common.db import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VoucherGift(Base):
    """Current state of one gifted voucher."""

    __tablename__ = "voucher_gifts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    recipient_email: Mapped[str | None] = mapped_column(String, nullable=True)
    wallet_address: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    is_high_value: Mapped[bool] = mapped_column(Boolean, default=False)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )


class VoucherTimeline(Base):
    """Immutable audit trail of every status transition."""

    __tablename__ = "voucher_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    voucher_id: Mapped[str] = mapped_column(ForeignKey("voucher_gifts.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Delivery messages written with their voucher, waiting to be queued."""

    __tablename__ = "delivery_outbox"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    voucher_id: Mapped[str] = mapped_column(ForeignKey("voucher_gifts.id"), index=True)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
