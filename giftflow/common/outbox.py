"""Reusable helpers for transactional outbox publishing.

The helpers are model-agnostic: any table with `id`, `status`, `payload`,
`created_at`, `claimed_at`, `sent_at` and `message_id` columns works.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update

from giftflow.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def claim_outbox_batch(
    db,
    outbox_model,
    limit: int = 100,
    grace_seconds: int = 5,
    processing_timeout_seconds: int = 30,
) -> list[dict]:
    """Claim a batch of pending/stale rows for publishing.

    Rows younger than `grace_seconds` are left to the request that wrote them,
    which publishes inline right after commit.
    """

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_before = now - timedelta(seconds=grace_seconds)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claimable = or_(
        and_(table.c.status == PENDING, table.c.created_at <= pending_before),
        and_(table.c.status == PROCESSING, table.c.claimed_at.is_not(None), table.c.claimed_at < stale_before),
    )
    ids = (
        db.execute(
            select(table.c.id)
            .where(claimable)
            .order_by(table.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not ids:
        return []
    db.execute(
        update(table)
        .where(table.c.id.in_(ids), table.c.status.in_((PENDING, PROCESSING)))
        .values(status=PROCESSING, claimed_at=now)
    )
    rows = db.execute(select(table.c.id, table.c.payload).where(table.c.id.in_(ids))).all()
    return [{"id": row.id, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str, message_id: str) -> bool:
    """Mark one outbox row as published. Returns False if another publisher won."""

    table = outbox_model.__table__
    result = db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status.in_((PENDING, PROCESSING)))
        .values(status=SENT, sent_at=datetime.now(timezone.utc), message_id=message_id)
    )
    return result.rowcount == 1


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == PROCESSING)
        .values(status=PENDING, claimed_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = (PENDING, PROCESSING)
    pending_count = db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (now - _as_utc(oldest_pending)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
