"""Redis-backed idempotency mapping from client key to voucher id.

A submission first reserves its key with a short-lived record pointing at the
voucher id it is about to create, then completes the record once the voucher
is stored. A concurrent resend of the same key sees the reservation and backs
off instead of creating a second voucher. Expiry is enforced only by the Redis
TTL: once Redis forgets a key, a replay of it is a new request.
"""

import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pydantic import BaseModel
from redis.exceptions import WatchError

from giftflow.common.logging import logger

RESERVED = "reserved"
COMPLETE = "complete"


class IdempotencyRecord(BaseModel):
    key: str
    resource_id: str
    state: str = COMPLETE
    created_at: datetime
    expires_at: datetime

    @property
    def in_flight(self) -> bool:
        return self.state == RESERVED


class IdempotencyStore:
    """Key -> resource id mapping with TTL retention owned by Redis."""

    def __init__(
        self,
        rdb,
        ttl_seconds: int = 7 * 24 * 3600,
        namespace: str = "voucher",
        reservation_seconds: int = 30,
    ) -> None:
        self.rdb = rdb
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self.reservation_seconds = reservation_seconds

    @staticmethod
    def generate_key() -> str:
        return str(uuid4())

    def _cache_key(self, key: str) -> str:
        return f"idempotency:{self.namespace}:{key}"

    def _record(self, key: str, resource_id: str, state: str, ttl_seconds: int) -> IdempotencyRecord:
        now = datetime.now(timezone.utc)
        return IdempotencyRecord(
            key=key,
            resource_id=resource_id,
            state=state,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def get(self, key: str) -> IdempotencyRecord | None:
        raw = self.rdb.get(self._cache_key(key))
        if raw is None:
            return None
        return IdempotencyRecord.model_validate(json.loads(raw))

    def reserve(self, key: str, resource_id: str) -> IdempotencyRecord | None:
        """Claim `key` for `resource_id`.

        Returns None when the claim succeeded, otherwise the record already
        holding the key.
        """

        record = self._record(key, resource_id, RESERVED, self.reservation_seconds)
        for _ in range(3):
            if self.rdb.set(self._cache_key(key), record.model_dump_json(), nx=True, ex=self.reservation_seconds):
                return None
            holder = self.get(key)
            if holder is not None:
                return holder
        raise RuntimeError(f"idempotency key {key} could not be reserved")

    def complete(self, key: str, resource_id: str) -> bool:
        """Promote the reservation for `resource_id` to a full-TTL mapping.

        Returns False when the key is held by a different resource.
        """

        record = self._record(key, resource_id, COMPLETE, self.ttl_seconds)
        written = self._swap(key, resource_id, record.model_dump_json())
        if not written:
            logger.warning("idempotency_key_already_mapped key=%s resource_id=%s", key, resource_id)
        return written

    def release(self, key: str, resource_id: str) -> bool:
        """Drop the mapping, but only while it still points at `resource_id`."""

        return self._swap(key, resource_id, None)

    def _swap(self, key: str, resource_id: str, value: str | None) -> bool:
        cache_key = self._cache_key(key)
        with self.rdb.pipeline() as pipe:
            try:
                pipe.watch(cache_key)
                current = pipe.get(cache_key)
                if current is not None and json.loads(current)["resource_id"] != resource_id:
                    pipe.unwatch()
                    return False
                pipe.multi()
                if value is None:
                    pipe.delete(cache_key)
                else:
                    pipe.set(cache_key, value, ex=self.ttl_seconds)
                pipe.execute()
                return True
            except WatchError:
                return False
