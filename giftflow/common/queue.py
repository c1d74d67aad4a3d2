"""Redis-backed delivery queue with visibility timeouts and dead-letter routing.

Layout per queue name:

- `queue:{name}:ready`     list of message ids waiting to be received
- `queue:{name}:inflight`  sorted set of received ids scored by visibility deadline
- `queue:{name}:msg:{id}`  hash with `body`, `receive_count`, `sent_at`
- `queue:{name}:dlq`       list of dead-lettered ids

A received message stays hidden until it is acked or its visibility window
expires, after which the next `receive` call puts it back on the ready list.
Delivery is at-least-once and unordered.
"""

import json
from time import time
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel

from giftflow.common.logging import logger
from giftflow.common.metrics import dlq_total, event_queue_delay_seconds


class QueueMessage(BaseModel):
    """One received message plus the transport's receive counter."""

    message_id: str
    body: str
    receive_count: int


class RedisDeliveryQueue:
    """At-least-once message channel on plain Redis commands."""

    def __init__(
        self,
        rdb,
        name: str,
        max_receive_count: int = 5,
        service_name: str = "delivery",
        clock: Callable[[], float] = time,
    ) -> None:
        self.rdb = rdb
        self.name = name
        self.max_receive_count = max_receive_count
        self.service_name = service_name
        self.clock = clock

    def _key(self, suffix: str) -> str:
        return f"queue:{self.name}:{suffix}"

    def _message_key(self, message_id: str) -> str:
        return f"queue:{self.name}:msg:{message_id}"

    def publish(self, body: dict[str, Any]) -> str:
        """Enqueue one JSON body and return its message id."""

        message_id = str(uuid4())
        pipe = self.rdb.pipeline()
        pipe.hset(
            self._message_key(message_id),
            mapping={"body": json.dumps(body), "receive_count": 0, "sent_at": self.clock()},
        )
        pipe.rpush(self._key("ready"), message_id)
        pipe.execute()
        logger.info("queue_published queue=%s message_id=%s", self.name, message_id)
        return message_id

    def restore_expired(self) -> int:
        """Make messages whose visibility window ran out receivable again."""

        inflight = self._key("inflight")
        restored = 0
        for message_id in self.rdb.zrangebyscore(inflight, "-inf", self.clock()):
            # ZREM is the claim: only one poller moves each expired id.
            if self.rdb.zrem(inflight, message_id):
                self.rdb.rpush(self._key("ready"), message_id)
                restored += 1
        if restored:
            logger.info("queue_visibility_expired queue=%s restored=%s", self.name, restored)
        return restored

    def receive(self, max_messages: int = 10, visibility_timeout: int = 30) -> list[QueueMessage]:
        """Receive up to `max_messages`, hiding each for `visibility_timeout` seconds."""

        self.restore_expired()
        inflight = self._key("inflight")
        received: list[QueueMessage] = []
        while len(received) < max_messages:
            message_id = self.rdb.lpop(self._key("ready"))
            if message_id is None:
                break
            key = self._message_key(message_id)
            now = self.clock()
            pipe = self.rdb.pipeline()
            pipe.zadd(inflight, {message_id: now + visibility_timeout})
            pipe.hget(key, "body")
            pipe.hincrby(key, "receive_count", 1)
            pipe.hget(key, "sent_at")
            _, body, receive_count, sent_at = pipe.execute()

            if body is None:
                # Acked by a late consumer after its window expired.
                self.rdb.zrem(inflight, message_id)
                self.rdb.delete(key)
                continue
            if receive_count > self.max_receive_count:
                self._dead_letter(message_id, receive_count)
                continue
            if receive_count == 1 and sent_at is not None:
                event_queue_delay_seconds.labels(service=self.service_name, queue=self.name).observe(
                    max(0.0, now - float(sent_at))
                )
            received.append(QueueMessage(message_id=message_id, body=body, receive_count=receive_count))
        return received

    def _dead_letter(self, message_id: str, receive_count: int) -> None:
        pipe = self.rdb.pipeline()
        pipe.zrem(self._key("inflight"), message_id)
        pipe.hset(self._message_key(message_id), "dead_lettered_at", self.clock())
        pipe.rpush(self._key("dlq"), message_id)
        pipe.execute()
        dlq_total.labels(service=self.service_name, reason="max_receive_count").inc()
        logger.warning(
            "queue_dead_lettered queue=%s message_id=%s receive_count=%s",
            self.name,
            message_id,
            receive_count,
        )

    def ack(self, message_id: str) -> bool:
        """Delete a handled message. Returns False when it was already gone."""

        pipe = self.rdb.pipeline()
        pipe.zrem(self._key("inflight"), message_id)
        pipe.delete(self._message_key(message_id))
        _, deleted = pipe.execute()
        return bool(deleted)

    def dead_letters(self) -> list[str]:
        return self.rdb.lrange(self._key("dlq"), 0, -1)

    def dead_letter_body(self, message_id: str) -> str | None:
        return self.rdb.hget(self._message_key(message_id), "body")

    def replay_dead_letter(self, message_id: str) -> bool:
        """Move one dead-lettered message back to the ready list with a fresh counter."""

        if not self.rdb.lrem(self._key("dlq"), 0, message_id):
            return False
        pipe = self.rdb.pipeline()
        pipe.hset(self._message_key(message_id), "receive_count", 0)
        pipe.hdel(self._message_key(message_id), "dead_lettered_at")
        pipe.rpush(self._key("ready"), message_id)
        pipe.execute()
        logger.info("queue_dead_letter_replayed queue=%s message_id=%s", self.name, message_id)
        return True

    def depth(self) -> dict[str, int]:
        return {
            "ready": self.rdb.llen(self._key("ready")),
            "in_flight": self.rdb.zcard(self._key("inflight")),
            "dead_letter": self.rdb.llen(self._key("dlq")),
        }
