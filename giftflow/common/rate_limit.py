"""Fixed-window request limiter kept in Redis.

One counter per caller identity, created on the first request of a window and
expiring with it. High-value gift requests count against the same counter but
are held to a stricter ceiling.
"""

from pydantic import BaseModel

from giftflow.common.logging import logger


class RateLimitDecision(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


class RateLimiter:
    """Per-identity fixed-window counter with a stricter high-value cap."""

    def __init__(
        self,
        rdb,
        window_seconds: int = 60,
        max_requests: int = 10,
        high_value_max_requests: int = 3,
        high_value_threshold: float = 1000,
    ) -> None:
        self.rdb = rdb
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.high_value_max_requests = high_value_max_requests
        self.high_value_threshold = high_value_threshold

    @staticmethod
    def _key(identity: str) -> str:
        return f"ratelimit:gift:{identity}"

    def limit_for(self, amount) -> int:
        if isinstance(amount, (int, float)) and not isinstance(amount, bool) and amount >= self.high_value_threshold:
            return self.high_value_max_requests
        return self.max_requests

    def hit(self, identity: str, amount=None) -> RateLimitDecision:
        """Count one request for `identity` and decide whether it may proceed."""

        key = self._key(identity)
        count = self.rdb.incr(key)
        ttl = self.rdb.ttl(key)
        if count == 1 or ttl < 0:
            self.rdb.expire(key, self.window_seconds)
            ttl = self.window_seconds

        limit = self.limit_for(amount)
        allowed = count <= limit
        if not allowed:
            logger.warning(
                "rate_limit_exceeded identity=%s count=%s limit=%s window_s=%s",
                identity,
                count,
                limit,
                self.window_seconds,
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            retry_after=max(1, ttl),
        )

    def reset(self, identity: str) -> None:
        self.rdb.delete(self._key(identity))
