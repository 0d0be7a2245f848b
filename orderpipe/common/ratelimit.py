"""Redis token bucket limiting order-intent creation per user."""

from time import time

import redis

from orderpipe.common.config import settings
from orderpipe.common.errors import RateLimited
from orderpipe.common.logging import logger


class TokenBucket:
    """Capacity equals refill rate: `limit_per_minute` tokens per 60 seconds."""

    def __init__(self, client: redis.Redis | None = None, limit_per_minute: int | None = None, prefix: str = "tokenbucket") -> None:
        self.limit_per_minute = settings.rate_limit_per_minute if limit_per_minute is None else limit_per_minute
        self.prefix = prefix
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    def enforce(self, subject: str) -> None:
        """Consume one token for `subject` or raise `RateLimited`."""

        if self.limit_per_minute <= 0:
            return
        key = f"{self.prefix}:{subject}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0
        try:
            values = self.client.hmget(key, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else capacity
            updated_at = float(values[1]) if values[1] is not None else now
            tokens = min(capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)
            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self.client.hset(key, mapping={"tokens": tokens, "updated_at": now})
            self.client.expire(key, 120)
        except redis.RedisError as exc:
            # Limiter outage must not block checkout.
            logger.warning("rate_limit_unavailable subject=%s error=%s", subject, exc)
            return
        if not allowed:
            raise RateLimited()
