"""
Sliding-window rate limiter for anonymous speculative restores.

Backed by Redis sorted sets when REDIS_URL is reachable: each client address
gets a set keyed by ``ratelimit:speculative:{client}`` whose members are the
timestamps of recent requests. Entries older than the window are trimmed and
the remainder counted.

Without Redis (or if a Redis call fails) the same window is kept in a
lock-guarded dict. That state is per-process and lost on restart.
"""

import logging
import threading
import time
from typing import Callable, Optional, Tuple

from . import config, metrics

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:speculative"


class SlidingWindowLimiter:
    def __init__(
        self,
        redis_client=None,
        max_requests: int = config.SPECULATIVE_MAX_REQUESTS,
        window_seconds: int = config.SPECULATIVE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._request_log: dict[str, list[float]] = {}

    def check(self, client_key: str) -> Tuple[bool, int, int]:
        """
        Check and record a request for the given client.

        Returns:
            (allowed, remaining, retry_after_seconds)
        """
        if self.redis is not None:
            try:
                return self._check_redis(client_key)
            except Exception as e:
                logger.warning(f"Redis rate limit check failed, using in-memory window: {e}")
                metrics.inc_counter("ratelimit.redis_errors")
        return self._check_memory(client_key)

    # ── Redis ────────────────────────────────────────────────────────────

    def _check_redis(self, client_key: str) -> Tuple[bool, int, int]:
        now = self._clock()
        key = f"{KEY_PREFIX}:{client_key}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        _, count, oldest = pipe.execute()

        if count >= self.max_requests:
            oldest_score = oldest[0][1] if oldest else now
            return self._rejected(client_key, count, oldest_score, now)

        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(key, {f"{now}": now})
        pipe.expire(key, self.window_seconds + 60)  # TTL slightly beyond window
        pipe.execute()
        return True, self.max_requests - count - 1, 0

    # ── In-memory ────────────────────────────────────────────────────────

    def _check_memory(self, client_key: str) -> Tuple[bool, int, int]:
        now = self._clock()
        window_start = now - self.window_seconds

        with self._lock:
            timestamps = [ts for ts in self._request_log.get(client_key, []) if ts > window_start]
            self._request_log[client_key] = timestamps

            if len(timestamps) >= self.max_requests:
                return self._rejected(client_key, len(timestamps), timestamps[0], now)

            timestamps.append(now)
            return True, self.max_requests - len(timestamps), 0

    def cleanup_expired(self):
        """Drop in-memory windows with nothing left in them."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            for client_key in list(self._request_log):
                alive = [ts for ts in self._request_log[client_key] if ts > cutoff]
                if alive:
                    self._request_log[client_key] = alive
                else:
                    del self._request_log[client_key]

    def _rejected(self, client_key: str, count: int, oldest: float, now: float) -> Tuple[bool, int, int]:
        retry_after = max(1, int(oldest + self.window_seconds - now) + 1)
        metrics.inc_counter("ratelimit.rejected")
        logger.warning(f"Rate limit exceeded for {client_key}: {count}/{self.max_requests}")
        return False, 0, retry_after


def connect_redis(url: str = "") -> Optional[object]:
    """Return a connected Redis client, or None if not configured or unreachable."""
    url = url or config.REDIS_URL
    if not url:
        return None

    import redis

    client = redis.from_url(url, decode_responses=False)
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}, falling back to in-memory rate limiting")
        return None
    logger.info(f"Redis connected: {url[:30]}...")
    return client
