import logging
import time
from dataclasses import dataclass

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


class RateLimiterUnavailable(Exception):
    pass


@dataclass(frozen=True)
class AcquireResult:
    wait_seconds: float
    wait_events: int


class BaseRateLimiter:
    def acquire(self, *, cost=1):
        raise NotImplementedError


class NoopRateLimiter(BaseRateLimiter):
    def acquire(self, *, cost=1):
        return AcquireResult(wait_seconds=0.0, wait_events=0)


class RedisWindowRateLimiter(BaseRateLimiter):
    """Shared per-second request budget for every worker talking to the ledger.

    Each one-second window is a Redis counter that expires shortly after the
    window closes; a caller over budget sleeps until the next window opens.
    """

    def __init__(self, *, redis_client, key, max_rps, clock=time.time, sleep=time.sleep):
        if max_rps <= 0:
            raise ValueError("max_rps must be > 0")

        self.redis_client = redis_client
        self.key = key
        self.max_rps = int(max_rps)
        self.clock = clock
        self.sleep = sleep

    def _consume(self, window, cost):
        window_key = f"{self.key}:{window}"
        pipeline = self.redis_client.pipeline()
        pipeline.incrby(window_key, cost)
        pipeline.expire(window_key, 2)
        used, _ = pipeline.execute()
        return int(used)

    def acquire(self, *, cost=1):
        wait_total = 0.0
        wait_events = 0

        while True:
            now = self.clock()
            window = int(now)
            try:
                used = self._consume(window, cost)
            except redis.RedisError as exc:
                raise RateLimiterUnavailable("rate limiter unavailable") from exc

            if used <= self.max_rps:
                return AcquireResult(wait_seconds=wait_total, wait_events=wait_events)

            wait_seconds = max(0.0, (window + 1) - now)
            wait_events += 1
            wait_total += wait_seconds
            if wait_seconds > 0:
                self.sleep(wait_seconds)


def build_rate_limiter():
    max_rps = settings.LEDGER_MAX_RPS
    if max_rps <= 0:
        return NoopRateLimiter()

    redis_url = settings.LEDGER_RATE_LIMIT_REDIS_URL
    try:
        redis_client = redis.Redis.from_url(
            redis_url,
            socket_connect_timeout=settings.LEDGER_REDIS_SOCKET_TIMEOUT,
            socket_timeout=settings.LEDGER_REDIS_SOCKET_TIMEOUT,
            decode_responses=True,
        )
        redis_client.ping()
    except redis.RedisError:
        logger.warning(
            "event=rate_limiter_disabled reason=redis_unavailable redis_url=%s",
            redis_url,
        )
        return NoopRateLimiter()

    return RedisWindowRateLimiter(
        redis_client=redis_client,
        key=settings.LEDGER_RATE_LIMIT_KEY,
        max_rps=max_rps,
    )
