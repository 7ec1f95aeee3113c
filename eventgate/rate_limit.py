from __future__ import annotations

"""
Sliding-window rate limiting with pluggable backends.

A request is allowed when fewer than ``limit`` allowed requests for the same
identifier fall inside the trailing ``window_seconds``. Only allowed requests
are recorded.
"""

import logging
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

import redis

from .config import get_settings
from .errors import RateLimitExceeded


logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))


class RateLimiter:
    def check(self, identifier: str) -> RateLimitDecision:  # pragma: no cover - interface
        raise NotImplementedError

    def enforce(self, identifier: str, message: str) -> RateLimitDecision:
        decision = self.check(identifier)
        if not decision.allowed:
            logger.warning("rate limit exceeded identifier=%s limit=%s", identifier, decision.limit)
            raise RateLimitExceeded(message, decision)
        return decision


class InMemoryRateLimiter(RateLimiter):
    """Per-process counters; lost on restart and not shared between instances.

    Identifiers whose hits have all left the window are dropped by a sweep that
    runs at most once per window.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Clock = time.time) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, now: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_seconds]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now
        if stale:
            logger.debug("rate limiter swept %s idle identifiers", len(stale))

    def check(self, identifier: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            hits = self._hits.get(identifier)
            if hits is not None:
                while hits and now - hits[0] >= self.window_seconds:
                    hits.popleft()
            if hits and len(hits) >= self.limit:
                return RateLimitDecision(False, self.limit, 0, hits[0] + self.window_seconds)
            if hits is None:
                hits = self._hits[identifier] = deque()
            hits.append(now)
            return RateLimitDecision(True, self.limit, self.limit - len(hits), hits[0] + self.window_seconds)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


class RedisRateLimiter(RateLimiter):
    """Counters in a redis sorted set per identifier, shared by every app instance.

    Each attempt is added and counted inside one MULTI/EXEC transaction, so
    concurrent instances observe distinct counts. An attempt that lands over
    the limit removes its own entry again; contention can only under-admit.
    """

    def __init__(self, client, prefix: str, limit: int, window_seconds: float, clock: Clock = time.time) -> None:
        self.client = client
        self.prefix = prefix
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    def check(self, identifier: str) -> RateLimitDecision:
        key = self._key(identifier)
        now_ms = int(self._clock() * 1000)
        window_ms = int(self.window_seconds * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"

        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", now_ms - window_ms)
        pipe.zadd(key, {member: now_ms})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.pexpire(key, window_ms)
        _, _, count, oldest, _ = pipe.execute()

        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        reset_at = (oldest_ms + window_ms) / 1000
        if count > self.limit:
            self.client.zrem(key, member)
            return RateLimitDecision(False, self.limit, 0, reset_at)
        return RateLimitDecision(True, self.limit, self.limit - count, reset_at)


class AllowAllRateLimiter(RateLimiter):
    def __init__(self, limit: int) -> None:
        self.limit = limit

    def check(self, identifier: str) -> RateLimitDecision:
        return RateLimitDecision(True, self.limit, self.limit, time.time())


REGISTRATION = "registration"
CHECK_IN = "check_in"

_limiters: Dict[str, RateLimiter] = {}
_limiters_lock = threading.Lock()


def _policy(name: str) -> tuple[int, int]:
    settings = get_settings()
    if name == REGISTRATION:
        return settings.registration_rate_limit, settings.registration_rate_window_seconds
    if name == CHECK_IN:
        return settings.checkin_rate_limit, settings.checkin_rate_window_seconds
    raise ValueError(f"Unknown rate limit policy: {name}")


def _build_limiter(name: str) -> RateLimiter:
    settings = get_settings()
    limit, window = _policy(name)
    if not settings.rate_limit_enabled:
        return AllowAllRateLimiter(limit)
    if settings.rate_limit_backend == "redis":
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        logger.info("rate limiter policy=%s backend=redis limit=%s window=%ss", name, limit, window)
        return RedisRateLimiter(client, prefix=f"ratelimit:{name}", limit=limit, window_seconds=window)
    logger.info("rate limiter policy=%s backend=memory limit=%s window=%ss", name, limit, window)
    return InMemoryRateLimiter(limit, window)


def get_rate_limiter(name: str) -> RateLimiter:
    with _limiters_lock:
        limiter = _limiters.get(name)
        if limiter is None:
            limiter = _build_limiter(name)
            _limiters[name] = limiter
        return limiter


def reset_rate_limiters() -> None:
    with _limiters_lock:
        _limiters.clear()
