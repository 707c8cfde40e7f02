"""
Fixed-window rate limiting for OTP sends/verifies and other abuse-prone endpoints.

Counters live in a CounterStore handed to the RateLimiter. The in-memory store
is per process and best effort; it shapes usage and is paired with the OTP
attempt ceiling for brute-force resistance.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 10 * 60

RATE_LIMIT_MSG = "Too many requests. Please try again in {seconds} seconds."


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int
    prefix: str = ''

    def key_for(self, identifier):
        return f"{self.prefix}:{identifier}" if self.prefix else str(identifier)


# Presets
OTP_SEND_PER_PHONE = RateLimitConfig(max_requests=3, window_seconds=30 * 60, prefix='otp:send:phone')
OTP_SEND_PER_IP = RateLimitConfig(max_requests=10, window_seconds=60 * 60, prefix='otp:send:ip')
OTP_VERIFY_PER_PHONE = RateLimitConfig(max_requests=5, window_seconds=5 * 60, prefix='otp:verify:phone')
EMAIL_CHECK_PER_IP = RateLimitConfig(max_requests=20, window_seconds=60 * 60, prefix='email:check:ip')
LOGIN_PER_IP = RateLimitConfig(max_requests=5, window_seconds=15 * 60, prefix='login:ip')


@dataclass
class CounterState:
    count: int
    reset_at: float  # Unix timestamp
    incremented: bool


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: int  # Unix timestamp
    retry_after: Optional[int] = None
    error: Optional[str] = None


class CounterStore:
    """Interface for window counters. increment must be atomic per key."""

    def increment(self, key, window_seconds, ceiling, now):
        """
        Count one request for key.

        Starts a fresh window (count 1) when none is open or the open one has
        elapsed. Inside an open window the count is raised only while it is
        below ceiling; otherwise it is left untouched and incremented=False.
        """
        raise NotImplementedError

    def reset(self, key):
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    """Process-local store: dict of key -> [count, reset_at] behind one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries = {}
        self._last_cleanup = 0.0

    def increment(self, key, window_seconds, ceiling, now):
        with self._lock:
            self._purge_expired(now)
            entry = self._entries.get(key)
            if entry is None or entry[1] <= now:
                entry = [1, now + window_seconds]
                self._entries[key] = entry
                return CounterState(count=1, reset_at=entry[1], incremented=True)
            if entry[0] >= ceiling:
                return CounterState(count=entry[0], reset_at=entry[1], incremented=False)
            entry[0] += 1
            return CounterState(count=entry[0], reset_at=entry[1], incremented=True)

    def reset(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._last_cleanup = 0.0

    def __len__(self):
        return len(self._entries)

    def _purge_expired(self, now):
        # lock held by caller
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]
        self._last_cleanup = now
        if expired:
            logger.debug("Purged %d expired rate limit windows", len(expired))


class RateLimiter:
    """Checks identifiers against a RateLimitConfig using the given store."""

    def __init__(self, store=None, clock=time.time):
        self.store = store if store is not None else InMemoryCounterStore()
        self.clock = clock
        self.enabled = True

    def init_app(self, app):
        self.enabled = app.config.get('RATELIMIT_ENABLED', True)
        app.extensions['rate_limiter'] = self

    def check(self, identifier, config: RateLimitConfig) -> RateLimitResult:
        now = self.clock()
        if not self.enabled:
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests,
                limit=config.max_requests,
                reset_at=int(now + config.window_seconds),
            )

        state = self.store.increment(config.key_for(identifier), config.window_seconds, config.max_requests, now)
        reset_at = int(math.ceil(state.reset_at))

        if not state.incremented:
            retry_after = max(1, int(math.ceil(state.reset_at - now)))
            logger.info("Rate limit hit for %s (%d/%ds)", config.prefix or 'default', config.max_requests, config.window_seconds)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=config.max_requests,
                reset_at=reset_at,
                retry_after=retry_after,
                error=RATE_LIMIT_MSG.format(seconds=retry_after),
            )

        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - state.count,
            limit=config.max_requests,
            reset_at=reset_at,
        )

    def reset(self, identifier, config: RateLimitConfig):
        self.store.reset(config.key_for(identifier))

    def clear(self):
        self.store.clear()


def get_client_ip(headers) -> str:
    """Client address behind proxies: X-Forwarded-For, X-Real-IP, CF-Connecting-IP."""
    forwarded_for = headers.get('X-Forwarded-For')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    real_ip = headers.get('X-Real-IP')
    if real_ip:
        return real_ip.strip()
    cf_ip = headers.get('CF-Connecting-IP')
    if cf_ip:
        return cf_ip.strip()
    return 'unknown'


limiter = RateLimiter()
