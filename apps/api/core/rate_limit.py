"""
Request-attempt limiter.

Implements the token bucket algorithm per endpoint bucket. Each bucket has a
capacity and a refill rate; a request takes one token and a depleted bucket
raises ``RateLimitedError`` with a retry-after hint. The error never says
whether the account behind the key exists.

Backends:
- redis: shared across API processes, one Lua script per hit so the
  read-refill-take step is atomic.
- memory: per-process dict, used in tests and as the fallback when Redis is
  unreachable.
"""
import math
import threading
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request
from redis.exceptions import RedisError

from core.cache import get_redis_client
from core.config import settings
from core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketSpec:
    capacity: int
    refill_per_s: float

    @property
    def idle_ttl(self) -> int:
        """Seconds after which an untouched bucket is full again."""
        return int(math.ceil(self.capacity / self.refill_per_s)) + 1


def _bucket_specs() -> Dict[str, BucketSpec]:
    return {
        "login": BucketSpec(settings.RATE_LIMIT_LOGIN_CAPACITY, settings.RATE_LIMIT_LOGIN_REFILL_PER_S),
        "verify-email": BucketSpec(
            settings.RATE_LIMIT_VERIFY_EMAIL_CAPACITY, settings.RATE_LIMIT_VERIFY_EMAIL_REFILL_PER_S
        ),
        "resend-verification": BucketSpec(
            settings.RATE_LIMIT_RESEND_VERIFICATION_CAPACITY,
            settings.RATE_LIMIT_RESEND_VERIFICATION_REFILL_PER_S,
        ),
        "forgot-password": BucketSpec(
            settings.RATE_LIMIT_FORGOT_PASSWORD_CAPACITY, settings.RATE_LIMIT_FORGOT_PASSWORD_REFILL_PER_S
        ),
        "reset-password": BucketSpec(
            settings.RATE_LIMIT_RESET_PASSWORD_CAPACITY, settings.RATE_LIMIT_RESET_PASSWORD_REFILL_PER_S
        ),
        "signup": BucketSpec(settings.RATE_LIMIT_SIGNUP_CAPACITY, settings.RATE_LIMIT_SIGNUP_REFILL_PER_S),
        "payment-webhook": BucketSpec(
            settings.RATE_LIMIT_PAYMENT_WEBHOOK_CAPACITY, settings.RATE_LIMIT_PAYMENT_WEBHOOK_REFILL_PER_S
        ),
    }


def _take(tokens: float, last: float, now: float, spec: BucketSpec) -> Tuple[float, bool, int]:
    """Refill then try to take one token. Returns (tokens_left, allowed, retry_after_s)."""
    tokens = min(spec.capacity, tokens + max(0.0, now - last) * spec.refill_per_s)
    if tokens >= 1:
        return tokens - 1, True, 0
    return tokens, False, max(1, int(math.ceil((1 - tokens) / spec.refill_per_s)))


class MemoryBackend:
    # Idle buckets are dropped at most this often; a dropped bucket is full again.
    SWEEP_INTERVAL_S = 60.0

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (tokens, last_seen, idle_ttl)
        self._buckets: Dict[str, Tuple[float, float, int]] = {}
        self._last_sweep = clock()

    def size(self) -> int:
        return len(self._buckets)

    def hit(self, key: str, spec: BucketSpec) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.SWEEP_INTERVAL_S:
                self._sweep(now)
            tokens, last, _ = self._buckets.get(key, (float(spec.capacity), now, spec.idle_ttl))
            tokens, allowed, retry_after = _take(tokens, last, now, spec)
            self._buckets[key] = (tokens, now, spec.idle_ttl)
        return allowed, retry_after

    def _sweep(self, now: float) -> None:
        idle = [key for key, (_, last, ttl) in self._buckets.items() if now - last >= ttl]
        for key in idle:
            del self._buckets[key]
        self._last_sweep = now
        if idle:
            logger.debug(f"Evicted {len(idle)} idle rate limit buckets")

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


# KEYS[1] bucket key; ARGV capacity, refill_per_s, now, ttl
_TOKEN_BUCKET_LUA = """
local capacity = tonumber(ARGV[1])
local refill = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now
end
tokens = math.min(capacity, tokens + math.max(0, now - ts) * refill)
local allowed = 0
local retry = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
else
  retry = math.ceil((1 - tokens) / refill)
  if retry < 1 then retry = 1 end
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, retry}
"""


class RedisBackend:
    def __init__(self, client, clock: Callable[[], float] = time.time):
        self._client = client
        self._clock = clock
        self._script = client.register_script(_TOKEN_BUCKET_LUA)

    def hit(self, key: str, spec: BucketSpec) -> Tuple[bool, int]:
        allowed, retry_after = self._script(
            keys=[key],
            args=[spec.capacity, spec.refill_per_s, self._clock(), spec.idle_ttl],
        )
        return bool(int(allowed)), int(retry_after)

    def reset(self) -> None:
        for key in self._client.scan_iter(match="rate_limit:*"):
            self._client.delete(key)


class AttemptLimiter:
    """Per-endpoint token buckets keyed by identity and/or source IP."""

    def __init__(self, backend=None, specs: Optional[Dict[str, BucketSpec]] = None):
        self._backend = backend
        self._fallback = MemoryBackend()
        self._specs = specs

    @property
    def specs(self) -> Dict[str, BucketSpec]:
        if self._specs is None:
            self._specs = _bucket_specs()
        return self._specs

    def _get_backend(self):
        if self._backend is not None:
            return self._backend
        if settings.RATE_LIMIT_BACKEND == "redis":
            client = get_redis_client()
            if client is not None:
                self._backend = RedisBackend(client)
                return self._backend
            logger.warning("Redis unavailable, rate limiting falls back to in-process buckets")
            return self._fallback
        self._backend = self._fallback
        return self._backend

    def hit(self, bucket: str, *key_parts: str) -> None:
        """Take one token from ``bucket`` for the given key. Raises RateLimitedError when empty."""
        if not settings.RATE_LIMIT_ENABLED:
            return
        spec = self.specs[bucket]
        key = "rate_limit:" + bucket + ":" + ":".join(str(p) for p in key_parts)

        backend = self._get_backend()
        try:
            allowed, retry_after = backend.hit(key, spec)
        except RedisError as e:
            logger.error(f"Rate limit check error: {e}")
            allowed, retry_after = self._fallback.hit(key, spec)

        if not allowed:
            logger.warning(
                f"Rate limit exceeded for bucket {bucket}",
                extra={"extra_fields": {"bucket": bucket, "retry_after": retry_after}},
            )
            raise RateLimitedError(retry_after=retry_after)

    def reset(self) -> None:
        self._fallback.reset()
        if self._backend is not None and self._backend is not self._fallback:
            self._backend.reset()


limiter = AttemptLimiter()


def client_ip(request: Request) -> str:
    """Source IP of the caller, as seen by the ASGI server."""
    return request.client.host if request.client else "unknown"


def limit_by_ip(bucket: str):
    """
    Dependency factory for buckets keyed on source IP only.

    Usage:
        @router.post("/signup", dependencies=[Depends(limit_by_ip("signup"))])
    """
    def dependency(request: Request) -> None:
        limiter.hit(bucket, client_ip(request))

    return dependency
