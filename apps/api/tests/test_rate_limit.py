"""
Request-attempt limiter tests.
"""
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.config import settings
from core.exceptions import RateLimitedError
from core.rate_limit import AttemptLimiter, BucketSpec, MemoryBackend, _bucket_specs

from conftest import error_code


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestBucketSpecs:

    def test_default_buckets(self):
        specs = _bucket_specs()
        assert specs["login"] == BucketSpec(10, 1 / 60)
        assert specs["verify-email"] == BucketSpec(6, 1 / 60)
        assert specs["forgot-password"] == BucketSpec(3, 1 / 3600)
        assert specs["reset-password"] == BucketSpec(10, 1 / 3600)
        assert specs["signup"] == BucketSpec(20, 1 / 60)
        assert specs["payment-webhook"] == BucketSpec(120, 2.0)

    def test_idle_ttl_covers_full_refill(self):
        assert BucketSpec(10, 1 / 60).idle_ttl >= 600


class TestMemoryBackend:

    def test_capacity_then_refill(self):
        clock = FakeClock()
        backend = MemoryBackend(clock=clock)
        spec = BucketSpec(capacity=3, refill_per_s=1 / 60)

        assert [backend.hit("k", spec)[0] for _ in range(3)] == [True, True, True]
        allowed, retry_after = backend.hit("k", spec)
        assert allowed is False
        assert 1 <= retry_after <= 60

        clock.now += 60
        assert backend.hit("k", spec)[0] is True
        assert backend.hit("k", spec)[0] is False

    def test_refill_never_exceeds_capacity(self):
        clock = FakeClock()
        backend = MemoryBackend(clock=clock)
        spec = BucketSpec(capacity=2, refill_per_s=1.0)
        backend.hit("k", spec)
        clock.now += 3600
        assert [backend.hit("k", spec)[0] for _ in range(3)] == [True, True, False]

    def test_keys_are_independent(self):
        backend = MemoryBackend(clock=FakeClock())
        spec = BucketSpec(capacity=1, refill_per_s=0.001)
        assert backend.hit("a", spec)[0] is True
        assert backend.hit("a", spec)[0] is False
        assert backend.hit("b", spec)[0] is True

    def test_idle_buckets_are_evicted(self):
        clock = FakeClock()
        backend = MemoryBackend(clock=clock)
        spec = BucketSpec(capacity=10, refill_per_s=1 / 60)
        for i in range(5000):
            backend.hit(f"rate_limit:login:user{i}@example.com", spec)
        assert backend.size() == 5000

        clock.now += 1_000_000
        backend.hit("rate_limit:login:late@example.com", spec)
        assert backend.size() == 1

    def test_sweep_keeps_buckets_that_are_still_draining(self):
        clock = FakeClock()
        backend = MemoryBackend(clock=clock)
        spec = BucketSpec(capacity=1, refill_per_s=1 / 3600)
        assert backend.hit("drained", spec)[0] is True

        clock.now += MemoryBackend.SWEEP_INTERVAL_S + 1
        backend.hit("other", spec)
        assert backend.size() == 2
        assert backend.hit("drained", spec)[0] is False


class _BrokenBackend:
    def hit(self, key, spec):
        raise RedisConnectionError("redis went away")

    def reset(self):
        pass


class TestAttemptLimiter:

    def test_raises_rate_limited_with_hint(self):
        limiter = AttemptLimiter(backend=MemoryBackend(clock=FakeClock()), specs={"x": BucketSpec(1, 0.5)})
        limiter.hit("x", "a@b.com")
        with pytest.raises(RateLimitedError) as exc:
            limiter.hit("x", "a@b.com")
        assert exc.value.retry_after == 2
        assert exc.value.status_code == 429

    def test_falls_back_to_memory_when_redis_fails(self):
        limiter = AttemptLimiter(backend=_BrokenBackend(), specs={"x": BucketSpec(1, 0.001)})
        limiter.hit("x", "k")
        with pytest.raises(RateLimitedError):
            limiter.hit("x", "k")

    def test_disabled_limiter_never_blocks(self, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
        limiter = AttemptLimiter(backend=MemoryBackend(), specs={"x": BucketSpec(1, 0.001)})
        for _ in range(5):
            limiter.hit("x", "k")


class TestEndpointBuckets:

    def test_signup_is_limited_per_ip(self, client, outbox):
        for i in range(20):
            client.post("/api/v1/auth/signup", json={
                "email": f"bulk{i}@example.com", "password": "GoodP@ss1", "firstName": "B", "lastName": "K",
            })
        response = client.post("/api/v1/auth/signup", json={
            "email": "one-more@example.com", "password": "GoodP@ss1", "firstName": "B", "lastName": "K",
        })
        assert response.status_code == 429
        assert error_code(response) == "rate_limited"
        assert "Retry-After" in response.headers

    def test_forgot_password_limit_does_not_reveal_existence(self, client, make_user, outbox):
        make_user(email="member@example.com")
        for email in ("member@example.com", "nobody@example.com"):
            for _ in range(3):
                assert client.post("/api/v1/auth/forgot-password", json={"email": email}).status_code == 200
        known = client.post("/api/v1/auth/forgot-password", json={"email": "member@example.com"})
        unknown = client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 429
        assert known.json()["error"]["message"] == unknown.json()["error"]["message"]
