import redis

from edugate.service import runtime as runtime_module
from edugate.service.runtime import (
    LocalBuckets,
    Runtime,
    _mask_url_password,
    check_rate_limit,
    get_runtime,
)
from edugate.storage.redis_cache import RedisCache


class RecordingCache:
    def __init__(self):
        self.calls = []

    async def check_rate_limit(self, key, limit, window_seconds, *, return_remaining=False, cost=1):
        self.calls.append((key, limit, window_seconds, cost))
        return (False, 0, 12) if return_remaining else False


async def test_local_bucket_exhausts_then_denies():
    runtime = get_runtime()

    results = [await check_rate_limit(runtime, "ip:10.0.0.1", 3, 900) for _ in range(4)]

    assert results == [True, True, True, False]


async def test_buckets_are_per_key():
    runtime = get_runtime()
    for _ in range(2):
        await check_rate_limit(runtime, "ip:10.0.0.1", 2, 900)

    assert await check_rate_limit(runtime, "ip:10.0.0.1", 2, 900) is False
    assert await check_rate_limit(runtime, "ip:10.0.0.2", 2, 900) is True


async def test_remaining_and_reset_are_reported():
    runtime = get_runtime()

    allowed, remaining, reset = await check_rate_limit(
        runtime, "ip:x", 2, 900, return_remaining=True
    )
    assert (allowed, remaining, reset) == (True, 1, 0)

    await check_rate_limit(runtime, "ip:x", 2, 900)
    allowed, remaining, reset = await check_rate_limit(
        runtime, "ip:x", 2, 900, return_remaining=True
    )
    assert allowed is False
    assert remaining == 0
    assert 0 < reset <= 450


async def test_non_positive_limit_disables_check():
    assert await check_rate_limit(get_runtime(), "ip:x", 0, 900) is True


async def test_shared_cache_is_used_when_configured():
    runtime = get_runtime()
    runtime.cache = RecordingCache()

    assert await check_rate_limit(runtime, "ip:x", 5, 60) is False
    assert runtime.cache.calls == [("ip:x", 5, 60, 1)]
    assert len(runtime.rate_buckets) == 0


def test_unreachable_redis_falls_back_to_local(monkeypatch):
    def refuse(self):
        raise redis.ConnectionError("connection refused")

    monkeypatch.setenv("REDIS_URL", "redis://localhost:6390/0")
    monkeypatch.setattr(RedisCache, "verify_connection", refuse)
    runtime_module.reset_settings_cache()

    runtime = Runtime()

    assert runtime.cache is None


def test_bucket_keys_do_not_leak_client_addresses():
    cache = RedisCache("redis://localhost:6379/0")

    key = cache._bucket_key("ip:10.0.0.1")

    assert key.startswith("edugate:rate:")
    assert "10.0.0.1" not in key
    assert key == cache._bucket_key("ip:10.0.0.1")


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert _mask_url_password(None) is None


def test_local_bucket_refills_over_the_window():
    now = [0.0]
    buckets = LocalBuckets(clock=lambda: now[0])

    assert buckets.take("k", 2, 2) == (True, 1, 0)
    assert buckets.take("k", 2, 2) == (True, 0, 0)
    assert buckets.take("k", 2, 2) == (False, 0, 1)

    now[0] = 1.0
    assert buckets.take("k", 2, 2)[0] is True
    now[0] = 10_000.0
    assert buckets.take("k", 2, 2) == (True, 1, 0)
