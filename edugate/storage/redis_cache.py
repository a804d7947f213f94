from __future__ import annotations

import hashlib
import math
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Shared request budgets for deployments running several API workers.

    Only rate limiting lives here; sessions are always read from the
    primary store.
    """

    # Buckets refill continuously and are timed by the Redis server clock, so
    # workers with skewed clocks still agree. Returns {granted, level, wait_ms}.
    _BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local clock = redis.call('TIME')
local now_ms = clock[1] * 1000 + math.floor(clock[2] / 1000)
local per_ms = capacity / window_ms

local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now_ms
level = math.min(capacity, level + math.max(0, now_ms - at) * per_ms)

local granted = 0
local wait_ms = 0
if level >= cost then
  level = level - cost
  granted = 1
else
  wait_ms = math.ceil((cost - level) / per_ms)
end

redis.call('HSET', KEYS[1], 'level', tostring(level), 'at', now_ms)
redis.call('PEXPIRE', KEYS[1], window_ms)
return {granted, tostring(level), wait_ms}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(self._BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # runs during Runtime construction, before any event loop owns the pool
        with Redis.from_url(self.redis_url, socket_connect_timeout=2.0) as client:
            client.ping()

    @staticmethod
    def _bucket_key(key: str) -> str:
        # client-controlled parts (IPs) are hashed out of the keyspace
        return "edugate:rate:" + hashlib.sha256(key.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        granted, level, wait_ms = await self._bucket(
            keys=[self._bucket_key(key)],
            args=[limit, int(window_seconds * 1000), max(1, cost)],
        )
        allowed = int(granted) == 1
        if not return_remaining:
            return allowed
        return allowed, max(0, int(float(level))), math.ceil(int(wait_ms) / 1000)

    async def close(self) -> None:
        await self.client.aclose()
