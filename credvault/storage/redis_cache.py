from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

# KEYS[1] bucket hash; ARGV: now, tokens per second, capacity, cost.
# Returns {allowed, tokens left, seconds until cost is affordable}.
_CREDENTIAL_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'updated')
local level = tonumber(state[1]) or capacity
local updated = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - updated) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', bucket, 'level', level, 'updated', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate)))
return {allowed, level, wait}
"""


def _bucket_key(subject: str) -> str:
    # subjects contain emails and IPs; hash so they never appear in Redis keys
    return "credvault:rate:" + hashlib.sha256(subject.encode()).hexdigest()


def _profile_key(user_id: str) -> str:
    return f"credvault:profile:{user_id}"


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _bucket_result(raw: Sequence[Any], return_remaining: bool) -> RateLimitResult:
    allowed, level, wait = raw
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return allowed_bool, max(0, int(float(level))), int(wait or 0)
    return allowed_bool


def _decode_profile(cached: Optional[str]) -> Optional[dict]:
    if not cached:
        return None
    try:
        profile = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    return profile if isinstance(profile, dict) else None


class RedisCache:
    """Rate-limit buckets and the cached ``/me`` projection."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_CREDENTIAL_BUCKET_LUA)

    def verify_connection(self) -> None:
        # a throwaway sync client keeps the async pool off the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._bucket(
            keys=[_bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def get_user_profile(self, user_id: str) -> Optional[dict]:
        return _decode_profile(await self.client.get(_profile_key(user_id)))

    async def set_user_profile(self, user_id: str, profile: dict, ttl_seconds: int) -> None:
        await self.client.set(_profile_key(user_id), json.dumps(profile), ex=max(1, ttl_seconds))

    async def invalidate_user_profile(self, user_id: str) -> None:
        await self.client.delete(_profile_key(user_id))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking client behind the same awaitable interface as RedisCache.

    TestClient drives each request on its own event loop; an asyncio pool
    would end up bound to whichever loop touched it first.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_CREDENTIAL_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(keys=[_bucket_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _bucket_result(raw, return_remaining)

    async def get_user_profile(self, user_id: str) -> Optional[dict]:
        return _decode_profile(self.client.get(_profile_key(user_id)))

    async def set_user_profile(self, user_id: str, profile: dict, ttl_seconds: int) -> None:
        self.client.set(_profile_key(user_id), json.dumps(profile), ex=max(1, ttl_seconds))

    async def invalidate_user_profile(self, user_id: str) -> None:
        self.client.delete(_profile_key(user_id))

    async def close(self) -> None:
        self.client.close()
