from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume for rate limiting
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

# Record a failed attempt and trigger the lockout in one step
_MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""

_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _normalize_rate_key(key: str, tenant_id: Optional[str]) -> str:
    """Hash rate-limit subjects so user input cannot inject key delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    tenant_prefix = f"{tenant_id}:" if tenant_id else ""
    return f"rate:{tenant_prefix}{digest}"


def _social_state_key(state: str) -> str:
    return f"auth:social_state:{state}"


def _mfa_keys(tenant_id: str, user_id: str) -> Tuple[str, str]:
    return f"mfa:lockout:{tenant_id}:{user_id}", f"mfa:attempts:{tenant_id}:{user_id}"


def _decode_state(cached: Optional[str]) -> Optional[Dict[str, Any]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted entry; it is already deleted
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper for social-login state, MFA lockout and rate limits."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = _normalize_rate_key(key, tenant_id)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def set_social_state(
        self, state: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            _social_state_key(state), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_social_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a social-login state entry.

        Uses GETDEL (Redis 6.2+) with a Lua fallback so two callbacks carrying
        the same state can never both observe it.
        """
        key = _social_state_key(state)
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            cached = await self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_state(cached)

    async def check_mfa_lockout(self, tenant_id: str, user_id: str) -> bool:
        lockout_key, _ = _mfa_keys(tenant_id, user_id)
        return bool(await self.client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, tenant_id: str, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed attempt; returns (is_locked_out, attempts)."""
        lockout_key, attempts_key = _mfa_keys(tenant_id, user_id)
        result = await self.client.eval(
            _MFA_ATTEMPT_SCRIPT, 2, lockout_key, attempts_key, max_attempts, lockout_seconds
        )
        return (bool(result[0]), int(result[1]))

    async def clear_mfa_attempts(self, tenant_id: str, user_id: str) -> None:
        _, attempts_key = _mfa_keys(tenant_id, user_id)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        """Close the connection pool on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper with the async interface of RedisCache.

    Used in TEST_MODE so the client is not bound to the event loop of
    whichever test first touched it.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = _normalize_rate_key(key, tenant_id)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def set_social_state(
        self, state: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            _social_state_key(state), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_social_state(self, state: str) -> Optional[Dict[str, Any]]:
        key = _social_state_key(state)
        try:
            cached = self._sync_client.getdel(key)
        except AttributeError:
            cached = self._sync_client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_state(cached)

    async def check_mfa_lockout(self, tenant_id: str, user_id: str) -> bool:
        lockout_key, _ = _mfa_keys(tenant_id, user_id)
        return bool(self._sync_client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, tenant_id: str, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        lockout_key, attempts_key = _mfa_keys(tenant_id, user_id)
        result = self._sync_client.eval(
            _MFA_ATTEMPT_SCRIPT, 2, lockout_key, attempts_key, max_attempts, lockout_seconds
        )
        return (bool(result[0]), int(result[1]))

    async def clear_mfa_attempts(self, tenant_id: str, user_id: str) -> None:
        _, attempts_key = _mfa_keys(tenant_id, user_id)
        self._sync_client.delete(attempts_key)

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
