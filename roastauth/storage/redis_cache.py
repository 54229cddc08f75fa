from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis

from roastauth.storage.models import (
    OAuthState,
    PendingLink,
    RateLimitHit,
    RateLimitRecord,
    _epoch_ms,
    utcnow,
)


class _CacheKeys:
    """Key layout and payload codec shared by the async and sync caches."""

    # Keep lockout records around a little past their last relevant instant
    _RATE_LIMIT_GRACE_SECONDS = 60

    # Fixed-window count plus lockout in one round trip. Times are epoch ms;
    # ``locked`` is 0 when no lockout is set.
    _RATE_LIMIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local lockout = tonumber(ARGV[4])
local grace = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'count', 'reset', 'locked')
local count = tonumber(data[1])
local reset = tonumber(data[2])
local locked = tonumber(data[3]) or 0

if count ~= nil and reset ~= nil and locked > now then
  return {0, count, reset, locked, 0}
end

local allowed = 1
local started = 0
if count == nil or reset == nil or now > reset then
  count = 1
  reset = now + window
  locked = 0
elseif count >= max_attempts then
  allowed = 0
  if lockout > 0 then
    locked = now + lockout
    started = 1
  end
else
  count = count + 1
end

redis.call('HSET', key, 'count', count, 'reset', reset, 'locked', locked)
redis.call('PEXPIRE', key, math.max(reset, locked) - now + grace)
return {allowed, count, reset, locked, started}
"""

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Clamp an absolute expiry to a positive Redis TTL."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _rate_key(key: str) -> str:
        # Hash so caller-supplied IPs/headers cannot inject delimiters
        return f"auth:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _oauth_key(client_id: str, provider: str) -> str:
        return f"auth:oauth:{provider}:{hashlib.sha256(client_id.encode()).hexdigest()}"

    @staticmethod
    def _link_key(token: str) -> str:
        return f"auth:link:{token}"

    @classmethod
    def _rate_limit_args(
        cls,
        now: datetime,
        max_attempts: int,
        window: timedelta,
        lockout: Optional[timedelta],
    ) -> list[int]:
        return [
            _epoch_ms(now),
            max_attempts,
            int(window.total_seconds() * 1000),
            int(lockout.total_seconds() * 1000) if lockout else 0,
            cls._RATE_LIMIT_GRACE_SECONDS * 1000,
        ]

    @staticmethod
    def _rate_limit_hit(result: Sequence[Any]) -> RateLimitHit:
        allowed, count, reset, locked, started = (int(value) for value in result)
        record = RateLimitRecord.from_hash({"count": count, "reset": reset, "locked": locked})
        return RateLimitHit(bool(allowed), record, lockout_started=bool(started))

    @staticmethod
    def _decode(raw: Optional[Any]) -> Optional[dict]:
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None


class RedisCache(_CacheKeys):
    """Redis-backed rate-limit, OAuth-state and pending-link store."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_limit_script = self.client.register_script(self._RATE_LIMIT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def hit_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window: timedelta,
        lockout: Optional[timedelta],
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitHit:
        """Count one attempt atomically via the registered Lua script."""
        result = await self._rate_limit_script(
            keys=[self._rate_key(key)],
            args=self._rate_limit_args(now or utcnow(), max_attempts, window, lockout),
        )
        return self._rate_limit_hit(result)

    async def get_rate_limit(self, key: str) -> Optional[RateLimitRecord]:
        return RateLimitRecord.from_hash(await self.client.hgetall(self._rate_key(key)))

    async def delete_rate_limit(self, key: str) -> None:
        await self.client.delete(self._rate_key(key))

    async def get_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]:
        data = self._decode(await self.client.get(self._oauth_key(client_id, provider)))
        return OAuthState.from_dict(data) if data else None

    async def put_oauth_state(self, oauth_state: OAuthState) -> bool:
        """SET NX so a second concurrent flow for the same client/provider loses."""
        stored = await self.client.set(
            self._oauth_key(oauth_state.client_id, oauth_state.provider),
            json.dumps(oauth_state.to_dict()),
            ex=self._ttl_seconds(oauth_state.expires_at),
            nx=True,
        )
        return bool(stored)

    async def pop_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]:
        """Atomically read and delete the state (GETDEL) so it is redeemable once."""
        data = self._decode(await self.client.getdel(self._oauth_key(client_id, provider)))
        return OAuthState.from_dict(data) if data else None

    async def put_pending_link(self, pending: PendingLink) -> None:
        await self.client.set(
            self._link_key(pending.token),
            json.dumps(pending.to_dict()),
            ex=self._ttl_seconds(pending.expires_at),
        )

    async def pop_pending_link(self, token: str) -> Optional[PendingLink]:
        data = self._decode(await self.client.getdel(self._link_key(token)))
        return PendingLink.from_dict(data) if data else None


class SyncRedisCache(_CacheKeys):
    """Synchronous Redis client behind the async cache interface.

    Only selected under TEST_MODE: every test runs in its own event loop, and a
    pooled async client would stay bound to the first one. Its commands block the
    event loop, so it must not serve production traffic.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_limit_script = self.client.register_script(self._RATE_LIMIT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()

    async def hit_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window: timedelta,
        lockout: Optional[timedelta],
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitHit:
        result = self._rate_limit_script(
            keys=[self._rate_key(key)],
            args=self._rate_limit_args(now or utcnow(), max_attempts, window, lockout),
        )
        return self._rate_limit_hit(result)

    async def get_rate_limit(self, key: str) -> Optional[RateLimitRecord]:
        return RateLimitRecord.from_hash(self.client.hgetall(self._rate_key(key)))

    async def delete_rate_limit(self, key: str) -> None:
        self.client.delete(self._rate_key(key))

    async def get_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]:
        data = self._decode(self.client.get(self._oauth_key(client_id, provider)))
        return OAuthState.from_dict(data) if data else None

    async def put_oauth_state(self, oauth_state: OAuthState) -> bool:
        stored = self.client.set(
            self._oauth_key(oauth_state.client_id, oauth_state.provider),
            json.dumps(oauth_state.to_dict()),
            ex=self._ttl_seconds(oauth_state.expires_at),
            nx=True,
        )
        return bool(stored)

    async def pop_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]:
        data = self._decode(self.client.getdel(self._oauth_key(client_id, provider)))
        return OAuthState.from_dict(data) if data else None

    async def put_pending_link(self, pending: PendingLink) -> None:
        self.client.set(
            self._link_key(pending.token),
            json.dumps(pending.to_dict()),
            ex=self._ttl_seconds(pending.expires_at),
        )

    async def pop_pending_link(self, token: str) -> Optional[PendingLink]:
        data = self._decode(self.client.getdel(self._link_key(token)))
        return PendingLink.from_dict(data) if data else None
