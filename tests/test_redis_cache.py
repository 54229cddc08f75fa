"""Tests for the Redis-backed cache key layout and commands.

The Redis clients are mocked; only the commands issued and the payload
codec are checked here.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from roastauth.storage.models import OAuthState, PendingLink, RateLimitRecord, utcnow
from roastauth.storage.redis_cache import RedisCache, SyncRedisCache


def _state():
    now = utcnow()
    return OAuthState(
        state="a" * 32,
        code_verifier="v" * 43,
        code_challenge="c" * 43,
        redirect_uri="https://auth.example.com/v1/auth/oauth/google/callback",
        provider="google",
        client_id="client-a",
        timestamp=now,
        expires_at=now + timedelta(minutes=10),
    )


def _sync_cache():
    cache = SyncRedisCache("redis://localhost:6379/0")
    cache.client = MagicMock()
    return cache


def _async_cache():
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = AsyncMock()
    return cache


class TestKeyLayout:
    def test_rate_key_is_hashed(self):
        key = SyncRedisCache._rate_key("login:203.0.113.7")

        assert key.startswith("auth:rate:")
        assert "203.0.113.7" not in key

    def test_oauth_key_scopes_client_and_provider(self):
        google = SyncRedisCache._oauth_key("client-a", "google")
        github = SyncRedisCache._oauth_key("client-a", "github")

        assert google != github
        assert google.startswith("auth:oauth:google:")
        assert "client-a" not in google

    def test_ttl_is_never_below_one_second(self):
        assert SyncRedisCache._ttl_seconds(utcnow() - timedelta(minutes=5)) == 1

    def test_rate_limit_args_are_epoch_milliseconds(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        args = SyncRedisCache._rate_limit_args(now, 10, timedelta(minutes=15), None)

        assert args == [int(now.timestamp() * 1000), 10, 15 * 60 * 1000, 0, 60 * 1000]

    def test_decode_ignores_garbage(self):
        assert SyncRedisCache._decode("not json") is None
        assert SyncRedisCache._decode(b'["list"]') is None
        assert SyncRedisCache._decode(None) is None


class TestSyncRedisCache:
    async def test_put_oauth_state_uses_set_nx(self):
        cache = _sync_cache()
        cache.client.set.return_value = None

        assert await cache.put_oauth_state(_state()) is False

        kwargs = cache.client.set.call_args.kwargs
        assert kwargs["nx"] is True
        assert 0 < kwargs["ex"] <= 600

    async def test_pop_oauth_state_uses_getdel(self):
        cache = _sync_cache()
        stored = _state()
        cache.client.getdel.return_value = json.dumps(stored.to_dict())

        popped = await cache.pop_oauth_state("client-a", "google")

        assert popped == stored
        cache.client.getdel.assert_called_once_with(SyncRedisCache._oauth_key("client-a", "google"))

    async def test_rate_limit_hit_runs_registered_script(self):
        cache = _sync_cache()
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        reset_ms = int((now + timedelta(minutes=15)).timestamp() * 1000)
        locked_ms = int((now + timedelta(minutes=30)).timestamp() * 1000)
        cache._rate_limit_script = MagicMock(return_value=[0, 10, reset_ms, locked_ms, 1])

        hit = await cache.hit_rate_limit(
            "login:ip", 10, timedelta(minutes=15), timedelta(minutes=30), now=now
        )

        assert hit.allowed is False
        assert hit.lockout_started is True
        assert hit.record.count == 10
        assert hit.record.locked_until == now + timedelta(minutes=30)
        kwargs = cache._rate_limit_script.call_args.kwargs
        assert kwargs["keys"] == [SyncRedisCache._rate_key("login:ip")]
        assert kwargs["args"][3] == 30 * 60 * 1000

    async def test_rate_limit_record_reads_hash(self):
        cache = _sync_cache()
        record = RateLimitRecord(count=3, reset_time=datetime(2024, 5, 1, 12, 15, tzinfo=timezone.utc))
        cache.client.hgetall.return_value = {k: str(v) for k, v in record.to_hash().items()}

        assert await cache.get_rate_limit("login:ip") == record

    async def test_missing_rate_limit_record(self):
        cache = _sync_cache()
        cache.client.hgetall.return_value = {}

        assert await cache.get_rate_limit("login:ip") is None


class TestRedisCache:
    async def test_put_oauth_state_returns_set_result(self):
        cache = _async_cache()
        cache.client.set.return_value = True

        assert await cache.put_oauth_state(_state()) is True
        assert cache.client.set.await_args.kwargs["nx"] is True

    async def test_pending_link_is_popped_atomically(self):
        cache = _async_cache()
        now = utcnow()
        pending = PendingLink(
            token="tok",
            provider="github",
            provider_id="4242",
            email="octo@example.com",
            existing_user_id="user-1",
            csrf_token="b" * 64,
            created_at=now,
            expires_at=now + timedelta(minutes=10),
            requires_verification=True,
        )
        cache.client.getdel.return_value = json.dumps(pending.to_dict())

        popped = await cache.pop_pending_link("tok")

        assert popped == pending
        cache.client.getdel.assert_awaited_once_with("auth:link:tok")

    async def test_missing_state_returns_none(self):
        cache = _async_cache()
        cache.client.getdel.return_value = None

        assert await cache.pop_oauth_state("client-a", "google") is None

    async def test_rate_limit_hit_awaits_script(self):
        cache = _async_cache()
        now = utcnow()
        reset_ms = int((now + timedelta(minutes=15)).timestamp() * 1000)
        cache._rate_limit_script = AsyncMock(return_value=[1, 1, reset_ms, 0, 0])

        hit = await cache.hit_rate_limit("register:ip", 5, timedelta(minutes=15), None, now=now)

        assert hit.allowed is True
        assert hit.record.count == 1
        assert hit.record.locked_until is None
        cache._rate_limit_script.assert_awaited_once()
