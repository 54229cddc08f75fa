import asyncio

from roastauth.config import Settings
from roastauth.service import runtime as runtime_module
from roastauth.storage.memory import MemoryCache
from roastauth.storage.redis_cache import RedisCache, SyncRedisCache


class _BrokenCache(MemoryCache):
    def __init__(self):
        super().__init__()
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        raise OSError("connection reset")


async def test_close_inside_running_loop_is_tracked_and_collected():
    cache = _BrokenCache()

    runtime_module._close_cache(cache)
    assert len(runtime_module._pending_closes) == 1

    await asyncio.gather(*runtime_module._pending_closes, return_exceptions=True)
    await asyncio.sleep(0)

    assert cache.closed is True
    assert not runtime_module._pending_closes


def test_close_without_loop_runs_to_completion():
    cache = MemoryCache()

    runtime_module._close_cache(cache)

    assert not runtime_module._pending_closes


def _no_ping(self) -> None:
    return None


def test_sync_redis_client_only_in_test_mode(monkeypatch):
    monkeypatch.setattr(RedisCache, "verify_connection", _no_ping)
    monkeypatch.setattr(SyncRedisCache, "verify_connection", _no_ping)

    served = runtime_module._select_cache(Settings(redis_url="redis://localhost:6379/0", test_mode=False))
    tested = runtime_module._select_cache(Settings(redis_url="redis://localhost:6379/0", test_mode=True))

    assert type(served) is RedisCache
    assert type(tested) is SyncRedisCache
