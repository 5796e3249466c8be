"""
Tests for the per-user refresh lock.
"""

import asyncio

import pytest

from app.config import settings
from app.services import refresh_lock
from app.services.refresh_lock import RefreshLock, RefreshLockTimeout

pytestmark = pytest.mark.anyio


class FakeRedis:
    """Just enough of redis.asyncio for SET NX PX and the release script."""

    def __init__(self, fail_on_set: bool = False):
        self.store = {}
        self.px = {}
        self.fail_on_set = fail_on_set

    async def set(self, key, value, nx=False, px=None):
        if self.fail_on_set:
            raise ConnectionError("redis went away")
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.px[key] = px
        return True

    async def eval(self, script, numkeys, key, owner):
        if self.store.get(key) == owner:
            del self.store[key]
            return 1
        return 0


@pytest.fixture
def fake_redis(monkeypatch):
    redis = FakeRedis()

    async def _get_redis():
        return redis

    monkeypatch.setattr(refresh_lock, "get_redis", _get_redis)
    return redis


def test_ttl_outlasts_worst_case_provider_call():
    lock = RefreshLock()
    assert lock.ttl > 4 * settings.http_timeout_seconds


async def test_redis_lock_sets_key_with_ttl_and_releases(fake_redis):
    lock = RefreshLock(ttl=150)

    async with lock.hold("user-1"):
        assert "refresh_lock:salla:user-1" in fake_redis.store
        assert fake_redis.px["refresh_lock:salla:user-1"] == 150_000

    assert fake_redis.store == {}


async def test_redis_lock_times_out_while_held(fake_redis):
    async with RefreshLock().hold("user-1"):
        with pytest.raises(RefreshLockTimeout):
            async with RefreshLock(timeout=0.05, poll_interval=0.01).hold("user-1"):
                pass


async def test_redis_lock_waits_for_release(fake_redis):
    order = []

    async def worker(name, delay):
        await asyncio.sleep(delay)
        async with RefreshLock(timeout=1, poll_interval=0.01).hold("user-1"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.03)
            order.append(f"{name}:out")

    await asyncio.gather(worker("a", 0), worker("b", 0.01))

    assert order == ["a:in", "a:out", "b:in", "b:out"]


async def test_release_leaves_key_owned_by_someone_else(fake_redis):
    async with RefreshLock().hold("user-1"):
        # Our key expired and another worker took it
        fake_redis.store["refresh_lock:salla:user-1"] = "other-owner"

    assert fake_redis.store["refresh_lock:salla:user-1"] == "other-owner"


async def test_redis_error_falls_back_to_local_lock(fake_redis):
    fake_redis.fail_on_set = True
    entered = False

    async with RefreshLock(timeout=1).hold("user-1"):
        entered = True

    assert entered
    assert fake_redis.store == {}
