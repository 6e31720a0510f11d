from __future__ import annotations

import threading

import pytest
import redis

from nexusbot.config import Settings
from nexusbot.domain import Center


class _FakeLock:
    def __init__(self, lock: threading.Lock):
        self._lock = lock

    def acquire(self) -> bool:
        return self._lock.acquire(timeout=5)

    def release(self) -> None:
        self._lock.release()


class _FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._calls: list[tuple[str, tuple]] = []

    def __enter__(self) -> "_FakePipeline":
        return self

    def __exit__(self, *exc) -> None:
        self._calls = []

    def __getattr__(self, name: str):
        def _queue(*args):
            self._calls.append((name, args))
            return self

        return _queue

    def execute(self) -> list:
        self._client._check()
        results = [getattr(self._client, name)(*args) for name, args in self._calls]
        self._calls = []
        return results


class FakeRedis:
    """Just enough of redis.Redis (decode_responses=True) for the store and registry."""

    def __init__(self):
        self.sets: dict[str, set[str]] = {}
        self.hashes: dict[str, dict[str, int]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self.lock_timeouts: dict[str, float | None] = {}
        self._guard = threading.Lock()
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def ping(self) -> bool:
        self._check()
        return True

    def smembers(self, key: str) -> set[str]:
        self._check()
        return set(self.sets.get(key, set()))

    def sadd(self, key: str, *members: str) -> int:
        self._check()
        with self._guard:
            s = self.sets.setdefault(key, set())
            before = len(s)
            s.update(members)
            return len(s) - before

    def srem(self, key: str, *members: str) -> int:
        self._check()
        with self._guard:
            s = self.sets.get(key, set())
            removed = len(s & set(members))
            s.difference_update(members)
            return removed

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check()
        with self._guard:
            h = self.hashes.setdefault(key, {})
            h[field] = h.get(field, 0) + amount
            return h[field]

    def hdel(self, key: str, *fields: str) -> int:
        self._check()
        with self._guard:
            h = self.hashes.get(key, {})
            return sum(1 for f in fields if h.pop(f, None) is not None)

    def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return {k: str(v) for k, v in self.hashes.get(key, {}).items()}

    def pipeline(self) -> _FakePipeline:
        return _FakePipeline(self)

    def lock(self, name: str, timeout: float | None = None, blocking_timeout: float | None = None) -> _FakeLock:
        self._check()
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
            self.lock_timeouts[name] = timeout
        return _FakeLock(lock)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_down() -> Exception:
    return redis.ConnectionError("Connection refused")


@pytest.fixture
def ny() -> Center:
    return Center(id="NY", display_name="Champlain NY Enrollment Center", location_code=5000)


@pytest.fixture
def settings() -> Settings:
    # No real tokens or chat ids: tests must not send anything over the network.
    return Settings(
        telegram_bot_token="TEST_TOKEN",
        telegram_admin_chat_id=None,
        check_interval_seconds=1,
        max_concurrency=4,
        permanent_error_backoff_ticks=2,
    )
