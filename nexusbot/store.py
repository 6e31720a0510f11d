from __future__ import annotations

import datetime as dt
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ContextManager, Iterable, Iterator

import redis
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from nexusbot.domain import Center, StoreError, key_date

logger = logging.getLogger(__name__)


class SeenSlotStore(ABC):
    @abstractmethod
    def ping(self) -> None:
        """Raise StoreError if the backend is unreachable."""

    @abstractmethod
    def get(self, center: Center) -> set[str]:
        """Return the slot keys already announced for `center`."""

    @abstractmethod
    def mark_seen(self, center: Center, keys: Iterable[str]) -> None:
        """Add keys to the seen set. Re-marking a key is a no-op."""

    @abstractmethod
    def prune(self, center: Center, before_date: dt.date) -> set[str]:
        """Drop keys dated before `before_date`; return what was dropped."""

    @abstractmethod
    def record_misses(self, center: Center, missing: Iterable[str], present: Iterable[str]) -> dict[str, int]:
        """Bump the consecutive-miss counter of `missing`, reset it for `present`."""

    @abstractmethod
    def forget(self, center: Center, keys: Iterable[str]) -> None:
        """Remove keys from the seen set along with their miss counters."""

    @abstractmethod
    def lock(self, center: Center, timeout: float | None = None) -> ContextManager[None]:
        """Hold the single-writer lock for `center` for the duration of the block.

        `timeout` bounds how long the lock may be held before it expires on its own.
        """


class RedisSeenSlotStore(SeenSlotStore):
    """Seen-slot sets in Redis, one set and one miss-counter hash per center."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "nexus:", lock_timeout_seconds: int = 60):
        self._redis = client
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout_seconds

    def _seen_key(self, center: Center) -> str:
        return f"{self._prefix}seen:{center.id}"

    def _missing_key(self, center: Center) -> str:
        return f"{self._prefix}missing:{center.id}"

    def _lock_key(self, center: Center) -> str:
        return f"{self._prefix}lock:{center.id}"

    def ping(self) -> None:
        try:
            self._redis.ping()
        except redis.RedisError as e:
            raise StoreError(f"Redis is unreachable ({type(e).__name__}: {e})") from e

    def get(self, center: Center) -> set[str]:
        try:
            return {str(k) for k in self._redis.smembers(self._seen_key(center))}
        except redis.RedisError as e:
            raise StoreError(f"Failed to read seen slots for {center.id}: {e}") from e

    def mark_seen(self, center: Center, keys: Iterable[str]) -> None:
        keys = sorted(set(keys))
        if not keys:
            return
        try:
            self._redis.sadd(self._seen_key(center), *keys)
        except redis.RedisError as e:
            raise StoreError(f"Failed to mark slots seen for {center.id}: {e}") from e

    def prune(self, center: Center, before_date: dt.date) -> set[str]:
        stale = {k for k in self.get(center) if key_date(k) < before_date}
        if stale:
            self.forget(center, stale)
            logger.info("Pruned %d stale slot key(s) for %s", len(stale), center.id)
        return stale

    def record_misses(self, center: Center, missing: Iterable[str], present: Iterable[str]) -> dict[str, int]:
        missing = sorted(set(missing))
        present = sorted(set(present))
        hkey = self._missing_key(center)
        try:
            with self._redis.pipeline() as pipe:
                if present:
                    pipe.hdel(hkey, *present)
                for k in missing:
                    pipe.hincrby(hkey, k, 1)
                results = pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to record missing slots for {center.id}: {e}") from e

        counts = results[1:] if present else results
        return {k: int(c) for k, c in zip(missing, counts)}

    def forget(self, center: Center, keys: Iterable[str]) -> None:
        keys = sorted(set(keys))
        if not keys:
            return
        try:
            with self._redis.pipeline() as pipe:
                pipe.srem(self._seen_key(center), *keys)
                pipe.hdel(self._missing_key(center), *keys)
                pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to forget slots for {center.id}: {e}") from e

    @contextmanager
    def lock(self, center: Center, timeout: float | None = None) -> Iterator[None]:
        try:
            lock = self._redis.lock(
                self._lock_key(center),
                timeout=timeout or self._lock_timeout,
                blocking_timeout=self._lock_timeout,
            )
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise StoreError(f"Failed to lock {center.id}: {e}") from e
        if not acquired:
            raise StoreError(f"Timed out waiting for the lock on {center.id}")

        try:
            yield
        finally:
            try:
                lock.release()
            except redis.RedisError:
                # Lock expired while we held it; the next holder is already in.
                logger.warning("Lock for %s expired before release", center.id)


def _log_connect_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        logger.warning(
            "Redis connection attempt %s failed (%s)",
            retry_state.attempt_number,
            retry_state.outcome.exception(),
        )


def connect_redis(url: str, *, attempts: int = 3) -> redis.Redis:
    """Open a Redis client and make sure the server answers.

    Raises StoreError after `attempts` failed pings; callers treat that as fatal.
    """

    client = redis.Redis.from_url(url, decode_responses=True)

    decorated = retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(redis.RedisError),
        after=_log_connect_attempt,
        reraise=True,
    )(client.ping)

    try:
        decorated()
    except redis.RedisError as e:
        raise StoreError(f"Cannot reach Redis at {url} ({type(e).__name__}: {e})") from e

    logger.info("Connected to Redis at %s", url)
    return client
