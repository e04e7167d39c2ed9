"""
cache/target_cache.py

TTL cache for resolved daily targets.

  key:        targets:{user_id}:{YYYY-MM-DD}
  value:      JSON-serialised TargetVector
  TTL:        TARGET_CACHE_TTL_SECONDS (default 5 minutes)
  generation: targets-gen:{user_id}, bumped on every invalidation

Any goal-layer mutation for a user drops every cached date for that user
and bumps the user's generation. A resolver reads the generation before it
resolves and passes it to set(); the write is skipped when the generation
has moved in between, so a fill can never resurrect pre-mutation targets.

Two backends:

1. InMemoryTargetCache — per-process dict sharded by user id, one lock per
   shard. Entries are immutable (targets, expires_at) tuples, so a reader
   holding the lock never sees half an entry. Each shard keeps an expiry
   heap and set() evicts whatever has lapsed, so keys that are never read
   again do not pile up.

2. RedisTargetCache — shared across processes. SETEX per key, generation
   check under WATCH, per-user invalidation via SCAN over the user's
   escaped key prefix. Redis failures log a warning and behave like a cache
   miss (degraded but functional).
"""

from __future__ import annotations

import heapq
import logging
import os
import re
import threading
import time
import zlib
from datetime import date
from typing import Any, Callable, Optional, Protocol

import redis
from pydantic import ValidationError

from schemas.nutrition_schemas import TargetVector

logger = logging.getLogger(__name__)


REDIS_URL: Optional[str]       = os.getenv("REDIS_URL")
TARGET_CACHE_TTL_SECONDS: int  = int(os.getenv("TARGET_CACHE_TTL_SECONDS", "300"))
TARGET_CACHE_SHARDS: int       = int(os.getenv("TARGET_CACHE_SHARDS", "16"))
KEY_PREFIX                     = "targets"
GENERATION_PREFIX              = "targets-gen"

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def cache_key(user_id: str, day: date) -> str:
    return f"{KEY_PREFIX}:{user_id}:{day.isoformat()}"


def generation_key(user_id: str) -> str:
    return f"{GENERATION_PREFIX}:{user_id}"


def user_key_pattern(user_id: str) -> str:
    """
    SCAN pattern matching exactly one user's dated keys.

    Glob metacharacters in the id are escaped and the date part is fixed
    width, so "a" never matches keys of a user called "a:b".
    """
    escaped = _GLOB_SPECIAL.sub(r"\\\1", user_id)
    return f"{KEY_PREFIX}:{escaped}:????-??-??"


class TargetCache(Protocol):
    def get(self, user_id: str, day: date) -> Optional[TargetVector]: ...
    def generation(self, user_id: str) -> int: ...
    def set(self, user_id: str, day: date, targets: TargetVector, generation: Optional[int] = None) -> None: ...
    def invalidate_user(self, user_id: str) -> int: ...


# ═══════════════════════════════════════════════════════════════
# IN-PROCESS
# ═══════════════════════════════════════════════════════════════

class InMemoryTargetCache:

    def __init__(
        self,
        ttl_seconds: float = TARGET_CACHE_TTL_SECONDS,
        shards: int = TARGET_CACHE_SHARDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.ttl_seconds = ttl_seconds
        self._clock      = clock
        # shard -> user_id -> date -> (targets, expires_at)
        self._shards: list[dict[str, dict[date, tuple[TargetVector, float]]]] = [{} for _ in range(shards)]
        self._expiry: list[list[tuple[float, str, date]]] = [[] for _ in range(shards)]
        self._generations: list[dict[str, int]] = [{} for _ in range(shards)]
        self._locks  = [threading.Lock() for _ in range(shards)]

    def __len__(self) -> int:
        total = 0
        for idx, lock in enumerate(self._locks):
            with lock:
                total += sum(len(by_date) for by_date in self._shards[idx].values())
        return total

    def _shard(self, user_id: str) -> int:
        return zlib.crc32(user_id.encode("utf-8")) % len(self._shards)

    def _evict_expired(self, idx: int, now: float) -> None:
        # caller holds self._locks[idx]
        heap    = self._expiry[idx]
        entries = self._shards[idx]
        while heap and heap[0][0] <= now:
            expires_at, user_id, day = heapq.heappop(heap)
            by_date = entries.get(user_id)
            entry   = by_date.get(day) if by_date else None
            # a later set() for the same key leaves a stale heap item behind
            if entry is not None and entry[1] == expires_at:
                del by_date[day]
                if not by_date:
                    del entries[user_id]

    def get(self, user_id: str, day: date) -> Optional[TargetVector]:
        idx = self._shard(user_id)
        with self._locks[idx]:
            by_date = self._shards[idx].get(user_id)
            entry   = by_date.get(day) if by_date else None
            if entry is None:
                return None
            targets, expires_at = entry
            if self._clock() >= expires_at:
                del by_date[day]
                if not by_date:
                    del self._shards[idx][user_id]
                return None
            return targets

    def generation(self, user_id: str) -> int:
        idx = self._shard(user_id)
        with self._locks[idx]:
            return self._generations[idx].get(user_id, 0)

    def set(self, user_id: str, day: date, targets: TargetVector, generation: Optional[int] = None) -> None:
        idx = self._shard(user_id)
        now = self._clock()
        expires_at = now + self.ttl_seconds
        with self._locks[idx]:
            self._evict_expired(idx, now)
            if generation is not None and self._generations[idx].get(user_id, 0) != generation:
                logger.debug("Skipping stale cache fill for %s on %s", user_id, day)
                return
            self._shards[idx].setdefault(user_id, {})[day] = (targets, expires_at)
            heapq.heappush(self._expiry[idx], (expires_at, user_id, day))

    def invalidate_user(self, user_id: str) -> int:
        idx = self._shard(user_id)
        with self._locks[idx]:
            generations = self._generations[idx]
            generations[user_id] = generations.get(user_id, 0) + 1
            dropped = self._shards[idx].pop(user_id, None)
        count = len(dropped) if dropped else 0
        logger.debug("Invalidated %d cached target(s) for user %s", count, user_id)
        return count

    def clear(self) -> None:
        for idx, lock in enumerate(self._locks):
            with lock:
                self._shards[idx].clear()
                self._expiry[idx].clear()


# ═══════════════════════════════════════════════════════════════
# REDIS
# ═══════════════════════════════════════════════════════════════

class RedisTargetCache:
    """
    Thin wrapper around redis.Redis.
    Reads return None and writes are skipped when Redis is unreachable.
    """

    def __init__(
        self,
        url: Optional[str] = REDIS_URL,
        ttl_seconds: int = TARGET_CACHE_TTL_SECONDS,
        client: Optional[Any] = None,
    ) -> None:
        self.ttl_seconds = int(ttl_seconds)
        self._client: Optional[Any] = client
        if self._client is None and url:
            try:
                self._client = redis.from_url(url, decode_responses=True)
                self._client.ping()
                logger.info("Redis connected: %s", url)
            except redis.RedisError as e:
                logger.warning("Redis unavailable (%s). Target caching disabled.", e)
                self._client = None

    @property
    def available(self) -> bool:
        return self._client is not None

    def get(self, user_id: str, day: date) -> Optional[TargetVector]:
        if not self.available:
            return None
        key = cache_key(user_id, day)
        try:
            data = self._client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None
        if not data:
            return None
        try:
            return TargetVector.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Discarding unreadable cached targets %s: %s", key, e)
            return None

    def generation(self, user_id: str) -> int:
        if not self.available:
            return 0
        try:
            return int(self._client.get(generation_key(user_id)) or 0)
        except redis.RedisError as e:
            logger.warning("Redis generation read for %s failed: %s", user_id, e)
            return 0

    def set(self, user_id: str, day: date, targets: TargetVector, generation: Optional[int] = None) -> None:
        if not self.available:
            return
        key     = cache_key(user_id, day)
        payload = targets.model_dump_json()
        try:
            if generation is None:
                self._client.setex(key, self.ttl_seconds, payload)
                return
            gen_key = generation_key(user_id)
            with self._client.pipeline() as pipe:
                pipe.watch(gen_key)
                if int(pipe.get(gen_key) or 0) != generation:
                    logger.debug("Skipping stale cache fill for %s", key)
                    return
                pipe.multi()
                pipe.setex(key, self.ttl_seconds, payload)
                pipe.execute()
        except redis.WatchError:
            logger.debug("Generation for %s moved during fill of %s, skipped", user_id, key)
        except redis.RedisError as e:
            logger.warning("Redis setex %s failed: %s", key, e)

    def invalidate_user(self, user_id: str) -> int:
        if not self.available:
            return 0
        pattern = user_key_pattern(user_id)
        try:
            self._client.incr(generation_key(user_id))
            keys = list(self._client.scan_iter(match=pattern))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Redis invalidation of %s failed: %s", pattern, e)
            return 0
        return len(keys)


# ── Factory ───────────────────────────────────────────────────────────────────

def build_target_cache(url: Optional[str] = REDIS_URL) -> TargetCache:
    """Redis when REDIS_URL is set and reachable, otherwise in-process."""
    if url:
        shared = RedisTargetCache(url)
        if shared.available:
            return shared
    return InMemoryTargetCache()
