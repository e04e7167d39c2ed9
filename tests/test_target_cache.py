from __future__ import annotations

import unittest
from datetime import date
from fnmatch import fnmatchcase
from unittest.mock import MagicMock

import redis

from cache.target_cache import (
    InMemoryTargetCache, RedisTargetCache, build_target_cache, cache_key,
    user_key_pattern,
)
from schemas.nutrition_schemas import TargetVector

TARGETS = TargetVector(calories=2000, protein_g=100, carbs_g=250, fat_g=70, micronutrients={"iron_mg": 18})
DAY     = date(2024, 3, 4)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryTargetCache(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.cache = InMemoryTargetCache(ttl_seconds=300, shards=4, clock=self.clock)

    def test_hit_until_ttl_expires(self) -> None:
        self.cache.set("u1", DAY, TARGETS)
        self.clock.now += 299
        self.assertEqual(self.cache.get("u1", DAY), TARGETS)
        self.clock.now += 1
        self.assertIsNone(self.cache.get("u1", DAY))

    def test_invalidate_user_drops_every_date_for_that_user_only(self) -> None:
        self.cache.set("u1", DAY, TARGETS)
        self.cache.set("u1", date(2024, 3, 5), TARGETS)
        self.cache.set("u2", DAY, TARGETS)

        self.assertEqual(self.cache.invalidate_user("u1"), 2)
        self.assertIsNone(self.cache.get("u1", DAY))
        self.assertEqual(self.cache.get("u2", DAY), TARGETS)
        self.assertEqual(self.cache.invalidate_user("nobody"), 0)

    def test_fill_is_skipped_when_generation_moved(self) -> None:
        generation = self.cache.generation("u1")
        self.cache.invalidate_user("u1")
        self.cache.set("u1", DAY, TARGETS, generation=generation)
        self.assertIsNone(self.cache.get("u1", DAY))

        self.cache.set("u1", DAY, TARGETS, generation=self.cache.generation("u1"))
        self.assertEqual(self.cache.get("u1", DAY), TARGETS)

    def test_expired_entries_are_evicted_without_reads(self) -> None:
        for offset in range(1000):
            self.cache.set(f"user-{offset}", DAY, TARGETS)
            self.clock.now += 301
        # at most the newest entry per shard survives
        self.assertLessEqual(len(self.cache), 4)

    def test_refreshed_entry_survives_eviction_of_its_old_expiry(self) -> None:
        self.cache.set("u1", DAY, TARGETS)
        self.clock.now += 200
        self.cache.set("u1", DAY, TARGETS)
        self.clock.now += 150
        self.cache.set("u2", DAY, TARGETS)
        self.assertEqual(self.cache.get("u1", DAY), TARGETS)
        self.assertEqual(len(self.cache), 2)

    def test_clear(self) -> None:
        self.cache.set("u1", DAY, TARGETS)
        self.cache.clear()
        self.assertIsNone(self.cache.get("u1", DAY))

    def test_rejects_zero_shards(self) -> None:
        with self.assertRaises(ValueError):
            InMemoryTargetCache(shards=0)


class TestRedisTargetCache(unittest.TestCase):
    def setUp(self) -> None:
        self.client = MagicMock()
        self.cache  = RedisTargetCache(ttl_seconds=120, client=self.client)

    def test_key_format(self) -> None:
        self.assertEqual(cache_key("u1", DAY), "targets:u1:2024-03-04")

    def test_set_uses_setex_with_ttl(self) -> None:
        self.cache.set("u1", DAY, TARGETS)
        self.client.setex.assert_called_once_with("targets:u1:2024-03-04", 120, TARGETS.model_dump_json())

    def test_get_parses_cached_json(self) -> None:
        self.client.get.return_value = TARGETS.model_dump_json()
        self.assertEqual(self.cache.get("u1", DAY), TARGETS)

    def test_unreadable_payload_is_a_miss(self) -> None:
        self.client.get.return_value = '{"calories": -1}'
        with self.assertLogs("cache.target_cache", level="WARNING"):
            self.assertIsNone(self.cache.get("u1", DAY))

    def test_invalidate_user_scans_prefix(self) -> None:
        self.client.scan_iter.return_value = iter(["targets:u1:2024-03-04", "targets:u1:2024-03-05"])
        self.assertEqual(self.cache.invalidate_user("u1"), 2)
        self.client.incr.assert_called_once_with("targets-gen:u1")
        self.client.scan_iter.assert_called_once_with(match="targets:u1:????-??-??")
        self.client.delete.assert_called_once_with("targets:u1:2024-03-04", "targets:u1:2024-03-05")

    def test_user_pattern_escapes_glob_characters(self) -> None:
        self.assertEqual(user_key_pattern("a*b?[c]"), r"targets:a\*b\?\[c\]:????-??-??")
        self.assertEqual(user_key_pattern("a\\b"), r"targets:a\\b:????-??-??")
        self.assertTrue(fnmatchcase("targets:a:2024-03-04", user_key_pattern("a")))
        self.assertFalse(fnmatchcase("targets:a:b:2024-03-04", user_key_pattern("a")))

    def test_generation_reads_counter(self) -> None:
        self.client.get.return_value = "3"
        self.assertEqual(self.cache.generation("u1"), 3)
        self.client.get.assert_called_once_with("targets-gen:u1")
        self.client.get.return_value = None
        self.assertEqual(self.cache.generation("u2"), 0)

    def test_guarded_fill_writes_inside_transaction(self) -> None:
        pipe = MagicMock()
        pipe.get.return_value = "2"
        self.client.pipeline.return_value.__enter__.return_value = pipe

        self.cache.set("u1", DAY, TARGETS, generation=2)
        pipe.watch.assert_called_once_with("targets-gen:u1")
        pipe.multi.assert_called_once_with()
        pipe.setex.assert_called_once_with("targets:u1:2024-03-04", 120, TARGETS.model_dump_json())
        pipe.execute.assert_called_once_with()
        self.client.setex.assert_not_called()

    def test_guarded_fill_skipped_when_generation_moved(self) -> None:
        pipe = MagicMock()
        pipe.get.return_value = "3"
        self.client.pipeline.return_value.__enter__.return_value = pipe

        self.cache.set("u1", DAY, TARGETS, generation=2)
        pipe.setex.assert_not_called()

        pipe.get.return_value = "2"
        pipe.execute.side_effect = redis.WatchError("changed")
        self.cache.set("u1", DAY, TARGETS, generation=2)
        self.client.setex.assert_not_called()

    def test_redis_errors_degrade_to_miss(self) -> None:
        self.client.get.side_effect = redis.ConnectionError("down")
        self.client.setex.side_effect = redis.ConnectionError("down")
        self.client.scan_iter.side_effect = redis.ConnectionError("down")
        with self.assertLogs("cache.target_cache", level="WARNING"):
            self.assertIsNone(self.cache.get("u1", DAY))
            self.cache.set("u1", DAY, TARGETS)
            self.assertEqual(self.cache.invalidate_user("u1"), 0)

    def test_without_client_everything_is_a_noop(self) -> None:
        cache = RedisTargetCache(url=None)
        self.assertFalse(cache.available)
        self.assertIsNone(cache.get("u1", DAY))
        self.assertEqual(cache.invalidate_user("u1"), 0)

    def test_factory_falls_back_to_memory(self) -> None:
        self.assertIsInstance(build_target_cache(None), InMemoryTargetCache)


if __name__ == "__main__":
    unittest.main()
