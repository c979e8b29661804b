"""Tests for the cache module."""

import asyncio
import datetime
import json
import os
import shutil
import tempfile
import unittest

import pytz

from prayertime.cache import CacheKey, PrayerTimeCache, expiry_for
from prayertime.errors import RequestCancelled, TransientIO
from prayertime.models import CalculationMethod, Coordinate, Madhab, PrayerConfig, PrayerName, PrayerTimeSet

QOM = Coordinate(34.6401, 50.8764)
DAY = datetime.date(2024, 6, 21)
CONFIG = PrayerConfig(madhab=Madhab.JAFARI)


def make_set(day=DAY, tz_name="Asia/Tehran", maghrib_minute=0):
    tz = pytz.timezone(tz_name)
    clock = {
        PrayerName.FAJR: (3, 50),
        PrayerName.SUNRISE: (5, 30),
        PrayerName.DHUHR: (12, 40),
        PrayerName.ASR: (16, 30),
        PrayerName.MAGHRIB: (20, maghrib_minute),
        PrayerName.ISHA: (21, 30),
    }
    times = {p: tz.localize(datetime.datetime(day.year, day.month, day.day, h, m)) for p, (h, m) in clock.items()}
    return PrayerTimeSet.from_mapping(day, times, tz_name)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestCacheKey(unittest.TestCase):
    def test_nearby_coordinates_share_a_bucket(self):
        a = CacheKey.build(Coordinate(34.64012, 50.87641), DAY, CONFIG)
        b = CacheKey.build(Coordinate(34.64049, 50.87598), DAY, CONFIG)
        self.assertEqual(a, b)

    def test_settings_are_part_of_the_key(self):
        base = CacheKey.build(QOM, DAY, CONFIG)
        self.assertNotEqual(base, CacheKey.build(QOM, DAY, PrayerConfig(madhab=Madhab.HANAFI)))
        self.assertNotEqual(base, CacheKey.build(QOM, DAY, PrayerConfig(madhab=Madhab.JAFARI, use_astronomical_maghrib=True)))
        self.assertNotEqual(
            base, CacheKey.build(QOM, DAY, PrayerConfig(method=CalculationMethod.EGYPTIAN, madhab=Madhab.JAFARI))
        )
        self.assertNotEqual(base, CacheKey.build(QOM, DAY + datetime.timedelta(days=1), CONFIG))

    def test_relaxed_key_ignores_date(self):
        a = CacheKey.build(QOM, DAY, CONFIG)
        b = CacheKey.build(QOM, DAY - datetime.timedelta(days=3), CONFIG)
        self.assertEqual(a.relaxed, b.relaxed)


class TestStaleness(unittest.TestCase):
    def test_expiry_is_local_midnight_plus_grace(self):
        expires = expiry_for(make_set(tz_name="UTC"), datetime.timedelta(hours=4))
        self.assertEqual(expires, pytz.utc.localize(datetime.datetime(2024, 6, 22, 4, 0)))

    def test_get_evicts_stale_entries(self):
        clock = FakeClock(pytz.utc.localize(datetime.datetime(2024, 6, 21, 12, 0)))
        cache = PrayerTimeCache(clock=clock)
        key = CacheKey.build(QOM, DAY, CONFIG)
        cache.put(key, make_set())
        self.assertEqual(cache.get(key), make_set())

        clock.now = pytz.utc.localize(datetime.datetime(2024, 6, 23, 0, 0))
        self.assertIsNone(cache.get(key))
        self.assertEqual(len(cache), 0)
        self.assertEqual(cache.stats.evictions, 1)

    def test_sweep(self):
        clock = FakeClock(pytz.utc.localize(datetime.datetime(2024, 6, 21, 12, 0)))
        cache = PrayerTimeCache(clock=clock)
        old_day = DAY - datetime.timedelta(days=2)
        cache.put(CacheKey.build(QOM, old_day, CONFIG), make_set(old_day))
        cache.put(CacheKey.build(QOM, DAY, CONFIG), make_set())
        self.assertEqual(cache.sweep(), 1)
        self.assertEqual(len(cache), 1)


class TestCacheOperations(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(pytz.utc.localize(datetime.datetime(2024, 6, 21, 12, 0)))
        self.cache = PrayerTimeCache(clock=self.clock)
        self.key = CacheKey.build(QOM, DAY, CONFIG)

    def test_miss_then_hit(self):
        self.assertIsNone(self.cache.get(self.key))
        self.cache.put(self.key, make_set())
        self.assertIsNotNone(self.cache.get(self.key))
        self.assertEqual(self.cache.stats.misses, 1)
        self.assertEqual(self.cache.stats.hits, 1)
        self.assertEqual(self.cache.stats.hit_rate, 0.5)

    def test_put_overwrites(self):
        self.cache.put(self.key, make_set())
        self.cache.put(self.key, make_set(maghrib_minute=15))
        self.assertEqual(self.cache.get(self.key)[PrayerName.MAGHRIB].minute, 15)

    def test_stale_fallback_results_are_rejected(self):
        with self.assertRaises(ValueError):
            self.cache.put(self.key, make_set().as_stale_fallback())

    def test_invalidate_by_predicate(self):
        other = CacheKey.build(QOM, DAY, PrayerConfig(madhab=Madhab.HANAFI))
        self.cache.put(self.key, make_set())
        self.cache.put(other, make_set())
        removed = self.cache.invalidate(lambda key: key.madhab == "hanafi")
        self.assertEqual(removed, 1)
        self.assertIn(self.key, self.cache)
        self.assertNotIn(other, self.cache)
        self.assertIsNone(self.cache.find_fallback(other))

    def test_clear(self):
        self.cache.put(self.key, make_set())
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)
        self.assertIsNone(self.cache.find_fallback(self.key))


class TestFindFallback(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(pytz.utc.localize(datetime.datetime(2024, 6, 19, 12, 0)))
        self.cache = PrayerTimeCache(clock=self.clock)

    def test_closest_prior_date_wins(self):
        for offset in (3, 1):
            day = DAY - datetime.timedelta(days=offset)
            self.cache.put(CacheKey.build(QOM, day, CONFIG), make_set(day))
        fallback = self.cache.find_fallback(CacheKey.build(QOM, DAY, CONFIG))
        self.assertEqual(fallback.date, DAY - datetime.timedelta(days=1))
        self.assertTrue(fallback.stale_fallback)

    def test_ignores_later_dates_and_other_settings(self):
        later = DAY + datetime.timedelta(days=1)
        self.cache.put(CacheKey.build(QOM, later, CONFIG), make_set(later))
        hanafi = PrayerConfig(madhab=Madhab.HANAFI)
        self.cache.put(CacheKey.build(QOM, DAY, hanafi), make_set())
        self.assertIsNone(self.cache.find_fallback(CacheKey.build(QOM, DAY, CONFIG)))

    def test_stale_entries_remain_available_as_fallback(self):
        old_day = DAY - datetime.timedelta(days=2)
        key = CacheKey.build(QOM, old_day, CONFIG)
        self.cache.put(key, make_set(old_day))
        self.clock.now = pytz.utc.localize(datetime.datetime(2024, 6, 21, 12, 0))
        self.assertIsNone(self.cache.get(key))
        fallback = self.cache.find_fallback(CacheKey.build(QOM, DAY, CONFIG))
        self.assertEqual(fallback.date, old_day)


class TestPersistence(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.clock = FakeClock(pytz.utc.localize(datetime.datetime(2024, 6, 21, 12, 0)))

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def test_entries_survive_a_restart(self):
        key = CacheKey.build(QOM, DAY, CONFIG)
        PrayerTimeCache(clock=self.clock, persist_dir=self._tmpdir).put(key, make_set())
        self.assertEqual(len(os.listdir(self._tmpdir)), 1)

        reloaded = PrayerTimeCache(clock=self.clock, persist_dir=self._tmpdir)
        self.assertEqual(reloaded.get(key), make_set())

    def test_stale_files_load_as_fallback_only(self):
        key = CacheKey.build(QOM, DAY, CONFIG)
        PrayerTimeCache(clock=self.clock, persist_dir=self._tmpdir).put(key, make_set())

        self.clock.now = pytz.utc.localize(datetime.datetime(2024, 6, 25, 12, 0))
        reloaded = PrayerTimeCache(clock=self.clock, persist_dir=self._tmpdir)
        self.assertIsNone(reloaded.get(key))
        later = CacheKey.build(QOM, datetime.date(2024, 6, 25), CONFIG)
        self.assertEqual(reloaded.find_fallback(later).date, DAY)

    def test_corrupt_files_are_skipped(self):
        with open(os.path.join(self._tmpdir, "broken.json"), "w") as f:
            f.write("not valid json")
        with open(os.path.join(self._tmpdir, "partial.json"), "w") as f:
            json.dump({"key": {}}, f)
        with self.assertLogs("prayertime.cache", level="ERROR"):
            cache = PrayerTimeCache(clock=self.clock, persist_dir=self._tmpdir)
        self.assertEqual(len(cache), 0)

    def test_invalidate_removes_file(self):
        cache = PrayerTimeCache(clock=self.clock, persist_dir=self._tmpdir)
        key = CacheKey.build(QOM, DAY, CONFIG)
        cache.put(key, make_set())
        cache.invalidate(lambda k: True)
        self.assertEqual(os.listdir(self._tmpdir), [])


class TestSingleFlight(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.cache = PrayerTimeCache(clock=FakeClock(pytz.utc.localize(datetime.datetime(2024, 6, 21, 12, 0))))
        self.key = CacheKey.build(QOM, DAY, CONFIG)
        self.calls = 0
        self.release = asyncio.Event()

    async def compute(self):
        self.calls += 1
        await self.release.wait()
        return make_set()

    async def test_concurrent_requests_share_one_computation(self):
        waiters = [asyncio.create_task(self.cache.get_or_compute(self.key, self.compute)) for _ in range(10)]
        await asyncio.sleep(0)
        self.release.set()
        results = await asyncio.gather(*waiters)

        self.assertEqual(self.calls, 1)
        self.assertTrue(all(r == results[0] for r in results))
        self.assertEqual(self.cache.stats.computations, 1)
        self.assertEqual(self.cache.stats.deduplicated, 9)
        self.assertIsNotNone(self.cache.get(self.key))

    async def test_second_call_is_a_cache_hit(self):
        self.release.set()
        first = await self.cache.get_or_compute(self.key, self.compute)
        second = await self.cache.get_or_compute(self.key, self.compute)
        self.assertEqual(first, second)
        self.assertEqual(self.calls, 1)

    async def test_failures_reach_every_waiter_and_are_not_cached(self):
        async def failing():
            self.calls += 1
            await self.release.wait()
            raise TransientIO("down")

        waiters = [asyncio.create_task(self.cache.get_or_compute(self.key, failing)) for _ in range(3)]
        await asyncio.sleep(0)
        self.release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)
        self.assertTrue(all(isinstance(r, TransientIO) for r in results))
        self.assertEqual(self.calls, 1)
        self.assertIsNone(self.cache.get(self.key))

    async def test_cancel_token_detaches_only_that_caller(self):
        token = asyncio.Event()
        initiator = asyncio.create_task(self.cache.get_or_compute(self.key, self.compute, cancel=token))
        await asyncio.sleep(0)
        follower = asyncio.create_task(self.cache.get_or_compute(self.key, self.compute))
        await asyncio.sleep(0)

        token.set()
        with self.assertRaises(RequestCancelled):
            await initiator
        self.release.set()
        result = await follower
        self.assertEqual(result, make_set())
        self.assertEqual(self.calls, 1)

    async def test_task_cancellation_detaches_only_that_caller(self):
        initiator = asyncio.create_task(self.cache.get_or_compute(self.key, self.compute))
        await asyncio.sleep(0)
        follower = asyncio.create_task(self.cache.get_or_compute(self.key, self.compute))
        await asyncio.sleep(0)

        initiator.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await initiator
        self.release.set()
        self.assertEqual(await follower, make_set())

    async def test_computation_stops_when_every_caller_leaves(self):
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await asyncio.sleep(3600)
            finished.append(True)
            return make_set()

        token = asyncio.Event()
        waiter = asyncio.create_task(self.cache.get_or_compute(self.key, slow, cancel=token))
        await started.wait()
        token.set()
        with self.assertRaises(RequestCancelled):
            await waiter
        await asyncio.sleep(0)
        self.assertEqual(finished, [])
        self.assertIsNone(self.cache.get(self.key))

    async def test_already_cancelled_token(self):
        token = asyncio.Event()
        token.set()
        with self.assertRaises(RequestCancelled):
            await self.cache.get_or_compute(self.key, self.compute, cancel=token)
        self.assertEqual(self.calls, 0)


if __name__ == "__main__":
    unittest.main()
