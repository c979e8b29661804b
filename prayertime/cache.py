"""In-memory prayer time cache with staleness, single-flight computation and optional JSON persistence."""

import asyncio
import datetime
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass

import pytz

from prayertime.errors import RequestCancelled
from prayertime.models import Coordinate, PrayerConfig, PrayerTimeSet

logger = logging.getLogger(__name__)

DEFAULT_PRECISION = 3
DEFAULT_GRACE = datetime.timedelta(hours=4)
LAST_KNOWN_GOOD_DAYS = 7


@dataclass(frozen=True)
class CacheKey:
    latitude: float
    longitude: float
    date: datetime.date
    method: str
    madhab: str
    mode: str

    @classmethod
    def build(cls, coordinate: Coordinate, date: datetime.date, config: PrayerConfig, precision: int = DEFAULT_PRECISION):
        lat, lon = coordinate.bucket(precision)
        return cls(lat, lon, date, config.method.key, config.madhab.key, config.adjustment_mode)

    @property
    def relaxed(self) -> tuple:
        """Everything but the date: entries sharing this can stand in for each other when degraded."""
        return (self.latitude, self.longitude, self.method, self.madhab, self.mode)

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "date": self.date.isoformat(),
            "method": self.method,
            "madhab": self.madhab,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheKey":
        return cls(
            float(data["latitude"]),
            float(data["longitude"]),
            datetime.date.fromisoformat(data["date"]),
            data["method"],
            data["madhab"],
            data["mode"],
        )

    def __str__(self):
        return f"{self.latitude},{self.longitude}@{self.date.isoformat()}/{self.method}/{self.madhab}/{self.mode}"


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    value: PrayerTimeSet
    computed_at: datetime.datetime
    expires_at: datetime.datetime

    def is_stale(self, now: datetime.datetime) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStatistics:
    hits: int = 0
    misses: int = 0
    computations: int = 0
    deduplicated: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(pytz.utc)


def expiry_for(value: PrayerTimeSet, grace: datetime.timedelta = DEFAULT_GRACE) -> datetime.datetime:
    """End of the set's local day plus ``grace``, as an aware UTC datetime."""
    tz = pytz.timezone(value.timezone)
    next_midnight = tz.localize(datetime.datetime.combine(value.date + datetime.timedelta(days=1), datetime.time()))
    return (next_midnight + grace).astimezone(pytz.utc)


class PrayerTimeCache:
    """
    Keyed store of computed PrayerTimeSets.

    Entries go stale at the end of their local day plus a grace period. Stale entries
    are evicted from normal lookups but stay reachable through ``find_fallback`` for a
    few days, so a request can degrade when the network is down. Invalidated entries
    are dropped entirely.
    """

    def __init__(self, grace: datetime.timedelta = DEFAULT_GRACE, clock=None, persist_dir: str = None):
        self.grace = grace
        self.clock = clock or _utcnow
        self.persist_dir = os.path.expanduser(persist_dir) if persist_dir else None
        self.stats = CacheStatistics()
        self._entries = {}
        self._last_known_good = {}
        self._flights = {}
        self._lock = threading.RLock()
        if self.persist_dir:
            os.makedirs(self.persist_dir, exist_ok=True)
            self._load()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey):
        return self.get(key, record=False) is not None

    def get(self, key: CacheKey, record: bool = True) -> PrayerTimeSet | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_stale(self.clock()):
                self._evict(key)
                self.stats.evictions += 1
                entry = None
            if record:
                if entry is None:
                    self.stats.misses += 1
                else:
                    self.stats.hits += 1
            return entry.value if entry is not None else None

    def put(self, key: CacheKey, value: PrayerTimeSet) -> None:
        if value.stale_fallback:
            raise ValueError("stale fallback results are never cached")
        now = self.clock()
        entry = CacheEntry(key, value, now, expiry_for(value, self.grace))
        with self._lock:
            self._entries[key] = entry
            self._remember(entry)
        self._persist(entry)

    def invalidate(self, predicate) -> int:
        """Evict every entry whose key matches ``predicate``. Returns how many were removed."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                self._discard(key)
            self.stats.invalidations += len(doomed)
        if doomed:
            logger.info("Invalidated %d cached prayer time set(s)", len(doomed))
        return len(doomed)

    def sweep(self) -> int:
        """Evict stale entries eagerly. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.is_stale(now)]
            for key in stale:
                self._evict(key)
            self.stats.evictions += len(stale)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            for days in self._last_known_good.values():
                for entry in days.values():
                    self._forget_file(entry.key)
            for key in self._entries:
                self._forget_file(key)
            self._entries.clear()
            self._last_known_good.clear()

    def find_fallback(self, key: CacheKey) -> PrayerTimeSet | None:
        """
        Most recent result for the same place and settings dated on or before ``key.date``,
        marked as a stale fallback. Returns None when nothing suitable was ever computed.
        """
        with self._lock:
            candidates = dict(self._last_known_good.get(key.relaxed, {}))
            for entry in self._entries.values():
                if entry.key.relaxed == key.relaxed:
                    candidates[entry.key.date] = entry
        usable = [day for day in candidates if day <= key.date]
        if not usable:
            return None
        entry = candidates[max(usable)]
        logger.debug("Fallback for %s is the set computed for %s", key, entry.key.date)
        return entry.value.as_stale_fallback()

    async def get_or_compute(self, key: CacheKey, compute, cancel: asyncio.Event = None) -> PrayerTimeSet:
        """
        Return the cached value for ``key`` or run ``compute()`` to produce and store it.

        Concurrent callers for the same key share one computation. Setting ``cancel``
        or cancelling the caller only detaches that caller; the computation is cancelled
        once no caller is left waiting on it.
        """
        if cancel is not None and cancel.is_set():
            raise RequestCancelled(f"request for {key} cancelled before it started")
        cached = self.get(key)
        if cached is not None:
            return cached

        loop = asyncio.get_running_loop()
        flight_key = (id(loop), key)
        with self._lock:
            flight = self._flights.get(flight_key)
            if flight is None:
                flight = _Flight(loop.create_task(self._compute(flight_key, key, compute)))
                flight.task.add_done_callback(_consume_result)
                self._flights[flight_key] = flight
            else:
                self.stats.deduplicated += 1
            flight.waiters += 1

        try:
            if cancel is None:
                return await asyncio.shield(flight.task)
            canceller = loop.create_task(cancel.wait())
            try:
                done, _ = await asyncio.wait({flight.task, canceller}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                canceller.cancel()
            if flight.task in done:
                return flight.task.result()
            raise RequestCancelled(f"request for {key} cancelled")
        finally:
            with self._lock:
                flight.waiters -= 1
                orphaned = flight.waiters == 0 and not flight.task.done()
            if orphaned:
                logger.debug("No callers left for %s, cancelling its computation", key)
                flight.task.cancel()

    async def _compute(self, flight_key, key: CacheKey, compute) -> PrayerTimeSet:
        try:
            with self._lock:
                self.stats.computations += 1
            value = await compute()
            self.put(key, value)
            return value
        finally:
            with self._lock:
                self._flights.pop(flight_key, None)

    def _evict(self, key: CacheKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._remember(entry)

    def _discard(self, key: CacheKey) -> None:
        self._entries.pop(key, None)
        self._last_known_good.get(key.relaxed, {}).pop(key.date, None)
        self._forget_file(key)

    def _remember(self, entry: CacheEntry) -> None:
        days = self._last_known_good.setdefault(entry.key.relaxed, {})
        days[entry.key.date] = entry
        for old in sorted(days)[:-LAST_KNOWN_GOOD_DAYS]:
            self._forget_file(days.pop(old).key)

    def _cache_file(self, key: CacheKey) -> str:
        digest = hashlib.md5(str(key).encode()).hexdigest()
        return os.path.join(self.persist_dir, f"{digest}.json")

    def _persist(self, entry: CacheEntry) -> None:
        if not self.persist_dir:
            return
        data = {
            "key": entry.key.to_dict(),
            "value": entry.value.to_dict(),
            "computed_at": entry.computed_at.isoformat(),
        }
        try:
            with open(self._cache_file(entry.key), "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"Error saving to cache: {e}")

    def _forget_file(self, key: CacheKey) -> None:
        if not self.persist_dir:
            return
        try:
            os.remove(self._cache_file(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Error removing cache file: {e}")

    def _load(self) -> None:
        now = self.clock()
        for name in sorted(os.listdir(self.persist_dir)):
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.persist_dir, name)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                key = CacheKey.from_dict(data["key"])
                value = PrayerTimeSet.from_dict(data["value"])
                computed_at = datetime.datetime.fromisoformat(data["computed_at"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Error reading cache file {name}: {e}")
                continue
            entry = CacheEntry(key, value, computed_at, expiry_for(value, self.grace))
            if entry.is_stale(now):
                self._remember(entry)
            else:
                self._entries[key] = entry
        logger.debug("Loaded %d cached prayer time set(s) from %s", len(self._entries), self.persist_dir)


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Prayer time computation failed: %r", task.exception())
