"""Prayer time service: cache, location, baseline and madhab rules composed per request."""

import asyncio
import datetime
import enum
import logging

from prayertime.astronomy import RAMADAN_ISHA_INTERVAL, AdhanEngine
from prayertime.cache import DEFAULT_PRECISION, CacheKey, PrayerTimeCache
from prayertime.config import StaticSettingsSource
from prayertime.errors import Disposition, ErrorHandler, InvalidInput, RequestCancelled
from prayertime.madhab import adjust
from prayertime.models import Coordinate, LocationInfo, PrayerConfig, PrayerName, PrayerTimeSet
from prayertime.retry import DEFAULT_POLICY, RetryMechanism, RetryPolicy

logger = logging.getLogger(__name__)


class RequestState(enum.Enum):
    IDLE = "idle"
    RESOLVING_LOCATION = "resolving_location"
    COMPUTING_BASELINE = "computing_baseline"
    APPLYING_MADHAB_RULES = "applying_madhab_rules"
    CACHING = "caching"
    DONE = "done"
    ERROR = "error"
    RETRYING = "retrying"
    FAILED = "failed"
    DEGRADED_DONE = "degraded_done"


class _Trace:
    """Records one request's state transitions and forwards them to an optional observer."""

    def __init__(self, key: CacheKey, observer=None):
        self.key = key
        self.observer = observer
        self.states = []

    def enter(self, state: RequestState) -> None:
        self.states.append(state)
        logger.debug("%s -> %s", self.key, state.value)
        if self.observer is not None:
            self.observer(self.key, state)


class PrayerTimeService:
    """
    Orchestrates one prayer time request end to end.

    Every collaborator is injected; nothing here is a module-level singleton.
    ``observer(key, state)`` is told about each RequestState a computing request passes through.
    """

    def __init__(
        self,
        location_provider,
        *,
        settings=None,
        engine: AdhanEngine = None,
        cache: PrayerTimeCache = None,
        retry: RetryMechanism = None,
        network=None,
        error_handler: ErrorHandler = None,
        calendar=None,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
        location_timeout: float = 10.0,
        precision: int = DEFAULT_PRECISION,
        observer=None,
    ):
        self.location_provider = location_provider
        self.settings = settings if settings is not None else StaticSettingsSource()
        self.engine = engine if engine is not None else AdhanEngine()
        self.cache = cache if cache is not None else PrayerTimeCache()
        self.error_handler = error_handler if error_handler is not None else ErrorHandler()
        self.network = network
        self.retry = retry if retry is not None else RetryMechanism(network=network, error_handler=self.error_handler)
        self.calendar = calendar
        self.retry_policy = retry_policy
        self.location_timeout = location_timeout
        self.precision = precision
        self.observer = observer

    async def calculate_prayer_times(
        self,
        location,
        date: datetime.date = None,
        config: PrayerConfig = None,
        *,
        cancel: asyncio.Event = None,
    ) -> PrayerTimeSet:
        """
        Return the adjusted prayer times for ``location`` on ``date``.

        ``location`` is a Coordinate, or a LocationInfo whose timezone is already known
        (then no location lookup happens). ``config`` defaults to the settings snapshot.
        A result served from an older cached day has ``stale_fallback`` set.
        """
        coordinate = _coordinate_of(location)
        if date is None:
            date = datetime.date.today()
        elif isinstance(date, datetime.datetime):
            date = date.date()
        elif not isinstance(date, datetime.date):
            raise InvalidInput(f"date must be a datetime.date, got {date!r}")
        if config is None:
            config = self.settings.snapshot()

        key = CacheKey.build(coordinate, date, config, self.precision)
        trace = _Trace(key, self.observer)
        trace.enter(RequestState.IDLE)
        try:
            result = await self.cache.get_or_compute(
                key,
                lambda: self._compute(location, coordinate, date, config, trace),
                cancel=cancel,
            )
        except (asyncio.CancelledError, RequestCancelled):
            logger.debug("%s cancelled", key)
            raise
        except Exception as exc:
            return self._recover(exc, key, trace)
        trace.enter(RequestState.DONE)
        return result

    async def search_city(self, text: str, *, cancel: asyncio.Event = None) -> list:
        """City search through the location provider, with retry and network gating."""
        return await self.retry.execute(
            lambda: self.location_provider.search_city(text),
            self.retry_policy,
            timeout=self.location_timeout,
            cancel=cancel,
            name=f"search '{text}'",
        )

    def invalidate_for_settings_change(self, config: PrayerConfig) -> int:
        """Drop cached sets computed under settings other than ``config``."""
        return self.cache.invalidate(
            lambda key: (key.method, key.madhab, key.mode) != (config.method.key, config.madhab.key, config.adjustment_mode)
        )

    async def _compute(self, location, coordinate: Coordinate, date, config: PrayerConfig, trace: _Trace) -> PrayerTimeSet:
        info = await self._resolve_location(location, coordinate, trace)
        isha_interval = await self._isha_interval(date, config)

        trace.enter(RequestState.COMPUTING_BASELINE)
        baseline = self.engine.compute_baseline(
            coordinate,
            date,
            config.method,
            timezone=info.timezone,
            asr_shadow=config.madhab.asr_shadow,
            isha_interval=isha_interval,
        )

        trace.enter(RequestState.APPLYING_MADHAB_RULES)
        adjusted = adjust(
            baseline,
            config.madhab,
            config.use_astronomical_maghrib,
            coordinate,
            date,
            engine=self.engine,
            method=config.method,
        )
        if adjusted is not baseline:
            logger.info(
                "%s Maghrib rule moved Maghrib from %s to %s",
                config.madhab.display_name,
                baseline[PrayerName.MAGHRIB].strftime("%H:%M"),
                adjusted[PrayerName.MAGHRIB].strftime("%H:%M"),
            )

        trace.enter(RequestState.CACHING)
        logger.info("Computed prayer times for %s (%s)", trace.key, info.city or info.timezone)
        return adjusted

    async def _resolve_location(self, location, coordinate: Coordinate, trace: _Trace) -> LocationInfo:
        trace.enter(RequestState.RESOLVING_LOCATION)
        if isinstance(location, LocationInfo) and location.timezone:
            return location

        def on_retry(attempt, error, delay):
            trace.enter(RequestState.ERROR)
            trace.enter(RequestState.RETRYING)

        async def lookup():
            if trace.states[-1] is RequestState.RETRYING:
                trace.enter(RequestState.RESOLVING_LOCATION)
            return await self.location_provider.get_location_info(coordinate)

        info = await self.retry.execute(
            lookup,
            self.retry_policy,
            timeout=self.location_timeout,
            name="location lookup",
            on_retry=on_retry,
        )
        if not info.timezone:
            raise InvalidInput(f"No time zone known for {coordinate.latitude}, {coordinate.longitude}")
        return info

    async def _isha_interval(self, date: datetime.date, config: PrayerConfig):
        """The Ramadan Isha interval when it applies to this request, otherwise None."""
        if not (config.use_ramadan_isha_offset and config.method.params.isha_interval and self.calendar):
            return None
        if await self.calendar.is_date_in_ramadan(date):
            logger.info("%s is in Ramadan, Isha is %d minutes after Maghrib", date, RAMADAN_ISHA_INTERVAL)
            return RAMADAN_ISHA_INTERVAL
        return None

    def _recover(self, exc: Exception, key: CacheKey, trace: _Trace) -> PrayerTimeSet:
        error = self.error_handler.normalize(exc)
        trace.enter(RequestState.ERROR)
        # Recoverable errors only reach this point after the retry budget is spent.
        if self.error_handler.classify(error, retries_exhausted=True) is Disposition.DEGRADE:
            fallback = self.cache.find_fallback(key)
            if fallback is not None:
                logger.warning("Serving stale prayer times from %s for %s: %s", fallback.date, key, error)
                trace.enter(RequestState.DEGRADED_DONE)
                return fallback
        trace.enter(RequestState.FAILED)
        logger.info("Prayer time request for %s failed: %s", key, error)
        if error is exc:
            raise exc
        raise error from exc


def _coordinate_of(location) -> Coordinate:
    if isinstance(location, Coordinate):
        return location
    if isinstance(location, LocationInfo):
        return location.coordinate
    raise InvalidInput(f"Expected a Coordinate or LocationInfo, got {type(location).__name__}")
