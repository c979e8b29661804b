"""Baseline prayer times from the adhanpy engine, with solvability and ordering checks."""

import datetime
import logging
import math
from dataclasses import dataclass

import pytz
from adhanpy.PrayerTimes import PrayerTimes
from adhanpy.astronomy.SolarTime import SolarTime
from adhanpy.calculation.CalculationParameters import CalculationParameters
from adhanpy.calculation.HighLatitudeRule import HighLatitudeRule
from adhanpy.calculation.Madhab import Madhab as AdhanMadhab
from adhanpy.data.Coordinates import Coordinates
from adhanpy.util.CalendarUtil import rounded_minute
from adhanpy.util.DateComponents import DateComponents
from adhanpy.util.TimeComponents import TimeComponents

from prayertime.errors import GeometryUnsolvable, InvalidInput
from prayertime.models import (
    PRAYER_NAMES,
    AsrShadow,
    CalculationMethod,
    Coordinate,
    PrayerName,
    PrayerTimeSet,
)

logger = logging.getLogger(__name__)

# Refraction plus solar semi-diameter, in degrees below the horizon (adhanpy's sunrise altitude).
RISE_SET_ANGLE = 50.0 / 60.0
RAMADAN_ISHA_INTERVAL = 120

# adhanpy raises a bare RuntimeError when tomorrow's sunrise or Asr is missing.
_ENGINE_ERRORS = (ArithmeticError, ValueError, TypeError, RuntimeError)


@dataclass(frozen=True)
class AngleOverride:
    """Recompute one prayer as the moment the sun is ``degrees`` below the horizon."""

    prayer: PrayerName
    degrees: float


def solar_date(coordinate: Coordinate, day: datetime.date, tz) -> datetime.date:
    """
    The UTC date whose solar noon at ``coordinate`` falls on local ``day`` in ``tz``.

    Zones far from their solar longitude (Samoa, Tonga, the Line Islands) see the
    transit of one UTC date land on the next local day.
    """
    offset = tz.localize(datetime.datetime(day.year, day.month, day.day, 12)).utcoffset()
    local_noon = 12 + offset.total_seconds() / 3600 - coordinate.longitude / 15
    return day - datetime.timedelta(days=math.floor(local_noon / 24))


def _solar_time(coordinate: Coordinate, day: datetime.date) -> SolarTime:
    return SolarTime(DateComponents(day.year, day.month, day.day), Coordinates(coordinate.latitude, coordinate.longitude))


def crossing_time(coordinate: Coordinate, day: datetime.date, depression: float, after_transit: bool):
    """
    UTC moment the sun is ``depression`` degrees below the horizon on the solar day ``day``,
    in the evening when ``after_transit`` and in the morning otherwise. None if it never gets there.
    """
    hours = _solar_time(coordinate, day).hour_angle(-depression, after_transit)
    components = TimeComponents.from_float(hours)
    if components is None:
        return None
    return rounded_minute(components.date_components(DateComponents(day.year, day.month, day.day)))


def is_depression_reached(coordinate: Coordinate, day: datetime.date, depression: float) -> bool:
    return math.isfinite(_solar_time(coordinate, day).hour_angle(-depression, True))


def _require_depression(coordinate: Coordinate, day: datetime.date, depression: float, event: str):
    if not is_depression_reached(coordinate, day, depression):
        raise GeometryUnsolvable(
            f"{event} is undefined at latitude {coordinate.latitude} on {day.isoformat()} "
            f"(sun does not reach {depression:g} degrees below the horizon)",
            event=event,
            latitude=coordinate.latitude,
            date=day,
        )


def _timezone(name: str):
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as exc:
        raise InvalidInput(f"Unknown timezone: {name}") from exc


def _to_local(value, tz, event: str, day: datetime.date) -> datetime.datetime:
    if value is None:
        raise GeometryUnsolvable(f"engine returned no {event} time for {day.isoformat()}", event=event, date=day)
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(tz)


class AdhanEngine:
    """Thin adapter around adhanpy that returns validated PrayerTimeSets."""

    def __init__(self, high_latitude_rule=HighLatitudeRule.TWILIGHT_ANGLE):
        self.high_latitude_rule = high_latitude_rule
        self.computations = 0

    def compute_baseline(
        self,
        coordinate: Coordinate,
        day: datetime.date,
        method: CalculationMethod,
        *,
        timezone: str = "UTC",
        asr_shadow: AsrShadow = AsrShadow.STANDARD,
        isha_interval: int = None,
        override: AngleOverride = None,
    ) -> PrayerTimeSet:
        """
        Compute the six times for local ``day`` at ``coordinate`` using ``method``.

        ``isha_interval`` replaces the method's own Isha interval (minutes after Maghrib).
        ``override`` recomputes a single prayer from a custom depression angle.

        Raises GeometryUnsolvable when sunrise, sunset or an override angle does not
        occur that day, or when the engine output is not in prayer order.
        """
        if isinstance(day, datetime.datetime):
            day = day.date()
        tz = _timezone(timezone)
        solar_day = solar_date(coordinate, day, tz)
        _require_depression(coordinate, solar_day, RISE_SET_ANGLE, "sunrise/sunset")
        self.computations += 1

        params = method.params
        result = self._run(coordinate, solar_day, self._parameters(params, asr_shadow, isha_interval))
        times = {
            PrayerName.FAJR: _to_local(result.fajr, tz, "Fajr", day),
            PrayerName.SUNRISE: _to_local(result.sunrise, tz, "Sunrise", day),
            PrayerName.DHUHR: _to_local(result.dhuhr, tz, "Dhuhr", day),
            PrayerName.ASR: _to_local(result.asr, tz, "Asr", day),
            PrayerName.MAGHRIB: _to_local(result.maghrib, tz, "Maghrib", day),
            PrayerName.ISHA: _to_local(result.isha, tz, "Isha", day),
        }
        if params.maghrib_angle is not None:
            times[PrayerName.MAGHRIB] = self.angle_time(
                coordinate, day, PrayerName.MAGHRIB, params.maghrib_angle, timezone=timezone
            )
        if override is not None:
            times[override.prayer] = self.angle_time(
                coordinate, day, override.prayer, override.degrees, timezone=timezone
            )

        baseline = PrayerTimeSet.from_mapping(day, times, timezone)
        self._check_order(baseline, day)
        return baseline

    def angle_time(
        self,
        coordinate: Coordinate,
        day: datetime.date,
        prayer: PrayerName,
        degrees: float,
        *,
        timezone: str = "UTC",
    ) -> datetime.datetime:
        """
        Time the sun reaches ``degrees`` below the horizon, before sunrise for Fajr
        and after sunset for Maghrib or Isha. No high-latitude bound is applied.
        """
        if prayer not in (PrayerName.FAJR, PrayerName.MAGHRIB, PrayerName.ISHA):
            raise InvalidInput(f"An angle override is not defined for {prayer.value}")
        if isinstance(day, datetime.datetime):
            day = day.date()
        tz = _timezone(timezone)
        solar_day = solar_date(coordinate, day, tz)
        event = f"{prayer.value} at {degrees:g} degrees"
        _require_depression(coordinate, solar_day, degrees, event)
        value = crossing_time(coordinate, solar_day, degrees, after_transit=prayer != PrayerName.FAJR)
        return _to_local(value, tz, event, day)

    def _parameters(self, params, asr_shadow, isha_interval):
        if params.adhan_method is not None:
            parameters = CalculationParameters(method=params.adhan_method)
        else:
            parameters = CalculationParameters(fajr_angle=params.fajr_angle, isha_angle=params.isha_angle)
        parameters.madhab = AdhanMadhab.HANAFI if asr_shadow == AsrShadow.HANAFI else AdhanMadhab.SHAFI
        parameters.high_latitude_rule = self.high_latitude_rule
        if isha_interval:
            parameters.isha_interval = isha_interval
        return parameters

    def _run(self, coordinate: Coordinate, day: datetime.date, parameters) -> PrayerTimes:
        try:
            return PrayerTimes(
                (coordinate.latitude, coordinate.longitude),
                datetime.datetime(day.year, day.month, day.day),
                calculation_parameters=parameters,
                time_zone=pytz.utc,
            )
        except _ENGINE_ERRORS as exc:
            raise GeometryUnsolvable(
                f"engine could not solve {day.isoformat()} at {coordinate.latitude}, {coordinate.longitude}: {exc!r}",
                latitude=coordinate.latitude,
                date=day,
            ) from exc

    def _check_order(self, baseline: PrayerTimeSet, day: datetime.date):
        if not baseline.is_strictly_increasing():
            order = ", ".join(f"{pt.prayer.value}={pt.time:%H:%M}" for pt in baseline.times)
            raise GeometryUnsolvable(f"times out of order on {day.isoformat()}: {order}", date=day)
        # Isha may legitimately fall after local midnight; everything before it may not.
        for prayer in PRAYER_NAMES[:-1]:
            if baseline[prayer].date() != day:
                raise GeometryUnsolvable(
                    f"{prayer.value} falls on {baseline[prayer].date().isoformat()}, not {day.isoformat()}",
                    event=prayer.value,
                    date=day,
                )
        logger.debug("Baseline for %s: %s", day, {pt.prayer.value: pt.time.strftime("%H:%M") for pt in baseline.times})
