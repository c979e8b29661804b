"""Per-madhab adjustments applied on top of a baseline PrayerTimeSet."""

import datetime
import logging
import warnings

from prayertime.astronomy import AdhanEngine
from prayertime.errors import GeometryUnsolvable, TimeOrderingViolation
from prayertime.models import (
    PRAYER_NAMES,
    CalculationMethod,
    Coordinate,
    DelayOrDepression,
    FixedDelay,
    Madhab,
    PrayerName,
    PrayerTimeSet,
)

logger = logging.getLogger(__name__)

CLAMP_MARGIN = datetime.timedelta(minutes=1)

# Methods whose own parameters already include a madhab's rules.
METHOD_ENCODES_MADHAB = {
    (CalculationMethod.JAFARI_TEHRAN, Madhab.JAFARI),
    (CalculationMethod.JAFARI_LEVA, Madhab.JAFARI),
    (CalculationMethod.KARACHI, Madhab.HANAFI),
}


def applies_to(method: CalculationMethod, madhab: Madhab) -> bool:
    """False when ``method`` already bakes in ``madhab``'s adjustments."""
    return (method, madhab) not in METHOD_ENCODES_MADHAB


def adjust(
    baseline: PrayerTimeSet,
    madhab: Madhab,
    use_astronomical_maghrib: bool,
    coordinate: Coordinate,
    date: datetime.date,
    *,
    engine=None,
    method: CalculationMethod = None,
) -> PrayerTimeSet:
    """
    Apply ``madhab``'s adjustment table to ``baseline`` and return a new set.

    Madhabs without adjustments, and methods that already encode the madhab,
    get the baseline back unchanged. Prayers not named in the table are held.
    ``engine`` is only consulted for depression-angle rules in astronomical mode.
    """
    rules = madhab.adjustments
    if not rules:
        return baseline
    if method is not None and not applies_to(method, madhab):
        logger.debug("%s already encodes %s rules, skipping adjustment", method.key, madhab.display_name)
        return baseline

    result = baseline
    for prayer in PRAYER_NAMES:
        rule = rules.get(prayer)
        if rule is None:
            continue
        candidate = _resolve(rule, baseline, prayer, use_astronomical_maghrib, coordinate, date, engine)
        result = result.with_time(prayer, _clamp(result, prayer, candidate, baseline[prayer]))
    return result


def _resolve(rule, baseline, prayer, use_astronomical, coordinate, date, engine) -> datetime.datetime:
    if isinstance(rule, FixedDelay):
        return baseline[prayer] + datetime.timedelta(minutes=rule.minutes)
    if isinstance(rule, DelayOrDepression):
        fixed = baseline[prayer] + datetime.timedelta(minutes=rule.delay.minutes)
        if not use_astronomical:
            return fixed
        if engine is None:
            engine = AdhanEngine()
        try:
            return engine.angle_time(coordinate, date, prayer, rule.angle, timezone=baseline.timezone)
        except GeometryUnsolvable as exc:
            logger.warning(
                "%s at %s degrees is undefined on %s (%s); using the %d minute delay instead",
                prayer.value, rule.angle, date, exc, rule.delay.minutes,
            )
            return fixed
    raise TypeError(f"Unsupported adjustment rule: {rule!r}")


def _clamp(times: PrayerTimeSet, prayer: PrayerName, candidate, original) -> datetime.datetime:
    """Keep ``candidate`` strictly before the following prayer, never earlier than ``original``."""
    index = PRAYER_NAMES.index(prayer)
    if index + 1 >= len(PRAYER_NAMES):
        return candidate
    following = PRAYER_NAMES[index + 1]
    limit = times[following]
    if candidate < limit:
        return candidate
    clamped = max(limit - CLAMP_MARGIN, original)
    message = (
        f"Adjusted {prayer.value} {candidate:%H:%M} is not before {following.value} {limit:%H:%M} "
        f"on {times.date.isoformat()}; clamped to {clamped:%H:%M}"
    )
    logger.warning(message)
    warnings.warn(message, TimeOrderingViolation, stacklevel=3)
    return clamped
