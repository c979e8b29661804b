"""Value types shared by the calculation core: coordinates, prayer times, methods and madhabs."""

import datetime
import enum
import math
from dataclasses import dataclass, replace

from adhanpy.calculation.CalculationMethod import CalculationMethod as AdhanMethod
from adhanpy.calculation.MethodsParameters import methods_parameters

from prayertime.errors import InvalidInput


class PrayerName(enum.Enum):
    FAJR = "Fajr"
    SUNRISE = "Sunrise"
    DHUHR = "Dhuhr"
    ASR = "Asr"
    MAGHRIB = "Maghrib"
    ISHA = "Isha"


PRAYER_NAMES = list(PrayerName)


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self):
        for label, value, limit in (("latitude", self.latitude, 90.0), ("longitude", self.longitude, 180.0)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidInput(f"{label} must be a number, got {value!r}")
            if not math.isfinite(value) or abs(value) > limit:
                raise InvalidInput(f"{label} {value} is outside [-{limit:g}, {limit:g}]")

    def bucket(self, precision: int = 3) -> tuple:
        """Quantize to a grid so nearby points share one cache entry."""
        return (round(self.latitude, precision), round(self.longitude, precision))


@dataclass(frozen=True)
class LocationInfo:
    city: str
    country: str
    coordinate: Coordinate
    timezone: str | None = None
    region: str = ""


@dataclass(frozen=True)
class LocationCandidate:
    name: str
    coordinate: Coordinate
    country: str = ""
    display_name: str = ""


# Calculation methods. Library methods take their angles and per-prayer
# offsets from adhanpy; the three custom ones carry their own angles.
@dataclass(frozen=True)
class MethodParameters:
    key: str
    display_name: str
    fajr_angle: float = 0.0
    isha_angle: float = 0.0
    isha_interval: int = 0  # minutes after Maghrib; 0 = angle based
    maghrib_angle: float | None = None
    adhan_method: AdhanMethod | None = None

    @classmethod
    def from_library(cls, key: str, display_name: str, adhan_method: AdhanMethod) -> "MethodParameters":
        table = methods_parameters[adhan_method]
        return cls(
            key,
            display_name,
            fajr_angle=table.get("fajr_angle", 0.0),
            isha_angle=table.get("isha_angle", 0.0),
            isha_interval=table.get("isha_interval", 0),
            adhan_method=adhan_method,
        )


class CalculationMethod(enum.Enum):
    MUSLIM_WORLD_LEAGUE = MethodParameters.from_library("MuslimWorldLeague", "Muslim World League", AdhanMethod.MUSLIM_WORLD_LEAGUE)
    EGYPTIAN = MethodParameters.from_library("Egyptian", "Egyptian General Authority of Survey", AdhanMethod.EGYPTIAN)
    KARACHI = MethodParameters.from_library("Karachi", "University of Islamic Sciences, Karachi", AdhanMethod.KARACHI)
    UMM_AL_QURA = MethodParameters.from_library("UmmAlQura", "Umm al-Qura University, Makkah", AdhanMethod.UMM_AL_QURA)
    DUBAI = MethodParameters.from_library("Dubai", "Dubai", AdhanMethod.DUBAI)
    MOONSIGHTING_COMMITTEE = MethodParameters.from_library(
        "MoonsightingCommittee", "Moonsighting Committee", AdhanMethod.MOON_SIGHTING_COMMITTEE
    )
    NORTH_AMERICA = MethodParameters.from_library("NorthAmerica", "ISNA (North America)", AdhanMethod.NORTH_AMERICA)
    KUWAIT = MethodParameters.from_library("Kuwait", "Kuwait", AdhanMethod.KUWAIT)
    QATAR = MethodParameters.from_library("Qatar", "Qatar", AdhanMethod.QATAR)
    SINGAPORE = MethodParameters.from_library("Singapore", "Singapore", AdhanMethod.SINGAPORE)
    JAFARI_TEHRAN = MethodParameters("JafariTehran", "Institute of Geophysics, University of Tehran", 17.7, 14.0, maghrib_angle=4.5)
    JAFARI_LEVA = MethodParameters("JafariLeva", "Shia Ithna-Ashari, Leva Institute, Qum", 16.0, 14.0, maghrib_angle=4.0)
    FCNA_CANADA = MethodParameters("FCNACanada", "Fiqh Council of North America (Canada)", 13.0, 13.0)

    @property
    def params(self) -> MethodParameters:
        return self.value

    @property
    def key(self) -> str:
        return self.value.key

    @classmethod
    def from_key(cls, key: str) -> "CalculationMethod":
        """Look up a method by its key ("MuslimWorldLeague") or member name, case-insensitively."""
        wanted = str(key).replace("_", "").replace(" ", "").lower()
        for method in cls:
            if wanted in (method.key.lower(), method.name.replace("_", "").lower()):
                return method
        raise InvalidInput(f"Unknown calculation method: {key}")


# Madhabs carry their own per-prayer adjustment table
class AsrShadow(enum.IntEnum):
    STANDARD = 1
    HANAFI = 2


@dataclass(frozen=True)
class FixedDelay:
    """Move a prayer later by a fixed number of minutes."""

    minutes: int


@dataclass(frozen=True)
class DelayOrDepression:
    """Either a fixed delay or the time the sun reaches ``angle`` degrees below the horizon.

    Which one applies is chosen per request by the astronomical-Maghrib toggle.
    """

    delay: FixedDelay
    angle: float


@dataclass(frozen=True)
class SchoolProfile:
    key: str
    display_name: str
    asr_shadow: AsrShadow
    adjustments: tuple = ()  # ((PrayerName, strategy), ...)


class Madhab(enum.Enum):
    HANAFI = SchoolProfile("hanafi", "Hanafi", AsrShadow.HANAFI)
    SHAFI = SchoolProfile("shafi", "Shafi'i", AsrShadow.STANDARD)
    MALIKI = SchoolProfile("maliki", "Maliki", AsrShadow.STANDARD)
    HANBALI = SchoolProfile("hanbali", "Hanbali", AsrShadow.STANDARD)
    JAFARI = SchoolProfile(
        "jafari",
        "Ja'fari",
        AsrShadow.STANDARD,
        ((PrayerName.MAGHRIB, DelayOrDepression(FixedDelay(15), 4.0)),),
    )

    @property
    def key(self) -> str:
        return self.value.key

    @property
    def display_name(self) -> str:
        return self.value.display_name

    @property
    def asr_shadow(self) -> AsrShadow:
        return self.value.asr_shadow

    @property
    def adjustments(self) -> dict:
        return dict(self.value.adjustments)

    @property
    def maghrib_delay_minutes(self) -> int:
        rule = self.adjustments.get(PrayerName.MAGHRIB)
        if isinstance(rule, DelayOrDepression):
            return rule.delay.minutes
        if isinstance(rule, FixedDelay):
            return rule.minutes
        return 0

    @property
    def maghrib_angle(self) -> float | None:
        rule = self.adjustments.get(PrayerName.MAGHRIB)
        return rule.angle if isinstance(rule, DelayOrDepression) else None

    @classmethod
    def from_key(cls, key: str) -> "Madhab":
        wanted = str(key).replace("'", "").lower()
        for madhab in cls:
            if wanted in (madhab.key, madhab.name.lower()):
                return madhab
        raise InvalidInput(f"Unknown madhab: {key}")


@dataclass(frozen=True)
class PrayerConfig:
    """Settings snapshot that a single request is computed with."""

    method: CalculationMethod = CalculationMethod.MUSLIM_WORLD_LEAGUE
    madhab: Madhab = Madhab.SHAFI
    use_astronomical_maghrib: bool = False
    use_ramadan_isha_offset: bool = True

    @property
    def adjustment_mode(self) -> str:
        mode = "astronomical" if self.use_astronomical_maghrib else "fixed"
        if self.use_ramadan_isha_offset:
            mode += "+ramadan"
        return mode


@dataclass(frozen=True)
class PrayerTime:
    prayer: PrayerName
    time: datetime.datetime


@dataclass(frozen=True)
class PrayerTimeSet:
    """The six daily times for one location on one local calendar day, in prayer order."""

    date: datetime.date
    times: tuple
    timezone: str = "UTC"
    stale_fallback: bool = False

    def __post_init__(self):
        names = [pt.prayer for pt in self.times]
        if names != PRAYER_NAMES:
            raise ValueError(f"PrayerTimeSet needs exactly {[p.value for p in PRAYER_NAMES]} in order, got {names}")

    @classmethod
    def from_mapping(cls, date: datetime.date, times: dict, timezone: str = "UTC") -> "PrayerTimeSet":
        return cls(date, tuple(PrayerTime(p, times[p]) for p in PRAYER_NAMES), timezone)

    def __getitem__(self, prayer: PrayerName) -> datetime.datetime:
        for pt in self.times:
            if pt.prayer == prayer:
                return pt.time
        raise KeyError(prayer)

    def as_dict(self) -> dict:
        return {pt.prayer: pt.time for pt in self.times}

    def with_time(self, prayer: PrayerName, time: datetime.datetime) -> "PrayerTimeSet":
        times = tuple(PrayerTime(pt.prayer, time if pt.prayer == prayer else pt.time) for pt in self.times)
        return replace(self, times=times)

    def as_stale_fallback(self) -> "PrayerTimeSet":
        return replace(self, stale_fallback=True)

    def is_strictly_increasing(self) -> bool:
        values = [pt.time for pt in self.times]
        return all(a < b for a, b in zip(values, values[1:]))

    def next_prayer(self, now: datetime.datetime) -> tuple:
        """
        Return (prayer_name, prayer_datetime) of the next upcoming prayer after ``now``.
        Sunrise is skipped. Returns (None, None) once Isha has passed.
        """
        for pt in self.times:
            if pt.prayer == PrayerName.SUNRISE:
                continue
            if pt.time > now:
                return pt.prayer, pt.time
        return None, None

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "timezone": self.timezone,
            "times": {pt.prayer.value: pt.time.isoformat() for pt in self.times},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PrayerTimeSet":
        times = {p: datetime.datetime.fromisoformat(data["times"][p.value]) for p in PRAYER_NAMES}
        return cls.from_mapping(datetime.date.fromisoformat(data["date"]), times, data.get("timezone", "UTC"))


def seconds_until(target_dt: datetime.datetime, now: datetime.datetime = None) -> int:
    """Return seconds from now until target_dt (can be negative if past)."""
    if now is None:
        now = datetime.datetime.now(target_dt.tzinfo)
    delta = target_dt - now
    return int(delta.total_seconds())
