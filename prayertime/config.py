"""JSON configuration file and the settings source read at request time."""

import copy
import datetime
import json
import logging
import os

from prayertime.cache import PrayerTimeCache
from prayertime.models import CalculationMethod, Madhab, PrayerConfig
from prayertime.network import DEFAULT_PROBE_URL
from prayertime.retry import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".prayertime")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")

DEFAULT_CONFIG = {
    "method": "MuslimWorldLeague",
    "madhab": "shafi",
    "use_astronomical_maghrib": False,
    "use_ramadan_isha_offset": True,
    "retry": {
        "max_attempts": 3,
        "base_delay": 1.0,
        "multiplier": 2.0,
        "max_delay": 30.0,
        "jitter": 0.1,
        "network_wait_timeout": 0.0,
    },
    "timeouts": {"location": 10.0},
    "cache": {"precision": 3, "grace_hours": 4, "dir": None},
    "network": {"probe_url": DEFAULT_PROBE_URL, "probe_timeout": 5.0, "probe_interval": 30.0},
    "logging": {"level": "INFO"},
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: str = None) -> dict:
    """
    Load the configuration file merged over DEFAULT_CONFIG.

    A missing or unreadable file yields the defaults. Keys the defaults don't know are kept.
    """
    path = path or CONFIG_FILE
    if not os.path.isfile(path):
        logger.debug("No config file at %s, using defaults", path)
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return copy.deepcopy(DEFAULT_CONFIG)
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return copy.deepcopy(DEFAULT_CONFIG)
    return _merge(DEFAULT_CONFIG, data)


def prayer_config_from(data: dict) -> PrayerConfig:
    """Build a PrayerConfig from a loaded config dict. Unknown names raise InvalidInput."""
    return PrayerConfig(
        method=CalculationMethod.from_key(data["method"]),
        madhab=Madhab.from_key(data["madhab"]),
        use_astronomical_maghrib=bool(data.get("use_astronomical_maghrib", False)),
        use_ramadan_isha_offset=bool(data.get("use_ramadan_isha_offset", True)),
    )


def retry_policy_from_config(data: dict) -> RetryPolicy:
    retry = data.get("retry", {})
    return RetryPolicy(
        max_attempts=int(retry.get("max_attempts", 3)),
        base_delay=float(retry.get("base_delay", 1.0)),
        multiplier=float(retry.get("multiplier", 2.0)),
        max_delay=float(retry.get("max_delay", 30.0)),
        jitter=float(retry.get("jitter", 0.1)),
        network_wait_timeout=float(retry.get("network_wait_timeout", 0.0)),
    )


def cache_from_config(data: dict) -> PrayerTimeCache:
    cache = data.get("cache", {})
    return PrayerTimeCache(
        grace=datetime.timedelta(hours=float(cache.get("grace_hours", 4))),
        persist_dir=cache.get("dir"),
    )


class StaticSettingsSource:
    """Settings source that always answers with the same PrayerConfig."""

    def __init__(self, config: PrayerConfig = None):
        self.config = config if config is not None else PrayerConfig()

    def snapshot(self) -> PrayerConfig:
        return self.config


class FileSettingsSource:
    """Settings source that re-reads the JSON config file on every snapshot."""

    def __init__(self, path: str = None):
        self.path = path or CONFIG_FILE

    def snapshot(self) -> PrayerConfig:
        return prayer_config_from(load_config(self.path))
