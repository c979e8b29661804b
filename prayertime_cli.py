"""
Prayer Time CLI
Prints one day's prayer times for a coordinate, a searched city or the IP-detected location.
"""

import argparse
import asyncio
import datetime
import logging
import sys

import pytz

from prayertime.config import (
    CONFIG_FILE,
    cache_from_config,
    load_config,
    prayer_config_from,
    retry_policy_from_config,
)
from prayertime.errors import ErrorHandler, PrayerTimeError
from prayertime.location import RequestsLocationProvider
from prayertime.models import CalculationMethod, Coordinate, Madhab, seconds_until
from prayertime.network import NetworkMonitor
from prayertime.retry import RetryMechanism
from prayertime.service import PrayerTimeService


def _fmt_countdown(seconds: int) -> str:
    """Format seconds into HH:MM:SS countdown string."""
    if seconds < 0:
        return "00:00:00"
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h:02d}:{m:02d}:{s:02d}"


def build_arg_parser():
    parser = argparse.ArgumentParser(description="Compute daily Islamic prayer times")
    parser.add_argument("--lat", type=float, help="Latitude in decimal degrees")
    parser.add_argument("--lon", type=float, help="Longitude in decimal degrees")
    parser.add_argument("--city", help="Search for a city instead of giving coordinates")
    parser.add_argument("--date", type=datetime.date.fromisoformat, help="Date as YYYY-MM-DD (default: today)")
    parser.add_argument("--method", help="Calculation method key, e.g. MuslimWorldLeague")
    parser.add_argument("--madhab", help="hanafi, shafi, maliki, hanbali or jafari")
    parser.add_argument("--astronomical-maghrib", action="store_true", default=None,
                        help="Use the depression angle instead of the fixed Maghrib delay")
    parser.add_argument("--config", default=CONFIG_FILE, help="Path to the JSON config file")
    parser.add_argument("--list-methods", action="store_true", help="List calculation methods")
    parser.add_argument("--list-madhabs", action="store_true", help="List madhabs")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


# ──────────────────────────────────────────────────────────────────────────────
# Request
# ──────────────────────────────────────────────────────────────────────────────
def _request_config(args, data: dict):
    if args.method:
        data["method"] = args.method
    if args.madhab:
        data["madhab"] = args.madhab
    if args.astronomical_maghrib is not None:
        data["use_astronomical_maghrib"] = args.astronomical_maghrib
    return prayer_config_from(data)


def build_service(data: dict) -> PrayerTimeService:
    network = NetworkMonitor(
        probe_url=data["network"]["probe_url"],
        probe_timeout=float(data["network"]["probe_timeout"]),
    )
    return PrayerTimeService(
        RequestsLocationProvider(timeout=int(data["timeouts"]["location"])),
        cache=cache_from_config(data),
        retry=RetryMechanism(network=network),
        network=network,
        retry_policy=retry_policy_from_config(data),
        location_timeout=float(data["timeouts"]["location"]),
        precision=int(data["cache"]["precision"]),
    )


async def run(args, data: dict) -> int:
    config = _request_config(args, data)
    service = build_service(data)
    service.network.start(float(data["network"]["probe_interval"]))
    try:
        return await _print_times(args, service, config)
    finally:
        await service.network.stop()


async def _print_times(args, service: PrayerTimeService, config) -> int:
    if args.city:
        candidates = await service.search_city(args.city)
        place = candidates[0]
        print(f"{place.display_name}")
        coordinate = place.coordinate
    elif args.lat is not None and args.lon is not None:
        coordinate = Coordinate(args.lat, args.lon)
    else:
        info = await service.location_provider.detect_location()
        print(f"{info.city}, {info.country} (detected)")
        coordinate = info.coordinate

    times = await service.calculate_prayer_times(coordinate, args.date, config)

    print(f"{times.date.isoformat()}  {config.method.params.display_name}, {config.madhab.display_name}")
    if times.stale_fallback:
        print("(offline: showing the last times that could be computed)")
    for pt in times.times:
        print(f"  {pt.prayer.value:<8} {pt.time:%H:%M}")

    now = datetime.datetime.now(pytz.timezone(times.timezone))
    name, at = times.next_prayer(now)
    if name is not None:
        print(f"Next: {name.value} in {_fmt_countdown(seconds_until(at, now))}")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────
def main(argv=None):
    args = build_arg_parser().parse_args(argv)
    data = load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, str(data["logging"]["level"]).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.list_methods:
        for method in CalculationMethod:
            print(f"{method.key}: {method.params.display_name}")
        return 0
    if args.list_madhabs:
        for madhab in Madhab:
            print(f"{madhab.key}: {madhab.display_name}")
        return 0

    try:
        return asyncio.run(run(args, data))
    except PrayerTimeError as exc:
        title, message = ErrorHandler().describe(exc)
        print(f"{title}: {message}\n  ({exc})", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
