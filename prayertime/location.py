"""Location lookups: reverse geocoding, city search and IP geolocation."""

import asyncio
import logging

import requests
from timezonefinder import TimezoneFinder

from prayertime.errors import InvalidInput, LocationNotFound, LocationServiceError, PrayerTimeError
from prayertime.models import Coordinate, LocationCandidate, LocationInfo

logger = logging.getLogger(__name__)

IPAPI_URL = "http://ip-api.com/json/"
NOMINATIM_URL = "https://nominatim.openstreetmap.org"
USER_AGENT = "prayertime/1.0"

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def nautical_timezone(longitude: float) -> str:
    """Fixed-offset zone for open water, e.g. 'Etc/GMT-4' for 60E (POSIX sign is inverted)."""
    offset = int(round(longitude / 15.0))
    if offset == 0:
        return "Etc/GMT"
    return f"Etc/GMT{-offset:+d}"


class RequestsLocationProvider:
    """
    Location provider backed by public HTTP services.

    Blocking ``requests`` calls run in a worker thread so callers can await them.
    Time zones are resolved offline with timezonefinder.
    """

    def __init__(self, timeout: int = 10, timezone_finder: TimezoneFinder = None):
        self.timeout = timeout
        self._timezone_finder = timezone_finder

    @property
    def timezone_finder(self) -> TimezoneFinder:
        if self._timezone_finder is None:
            self._timezone_finder = TimezoneFinder()
        return self._timezone_finder

    def timezone_for(self, coordinate: Coordinate) -> str:
        name = self.timezone_finder.timezone_at(lng=coordinate.longitude, lat=coordinate.latitude)
        if name is None:
            name = nautical_timezone(coordinate.longitude)
            logger.info("No time zone polygon at %s, %s; using %s", coordinate.latitude, coordinate.longitude, name)
        return name

    async def get_location_info(self, coordinate: Coordinate) -> LocationInfo:
        return await asyncio.to_thread(self.reverse_geocode, coordinate)

    async def search_city(self, text: str, limit: int = 5) -> list:
        return await asyncio.to_thread(self.search, text, limit)

    async def detect_location(self) -> LocationInfo:
        return await asyncio.to_thread(self.get_location)

    def reverse_geocode(self, coordinate: Coordinate) -> LocationInfo:
        """
        Look up the place at ``coordinate``.

        Open water and other unnamed places still resolve, with empty city and country.
        """
        data = self._get_json(
            f"{NOMINATIM_URL}/reverse",
            {
                "lat": coordinate.latitude,
                "lon": coordinate.longitude,
                "format": "jsonv2",
                "zoom": 10,
                "addressdetails": 1,
            },
        )
        address = data.get("address", {})
        if "error" in data:
            logger.info("Reverse geocoding found nothing at %s, %s: %s", coordinate.latitude, coordinate.longitude, data["error"])
        city = address.get("city") or address.get("town") or address.get("village") or address.get("municipality", "")
        return LocationInfo(
            city=city,
            country=address.get("country", ""),
            coordinate=coordinate,
            timezone=self.timezone_for(coordinate),
            region=address.get("state", ""),
        )

    def search(self, text: str, limit: int = 5) -> list:
        """Return up to ``limit`` LocationCandidates matching ``text``, best match first."""
        query = (text or "").strip()
        if not query:
            raise InvalidInput("City search text must not be empty")
        results = self._get_json(
            f"{NOMINATIM_URL}/search",
            {"q": query, "format": "jsonv2", "limit": limit, "addressdetails": 1},
        )
        if not results:
            raise LocationNotFound(f"No places found for '{query}'")
        candidates = []
        for item in results:
            address = item.get("address", {})
            name = address.get("city") or address.get("town") or address.get("village") or item.get("name", query)
            candidates.append(
                LocationCandidate(
                    name=name,
                    coordinate=Coordinate(float(item["lat"]), float(item["lon"])),
                    country=address.get("country", ""),
                    display_name=item.get("display_name", name),
                )
            )
        return candidates

    def get_location(self) -> LocationInfo:
        """Detect the current location via IP geolocation."""
        data = self._get_json(
            IPAPI_URL,
            {"fields": "city,regionName,country,lat,lon,timezone,status,message"},
        )
        if data.get("status") != "success":
            raise LocationNotFound(f"IP geolocation failed: {data.get('message', 'unknown error')}")
        coordinate = Coordinate(float(data["lat"]), float(data["lon"]))
        return LocationInfo(
            city=data.get("city", ""),
            country=data.get("country", ""),
            coordinate=coordinate,
            timezone=data.get("timezone") or self.timezone_for(coordinate),
            region=data.get("regionName", ""),
        )

    def _get_json(self, url: str, params: dict):
        try:
            resp = requests.get(url, params=params, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status in RETRYABLE_STATUS:
                raise LocationServiceError(f"{url} answered HTTP {status}") from exc
            raise PrayerTimeError(f"{url} rejected the request with HTTP {status}") from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise LocationServiceError(f"{url} unreachable: {exc}") from exc
        except ValueError as exc:
            raise LocationServiceError(f"{url} returned invalid JSON") from exc
