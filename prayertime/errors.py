"""Error taxonomy for prayer time requests and the handler that classifies failures."""

import asyncio
import enum
import logging

import requests

logger = logging.getLogger(__name__)


class PrayerTimeError(Exception):
    """Base class for every failure a prayer time request can surface."""

    title = "Prayer times unavailable"
    user_message = "Prayer times could not be calculated."


class InvalidInput(PrayerTimeError, ValueError):
    title = "Invalid input"
    user_message = "The location or date is not valid."


class LocationNotFound(InvalidInput):
    title = "Location not found"
    user_message = "No place matched that search."


class GeometryUnsolvable(PrayerTimeError):
    """The sun never reaches the required angle at this latitude on this date."""

    title = "Times not defined here"
    user_message = "The sun does not rise, set or reach twilight at this location on this date."

    def __init__(self, message: str, *, event: str = "", latitude: float = None, date=None):
        super().__init__(message)
        self.event = event
        self.latitude = latitude
        self.date = date


class TransientIO(PrayerTimeError):
    title = "Connection problem"
    user_message = "A network service did not respond. Please try again."


class NetworkUnavailable(TransientIO):
    title = "Offline"
    user_message = "No network connection is available."


class LocationServiceError(TransientIO):
    title = "Location service error"
    user_message = "The location service is not responding."


class RequestCancelled(PrayerTimeError):
    title = "Cancelled"
    user_message = "The request was cancelled."


class TimeOrderingViolation(UserWarning):
    """An adjusted time had to be clamped to keep the day's times in order."""


class Disposition(enum.Enum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"
    DEGRADE = "degrade"


RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class ErrorHandler:
    """Maps raw exceptions onto the taxonomy above and decides how a request reacts to them."""

    def normalize(self, error: BaseException) -> BaseException:
        """
        Translate library exceptions into PrayerTimeError subclasses.

        The original exception is kept as ``__cause__``. Errors that are already
        part of the taxonomy, and errors we know nothing about, come back unchanged.
        """
        if isinstance(error, PrayerTimeError):
            return error
        if isinstance(error, requests.HTTPError):
            status = error.response.status_code if error.response is not None else None
            if status in RETRYABLE_STATUS:
                converted = TransientIO(f"HTTP {status}: {error}")
            else:
                converted = PrayerTimeError(f"HTTP {status}: {error}")
        elif isinstance(error, (requests.Timeout, requests.ConnectionError)):
            converted = TransientIO(str(error) or type(error).__name__)
        elif isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            converted = TransientIO("operation timed out")
        elif isinstance(error, ConnectionError):
            converted = NetworkUnavailable(str(error) or type(error).__name__)
        else:
            return error
        converted.__cause__ = error
        return converted

    def classify(self, error: BaseException, retries_exhausted: bool = False) -> Disposition:
        error = self.normalize(error)
        if isinstance(error, TransientIO):
            return Disposition.DEGRADE if retries_exhausted else Disposition.RECOVERABLE
        return Disposition.FATAL

    def is_recoverable(self, error: BaseException) -> bool:
        return self.classify(error) is Disposition.RECOVERABLE

    def describe(self, error: BaseException) -> tuple:
        """Return (title, message) suitable for showing to a user."""
        error = self.normalize(error)
        if isinstance(error, PrayerTimeError):
            return error.title, error.user_message
        logger.debug("No user message for %s", type(error).__name__)
        return PrayerTimeError.title, PrayerTimeError.user_message
