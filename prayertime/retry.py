"""Retry with exponential backoff, jitter, per-attempt timeouts and cancellation."""

import asyncio
import logging
import random
from dataclasses import dataclass

from prayertime.errors import Disposition, ErrorHandler, NetworkUnavailable, RequestCancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1  # fraction of the computed delay, applied in both directions
    network_wait_timeout: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay_for(self, attempt: int, rng: random.Random = None) -> float:
        """Backoff before retry number ``attempt + 1`` (``attempt`` counts from 0)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * (rng or random).uniform(-1.0, 1.0)
        return max(0.0, min(delay, self.max_delay))


DEFAULT_POLICY = RetryPolicy()


@dataclass
class RetryStatistics:
    successes: int = 0
    failures: int = 0
    retries: int = 0
    cancellations: int = 0


class RetryMechanism:
    """
    Runs an async operation until it succeeds, fails with a non-recoverable error,
    or exhausts its policy. Only errors the ErrorHandler calls RECOVERABLE are retried.
    """

    def __init__(self, network=None, error_handler: ErrorHandler = None, sleep=None, rng: random.Random = None):
        self.network = network
        self.error_handler = error_handler if error_handler is not None else ErrorHandler()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self.stats = RetryStatistics()

    async def execute(
        self,
        operation,
        policy: RetryPolicy = DEFAULT_POLICY,
        *,
        timeout: float = None,
        cancel: asyncio.Event = None,
        requires_network: bool = True,
        name: str = "operation",
        on_retry=None,
    ):
        """
        Await ``operation()`` under ``policy``.

        ``operation`` is a zero-argument callable returning a fresh awaitable per attempt.
        ``timeout`` bounds each attempt. ``on_retry(attempt, error, delay)`` is called
        before each backoff sleep. When attempts run out the last error is raised.
        """
        last_error = None
        for attempt in range(policy.max_attempts):
            self._check_cancelled(cancel, name)
            if requires_network:
                await self._await_network(policy, name)
            try:
                if timeout is None:
                    result = await operation()
                else:
                    result = await asyncio.wait_for(operation(), timeout)
            except Exception as exc:
                error = self.error_handler.normalize(exc)
                if self.error_handler.classify(error) is not Disposition.RECOVERABLE:
                    self.stats.failures += 1
                    if error is exc:
                        raise
                    raise error from exc
                last_error = error
                if attempt + 1 >= policy.max_attempts:
                    break
                delay = policy.delay_for(attempt, self._rng)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    name, attempt + 1, policy.max_attempts, error, delay,
                )
                self.stats.retries += 1
                if on_retry is not None:
                    on_retry(attempt + 1, error, delay)
                await self._backoff(delay, cancel, name)
                continue
            self.stats.successes += 1
            return result

        self.stats.failures += 1
        logger.error("%s failed after %d attempt(s): %s", name, policy.max_attempts, last_error)
        raise last_error

    def _check_cancelled(self, cancel, name):
        if cancel is not None and cancel.is_set():
            self.stats.cancellations += 1
            raise RequestCancelled(f"{name} cancelled")

    async def _await_network(self, policy: RetryPolicy, name: str):
        if self.network is None or self.network.should_attempt():
            return
        if policy.network_wait_timeout > 0:
            logger.info("%s waiting up to %.1fs for the network", name, policy.network_wait_timeout)
            if await self.network.wait_for_connection(policy.network_wait_timeout):
                return
        raise NetworkUnavailable(f"{name}: network is disconnected")

    async def _backoff(self, delay: float, cancel, name: str):
        if cancel is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        canceller = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            canceller.cancel()
        self._check_cancelled(cancel, name)
