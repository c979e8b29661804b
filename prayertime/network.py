"""Connectivity state with subscriptions, waiting and an optional HTTP probe."""

import asyncio
import enum
import logging
import threading

import requests

logger = logging.getLogger(__name__)

DEFAULT_PROBE_URL = "https://www.gstatic.com/generate_204"


class NetworkState(enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


class NetworkMonitor:
    """
    Holds the current NetworkState and tells subscribers when it changes.

    ``set_state`` is the only writer. Subscribers are called as ``callback(old, new)``
    from whichever thread changed the state.
    """

    def __init__(self, probe_url: str = DEFAULT_PROBE_URL, probe_timeout: float = 5.0,
                 initial_state: NetworkState = NetworkState.UNKNOWN):
        self.probe_url = probe_url
        self.probe_timeout = probe_timeout
        self._state = initial_state
        self._subscribers = []
        self._lock = threading.Lock()
        self._probe_task = None

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == NetworkState.CONNECTED

    def should_attempt(self) -> bool:
        """Unknown counts as reachable: only a known disconnect stops an attempt."""
        return self._state != NetworkState.DISCONNECTED

    def set_state(self, state: NetworkState) -> None:
        with self._lock:
            old = self._state
            if old == state:
                return
            self._state = state
            subscribers = list(self._subscribers)
        logger.info("Network state changed: %s -> %s", old.value, state.value)
        for callback in subscribers:
            try:
                callback(old, state)
            except Exception as e:
                logger.error(f"Error in network state callback: {e}")

    def subscribe(self, callback):
        """Register ``callback(old, new)``. Returns a function that removes it again."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    async def wait_for_connection(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for CONNECTED. Returns whether it arrived."""
        if self.is_connected:
            return True
        loop = asyncio.get_running_loop()
        connected = asyncio.Event()

        def on_change(old, new):
            if new == NetworkState.CONNECTED:
                loop.call_soon_threadsafe(connected.set)

        unsubscribe = self.subscribe(on_change)
        try:
            if self.is_connected:
                return True
            await asyncio.wait_for(connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    def probe(self) -> NetworkState:
        """Check reachability with a HEAD request and record the result."""
        try:
            resp = requests.head(self.probe_url, timeout=self.probe_timeout, allow_redirects=True)
            state = NetworkState.CONNECTED if resp.status_code < 500 else NetworkState.DISCONNECTED
        except requests.RequestException as e:
            logger.debug(f"Network probe failed: {e}")
            state = NetworkState.DISCONNECTED
        self.set_state(state)
        return state

    def start(self, interval: float = 30.0) -> asyncio.Task:
        """Probe every ``interval`` seconds on the running loop until ``stop`` is called."""
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.get_running_loop().create_task(self._probe_loop(interval))
        return self._probe_task

    async def stop(self) -> None:
        task, self._probe_task = self._probe_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _probe_loop(self, interval: float) -> None:
        while True:
            await asyncio.to_thread(self.probe)
            await asyncio.sleep(interval)
