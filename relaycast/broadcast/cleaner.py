"""
Periodic cleanup of time-stamped metadata.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MIN_PERIOD_SECONDS = 10.0


class MetadataCleaner:
    """
    Runs ``cleanup_func(cutoff)`` on a fixed interval from a daemon thread.

    ``cutoff`` is ``now - ttl_seconds``: everything stamped before it is
    expired. With ``ttl_seconds <= 0`` the cleaner is disabled and no
    thread is started.

    Usage:
        cleaner = MetadataCleaner("http-broadcast", service.cleanup, ttl_seconds=3600)
        ...
        cleaner.cancel()
    """

    def __init__(
        self,
        name: str,
        cleanup_func: Callable[[float], object],
        ttl_seconds: float,
        period_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.cleanup_func = cleanup_func
        self.ttl_seconds = ttl_seconds
        self.period_seconds = period_seconds or max(ttl_seconds / 10, MIN_PERIOD_SECONDS)
        self.clock = clock

        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

        if self.enabled:
            self._thread = threading.Thread(
                target=self._loop,
                name=f"relaycast-cleaner-{name}",
                daemon=True,
            )
            self._thread.start()
            logger.info(
                f"Started metadata cleaner {name} (ttl={ttl_seconds}s, period={self.period_seconds}s)"
            )
        else:
            logger.debug(f"Metadata cleaner {name} disabled (ttl={ttl_seconds})")

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        """Run one sweep now, with the cutoff computed from the current time."""
        cutoff = self.clock() - self.ttl_seconds
        logger.debug(f"Running cleaner {self.name} with cutoff {cutoff}")
        return self.cleanup_func(cutoff)

    def _loop(self) -> None:
        while not self._stopped.wait(self.period_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error running cleanup task for {self.name}: {e}", exc_info=True)

    def cancel(self, wait: bool = True) -> None:
        """
        Stop the timer. Safe to call repeatedly.

        Pass ``wait=False`` when holding a lock the cleanup function takes;
        a sweep already in flight then finishes on its own.
        """
        self._stopped.set()
        thread = self._thread
        self._thread = None
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.period_seconds)
