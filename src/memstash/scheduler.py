"""
Background scheduler that runs expiry sweeps on a fixed interval.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class ExpiryScheduler:
    """
    Calls *sweep* every *interval* seconds on a daemon thread.

    The thread sleeps on an event rather than ``time.sleep`` so that
    :meth:`stop` wakes it up immediately.  A sweep that raises is logged and
    the schedule carries on with the next tick.

    Example:
        >>> scheduler = ExpiryScheduler(store.cleanup_expired, interval=3600)
        >>> scheduler.start()
        >>> ...
        >>> scheduler.stop()
    """

    def __init__(
        self,
        sweep: Callable[[], object],
        interval: float,
        name: str = "memstash-expiry",
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._sweep = sweep
        self.interval = interval
        self._name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start the schedule; does nothing if it is already running."""
        with self._lock:
            if self.is_running:
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name=self._name,
                daemon=True,
            )
            self._thread.start()
        logger.debug("Expiry scheduler started (interval=%ss)", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the schedule and wait up to *timeout* seconds for the thread."""
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            logger.debug("Expiry scheduler stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self._sweep()
            except Exception:
                logger.exception("Expiry sweep failed")

    def __enter__(self) -> ExpiryScheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
