"""Coalesce bursts of notifications into a single delayed call."""

import logging
import threading
import time
from collections.abc import Callable

log = logging.getLogger(__name__)


class Debouncer:
    """
    Single-slot debouncer with a staleness ceiling.

    ``trigger()`` arms a timer if none is armed; further triggers while armed
    are ignored and the action runs once when the timer expires. If the
    action last ran more than ``max_staleness`` seconds ago, ``trigger()``
    runs it immediately on the calling thread instead.
    """

    def __init__(
        self,
        action: Callable[[], None],
        delay: float = 1.0,
        max_staleness: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._action = action
        self._delay = delay
        self._max_staleness = max_staleness
        self._clock = clock
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._last_run = clock()

    @property
    def pending(self) -> bool:
        """True while a delayed run is armed."""
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            if self._clock() - self._last_run > self._max_staleness:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                run_now = True
            elif self._timer is not None:
                return
            else:
                self._timer = threading.Timer(self._delay, self._expire)
                self._timer.daemon = True
                self._timer.start()
                run_now = False

        if run_now:
            self._run()

    def _expire(self) -> None:
        with self._lock:
            if self._timer is None or self._timer is not threading.current_thread():
                # Cancelled or replaced after it fired
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        with self._lock:
            self._last_run = self._clock()
        try:
            self._action()
        except Exception:
            log.exception("Debounced action failed")

    def cancel(self) -> None:
        """Disarm a pending run."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
