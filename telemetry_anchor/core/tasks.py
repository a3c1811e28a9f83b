"""
Background task runner.

A PeriodicTask owns one daemon thread that calls an action, then waits for
the delay returned by ``next_delay`` or until stop() is called. Exceptions
raised by the action are logged and the loop continues.
"""

import threading
from typing import Callable, Optional

from ..observability import get_logger
from .clock import Clock, SystemClock

logger = get_logger(__name__)


class PeriodicTask:
    """Cancellable repeating action on its own thread."""

    def __init__(
        self,
        name: str,
        action: Callable[[], object],
        next_delay: Callable[[], float],
        clock: Optional[Clock] = None,
        initial_delay: Optional[float] = None,
    ):
        """
        Args:
            name: Thread name, also used in log lines
            action: Called once per iteration
            next_delay: Returns seconds to wait before the next iteration
            clock: Clock used for waiting (SystemClock by default)
            initial_delay: Wait before the first iteration (defaults to next_delay())
        """
        self.name = name
        self._action = action
        self._next_delay = next_delay
        self._clock = clock or SystemClock()
        self._initial_delay = initial_delay

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("Task already running", task=self.name)
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if not self._running:
            return

        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

        self._running = False

    def _run_loop(self) -> None:
        delay = self._initial_delay if self._initial_delay is not None else self._next_delay()
        while not self._clock.wait(self._stop_event, delay):
            try:
                self._action()
            except Exception as e:
                logger.exception(f"Error in background task {self.name}: {e}", task=self.name)
            delay = self._next_delay()
