"""
Clock abstraction.

Everything that reads the time or waits goes through a Clock so batch
timeouts, window boundaries and claim leases can be driven by tests.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Source of wall-clock time, monotonic time and waiting."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        ...

    @abstractmethod
    def monotonic(self) -> float:
        ...

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        ...

    @abstractmethod
    def wait(self, event: threading.Event, timeout: float) -> bool:
        """
        Wait until the event is set or the timeout elapses.

        Returns True if the event was set.
        """
        ...


class SystemClock(Clock):
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def wait(self, event: threading.Event, timeout: float) -> bool:
        return event.wait(timeout=max(timeout, 0))


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    sleep() and wait() advance the clock by the requested amount instead of
    blocking, and every sleep is recorded in ``sleeps``.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        return self.now().timestamp()

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)

    def wait(self, event: threading.Event, timeout: float) -> bool:
        if event.is_set():
            return True
        if timeout > 0:
            self.advance(timeout)
        return event.is_set()
