"""
Windowed Anchor Scheduler

Anchors batches on fixed wall-clock windows. Windows are aligned to the
Unix epoch, so with the default 600 seconds they start at :00, :10, :20 and
so on. Shortly after each boundary the scheduler anchors the batches that
started inside the window that just ended.

CONFIGURATION:
- BLOCKCHAIN_SCHEDULE_ENABLED: Enable the scheduler (default: true)
- ANCHOR_WINDOW_SECONDS: Window length (default: 600)
- BLOCKCHAIN_RECORD_ON_STARTUP: Run one tick at startup (default: false)

USAGE:
    scheduler = WindowedScheduler(store, dispatcher, config)
    scheduler.start()

    # Or anchor a specific window by hand
    summary = scheduler.trigger_manual()

    scheduler.stop()
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import AnchoringConfig
from ..db import BatchStore
from ..observability import get_logger, pass_context
from .clock import Clock, SystemClock
from .dispatch import AnchorDispatcher, DispatchSummary
from .tasks import PeriodicTask

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end)."""
    start: datetime
    end: datetime

    def contains(self, when: datetime) -> bool:
        return self.start <= when < self.end

    def __str__(self) -> str:
        return f"{self.start.isoformat()} .. {self.end.isoformat()}"


def window_for(when: datetime, window_seconds: int) -> TimeWindow:
    """The epoch-aligned window containing a point in time."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    offset = int((when - _EPOCH).total_seconds()) // window_seconds * window_seconds
    start = _EPOCH + timedelta(seconds=offset)
    return TimeWindow(start=start, end=start + timedelta(seconds=window_seconds))


def previous_window(when: datetime, window_seconds: int) -> TimeWindow:
    """The last window that has fully elapsed at a point in time."""
    current = window_for(when, window_seconds)
    return TimeWindow(start=current.start - timedelta(seconds=window_seconds), end=current.start)


class WindowedScheduler:
    """
    Anchors each elapsed window once, shortly after its boundary.

    Batches from earlier windows that were never attempted are picked up as
    stragglers. Failed attempts are left to the retry reconciler.
    """

    def __init__(
        self,
        store: BatchStore,
        dispatcher: AnchorDispatcher,
        config: Optional[AnchoringConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._config = config or AnchoringConfig()
        self._clock = clock or SystemClock()

        self._tick_lock = threading.Lock()
        self._stopping = threading.Event()
        self._task = PeriodicTask(
            name="anchor-scheduler",
            action=self.tick,
            next_delay=self._seconds_until_next_run,
            clock=self._clock,
        )

        self.ticks_run = 0
        self.last_window: Optional[TimeWindow] = None
        self.last_summary: Optional[DispatchSummary] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def config(self) -> AnchoringConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._task.is_running

    def next_run_time(self, now: Optional[datetime] = None) -> datetime:
        """Next window boundary plus the grace period."""
        now = now or self._clock.now()
        boundary = window_for(now, self._config.window_seconds).end
        return boundary + timedelta(seconds=self._config.schedule_grace_seconds)

    def _seconds_until_next_run(self) -> float:
        now = self._clock.now()
        # Still inside the grace period of the boundary just passed
        current = window_for(now, self._config.window_seconds)
        grace_end = current.start + timedelta(seconds=self._config.schedule_grace_seconds)
        target = grace_end if now < grace_end else self.next_run_time(now)
        return max((target - now).total_seconds(), 0.0)

    def start(self) -> None:
        if not self._config.schedule_enabled:
            logger.info("Anchor scheduler disabled (set BLOCKCHAIN_SCHEDULE_ENABLED=1 to enable)")
            return

        if self._config.record_on_startup:
            logger.info("Running startup anchoring tick")
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Error in startup anchoring tick: {e}")

        self._stopping.clear()
        self._task.start()
        logger.info(
            f"Anchor scheduler started (window={self._config.window_seconds}s, "
            f"next_run={self.next_run_time().isoformat()})"
        )

    def stop(self, timeout: float = 5.0) -> None:
        if not self._task.is_running:
            return
        self._stopping.set()
        self._task.stop(timeout=timeout)
        logger.info("Anchor scheduler stopped")

    def tick(self) -> Optional[DispatchSummary]:
        """Anchor the window that most recently ended."""
        window = previous_window(self._clock.now(), self._config.window_seconds)
        return self.run_window(window)

    def trigger_manual(self, window: Optional[TimeWindow] = None) -> Optional[DispatchSummary]:
        """
        Anchor a window on demand.

        Defaults to the window that most recently ended.
        """
        window = window or previous_window(self._clock.now(), self._config.window_seconds)
        logger.info("Manual anchoring triggered", window=str(window))
        return self.run_window(window)

    def run_window(self, window: TimeWindow) -> Optional[DispatchSummary]:
        """
        Anchor every due batch that started inside window.

        Returns None when another tick is running or the anchoring client
        is unhealthy.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Anchoring tick already in progress, skipping", window=str(window))
            return None

        try:
            with pass_context():
                report = self._dispatcher.client.check_health()
                if not report.healthy:
                    logger.warning(
                        "Anchoring client unhealthy, skipping window",
                        window=str(window),
                        error=report.error,
                    )
                    return None

                now = self._clock.now()
                candidates = self._store.find_window_candidates(
                    window_start=window.start,
                    window_end=window.end,
                    max_retries=self._config.max_retries,
                    now=now,
                )
                if not candidates:
                    logger.debug("No batches to anchor in window", window=str(window))
                else:
                    logger.info(f"Anchoring {len(candidates)} batches", window=str(window))

                summary = self._dispatcher.dispatch(candidates, should_stop=self._stopping.is_set)
                self.ticks_run += 1
                self.last_window = window
                self.last_summary = summary
                self.last_run_at = now
                if candidates:
                    logger.info("Window anchoring complete", window=str(window), **summary.to_dict())
                return summary
        finally:
            self._tick_lock.release()

    def get_statistics(self) -> dict:
        return {
            "enabled": self._config.schedule_enabled,
            "running": self.is_running,
            "window_seconds": self._config.window_seconds,
            "next_run_at": self.next_run_time().isoformat(),
            "ticks_run": self.ticks_run,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_window": str(self.last_window) if self.last_window else None,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }
