"""
Retry Reconciler

Periodically re-attempts anchoring for batches whose earlier attempts
failed with a retryable error.

CONFIGURATION:
- BLOCKCHAIN_RETRY_INTERVAL_MS: Time between passes (default: 300000)
- BLOCKCHAIN_MAX_RETRIES: Attempts before a batch is failed (default: 10)
- ANCHOR_RETRY_BATCH_LIMIT: Batches per pass (default: 10)

USAGE:
    reconciler = RetryReconciler(store, dispatcher, config)
    reconciler.start()

    # Or run a single pass
    summary = reconciler.run_pass()

    reconciler.stop()

Passes never overlap within a process. Across processes, the store's claim
keeps two reconcilers off the same batch.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..config import AnchoringConfig
from ..db import BatchStore
from ..observability import get_logger, pass_context
from .clock import Clock, SystemClock
from .dispatch import AnchorDispatcher, DispatchSummary
from .tasks import PeriodicTask

logger = get_logger(__name__)


@dataclass
class PassResult:
    """What one reconciler pass did."""
    pass_id: str
    started_at: datetime
    ran: bool
    reason: Optional[str] = None
    candidates: int = 0
    exhausted: int = 0
    summary: Optional[DispatchSummary] = None

    def to_dict(self) -> dict:
        return {
            "pass_id": self.pass_id,
            "started_at": self.started_at.isoformat(),
            "ran": self.ran,
            "reason": self.reason,
            "candidates": self.candidates,
            "exhausted": self.exhausted,
            "summary": self.summary.to_dict() if self.summary else None,
        }


class RetryReconciler:
    """
    Background retry loop for pending batches.

    With include_unattempted set, batches that were never attempted are
    picked up too. The service wiring sets it when the windowed scheduler
    is disabled so that every batch still gets anchored.
    """

    def __init__(
        self,
        store: BatchStore,
        dispatcher: AnchorDispatcher,
        config: Optional[AnchoringConfig] = None,
        clock: Optional[Clock] = None,
        include_unattempted: bool = False,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._config = config or AnchoringConfig()
        self._clock = clock or SystemClock()
        self._include_unattempted = include_unattempted

        self._pass_lock = threading.Lock()
        self._task = PeriodicTask(
            name="retry-reconciler",
            action=self.run_pass,
            next_delay=lambda: self._config.retry_interval_seconds,
            clock=self._clock,
            initial_delay=self._config.startup_delay_seconds,
        )
        self._stopping = threading.Event()

        self.passes_run = 0
        self.passes_skipped = 0
        self.last_pass: Optional[PassResult] = None

    @property
    def is_running(self) -> bool:
        return self._task.is_running

    def start(self) -> None:
        self._stopping.clear()
        self._task.start()
        logger.info(
            f"Retry reconciler started (interval={self._config.retry_interval_seconds}s, "
            f"max_retries={self._config.max_retries})"
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._task.stop(timeout=timeout)
        logger.info("Retry reconciler stopped")

    def run_pass(self) -> PassResult:
        """
        Run one retry pass.

        Returns immediately with ran=False if a pass is already in progress
        or the anchoring client reports unhealthy.
        """
        started_at = self._clock.now()
        if not self._pass_lock.acquire(blocking=False):
            self.passes_skipped += 1
            logger.info("Retry pass already in progress, skipping")
            return PassResult(pass_id="", started_at=started_at, ran=False, reason="pass in progress")

        try:
            with pass_context() as pass_id:
                return self._run_pass(pass_id, started_at)
        finally:
            self._pass_lock.release()

    def _run_pass(self, pass_id: str, started_at: datetime) -> PassResult:
        exhausted = self._fail_exhausted(started_at)

        report = self._dispatcher.client.check_health()
        if not report.healthy:
            self.passes_skipped += 1
            logger.warning("Anchoring client unhealthy, skipping retry pass", error=report.error)
            result = PassResult(
                pass_id=pass_id,
                started_at=started_at,
                ran=False,
                reason="client unhealthy",
                exhausted=exhausted,
            )
            self.last_pass = result
            return result

        candidates = self._store.find_retry_candidates(
            max_retries=self._config.max_retries,
            limit=self._config.retry_batch_limit,
            now=started_at,
            include_unattempted=self._include_unattempted,
        )
        if candidates:
            logger.info(f"Retrying {len(candidates)} pending batches")
        else:
            logger.debug("No batches to retry")

        summary = self._dispatcher.dispatch(candidates, should_stop=self._stopping.is_set)
        self.passes_run += 1
        result = PassResult(
            pass_id=pass_id,
            started_at=started_at,
            ran=True,
            candidates=len(candidates),
            exhausted=exhausted,
            summary=summary,
        )
        self.last_pass = result
        if candidates:
            logger.info("Retry pass complete", **summary.to_dict())
        return result

    def _fail_exhausted(self, now: datetime) -> int:
        """Fail batches left pending with more attempts than max_retries now allows."""
        max_retries = self._config.max_retries
        failed = self._store.fail_exhausted(
            max_retries,
            error=f"Max retries ({max_retries}) reached",
            now=now,
        )
        for batch_id in failed:
            logger.error("Batch out of retries", batch_id=batch_id, max_retries=max_retries)
        return len(failed)

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "interval_seconds": self._config.retry_interval_seconds,
            "max_retries": self._config.max_retries,
            "include_unattempted": self._include_unattempted,
            "passes_run": self.passes_run,
            "passes_skipped": self.passes_skipped,
            "retry_queue": self._store.count_retry_queue(self._config.max_retries),
            "last_pass": self.last_pass.to_dict() if self.last_pass else None,
        }
