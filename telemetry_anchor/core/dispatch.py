"""
Anchor dispatch.

Shared by the retry reconciler and the windowed scheduler: for each
candidate batch, take the claim, make one anchoring attempt, and write the
outcome back to the store.

The signature of a sent transaction is stored as soon as it is known, so
an attempt whose outcome is never written is found on the ledger by the
next claimer instead of being sent again.

Outcome rules:
    confirmed            -> status confirmed, signature stored
    final error          -> status failed, error stored
    retryable error      -> retry_count + 1, status pending; once
                            retry_count reaches max_retries -> failed
"""

import os
import socket
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Optional

from ..config import AnchoringConfig
from ..db import BatchStore
from ..observability import PipelineMetrics, get_logger
from ..schemas import AnchorStatus, BatchRecord
from .anchor import AnchoringClient, AnchorResult
from .clock import Clock, SystemClock

logger = get_logger(__name__)


def default_owner() -> str:
    """Claim owner id unique to this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


@dataclass
class DispatchSummary:
    attempted: int = 0
    confirmed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AnchorDispatcher:
    """Claims and anchors batches one at a time."""

    def __init__(
        self,
        store: BatchStore,
        client: AnchoringClient,
        config: Optional[AnchoringConfig] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[PipelineMetrics] = None,
        owner: Optional[str] = None,
    ):
        self._store = store
        self._client = client
        self._config = config or AnchoringConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self.owner = owner or default_owner()

    @property
    def client(self) -> AnchoringClient:
        return self._client

    def dispatch(
        self,
        candidates: Iterable[BatchRecord],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> DispatchSummary:
        """
        Attempt each candidate in order, pausing between attempts.

        Args:
            candidates: Batches to try, typically oldest first
            should_stop: Checked before each candidate; True ends the run early
        """
        summary = DispatchSummary()
        for candidate in candidates:
            if should_stop is not None and should_stop():
                break
            if summary.attempted:
                self._clock.sleep(self._config.inter_attempt_delay_seconds)
            try:
                self._dispatch_one(candidate, summary)
            except Exception as e:
                summary.errors += 1
                logger.exception(f"Error anchoring batch {candidate.id}: {e}", batch_id=candidate.id)
        return summary

    def _dispatch_one(self, candidate: BatchRecord, summary: DispatchSummary) -> None:
        claimed = self._store.claim(
            candidate.id,
            owner=self.owner,
            lease_seconds=self._config.claim_lease_seconds,
            now=self._clock.now(),
            max_retries=self._config.max_retries,
        )
        if claimed is None:
            summary.skipped += 1
            if self._metrics:
                self._metrics.record_claim_lost()
            logger.debug("Batch not claimable, skipping", batch_id=candidate.id)
            return

        summary.attempted += 1
        result = self._client.record_batch(
            claimed,
            claimed.batch_hash,
            previous_signature=claimed.anchor.signature,
            on_submitted=lambda signature: self._store.record_submission(claimed.id, signature),
        )
        outcome = self.apply_result(claimed, result)
        if outcome == AnchorStatus.CONFIRMED:
            summary.confirmed += 1
        elif outcome == AnchorStatus.FAILED:
            summary.failed += 1
        else:
            summary.retried += 1

    def apply_result(self, batch: BatchRecord, result: AnchorResult) -> AnchorStatus:
        """Write one attempt's outcome to the store. Returns the new status."""
        max_retries = self._config.max_retries

        if result.success:
            self._store.update_anchor_status(
                batch.id,
                AnchorStatus.CONFIRMED,
                signature=result.signature,
                now=self._clock.now(),
            )
            if self._metrics:
                self._metrics.record_anchor(True, latency_ms=result.duration_ms)
            return AnchorStatus.CONFIRMED

        error = f"{result.error.value}: {result.message}" if result.error else (result.message or "")

        if not result.retryable:
            self._store.update_anchor_status(
                batch.id,
                AnchorStatus.FAILED,
                signature=result.signature,
                error=error,
            )
            if self._metrics:
                self._metrics.record_anchor(False, result.duration_ms, error=error, failed=True)
            logger.error("Batch anchoring failed permanently", batch_id=batch.id, error=error)
            return AnchorStatus.FAILED

        updated = self._store.record_retry(batch.id, error, signature=result.signature)
        if updated.anchor.retry_count >= max_retries:
            self._store.update_anchor_status(
                batch.id,
                AnchorStatus.FAILED,
                error=f"Max retries ({max_retries}) reached. Last error: {error}",
            )
            if self._metrics:
                self._metrics.record_anchor(False, result.duration_ms, error=error, failed=True)
            logger.error(
                "Batch out of retries",
                batch_id=batch.id,
                retry_count=updated.anchor.retry_count,
                error=error,
            )
            return AnchorStatus.FAILED

        if self._metrics:
            self._metrics.record_anchor(False, result.duration_ms, error=error, retried=True)
        logger.info(
            "Batch queued for retry",
            batch_id=batch.id,
            retry_count=updated.anchor.retry_count,
            max_retries=max_retries,
            error=error,
        )
        return AnchorStatus.PENDING
