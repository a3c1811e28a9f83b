"""
Batch Accumulator

Folds validated stream entries into batches and persists each closed batch
before acknowledging its entries.

STATES:
    OPEN     accepting entries into the current batch
    CLOSING  a closed batch failed to persist; it is re-committed on every
             call and new entries are refused until it succeeds

A batch closes when it reaches the size threshold or when it has been open
for the timeout. Closing hashes the batch, saves it with its messages in
one store transaction, then acknowledges every stream id folded into it.
Malformed entries are acknowledged immediately and dropped.

Acknowledgements that fail are kept and retried on every later call.
Entries redelivered after a restart are skipped when a message with the
same id and hash is already stored. A message without a messageId takes
its stream id as its id.
"""

import threading
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic import ValidationError

from ..config import BatchingConfig
from ..db import BatchStore, BatchStoreError
from ..observability import PipelineMetrics, get_logger
from ..schemas import Batch, BatchRecord, StreamEntry
from .clock import Clock, SystemClock
from .hasher import CanonicalSerializationError, Hasher

logger = get_logger(__name__)

AckCallback = Callable[[list[str]], None]


class AccumulatorState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"


class BatchPersistenceError(Exception):
    """A closed batch could not be persisted; the accumulator is refusing entries."""

    def __init__(self, batch_id: str, cause: Exception):
        self.batch_id = batch_id
        self.cause = cause
        super().__init__(f"Batch {batch_id} is not persisted yet: {cause}")


class _ClosedBatch:
    __slots__ = ("batch", "batch_hash", "stream_ids", "attempts")

    def __init__(self, batch: Batch, batch_hash: str, stream_ids: list[str]):
        self.batch = batch
        self.batch_hash = batch_hash
        self.stream_ids = stream_ids
        self.attempts = 0


class BatchAccumulator:
    """
    Single-consumer batch builder.

    All state changes happen under one re-entrant lock, so a timeout check
    from a timer thread cannot interleave with an append.
    """

    def __init__(
        self,
        store: BatchStore,
        ack: AckCallback,
        config: Optional[BatchingConfig] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[PipelineMetrics] = None,
        on_batch_closed: Optional[Callable[[BatchRecord], None]] = None,
    ):
        """
        Args:
            store: Where closed batches are persisted
            ack: Called with the stream ids to acknowledge
            config: Size and timeout triggers
            clock: Time source for the batch timeout
            metrics: Counters to report into
            on_batch_closed: Called with each persisted batch
        """
        self._store = store
        self._ack = ack
        self._config = config or BatchingConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self._on_batch_closed = on_batch_closed

        self._lock = threading.RLock()
        self._batch = Batch()
        self._stream_ids: list[str] = []
        self._closing: Optional[_ClosedBatch] = None
        self._unacked: list[str] = []

        self.batches_persisted = 0
        self.entries_dropped = 0
        self.duplicates_skipped = 0

    @property
    def state(self) -> AccumulatorState:
        with self._lock:
            return AccumulatorState.CLOSING if self._closing else AccumulatorState.OPEN

    @property
    def current_batch(self) -> Batch:
        """The open batch (read only)."""
        with self._lock:
            return self._batch

    @property
    def pending_batch_id(self) -> Optional[str]:
        """Id of the closed batch awaiting persistence, if any."""
        with self._lock:
            return self._closing.batch.id if self._closing else None

    def add_entry(
        self,
        stream_id: str,
        fields: Mapping[Any, Any],
        redelivered: bool = False,
    ) -> Optional[BatchRecord]:
        """
        Add one stream entry.

        Returns the persisted batch if this entry closed one. If closing
        fails, the entry still counts as accepted and the failure surfaces
        on the next call.

        Args:
            stream_id: Stream entry id, acknowledged once the entry is stored
            fields: Raw stream fields
            redelivered: The entry was delivered before and may already be
                stored; it is skipped if so

        Raises:
            BatchPersistenceError: An earlier closed batch is still not
                persisted, or the store could not be checked for a
                redelivered entry; this entry was neither accepted nor
                acknowledged
        """
        with self._lock:
            self._retry_acks()
            self._commit_closing()

            try:
                entry = StreamEntry.from_stream_fields(fields)
                message_hash = Hasher.hash_message(entry.device_id, entry.received_at, entry.payload)
            except (ValidationError, CanonicalSerializationError, UnicodeDecodeError) as e:
                self._drop(stream_id, e)
                return None

            message = entry.to_message(message_hash, fallback_id=stream_id)
            if redelivered and self._already_stored(message.id, message_hash):
                self.duplicates_skipped += 1
                logger.info(
                    "Skipping redelivered entry already stored",
                    stream_id=stream_id,
                    message_id=message.id,
                )
                self._acknowledge([stream_id])
                return None

            if self._batch.is_empty:
                self._batch.opened_at = self._clock.now()
            self._batch.add(message)
            self._stream_ids.append(stream_id)
            if self._metrics:
                self._metrics.record_message(True)

            if self._batch.message_count >= self._config.size_threshold:
                try:
                    return self._close("size")
                except BatchPersistenceError:
                    return None
            return None

    def add_entries(self, entries: Iterable[tuple[str, Mapping[Any, Any]]]) -> list[BatchRecord]:
        closed = []
        for stream_id, fields in entries:
            record = self.add_entry(stream_id, fields)
            if record is not None:
                closed.append(record)
        return closed

    def check_timeout(self) -> Optional[BatchRecord]:
        """
        Close the open batch if it has been open for the timeout.

        Also re-commits a batch left over from a failed close.

        Raises:
            BatchPersistenceError: The batch could not be persisted
        """
        with self._lock:
            self._retry_acks()
            record = self._commit_closing()
            if record is not None:
                return record
            if self._batch.is_empty or self._batch.opened_at is None:
                return None
            age = (self._clock.now() - self._batch.opened_at).total_seconds()
            if age >= self._config.timeout_seconds:
                return self._close("timeout")
            return None

    def flush(self) -> Optional[BatchRecord]:
        """
        Close the open batch regardless of size or age.

        Raises:
            BatchPersistenceError: The batch could not be persisted
        """
        with self._lock:
            self._retry_acks()
            record = self._commit_closing()
            if not self._batch.is_empty:
                record = self._close("flush")
            return record

    def _drop(self, stream_id: str, error: Exception) -> None:
        self.entries_dropped += 1
        if self._metrics:
            self._metrics.record_message(False)
        logger.warning(
            "Dropping malformed stream entry",
            stream_id=stream_id,
            error=str(error).splitlines()[0],
            error_kind="MALFORMED_MESSAGE",
        )
        self._acknowledge([stream_id])

    def _close(self, trigger: str) -> BatchRecord:
        batch = self._batch
        closed = _ClosedBatch(batch, Hasher.hash_batch(batch), self._stream_ids)
        self._closing = closed
        self._batch = Batch()
        self._stream_ids = []
        logger.info(
            "Batch closed",
            batch_id=batch.id,
            message_count=batch.message_count,
            trigger=trigger,
        )
        return self._commit_closing()

    def _already_persisted(self, closed: _ClosedBatch) -> Optional[BatchRecord]:
        """A save whose commit succeeded but whose reply was lost leaves the row behind."""
        try:
            record = self._store.get_batch(closed.batch.id)
        except Exception as e:
            logger.debug("Could not check for persisted batch", batch_id=closed.batch.id, error=str(e))
            return None
        if record is not None and record.batch_hash == closed.batch_hash:
            return record
        return None

    def _commit_closing(self) -> Optional[BatchRecord]:
        closed = self._closing
        if closed is None:
            return None

        closed.attempts += 1
        try:
            record = self._store.save_batch(closed.batch, closed.batch_hash, created_at=self._clock.now())
        except BatchStoreError as e:
            record = self._already_persisted(closed) if closed.attempts > 1 else None
            if record is None:
                if self._metrics:
                    self._metrics.record_persist_failure()
                logger.error(
                    "Failed to persist batch, will retry",
                    batch_id=closed.batch.id,
                    attempt=closed.attempts,
                    error=str(e),
                )
                raise BatchPersistenceError(closed.batch.id, e) from e

        self._closing = None
        self._acknowledge(closed.stream_ids)
        self.batches_persisted += 1
        if self._metrics:
            self._metrics.record_batch_closed()
        logger.info(
            "Batch persisted",
            batch_id=record.id,
            message_count=record.message_count,
            batch_hash=record.batch_hash,
        )

        if self._on_batch_closed is not None:
            try:
                self._on_batch_closed(record)
            except Exception as e:
                logger.exception(f"Error in batch closed callback: {e}", batch_id=record.id)
        return record

    def _already_stored(self, message_id: str, message_hash: str) -> bool:
        try:
            stored = self._store.get_message(message_id)
        except Exception as e:
            raise BatchPersistenceError(self._batch.id, e) from e
        return stored is not None and stored.hash == message_hash

    def _acknowledge(self, stream_ids: list[str]) -> None:
        if not stream_ids:
            return
        try:
            self._ack(stream_ids)
        except Exception as e:
            # Kept for the next call; a restart redelivers them instead
            self._unacked.extend(stream_ids)
            logger.error(
                "Failed to acknowledge stream entries",
                count=len(stream_ids),
                unacked=len(self._unacked),
                error=str(e),
            )

    def _retry_acks(self) -> None:
        if not self._unacked:
            return
        stream_ids, self._unacked = self._unacked, []
        self._acknowledge(stream_ids)
        if not self._unacked:
            logger.info("Acknowledged stream entries after earlier failure", count=len(stream_ids))

    def get_statistics(self) -> dict:
        with self._lock:
            return {
                "state": self.state.value,
                "open_batch_id": self._batch.id,
                "open_message_count": self._batch.message_count,
                "opened_at": self._batch.opened_at.isoformat() if self._batch.opened_at else None,
                "pending_batch_id": self._closing.batch.id if self._closing else None,
                "batches_persisted": self.batches_persisted,
                "entries_dropped": self.entries_dropped,
                "duplicates_skipped": self.duplicates_skipped,
                "unacked": len(self._unacked),
                "size_threshold": self._config.size_threshold,
                "timeout_seconds": self._config.timeout_seconds,
            }
