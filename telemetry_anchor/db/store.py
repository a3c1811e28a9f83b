"""
Batch Store Abstraction

This module defines the BatchStore interface and provides two implementations:
- InMemoryBatchStore: For development and testing
- PostgresBatchStore: For production with full durability and concurrency safety

The BatchStore is responsible for:
- Atomic persistence of a closed batch together with all of its messages
- Anchor status bookkeeping (monotone, terminal states are sinks)
- The anchoring work queue: the status column is the queue, and workers
  take items with claim() before every attempt

CLAIM CONTRACT:
Every anchoring attempt must be preceded by a successful claim:

    record = store.claim(batch_id, owner, lease_seconds, now, max_retries)
    if record is None:
        return  # another worker owns it, or it is done
    ... attempt ...
    store.update_anchor_status(...) or store.record_retry(...)

claim() is an atomic compare-and-set to in_progress with a lease. Two
workers can never both hold a live lease on the same batch.
"""

import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generator, Optional

from psycopg2.extras import Json, execute_values

from ..schemas import (
    AnchorRecord,
    AnchorStatus,
    Batch,
    BatchRecord,
    GeoPoint,
    LocationSummary,
    Message,
    can_transition,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class BatchStoreError(Exception):
    """Base exception for batch store errors."""
    pass


class BatchNotFoundError(BatchStoreError):
    """Raised when a batch id does not exist."""
    pass


class AnchorStatusError(BatchStoreError):
    """Raised when an anchor status change would leave a final state."""
    pass


class StoreTimeoutError(BatchStoreError):
    """Raised when a lock or statement timeout cancels a query."""
    pass


# ============================================================
# AGGREGATION
# ============================================================

def _unique(values) -> list[str]:
    """Distinct non-empty values in first-seen order."""
    seen = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def summarize_batch(batch: Batch, batch_hash: str, created_at: datetime) -> BatchRecord:
    """
    Build the persisted record for a closed batch.

    Derives the distinct device, asset, asset type and site ids and the
    location summary from the batch's messages.
    """
    if batch.is_empty:
        raise BatchStoreError(f"Refusing to persist empty batch {batch.id}")

    messages = batch.messages
    return BatchRecord(
        id=batch.id,
        batch_hash=batch_hash,
        message_count=batch.message_count,
        start_timestamp=batch.start_timestamp,
        end_timestamp=batch.end_timestamp,
        created_at=created_at,
        device_ids=_unique(m.device_id for m in messages),
        asset_ids=_unique(m.asset_id for m in messages),
        asset_types=_unique(m.asset_type for m in messages),
        site_ids=_unique(m.site_id for m in messages),
        location_summary=LocationSummary.from_points(
            [(m.device_id, m.location) for m in messages if m.location is not None]
        ),
    )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class BatchStore(ABC):
    """
    Abstract base class for batch storage.

    Implementations must ensure:
    1. save_batch writes the batch and all its messages in one transaction
    2. confirmed and failed are never left
    3. claim is atomic across every process sharing the store
    """

    def init_schema(self) -> None:
        """Create tables if the backend needs them."""
        return None

    @abstractmethod
    def save_batch(
        self,
        batch: Batch,
        batch_hash: str,
        created_at: Optional[datetime] = None,
    ) -> BatchRecord:
        """
        Persist a closed batch and its messages atomically.

        Raises:
            BatchStoreError: Nothing was written
        """
        ...

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[BatchRecord]:
        ...

    @abstractmethod
    def list_batches(self, limit: int = 50, offset: int = 0) -> list[BatchRecord]:
        """Batches ordered newest first by end timestamp."""
        ...

    @abstractmethod
    def get_messages(self, batch_id: str) -> list[Message]:
        """Messages of a batch in arrival order."""
        ...

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    def update_anchor_status(
        self,
        batch_id: str,
        status: AnchorStatus,
        signature: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BatchRecord:
        """
        Move a batch's anchor status forward and release any claim.

        Raises:
            BatchNotFoundError: Unknown batch id
            AnchorStatusError: The batch is already confirmed or failed
        """
        ...

    @abstractmethod
    def record_retry(self, batch_id: str, error: str, signature: Optional[str] = None) -> BatchRecord:
        """
        Count a failed attempt: increment retry_count, keep the error,
        set status pending and release any claim.

        signature is the transaction submitted by the failed attempt, if
        any. It is kept so the next attempt can check whether it landed.
        """
        ...

    @abstractmethod
    def record_submission(self, batch_id: str, signature: str) -> BatchRecord:
        """
        Keep the signature of a transaction that was just sent, before it
        is confirmed. Status and claim are left as they are.

        Raises:
            BatchNotFoundError: Unknown batch id
            AnchorStatusError: The batch is already confirmed or failed
        """
        ...

    @abstractmethod
    def fail_exhausted(self, max_retries: int, error: str, now: datetime) -> list[str]:
        """
        Mark failed every batch that is out of retries but was never failed.

        Covers pending batches and expired claims whose retry_count is at or
        above max_retries, which happens when the limit is lowered. A
        submitted signature is kept. Returns the ids marked failed.
        """
        ...

    @abstractmethod
    def find_retry_candidates(
        self,
        max_retries: int,
        limit: int,
        now: datetime,
        include_unattempted: bool = False,
    ) -> list[BatchRecord]:
        """
        Oldest batches due for a retry.

        pending (or in_progress with an expired lease) with retry_count below
        max_retries, ordered by start timestamp. With include_unattempted,
        batches never attempted (status none) qualify as well.
        """
        ...

    @abstractmethod
    def find_window_candidates(
        self,
        window_start: datetime,
        window_end: datetime,
        max_retries: int,
        now: datetime,
        include_stragglers: bool = True,
    ) -> list[BatchRecord]:
        """
        Batches due for anchoring in a time window.

        start_timestamp in [window_start, window_end), status none or pending
        (or in_progress with an expired lease), retry_count below max_retries.
        With include_stragglers, also none batches that started before the
        window.
        """
        ...

    @abstractmethod
    def claim(
        self,
        batch_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime,
        max_retries: int,
    ) -> Optional[BatchRecord]:
        """
        Atomically take a batch for one anchoring attempt.

        Returns the claimed record, or None if the batch is unknown, final,
        out of retries, or leased by someone else.
        """
        ...

    @abstractmethod
    def get_status_counts(self) -> dict[str, int]:
        ...

    @abstractmethod
    def count_retry_queue(self, max_retries: int) -> int:
        ...


def _empty_status_counts() -> dict[str, int]:
    return {status.value: 0 for status in AnchorStatus}


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryBatchStore(BatchStore):
    """
    In-memory batch store for development and testing.

    A single lock serializes every operation, which makes claim() a true
    compare-and-set within the process. Records handed out are copies.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._batches: dict[str, BatchRecord] = {}
        self._messages: dict[str, list[Message]] = {}
        self._message_index: dict[str, Message] = {}

    def save_batch(
        self,
        batch: Batch,
        batch_hash: str,
        created_at: Optional[datetime] = None,
    ) -> BatchRecord:
        record = summarize_batch(batch, batch_hash, created_at or datetime.now(timezone.utc))
        with self._lock:
            if record.id in self._batches:
                raise BatchStoreError(f"Batch {record.id} already exists")
            self._batches[record.id] = record
            self._messages[record.id] = list(batch.messages)
            for message in batch.messages:
                # Duplicate message ids across batches: first stored wins the lookup
                self._message_index.setdefault(message.id, message)
            return record.model_copy(deep=True)

    def get_batch(self, batch_id: str) -> Optional[BatchRecord]:
        with self._lock:
            record = self._batches.get(batch_id)
            return record.model_copy(deep=True) if record else None

    def list_batches(self, limit: int = 50, offset: int = 0) -> list[BatchRecord]:
        with self._lock:
            ordered = sorted(self._batches.values(), key=lambda b: b.end_timestamp, reverse=True)
            return [b.model_copy(deep=True) for b in ordered[offset:offset + limit]]

    def get_messages(self, batch_id: str) -> list[Message]:
        with self._lock:
            return list(self._messages.get(batch_id, []))

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._message_index.get(message_id)

    def _require(self, batch_id: str) -> BatchRecord:
        record = self._batches.get(batch_id)
        if record is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return record

    def update_anchor_status(
        self,
        batch_id: str,
        status: AnchorStatus,
        signature: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BatchRecord:
        status = AnchorStatus(status)
        with self._lock:
            record = self._require(batch_id)
            current = record.anchor
            if not can_transition(current.status, status):
                raise AnchorStatusError(
                    f"Batch {batch_id} cannot move from {current.status.value} to {status.value}"
                )
            record.anchor = AnchorRecord(
                status=status,
                signature=signature or current.signature,
                retry_count=current.retry_count,
                last_error=error if error is not None else current.last_error,
                confirmed_at=(now or datetime.now(timezone.utc))
                if status == AnchorStatus.CONFIRMED else current.confirmed_at,
            )
            return record.model_copy(deep=True)

    def record_retry(self, batch_id: str, error: str, signature: Optional[str] = None) -> BatchRecord:
        with self._lock:
            record = self._require(batch_id)
            current = record.anchor
            if current.status.is_terminal:
                raise AnchorStatusError(
                    f"Batch {batch_id} is {current.status.value}; cannot record a retry"
                )
            record.anchor = AnchorRecord(
                status=AnchorStatus.PENDING,
                signature=signature or current.signature,
                retry_count=current.retry_count + 1,
                last_error=error,
            )
            return record.model_copy(deep=True)

    def record_submission(self, batch_id: str, signature: str) -> BatchRecord:
        with self._lock:
            record = self._require(batch_id)
            if record.anchor.status.is_terminal:
                raise AnchorStatusError(
                    f"Batch {batch_id} is {record.anchor.status.value}; cannot record a submission"
                )
            record.anchor = record.anchor.model_copy(update={"signature": signature})
            return record.model_copy(deep=True)

    def fail_exhausted(self, max_retries: int, error: str, now: datetime) -> list[str]:
        failed = []
        with self._lock:
            for record in self._batches.values():
                anchor = record.anchor
                if anchor.retry_count < max_retries:
                    continue
                expired_claim = (
                    anchor.status == AnchorStatus.IN_PROGRESS
                    and (anchor.lease_expires_at is None or anchor.lease_expires_at <= now)
                )
                if anchor.status != AnchorStatus.PENDING and not expired_claim:
                    continue
                record.anchor = AnchorRecord(
                    status=AnchorStatus.FAILED,
                    signature=anchor.signature,
                    retry_count=anchor.retry_count,
                    last_error=error,
                )
                failed.append(record.id)
        return failed

    def _due(self, record: BatchRecord, now: datetime, max_retries: int) -> bool:
        return record.is_claimable(now, max_retries)

    def find_retry_candidates(
        self,
        max_retries: int,
        limit: int,
        now: datetime,
        include_unattempted: bool = False,
    ) -> list[BatchRecord]:
        with self._lock:
            due = [
                b for b in self._batches.values()
                if self._due(b, now, max_retries)
                and (include_unattempted or b.anchor.status != AnchorStatus.NONE)
            ]
            due.sort(key=lambda b: b.start_timestamp)
            return [b.model_copy(deep=True) for b in due[:limit]]

    def find_window_candidates(
        self,
        window_start: datetime,
        window_end: datetime,
        max_retries: int,
        now: datetime,
        include_stragglers: bool = True,
    ) -> list[BatchRecord]:
        with self._lock:
            due = []
            for b in self._batches.values():
                if not self._due(b, now, max_retries):
                    continue
                in_window = window_start <= b.start_timestamp < window_end
                straggler = (
                    include_stragglers
                    and b.anchor.status == AnchorStatus.NONE
                    and b.start_timestamp < window_start
                )
                if in_window or straggler:
                    due.append(b)
            due.sort(key=lambda b: b.start_timestamp)
            return [b.model_copy(deep=True) for b in due]

    def claim(
        self,
        batch_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime,
        max_retries: int,
    ) -> Optional[BatchRecord]:
        with self._lock:
            record = self._batches.get(batch_id)
            if record is None or not record.is_claimable(now, max_retries):
                return None
            record.anchor = record.anchor.model_copy(update={
                "status": AnchorStatus.IN_PROGRESS,
                "lease_owner": owner,
                "lease_expires_at": now + timedelta(seconds=lease_seconds),
            })
            return record.model_copy(deep=True)

    def get_status_counts(self) -> dict[str, int]:
        counts = _empty_status_counts()
        with self._lock:
            for record in self._batches.values():
                counts[record.anchor.status.value] += 1
        return counts

    def count_retry_queue(self, max_retries: int) -> int:
        with self._lock:
            return sum(
                1 for b in self._batches.values()
                if b.anchor.status == AnchorStatus.PENDING and b.anchor.retry_count < max_retries
            )

    def clear(self) -> None:
        """Clear all data (for testing)."""
        with self._lock:
            self._batches.clear()
            self._messages.clear()
            self._message_index.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS batches (
    id                TEXT PRIMARY KEY,
    batch_hash        CHAR(64) NOT NULL,
    message_count     INTEGER NOT NULL CHECK (message_count >= 1),
    start_ts          TIMESTAMPTZ NOT NULL,
    end_ts            TIMESTAMPTZ NOT NULL,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    device_ids        TEXT[] NOT NULL DEFAULT '{}',
    asset_ids         TEXT[] NOT NULL DEFAULT '{}',
    asset_types       TEXT[] NOT NULL DEFAULT '{}',
    site_ids          TEXT[] NOT NULL DEFAULT '{}',
    location_summary  JSONB,
    anchor_status     TEXT NOT NULL DEFAULT 'none'
        CHECK (anchor_status IN ('none', 'pending', 'in_progress', 'confirmed', 'failed')),
    anchor_signature  TEXT,
    retry_count       INTEGER NOT NULL DEFAULT 0,
    last_error        TEXT,
    confirmed_at      TIMESTAMPTZ,
    lease_owner       TEXT,
    lease_expires_at  TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_batches_anchor_queue ON batches (anchor_status, start_ts);
CREATE INDEX IF NOT EXISTS idx_batches_end_ts ON batches (end_ts DESC);

CREATE TABLE IF NOT EXISTS messages (
    batch_id      TEXT NOT NULL REFERENCES batches (id) ON DELETE CASCADE,
    position      INTEGER NOT NULL,
    id            TEXT NOT NULL,
    topic         TEXT NOT NULL DEFAULT '',
    device_id     TEXT NOT NULL,
    tenant_id     TEXT NOT NULL,
    site_id       TEXT NOT NULL,
    asset_id      TEXT,
    asset_type    TEXT,
    location      JSONB,
    message_hash  CHAR(64) NOT NULL,
    raw_payload   JSONB NOT NULL,
    received_at   TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (batch_id, position)
);

CREATE INDEX IF NOT EXISTS idx_messages_id ON messages (id);
"""

_BATCH_COLUMNS = """
    id, batch_hash, message_count, start_ts, end_ts, created_at,
    device_ids, asset_ids, asset_types, site_ids, location_summary,
    anchor_status, anchor_signature, retry_count, last_error, confirmed_at,
    lease_owner, lease_expires_at
"""

_MESSAGE_COLUMNS = """
    id, topic, device_id, tenant_id, site_id, asset_id, asset_type,
    location, message_hash, raw_payload, received_at
"""

# Rows an anchoring worker may take: never attempted, awaiting retry,
# or claimed by a worker whose lease ran out
_DUE_CONDITION = """
    retry_count < %(max_retries)s
    AND (
        anchor_status IN ('none', 'pending')
        OR (anchor_status = 'in_progress'
            AND (lease_expires_at IS NULL OR lease_expires_at <= %(now)s))
    )
"""


def _json_value(value: Any) -> Any:
    # psycopg2 returns JSONB already decoded; TEXT fallbacks arrive as str
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresBatchStore(BatchStore):
    """
    PostgreSQL implementation of BatchStore.

    Provides:
    - Full ACID guarantees (batch and messages in one transaction)
    - Atomic claims via conditional UPDATE ... RETURNING
    - Multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Every operation opens its own connection from the factory, so one store
    instance can be shared across threads.

    Usage:
        store = PostgresBatchStore(lambda: psycopg2.connect(config.to_dsn()))
        store.init_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL batch store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """
        Run a block in one transaction and yield its cursor.

        Commits on success, rolls back on any exception. Timeouts are
        raised as StoreTimeoutError.
        """
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        try:
            # SET LOCAL keeps the timeouts scoped to this transaction
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            yield cursor
            conn.commit()
        except Exception as e:
            conn.rollback()
            kind = self._timeout_kind(e)
            if kind == "lock":
                raise StoreTimeoutError("Batch store busy - could not acquire lock.") from e
            if kind is not None:
                raise StoreTimeoutError("Query timed out - statement took too long.") from e
            raise
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL exception as a timeout.

        Returns "lock", "statement", "timeout", or None if it is not one.
        57014 (query_canceled) covers both lock_timeout and statement_timeout;
        the message tells them apart.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        return None

    def init_schema(self) -> None:
        with self._transaction() as cursor:
            cursor.execute(SCHEMA_SQL)

    def save_batch(
        self,
        batch: Batch,
        batch_hash: str,
        created_at: Optional[datetime] = None,
    ) -> BatchRecord:
        record = summarize_batch(batch, batch_hash, created_at or datetime.now(timezone.utc))
        summary = record.location_summary

        try:
            with self._transaction() as cursor:
                cursor.execute("""
                    INSERT INTO batches (
                        id, batch_hash, message_count, start_ts, end_ts, created_at,
                        device_ids, asset_ids, asset_types, site_ids, location_summary
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    record.id,
                    record.batch_hash,
                    record.message_count,
                    record.start_timestamp,
                    record.end_timestamp,
                    record.created_at,
                    record.device_ids,
                    record.asset_ids,
                    record.asset_types,
                    record.site_ids,
                    Json(summary.model_dump(mode="json")) if summary else None,
                ))

                execute_values(cursor, """
                    INSERT INTO messages (
                        batch_id, position, id, topic, device_id, tenant_id, site_id,
                        asset_id, asset_type, location, message_hash, raw_payload, received_at
                    ) VALUES %s
                """, [
                    (
                        record.id,
                        position,
                        m.id,
                        m.topic,
                        m.device_id,
                        m.tenant_id,
                        m.site_id,
                        m.asset_id,
                        m.asset_type,
                        Json(m.location.model_dump()) if m.location else None,
                        m.hash,
                        Json(m.payload),
                        m.received_at,
                    )
                    for position, m in enumerate(batch.messages)
                ], page_size=500)
        except BatchStoreError:
            raise
        except Exception as e:
            raise BatchStoreError(f"Failed to persist batch {batch.id}: {e}") from e

        return record

    def get_batch(self, batch_id: str) -> Optional[BatchRecord]:
        with self._transaction() as cursor:
            cursor.execute(f"SELECT {_BATCH_COLUMNS} FROM batches WHERE id = %s", (batch_id,))
            row = cursor.fetchone()
        return self._row_to_batch(row) if row else None

    def list_batches(self, limit: int = 50, offset: int = 0) -> list[BatchRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_BATCH_COLUMNS} FROM batches ORDER BY end_ts DESC LIMIT %s OFFSET %s",
                (limit, offset),
            )
            rows = cursor.fetchall()
        return [self._row_to_batch(row) for row in rows]

    def get_messages(self, batch_id: str) -> list[Message]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE batch_id = %s ORDER BY position",
                (batch_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = %s "
                f"ORDER BY received_at LIMIT 1",
                (message_id,),
            )
            row = cursor.fetchone()
        return self._row_to_message(row) if row else None

    def _raise_for_missing_or_final(self, cursor, batch_id: str, action: str) -> None:
        cursor.execute("SELECT anchor_status FROM batches WHERE id = %s", (batch_id,))
        row = cursor.fetchone()
        if row is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        raise AnchorStatusError(f"Batch {batch_id} is {row[0]}; cannot {action}")

    def update_anchor_status(
        self,
        batch_id: str,
        status: AnchorStatus,
        signature: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BatchRecord:
        status = AnchorStatus(status)
        if status == AnchorStatus.NONE:
            raise AnchorStatusError(f"Batch {batch_id} cannot move back to none")

        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE batches
                SET anchor_status = %(status)s,
                    anchor_signature = COALESCE(%(signature)s, anchor_signature),
                    last_error = COALESCE(%(error)s, last_error),
                    confirmed_at = CASE WHEN %(status)s = 'confirmed'
                                        THEN %(now)s ELSE confirmed_at END,
                    lease_owner = NULL,
                    lease_expires_at = NULL
                WHERE id = %(id)s
                  AND anchor_status NOT IN ('confirmed', 'failed')
                RETURNING {_BATCH_COLUMNS}
            """, {
                "status": status.value,
                "signature": signature,
                "error": error,
                "now": now or datetime.now(timezone.utc),
                "id": batch_id,
            })
            row = cursor.fetchone()
            if row is None:
                self._raise_for_missing_or_final(cursor, batch_id, f"move to {status.value}")
        return self._row_to_batch(row)

    def record_retry(self, batch_id: str, error: str, signature: Optional[str] = None) -> BatchRecord:
        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE batches
                SET anchor_status = 'pending',
                    retry_count = retry_count + 1,
                    last_error = %s,
                    anchor_signature = COALESCE(%s, anchor_signature),
                    lease_owner = NULL,
                    lease_expires_at = NULL
                WHERE id = %s
                  AND anchor_status NOT IN ('confirmed', 'failed')
                RETURNING {_BATCH_COLUMNS}
            """, (error, signature, batch_id))
            row = cursor.fetchone()
            if row is None:
                self._raise_for_missing_or_final(cursor, batch_id, "record a retry")
        return self._row_to_batch(row)

    def record_submission(self, batch_id: str, signature: str) -> BatchRecord:
        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE batches
                SET anchor_signature = %s
                WHERE id = %s
                  AND anchor_status NOT IN ('confirmed', 'failed')
                RETURNING {_BATCH_COLUMNS}
            """, (signature, batch_id))
            row = cursor.fetchone()
            if row is None:
                self._raise_for_missing_or_final(cursor, batch_id, "record a submission")
        return self._row_to_batch(row)

    def fail_exhausted(self, max_retries: int, error: str, now: datetime) -> list[str]:
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE batches
                SET anchor_status = 'failed',
                    last_error = %(error)s,
                    lease_owner = NULL,
                    lease_expires_at = NULL
                WHERE retry_count >= %(max_retries)s
                  AND (
                      anchor_status = 'pending'
                      OR (anchor_status = 'in_progress'
                          AND (lease_expires_at IS NULL OR lease_expires_at <= %(now)s))
                  )
                RETURNING id
            """, {"error": error, "max_retries": max_retries, "now": now})
            return [row[0] for row in cursor.fetchall()]

    def find_retry_candidates(
        self,
        max_retries: int,
        limit: int,
        now: datetime,
        include_unattempted: bool = False,
    ) -> list[BatchRecord]:
        with self._transaction() as cursor:
            cursor.execute(f"""
                SELECT {_BATCH_COLUMNS} FROM batches
                WHERE {_DUE_CONDITION}
                  AND (%(include_unattempted)s OR anchor_status <> 'none')
                ORDER BY start_ts ASC
                LIMIT %(limit)s
            """, {
                "max_retries": max_retries,
                "now": now,
                "include_unattempted": include_unattempted,
                "limit": limit,
            })
            rows = cursor.fetchall()
        return [self._row_to_batch(row) for row in rows]

    def find_window_candidates(
        self,
        window_start: datetime,
        window_end: datetime,
        max_retries: int,
        now: datetime,
        include_stragglers: bool = True,
    ) -> list[BatchRecord]:
        with self._transaction() as cursor:
            cursor.execute(f"""
                SELECT {_BATCH_COLUMNS} FROM batches
                WHERE {_DUE_CONDITION}
                  AND (
                      (start_ts >= %(start)s AND start_ts < %(end)s)
                      OR (%(stragglers)s AND anchor_status = 'none' AND start_ts < %(start)s)
                  )
                ORDER BY start_ts ASC
            """, {
                "max_retries": max_retries,
                "now": now,
                "start": window_start,
                "end": window_end,
                "stragglers": include_stragglers,
            })
            rows = cursor.fetchall()
        return [self._row_to_batch(row) for row in rows]

    def claim(
        self,
        batch_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime,
        max_retries: int,
    ) -> Optional[BatchRecord]:
        # A concurrent claimer blocks on the row lock, then re-checks the
        # WHERE clause against the committed row and matches nothing
        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE batches
                SET anchor_status = 'in_progress',
                    lease_owner = %(owner)s,
                    lease_expires_at = %(expires)s
                WHERE id = %(id)s AND {_DUE_CONDITION}
                RETURNING {_BATCH_COLUMNS}
            """, {
                "owner": owner,
                "expires": now + timedelta(seconds=lease_seconds),
                "id": batch_id,
                "max_retries": max_retries,
                "now": now,
            })
            row = cursor.fetchone()
        return self._row_to_batch(row) if row else None

    def get_status_counts(self) -> dict[str, int]:
        counts = _empty_status_counts()
        with self._transaction() as cursor:
            cursor.execute("SELECT anchor_status, COUNT(*) FROM batches GROUP BY anchor_status")
            for status, count in cursor.fetchall():
                counts[status] = count
        return counts

    def count_retry_queue(self, max_retries: int) -> int:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM batches WHERE anchor_status = 'pending' AND retry_count < %s",
                (max_retries,),
            )
            return cursor.fetchone()[0]

    def _row_to_batch(self, row: tuple) -> BatchRecord:
        """Convert a batches row to a BatchRecord."""
        summary = _json_value(row[10])
        return BatchRecord(
            id=row[0],
            batch_hash=row[1].strip(),
            message_count=row[2],
            start_timestamp=row[3],
            end_timestamp=row[4],
            created_at=row[5],
            device_ids=list(row[6] or []),
            asset_ids=list(row[7] or []),
            asset_types=list(row[8] or []),
            site_ids=list(row[9] or []),
            location_summary=LocationSummary.model_validate(summary) if summary else None,
            anchor=AnchorRecord(
                status=AnchorStatus(row[11]),
                signature=row[12],
                retry_count=row[13],
                last_error=row[14],
                confirmed_at=row[15],
                lease_owner=row[16],
                lease_expires_at=row[17],
            ),
        )

    def _row_to_message(self, row: tuple) -> Message:
        """Convert a messages row to a Message."""
        location = _json_value(row[7])
        return Message(
            id=row[0],
            topic=row[1],
            device_id=row[2],
            tenant_id=row[3],
            site_id=row[4],
            asset_id=row[5],
            asset_type=row[6],
            location=GeoPoint.model_validate(location) if location else None,
            hash=row[8].strip(),
            payload=row[9],
            received_at=row[10],
        )
