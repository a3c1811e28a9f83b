"""
Redis Streams consumer.

Reads telemetry entries from a consumer group and feeds them to the batch
accumulator. Entries are acknowledged by the accumulator only after the
batch holding them is persisted, so an entry read but never acknowledged
stays in this consumer's pending list and is read again on restart.

Startup drains the pending list (id "0") before reading new entries (">").
"""

import json
import threading
from typing import Any, Mapping, Optional

import redis

from ..config import StreamConfig
from ..core.accumulator import BatchAccumulator, BatchPersistenceError
from ..core.clock import Clock, SystemClock
from ..observability import get_logger

logger = get_logger(__name__)

StreamEntries = list[tuple[str, dict[str, str]]]

BACKOFF_INITIAL_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0


def _flatten(fields: Mapping[str, Any]) -> dict[str, str]:
    return {k: v if isinstance(v, str) else json.dumps(v) for k, v in fields.items()}


class RedisStreamConsumer:
    """One consumer in a Redis Streams consumer group."""

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        client: Optional[redis.Redis] = None,
        clock: Optional[Clock] = None,
    ):
        self._config = config or StreamConfig()
        self._client = client or redis.Redis.from_url(self._config.url, decode_responses=True)
        self._clock = clock or SystemClock()
        self._stop_event = threading.Event()
        self._backoff = BACKOFF_INITIAL_SECONDS

        self.entries_read = 0
        self.entries_acked = 0

    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def client(self) -> redis.Redis:
        return self._client

    def ensure_group(self) -> None:
        """Create the consumer group (and the stream) if missing."""
        try:
            self._client.xgroup_create(
                self._config.stream, self._config.group, id="$", mkstream=True
            )
            logger.info(
                "Redis consumer group created",
                stream=self._config.stream,
                group=self._config.group,
            )
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    def _read(self, start_id: str, block_ms: Optional[int]) -> StreamEntries:
        response = self._client.xreadgroup(
            self._config.group,
            self._config.consumer,
            {self._config.stream: start_id},
            count=self._config.read_count,
            block=block_ms,
        )
        if not response:
            return []
        entries: StreamEntries = []
        for _stream, stream_entries in response:
            for entry_id, fields in stream_entries:
                # Entries deleted while pending come back with no fields
                entries.append((entry_id, dict(fields or {})))
        self.entries_read += len(entries)
        return entries

    def read_new(self) -> StreamEntries:
        """Block up to block_ms for entries never delivered to this group."""
        return self._read(">", self._config.block_ms)

    def read_pending(self, after_id: str = "0") -> StreamEntries:
        """Entries delivered to this consumer but not acknowledged."""
        return self._read(after_id, None)

    def ack(self, entry_ids: list[str]) -> int:
        if not entry_ids:
            return 0
        acked = self._client.xack(self._config.stream, self._config.group, *entry_ids)
        self.entries_acked += int(acked or 0)
        return acked

    def publish(self, fields: Mapping[str, Any]) -> str:
        """Append an entry to the stream. Non-string values are JSON encoded."""
        return self._client.xadd(self._config.stream, _flatten(fields))

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _wait_backoff(self, reason: str, error: Exception) -> None:
        logger.warning(
            f"{reason}, backing off",
            backoff_seconds=self._backoff,
            error=str(error),
        )
        self._clock.wait(self._stop_event, self._backoff)
        self._backoff = min(self._backoff * 2, BACKOFF_MAX_SECONDS)

    def _feed(
        self,
        accumulator: BatchAccumulator,
        entries: StreamEntries,
        redelivered: bool = False,
    ) -> bool:
        """
        Hand entries to the accumulator in order.

        An entry refused because an earlier batch is not yet persisted is
        offered again after a backoff. Returns False if stopped first.
        """
        for entry_id, fields in entries:
            while True:
                if self.stopped:
                    return False
                try:
                    accumulator.add_entry(entry_id, fields, redelivered=redelivered)
                    self._backoff = BACKOFF_INITIAL_SECONDS
                    break
                except BatchPersistenceError as e:
                    self._wait_backoff("Batch store unavailable", e)
        return True

    def drain_pending(self, accumulator: BatchAccumulator) -> int:
        """Re-read entries left pending by a previous run. Returns how many."""
        total = 0
        last_id = "0"
        while not self.stopped:
            entries = self.read_pending(last_id)
            if not entries:
                break
            total += len(entries)
            if not self._feed(accumulator, entries, redelivered=True):
                break
            last_id = entries[-1][0]
        if total:
            logger.info("Recovered pending stream entries", count=total)
        return total

    def run(self, accumulator: BatchAccumulator) -> None:
        """
        Consume until stop() is called.

        The batch timeout is checked once per read cycle, so a quiet stream
        still closes batches within block_ms of their deadline.
        """
        self._stop_event.clear()
        self.ensure_group()
        self.drain_pending(accumulator)
        logger.info(
            "Stream consumer started",
            stream=self._config.stream,
            group=self._config.group,
            consumer=self._config.consumer,
        )

        while not self.stopped:
            try:
                accumulator.check_timeout()
            except BatchPersistenceError as e:
                self._wait_backoff("Batch store unavailable", e)
                continue

            try:
                entries = self.read_new()
            except redis.exceptions.ConnectionError as e:
                self._wait_backoff("Redis connection lost", e)
                continue

            if entries:
                self._feed(accumulator, entries)
            self._backoff = BACKOFF_INITIAL_SECONDS

        logger.info("Stream consumer stopped")

    def close(self) -> None:
        self._client.close()
