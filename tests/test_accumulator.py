"""
Tests for the batch accumulator.

Every stream entry is acknowledged exactly once: after the batch holding it
is persisted, or immediately if it is malformed.
"""

import json
from datetime import timedelta

import pytest

from telemetry_anchor.core import AccumulatorState, BatchAccumulator, BatchPersistenceError, Hasher
from telemetry_anchor.db import BatchStoreError, InMemoryBatchStore
from telemetry_anchor.schemas import AnchorStatus

from conftest import T0


class FlakyStore(InMemoryBatchStore):
    """Fails the next N saves."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.save_attempts = []

    def save_batch(self, batch, batch_hash, created_at=None):
        self.save_attempts.append(batch.id)
        if self.failures:
            self.failures -= 1
            raise BatchStoreError("connection refused")
        return super().save_batch(batch, batch_hash, created_at)


class LostReplyStore(InMemoryBatchStore):
    """Commits the first save but reports it as failed."""

    def __init__(self):
        super().__init__()
        self.lost = False

    def save_batch(self, batch, batch_hash, created_at=None):
        record = super().save_batch(batch, batch_hash, created_at)
        if not self.lost:
            self.lost = True
            raise BatchStoreError("server closed the connection unexpectedly")
        return record


@pytest.fixture
def acked():
    return []


@pytest.fixture
def accumulator(store, acked, batching_config, clock, metrics):
    return BatchAccumulator(store, acked.extend, batching_config, clock, metrics)


class TestSizeTrigger:
    """Batches close at the size threshold."""

    def test_closes_at_threshold(self, accumulator, make_entry, store, acked):
        """The fifth entry closes a batch of five."""
        for i in range(4):
            assert accumulator.add_entry(f"1-{i}", make_entry(received_at=T0 + timedelta(seconds=i))) is None
        assert acked == []

        record = accumulator.add_entry("1-4", make_entry(received_at=T0 + timedelta(seconds=4)))

        assert record is not None
        assert record.message_count == 5
        assert record.anchor.status == AnchorStatus.NONE
        assert store.get_batch(record.id) is not None
        assert acked == [f"1-{i}" for i in range(5)]
        assert accumulator.current_batch.is_empty

    def test_batch_hash_matches_stored_messages(self, accumulator, make_entry, store):
        for i in range(5):
            record = accumulator.add_entry(f"1-{i}", make_entry(payload={"i": i}))
        messages = store.get_messages(record.id)
        assert [m.payload for m in messages] == [{"i": i} for i in range(5)]
        assert Hasher.verify_batch_contents(record, messages).valid

    def test_new_batch_after_close(self, accumulator, make_entry):
        """Entries after a close start a fresh batch with a new id."""
        first = None
        for i in range(5):
            first = accumulator.add_entry(f"1-{i}", make_entry()) or first
        accumulator.add_entry("1-5", make_entry())
        assert accumulator.current_batch.message_count == 1
        assert accumulator.current_batch.id != first.id

    def test_threshold_of_one(self, store, acked, clock, make_entry):
        from telemetry_anchor.config import BatchingConfig

        acc = BatchAccumulator(store, acked.extend, BatchingConfig(size_threshold=1), clock)
        record = acc.add_entry("1-0", make_entry())
        assert record.message_count == 1
        assert acked == ["1-0"]


class TestTimeoutTrigger:
    """Batches close when open for the timeout."""

    def test_not_closed_before_timeout(self, accumulator, make_entry, clock):
        accumulator.add_entry("1-0", make_entry())
        clock.advance(299)
        assert accumulator.check_timeout() is None

    def test_closed_at_timeout(self, accumulator, make_entry, clock, acked):
        """A partial batch closes once the timeout elapses."""
        accumulator.add_entry("1-0", make_entry())
        accumulator.add_entry("1-1", make_entry())
        clock.advance(300)

        record = accumulator.check_timeout()

        assert record.message_count == 2
        assert acked == ["1-0", "1-1"]

    def test_timeout_measured_from_first_message(self, accumulator, make_entry, clock):
        """An empty batch has no deadline; the first message starts it."""
        clock.advance(1000)
        assert accumulator.check_timeout() is None
        accumulator.add_entry("1-0", make_entry())
        clock.advance(200)
        accumulator.add_entry("1-1", make_entry())
        clock.advance(100)
        assert accumulator.check_timeout() is not None

    def test_empty_batch_never_persisted(self, accumulator, store, clock):
        clock.advance(10_000)
        assert accumulator.check_timeout() is None
        assert accumulator.flush() is None
        assert store.list_batches() == []


class TestMalformedEntries:
    """Malformed entries are acknowledged and dropped."""

    def test_missing_device_id(self, accumulator, make_entry, acked, metrics):
        fields = make_entry()
        del fields["deviceId"]
        assert accumulator.add_entry("9-0", fields) is None
        assert acked == ["9-0"]
        assert accumulator.current_batch.is_empty
        assert metrics.messages_dropped == 1

    def test_bad_timestamp(self, accumulator, make_entry, acked):
        fields = make_entry()
        fields["receivedAt"] = "not a time"
        accumulator.add_entry("9-1", fields)
        assert acked == ["9-1"]

    def test_non_finite_payload(self, accumulator, make_entry, acked):
        """A payload with NaN cannot be hashed canonically."""
        fields = make_entry()
        fields["payload"] = '{"v": NaN}'
        accumulator.add_entry("9-2", fields)
        assert acked == ["9-2"]
        assert accumulator.entries_dropped == 1

    def test_invalid_location(self, accumulator, make_entry, acked):
        accumulator.add_entry("9-3", make_entry(location={"lat": 123, "lon": 0}))
        assert acked == ["9-3"]

    def test_valid_entries_unaffected(self, accumulator, make_entry, acked):
        """A dropped entry neither joins nor blocks the open batch."""
        accumulator.add_entry("1-0", make_entry())
        accumulator.add_entry("9-0", {"garbage": "1"})
        accumulator.add_entry("1-1", make_entry())
        assert accumulator.current_batch.message_count == 2
        assert acked == ["9-0"]

    @pytest.mark.parametrize("payload", [
        '{"note": "a\\u0000b"}',
        '{"a\\u0000": 1}',
        '{"v": [1, "\\u0000"]}',
        "temp\x00=21.5",
    ])
    def test_nul_in_payload(self, accumulator, make_entry, acked, payload):
        """Values the store cannot hold are dropped instead of blocking the batch."""
        fields = make_entry()
        fields["payload"] = payload
        assert accumulator.add_entry("9-4", fields) is None
        assert acked == ["9-4"]
        assert accumulator.current_batch.is_empty

    @pytest.mark.parametrize("field", ["deviceId", "topic", "tenantId", "siteId", "messageId", "assetId"])
    def test_nul_in_text_field(self, accumulator, make_entry, acked, field):
        fields = make_entry()
        fields[field] = "abc\x00def"
        accumulator.add_entry("9-5", fields)
        assert acked == ["9-5"]
        assert accumulator.entries_dropped == 1

    def test_nul_entry_does_not_stall_batch(self, accumulator, make_entry, acked, store):
        accumulator.add_entry("1-0", make_entry())
        fields = make_entry()
        fields["payload"] = '{"note": "\\u0000"}'
        accumulator.add_entry("9-6", fields)
        accumulator.add_entry("1-1", make_entry())

        record = accumulator.flush()

        assert record.message_count == 2
        assert accumulator.state == AccumulatorState.OPEN
        assert acked == ["9-6", "1-0", "1-1"]

    def test_raw_text_payload_accepted(self, accumulator, make_entry, store):
        """Payloads that are not JSON are kept as the raw string."""
        fields = make_entry()
        fields["payload"] = "temp=21.5;hum=40"
        accumulator.add_entry("1-0", fields)
        record = accumulator.flush()
        assert store.get_messages(record.id)[0].payload == "temp=21.5;hum=40"


class TestPersistenceFailure:
    """A closed batch that fails to persist is retried as the same unit."""

    def test_same_batch_retried(self, acked, batching_config, clock, make_entry):
        store = FlakyStore(failures=2)
        acc = BatchAccumulator(store, acked.extend, batching_config, clock)
        for i in range(5):
            acc.add_entry(f"1-{i}", make_entry(payload={"i": i}))

        assert acc.state == AccumulatorState.CLOSING
        assert acked == []
        pending_id = acc.pending_batch_id

        with pytest.raises(BatchPersistenceError):
            acc.check_timeout()
        record = acc.check_timeout()

        assert record.id == pending_id
        assert store.save_attempts == [pending_id] * 3
        assert acked == [f"1-{i}" for i in range(5)]
        assert acc.state == AccumulatorState.OPEN

    def test_new_entries_refused_while_closing(self, acked, batching_config, clock, make_entry):
        """Nothing new is accepted, or acknowledged, until the batch persists."""
        store = FlakyStore(failures=2)
        acc = BatchAccumulator(store, acked.extend, batching_config, clock)
        for i in range(5):
            acc.add_entry(f"1-{i}", make_entry())

        with pytest.raises(BatchPersistenceError):
            acc.add_entry("1-5", make_entry())
        assert acc.current_batch.is_empty
        assert acked == []

        acc.add_entry("1-5", make_entry())
        assert acked == [f"1-{i}" for i in range(5)]
        assert acc.current_batch.message_count == 1

    def test_flush_raises_when_store_down(self, acked, batching_config, clock, make_entry, metrics):
        store = FlakyStore(failures=1)
        acc = BatchAccumulator(store, acked.extend, batching_config, clock, metrics)
        acc.add_entry("1-0", make_entry())
        with pytest.raises(BatchPersistenceError) as exc:
            acc.flush()
        assert exc.value.batch_id == acc.pending_batch_id
        assert metrics.batch_persist_failures == 1
        assert acked == []

    def test_lost_commit_reply_not_duplicated(self, acked, batching_config, clock, make_entry):
        """A save that committed but reported failure is recognized on retry."""
        store = LostReplyStore()
        acc = BatchAccumulator(store, acked.extend, batching_config, clock)
        for i in range(5):
            acc.add_entry(f"1-{i}", make_entry())

        record = acc.check_timeout()

        assert record is not None
        assert len(store.list_batches()) == 1
        assert acked == [f"1-{i}" for i in range(5)]


class TestFlushAndCallbacks:

    def test_flush_closes_partial_batch(self, accumulator, make_entry, acked):
        accumulator.add_entry("1-0", make_entry())
        record = accumulator.flush()
        assert record.message_count == 1
        assert acked == ["1-0"]

    def test_on_batch_closed_called(self, store, acked, batching_config, clock, make_entry):
        closed = []
        acc = BatchAccumulator(store, acked.extend, batching_config, clock, on_batch_closed=closed.append)
        acc.add_entry("1-0", make_entry())
        record = acc.flush()
        assert closed == [record]

    def test_ack_failure_does_not_lose_batch(self, store, batching_config, clock, make_entry):
        """The batch is persisted even if acknowledging fails."""
        def failing_ack(ids):
            raise ConnectionError("redis down")

        acc = BatchAccumulator(store, failing_ack, batching_config, clock)
        acc.add_entry("1-0", make_entry())
        record = acc.flush()
        assert store.get_batch(record.id) is not None
        assert acc.state == AccumulatorState.OPEN

    def test_enrichment_fields_aggregated(self, accumulator, make_entry, store):
        """Asset, site and location data roll up into the batch record."""
        accumulator.add_entry("1-0", make_entry(
            device_id="d1", assetId="pump-7", assetType="pump", location={"lat": 10.0, "lon": 20.0},
        ))
        accumulator.add_entry("1-1", make_entry(
            device_id="d2", assetId="pump-8", assetType="pump",
            location=json.dumps({"type": "Point", "coordinates": [22.0, 12.0]}),
        ))
        record = accumulator.flush()

        assert record.device_ids == ["d1", "d2"]
        assert record.asset_ids == ["pump-7", "pump-8"]
        assert record.asset_types == ["pump"]
        assert record.site_ids == ["plant-1"]
        assert record.location_summary.point_count == 2
        assert record.location_summary.device_count == 2
        assert record.location_summary.centroid.lat == pytest.approx(11.0)
        assert record.location_summary.centroid.lon == pytest.approx(21.0)
        assert record.location_summary.bounding_box.max_lat == 12.0

    def test_statistics(self, accumulator, make_entry):
        accumulator.add_entry("1-0", make_entry())
        stats = accumulator.get_statistics()
        assert stats["state"] == "open"
        assert stats["open_message_count"] == 1
        assert stats["size_threshold"] == 5


class FlakyAck:
    """Raises on the first N calls, then records the acknowledged ids."""

    def __init__(self, failures: int):
        self.failures = failures
        self.acked = []

    def __call__(self, ids):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("redis down")
        self.acked.extend(ids)


class LookupDownStore(InMemoryBatchStore):
    def get_message(self, message_id):
        raise BatchStoreError("could not connect to server")


class TestAcknowledgement:
    """Stream ids are acknowledged once their messages are stored, even after an ack failure."""

    def test_failed_ack_retried_on_next_call(self, store, batching_config, clock, make_entry):
        ack = FlakyAck(failures=1)
        acc = BatchAccumulator(store, ack, batching_config, clock)
        for i in range(3):
            acc.add_entry(f"1-{i}", make_entry())
        acc.flush()
        assert ack.acked == []
        assert acc.get_statistics()["unacked"] == 3

        acc.check_timeout()

        assert ack.acked == ["1-0", "1-1", "1-2"]
        assert acc.get_statistics()["unacked"] == 0

    def test_failed_ack_retried_before_next_entry(self, store, batching_config, clock, make_entry):
        ack = FlakyAck(failures=1)
        acc = BatchAccumulator(store, ack, batching_config, clock)
        acc.add_entry("9-0", {"garbage": "1"})
        acc.add_entry("1-0", make_entry())
        assert ack.acked == ["9-0"]

    def test_redelivered_entries_not_stored_twice(self, store, batching_config, clock, make_entry):
        """A restart after a lost ack re-reads entries that are already in a stored batch."""
        entries = [(f"1-{i}", make_entry(payload={"i": i})) for i in range(3)]
        crashed = BatchAccumulator(store, FlakyAck(failures=100), batching_config, clock)
        for stream_id, fields in entries:
            crashed.add_entry(stream_id, fields)
        crashed.flush()

        acked = []
        restarted = BatchAccumulator(store, acked.extend, batching_config, clock)
        for stream_id, fields in entries:
            assert restarted.add_entry(stream_id, fields, redelivered=True) is None

        assert restarted.flush() is None
        assert len(store.list_batches()) == 1
        assert restarted.duplicates_skipped == 3
        assert acked == ["1-0", "1-1", "1-2"]

    def test_stream_id_used_without_message_id(self, store, batching_config, clock, make_entry):
        fields = make_entry()
        del fields["messageId"]
        crashed = BatchAccumulator(store, FlakyAck(failures=100), batching_config, clock)
        crashed.add_entry("1-0", fields)
        record = crashed.flush()
        assert store.get_messages(record.id)[0].id == "1-0"

        restarted = BatchAccumulator(store, [].extend, batching_config, clock)
        restarted.add_entry("1-0", fields, redelivered=True)

        assert restarted.duplicates_skipped == 1
        assert restarted.current_batch.is_empty

    def test_redelivered_entry_never_stored_is_accepted(self, accumulator, make_entry, acked):
        accumulator.add_entry("1-0", make_entry(), redelivered=True)
        assert accumulator.current_batch.message_count == 1
        assert accumulator.duplicates_skipped == 0
        assert acked == []

    def test_same_id_different_content_accepted(self, store, acked, batching_config, clock, make_entry):
        fields = make_entry(payload={"v": 1})
        first = BatchAccumulator(store, acked.extend, batching_config, clock)
        first.add_entry("1-0", fields)
        first.flush()

        changed = dict(fields, payload=json.dumps({"v": 2}))
        second = BatchAccumulator(store, acked.extend, batching_config, clock)
        second.add_entry("1-0", changed, redelivered=True)

        assert second.current_batch.message_count == 1

    def test_lookup_failure_refuses_entry(self, acked, batching_config, clock, make_entry):
        acc = BatchAccumulator(LookupDownStore(), acked.extend, batching_config, clock)
        with pytest.raises(BatchPersistenceError):
            acc.add_entry("1-0", make_entry(), redelivered=True)
        assert acked == []
        assert acc.current_batch.is_empty

    def test_live_entries_not_looked_up(self, acked, batching_config, clock, make_entry):
        acc = BatchAccumulator(LookupDownStore(), acked.extend, batching_config, clock)
        acc.add_entry("1-0", make_entry())
        assert acc.current_batch.message_count == 1
