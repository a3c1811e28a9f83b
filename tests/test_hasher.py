"""
Tests for canonical hashing.

Batch hashes are published on a public ledger. A change that makes any of
these fail breaks every proof already anchored.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from telemetry_anchor.core import CanonicalSerializationError, Hasher
from telemetry_anchor.schemas import Batch

from conftest import T0, build_message


def sha(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TestCanonicalize:
    """Canonical JSON form of payloads."""

    def test_sorted_keys(self):
        """Key order doesn't affect the canonical form."""
        assert Hasher.canonicalize({"b": 2, "a": 1}) == Hasher.canonicalize({"a": 1, "b": 2})

    def test_recursively_sorted_keys(self):
        """Nested object keys are sorted too."""
        data1 = {"outer": {"z": 1, "a": 2}, "inner": [{"b": 3, "a": 4}]}
        data2 = {"inner": [{"a": 4, "b": 3}], "outer": {"a": 2, "z": 1}}
        assert Hasher.canonicalize(data1) == Hasher.canonicalize(data2)
        assert Hasher.canonicalize(data1) == '{"inner":[{"a":4,"b":3}],"outer":{"a":2,"z":1}}'

    def test_array_order_preserved(self):
        """Arrays keep their element order."""
        assert Hasher.canonicalize([3, 1, 2]) == "[3,1,2]"
        assert Hasher.canonicalize([1, 2]) != Hasher.canonicalize([2, 1])

    def test_compact_separators(self):
        """No whitespace anywhere."""
        assert Hasher.canonicalize({"a": [1, {"b": None}]}) == '{"a":[1,{"b":null}]}'

    def test_null_preserved(self):
        """Nulls are data, not omitted."""
        assert Hasher.canonicalize({"a": 1, "b": None}) != Hasher.canonicalize({"a": 1})

    def test_integral_floats_serialize_as_integers(self):
        """1.0 and 1 are the same JSON number."""
        assert Hasher.canonicalize({"v": 1.0}) == '{"v":1}'
        assert Hasher.canonicalize({"v": 1.5}) == '{"v":1.5}'

    def test_unicode_not_escaped(self):
        """Non-ASCII text is emitted as UTF-8, not \\u escapes."""
        assert Hasher.canonicalize({"city": "Zürich"}) == '{"city":"Zürich"}'

    def test_scalars(self):
        """Any JSON value can be a payload."""
        assert Hasher.canonicalize("raw text") == '"raw text"'
        assert Hasher.canonicalize(42) == "42"
        assert Hasher.canonicalize(True) == "true"
        assert Hasher.canonicalize(None) == "null"

    def test_decimal_normalized(self):
        """Decimals serialize like the equivalent float."""
        assert Hasher.canonicalize({"v": Decimal("2.5")}) == '{"v":2.5}'

    def test_nan_rejected(self):
        """NaN has no JSON form."""
        with pytest.raises(CanonicalSerializationError, match="non-finite"):
            Hasher.canonicalize({"v": float("nan")})

    def test_infinity_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize([float("inf")])

    def test_non_json_type_rejected(self):
        """Only JSON-compatible types are allowed."""
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"v": {1, 2}})


class TestMessageHash:
    """SHA256(device_id|timestamp|canonical(payload))."""

    def test_known_vector(self):
        """The hash input format is fixed."""
        ts = datetime(2024, 1, 15, 8, 30, 0, 123456, tzinfo=timezone.utc)
        expected = sha('dev-1|2024-01-15T08:30:00.123Z|{"a":1,"b":[1,2]}')
        assert Hasher.hash_message("dev-1", ts, {"b": [1, 2], "a": 1}) == expected

    def test_deterministic(self):
        """Same input always produces same hash."""
        h1 = Hasher.hash_message("dev-1", T0, {"t": 21.5})
        h2 = Hasher.hash_message("dev-1", T0, {"t": 21.5})
        assert h1 == h2
        assert len(h1) == 64

    def test_key_order_independent(self):
        assert Hasher.hash_message("d", T0, {"x": 1, "y": 2}) == Hasher.hash_message("d", T0, {"y": 2, "x": 1})

    def test_timezone_normalized(self):
        """The same instant in another zone hashes identically."""
        plus5 = timezone(timedelta(hours=5))
        other = T0.astimezone(plus5)
        assert Hasher.hash_message("d", T0, {}) == Hasher.hash_message("d", other, {})

    def test_millisecond_precision(self):
        """Sub-millisecond differences do not change the hash."""
        a = T0.replace(microsecond=5000)
        b = T0.replace(microsecond=5999)
        assert Hasher.hash_message("d", a, 1) == Hasher.hash_message("d", b, 1)
        assert Hasher.hash_message("d", a, 1) != Hasher.hash_message("d", T0.replace(microsecond=6000), 1)

    def test_naive_timestamp_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.hash_message("d", datetime(2024, 1, 1), {})

    def test_preformatted_timestamp_string(self):
        """A string timestamp is used as is."""
        assert Hasher.hash_message("d", "2024-05-01T10:00:00.000Z", {}) == Hasher.hash_message("d", T0, {})

    def test_device_and_payload_affect_hash(self):
        base = Hasher.hash_message("d1", T0, {"v": 1})
        assert Hasher.hash_message("d2", T0, {"v": 1}) != base
        assert Hasher.hash_message("d1", T0, {"v": 2}) != base


class TestBatchHash:
    """SHA256(id|count|start|end|SHA256(concat(message hashes)))."""

    @pytest.fixture
    def batch(self):
        batch = Batch(id="batch-1")
        for i in range(3):
            batch.add(build_message("dev", T0 + timedelta(seconds=i), {"i": i}))
        return batch

    def test_known_vector(self, batch):
        """The batch hash input format is fixed."""
        messages_hash = sha("".join(batch.message_hashes))
        expected = sha(
            f"batch-1|3|2024-05-01T10:00:00.000Z|2024-05-01T10:00:02.000Z|{messages_hash}"
        )
        assert Hasher.hash_batch(batch) == expected

    def test_order_sensitive(self, batch):
        """Reordering messages changes the batch hash."""
        reordered = Batch(id="batch-1", messages=[batch.messages[1], batch.messages[0], batch.messages[2]])
        assert Hasher.hash_batch(reordered) != Hasher.hash_batch(batch)

    def test_id_sensitive(self, batch):
        other = Batch(id="batch-2", messages=list(batch.messages))
        assert Hasher.hash_batch(other) != Hasher.hash_batch(batch)

    def test_count_must_match_hashes(self):
        with pytest.raises(CanonicalSerializationError, match="declares 2 messages"):
            Hasher.hash_batch_fields("b", 2, T0, T0, ["a" * 64])

    def test_timestamps_are_first_and_last_arrival(self):
        """start/end are the first and last message in arrival order."""
        batch = Batch(id="b")
        batch.add(build_message("dev", T0 + timedelta(seconds=5), 1))
        batch.add(build_message("dev", T0, 2))
        assert batch.start_timestamp == T0 + timedelta(seconds=5)
        assert batch.end_timestamp == T0


class TestVerifyBatchContents:
    """Recomputing stored hashes."""

    def test_untouched_batch_verifies(self, save_batch, store):
        record = save_batch(count=4)
        result = Hasher.verify_batch_contents(record, store.get_messages(record.id))
        assert result.valid
        assert result.computed_batch_hash == record.batch_hash
        assert result.message_count == 4
        assert result.mismatched_message_ids == []

    def test_tampered_payload_detected(self, save_batch, store):
        """Editing one stored payload is caught."""
        record = save_batch(count=3)
        messages = store.get_messages(record.id)
        tampered = messages[1].model_copy(update={"payload": {"seq": 1, "temperature": 99}})
        result = Hasher.verify_batch_contents(record, [messages[0], tampered, messages[2]])
        assert not result.valid
        assert result.mismatched_message_ids == [tampered.id]

    def test_reordered_messages_detected(self, save_batch, store):
        record = save_batch(count=3)
        messages = store.get_messages(record.id)
        result = Hasher.verify_batch_contents(record, list(reversed(messages)))
        assert not result.valid
        assert result.mismatched_message_ids == []

    def test_missing_message_detected(self, save_batch, store):
        record = save_batch(count=3)
        messages = store.get_messages(record.id)
        result = Hasher.verify_batch_contents(record, messages[:2])
        assert not result.valid
        assert result.computed_batch_hash == ""


class TestGoldenVectors:
    """
    Fixed digests for fixed inputs. These values are anchored on-chain in
    existing proofs and must never change.
    """

    MESSAGE_HASHES = [
        "85b9d636adfe9e40cc178a4546fc7c3a8e783acf8e6dcff0d4c02a9e7e511d51",
        "3eb9aef9840552574ee6d7e8679887e7ed787ef144473c45f40f5554b4bb5308",
        "abb005e4b714355ee6a7ac02e660541aebc2e6f91323c5c0de15f49aefbb91b2",
    ]
    MESSAGES_HASH = "4609fefcb47beb67891237e0e61db1eb8f8cb49c942b37bb64d90b34c4b97e56"
    BATCH_HASH = "6ad2eaeda3a9e1fa04cb859f35b4c4bba7dc70974b530b4959b7363eeb27fb3a"

    def test_message_hash(self):
        ts = datetime(2024, 1, 15, 8, 30, 0, 123456, tzinfo=timezone.utc)
        assert Hasher.hash_message("dev-1", ts, {"b": [1, 2], "a": 1}) == (
            "63db2dad792c744128265203d92c0c9171cda77f999a8b63f69d4b7da6227868"
        )

    def test_message_hash_unicode_and_floats(self):
        payload = {"v": [3.0, None, True], "t": 21.5, "label": "Zürich"}
        assert Hasher.hash_message("sensor-7", T0, payload) == (
            "49fbe2010408c316e109bfd98f39ef5d759d8aeb113e73fb4a44f1adde8bb34b"
        )

    def test_message_hashes_of_fixed_batch(self):
        hashes = [
            Hasher.hash_message("dev", T0 + timedelta(seconds=i), {"i": i})
            for i in range(3)
        ]
        assert hashes == self.MESSAGE_HASHES
        assert Hasher.hash_messages(hashes) == self.MESSAGES_HASH

    def test_batch_hash(self):
        batch = Batch(id="batch-1")
        for i in range(3):
            batch.add(build_message("dev", T0 + timedelta(seconds=i), {"i": i}))
        assert Hasher.hash_batch(batch) == self.BATCH_HASH

    def test_batch_hash_from_fields(self):
        assert Hasher.hash_batch_fields(
            "batch-1", 3, T0, T0 + timedelta(seconds=2), self.MESSAGE_HASHES
        ) == self.BATCH_HASH
