"""
Canonical Hashing Service

Deterministic serialization and SHA-256 hashing of messages and batches.
Same input, same hash, on every host, forever. Batch hashes are written to
a public ledger, so any change here invalidates every proof already
anchored. Changes must be versioned.

CANONICAL SERIALIZATION RULES:
1. Object keys: sorted recursively (code point order)
2. Arrays: element order preserved
3. Output: compact JSON, separators "," and ":", UTF-8, no escaping of non-ASCII
4. Integral floats: serialized as integers (1.0 -> 1)
5. NaN and Infinity: rejected
6. Timestamps: ISO 8601, UTC, millisecond precision, Z suffix

MESSAGE HASH:
    SHA256(device_id | timestamp | canonical(payload))

BATCH HASH:
    messages_hash = SHA256(concat(message hashes in arrival order))
    SHA256(batch_id | message_count | start | end | messages_hash)
"""

import hashlib
import hmac
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


@dataclass
class ContentVerification:
    """Result of recomputing a stored batch's hashes from its messages."""
    valid: bool
    expected_batch_hash: str
    computed_batch_hash: str
    message_count: int
    mismatched_message_ids: list[str] = field(default_factory=list)


class Hasher:
    """
    Canonical serialization and hashing.

    IMMUTABLE CONTRACT:
    - Same logical input -> same hash
    - Batch hash is sensitive to message arrival order
    """

    # Largest magnitude at which integral floats are still printed as integers
    # by the upstream JSON producers
    _INTEGRAL_FLOAT_LIMIT = 1e21

    @classmethod
    def _normalize(cls, value: Any, path: str = "$") -> Any:
        if value is None or isinstance(value, (bool, str)):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            if not math.isfinite(value):
                raise CanonicalSerializationError(
                    f"Cannot serialize non-finite number at {path}"
                )
            if value.is_integer() and abs(value) < cls._INTEGRAL_FLOAT_LIMIT:
                return int(value)
            return value

        if isinstance(value, Decimal):
            return cls._normalize(float(value), path)

        if isinstance(value, (list, tuple)):
            return [cls._normalize(v, f"{path}[{i}]") for i, v in enumerate(value)]

        if isinstance(value, dict):
            result = {}
            for key in sorted(value.keys()):
                if not isinstance(key, str):
                    raise CanonicalSerializationError(
                        f"Object key at {path} must be a string, got {type(key).__name__}"
                    )
                result[key] = cls._normalize(value[key], f"{path}.{key}")
            return result

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def canonicalize(cls, payload: Any) -> str:
        """
        Convert any JSON value to its canonical string form.

        Raises:
            CanonicalSerializationError: If the value is not plain JSON data
        """
        normalized = cls._normalize(payload)
        return json.dumps(
            normalized,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )

    @staticmethod
    def format_timestamp(dt: datetime) -> str:
        """
        Format a timestamp the way it is hashed.

        Format: YYYY-MM-DDTHH:MM:SS.mmmZ
        """
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                "Timestamp is timezone-naive. Hashed timestamps must be timezone-aware."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"

    @staticmethod
    def sha256_hex(data: str) -> str:
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @classmethod
    def hash_message(cls, device_id: str, timestamp: datetime | str, payload: Any) -> str:
        """
        Hash one message.

        Args:
            device_id: Originating device
            timestamp: Receive time (datetime, or an already formatted string)
            payload: Any JSON value

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        if isinstance(timestamp, datetime):
            timestamp = cls.format_timestamp(timestamp)
        return cls.sha256_hex("|".join((device_id, timestamp, cls.canonicalize(payload))))

    @classmethod
    def hash_messages(cls, message_hashes: Iterable[str]) -> str:
        """Digest of all message hashes, concatenated in arrival order."""
        return cls.sha256_hex("".join(message_hashes))

    @classmethod
    def hash_batch_fields(
        cls,
        batch_id: str,
        message_count: int,
        start_timestamp: datetime,
        end_timestamp: datetime,
        message_hashes: Sequence[str],
    ) -> str:
        """
        Hash a batch from its parts.

        FORMAT:
            SHA256(batch_id|message_count|start|end|SHA256(concat(hashes)))
        """
        if message_count != len(message_hashes):
            raise CanonicalSerializationError(
                f"Batch {batch_id} declares {message_count} messages "
                f"but {len(message_hashes)} hashes were given"
            )
        return cls.sha256_hex("|".join((
            str(batch_id),
            str(message_count),
            cls.format_timestamp(start_timestamp),
            cls.format_timestamp(end_timestamp),
            cls.hash_messages(message_hashes),
        )))

    @classmethod
    def hash_batch(cls, batch: Any) -> str:
        """Hash a batch object exposing id, message_count, timestamps and message_hashes."""
        return cls.hash_batch_fields(
            batch.id,
            batch.message_count,
            batch.start_timestamp,
            batch.end_timestamp,
            batch.message_hashes,
        )

    @classmethod
    def verify_batch_contents(cls, record: Any, messages: Sequence[Any]) -> ContentVerification:
        """
        Recompute a stored batch's hashes from its stored messages.

        Every message hash is recomputed from device, receive time and payload,
        and the batch hash from the recomputed message hashes. Tampering with
        any stored message, its order, or the batch header shows up as a
        mismatch.
        """
        mismatched = []
        hashes = []
        for message in messages:
            computed = cls.hash_message(message.device_id, message.received_at, message.payload)
            if not hmac.compare_digest(computed, message.hash):
                mismatched.append(message.id)
            hashes.append(computed)

        try:
            computed_batch_hash = cls.hash_batch_fields(
                record.id,
                record.message_count,
                record.start_timestamp,
                record.end_timestamp,
                hashes,
            )
        except CanonicalSerializationError:
            computed_batch_hash = ""

        valid = (
            not mismatched
            and bool(computed_batch_hash)
            and hmac.compare_digest(computed_batch_hash, record.batch_hash)
        )
        return ContentVerification(
            valid=valid,
            expected_batch_hash=record.batch_hash,
            computed_batch_hash=computed_batch_hash,
            message_count=len(messages),
            mismatched_message_ids=mismatched,
        )
