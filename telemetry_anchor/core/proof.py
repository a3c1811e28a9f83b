"""
On-chain proof record codec.

A proof record is the JSON document written into the memo of an anchoring
transaction. Memos are capped at 566 bytes, so the on-chain form uses short
keys, integer Unix timestamps and clipped identifier strings:

    {"t":"TLMB","v":1,"bid":<batch id>,"h":<batch hash>,"mc":<count>,
     "ts":<created>,"s":<start>,"e":<end>,
     "a":{"ids":[..3],"typ":[..2],"sit":[..2],"loc":{"lat":..,"lon":..,"cnt":..}},
     "o":{"wallet":<address>,"network":<cluster>}}

Empty and null fields are left out. The origin block names the wallet that
signed the anchor and the cluster it was sent to. expand() turns either form
into the long form used everywhere off-chain.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional, Union

from ..schemas import BatchRecord

MAX_MEMO_BYTES = 566

RECORD_TYPE = "TLMB"
RECORD_TYPE_NAME = "TELEMETRY_BATCH"
RECORD_VERSION = 1

MAX_ASSET_IDS = 3
MAX_ASSET_TYPES = 2
MAX_SITE_IDS = 2

# Byte caps for clipped strings (encoded, escapes included)
ASSET_ID_BYTES = 36
ASSET_TYPE_BYTES = 12
SITE_ID_BYTES = 12
NETWORK_BYTES = 12

CENTROID_DECIMALS = 6

# short key -> long key
_HEADER_KEYS = {
    "t": "type",
    "v": "version",
    "bid": "batch_id",
    "h": "batch_hash",
    "mc": "message_count",
    "ts": "created_at",
    "s": "start_timestamp",
    "e": "end_timestamp",
}
_AUX_KEYS = {
    "ids": "asset_ids",
    "typ": "asset_types",
    "sit": "site_ids",
    "loc": "location",
}
_LOCATION_KEYS = {"lat": "lat", "lon": "lon", "cnt": "count"}
_TIMESTAMP_KEYS = ("created_at", "start_timestamp", "end_timestamp")


class ProofRecordError(ValueError):
    """Raised when a memo does not hold a readable proof record."""
    pass


def clip(value: str, max_bytes: int) -> str:
    """Shorten a string until its JSON-escaped UTF-8 form fits in max_bytes."""
    def size(s: str) -> int:
        return len(json.dumps(s, ensure_ascii=False).encode("utf-8")) - 2

    if size(value) <= max_bytes:
        return value
    # Drop characters, not bytes, so multi-byte code points are never split
    while value and size(value) > max_bytes:
        value = value[:-1]
    return value


def _epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def build_record(
    batch: BatchRecord,
    batch_hash: str,
    created_at: datetime,
    include_aux: bool = True,
    wallet: Optional[str] = None,
    network: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build the compact proof record for a batch.

    Args:
        batch: The persisted batch
        batch_hash: Hash to anchor (normally batch.batch_hash)
        created_at: Time the proof is created
        include_aux: Include the asset/site/location block
        wallet: Address of the signing wallet (origin block)
        network: Cluster name (origin block)
    """
    record: dict[str, Any] = {
        "t": RECORD_TYPE,
        "v": RECORD_VERSION,
        "bid": batch.id,
        "h": batch_hash,
        "mc": batch.message_count,
        "ts": _epoch(created_at),
        "s": _epoch(batch.start_timestamp),
        "e": _epoch(batch.end_timestamp),
    }
    if include_aux:
        aux = _aux_block(batch)
        if aux:
            record["a"] = aux

    origin: dict[str, Any] = {}
    if wallet:
        origin["wallet"] = wallet
    if network:
        origin["network"] = clip(network, NETWORK_BYTES)
    if origin:
        record["o"] = origin
    return record


def _aux_block(batch: BatchRecord) -> dict[str, Any]:
    aux: dict[str, Any] = {}
    ids = [clip(v, ASSET_ID_BYTES) for v in batch.asset_ids[:MAX_ASSET_IDS]]
    if ids:
        aux["ids"] = ids
    types = [clip(v, ASSET_TYPE_BYTES) for v in batch.asset_types[:MAX_ASSET_TYPES]]
    if types:
        aux["typ"] = types
    sites = [clip(v, SITE_ID_BYTES) for v in batch.site_ids[:MAX_SITE_IDS]]
    if sites:
        aux["sit"] = sites

    summary = batch.location_summary
    if summary is not None:
        aux["loc"] = {
            "lat": round(summary.centroid.lat, CENTROID_DECIMALS),
            "lon": round(summary.centroid.lon, CENTROID_DECIMALS),
            "cnt": summary.device_count,
        }
    return aux


def encode(record: dict[str, Any]) -> bytes:
    """Serialize a record to memo bytes."""
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(memo: Union[str, bytes]) -> dict[str, Any]:
    """
    Parse memo text into a record.

    Raises:
        ProofRecordError: The memo is not a JSON object
    """
    if isinstance(memo, (bytes, bytearray)):
        memo = memo.decode("utf-8", errors="replace")
    # Some RPC nodes prefix parsed memos with their byte length: "[52] {...}"
    text = memo.strip()
    if text.startswith("[") and "] " in text:
        head, _, rest = text.partition("] ")
        if head[1:].isdigit():
            text = rest
    try:
        record = json.loads(text)
    except ValueError as e:
        raise ProofRecordError(f"Memo is not valid JSON: {e}") from e
    if not isinstance(record, dict):
        raise ProofRecordError("Memo JSON is not an object")
    return record


def _iso(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _pick(record: dict[str, Any], short: str, long: str) -> Optional[Any]:
    if long in record:
        return record[long]
    return record.get(short)


def expand(record: dict[str, Any]) -> dict[str, Any]:
    """
    Expand a compact record into long field names and ISO timestamps.

    Already expanded input comes back unchanged, so expand(expand(x)) ==
    expand(x). Unknown keys are kept as they are.
    """
    result: dict[str, Any] = {}
    for short, long in _HEADER_KEYS.items():
        value = _pick(record, short, long)
        if value is None:
            continue
        if long == "type":
            value = RECORD_TYPE_NAME if value == RECORD_TYPE else value
        elif long in _TIMESTAMP_KEYS:
            value = _iso(value)
        result[long] = value

    aux = _pick(record, "a", "asset")
    if isinstance(aux, dict):
        asset: dict[str, Any] = {}
        for short, long in _AUX_KEYS.items():
            value = _pick(aux, short, long)
            if value is None:
                continue
            if long == "location" and isinstance(value, dict):
                value = {
                    long_loc: _pick(value, short_loc, long_loc)
                    for short_loc, long_loc in _LOCATION_KEYS.items()
                    if _pick(value, short_loc, long_loc) is not None
                }
            asset[long] = value
        if asset:
            result["asset"] = asset

    origin = _pick(record, "o", "origin")
    if isinstance(origin, dict) and origin:
        result["origin"] = dict(origin)

    known = set(_HEADER_KEYS) | set(_HEADER_KEYS.values()) | {"a", "asset", "o", "origin"}
    for key, value in record.items():
        if key not in known:
            result[key] = value
    return result
