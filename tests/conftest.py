"""Shared fixtures: in-memory store, stub ledger, manual clock."""

import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from telemetry_anchor.config import AnchoringConfig, BatchingConfig, SolanaConfig
from telemetry_anchor.core import (
    AnchorDispatcher,
    AnchoringClient,
    Hasher,
    InMemoryLedgerNetwork,
    ManualClock,
    WalletSigner,
)
from telemetry_anchor.db import InMemoryBatchStore
from telemetry_anchor.observability import PipelineMetrics
from telemetry_anchor.schemas import Batch, GeoPoint, Message

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return ManualClock(start=T0)


@pytest.fixture
def store():
    return InMemoryBatchStore()


@pytest.fixture
def metrics():
    return PipelineMetrics()


@pytest.fixture
def signer():
    return WalletSigner.from_seed(bytes(range(32)))


@pytest.fixture
def ledger(signer, clock):
    return InMemoryLedgerNetwork(signer=signer, clock=clock)


@pytest.fixture
def anchoring_config():
    return AnchoringConfig(max_retries=3, inter_attempt_delay_seconds=1.0)


@pytest.fixture
def batching_config():
    return BatchingConfig(size_threshold=5, timeout_seconds=300.0)


@pytest.fixture
def client(ledger, anchoring_config, clock):
    return AnchoringClient(ledger, anchoring_config, SolanaConfig(network="devnet"), clock)


@pytest.fixture
def dispatcher(store, client, anchoring_config, clock, metrics):
    return AnchorDispatcher(store, client, anchoring_config, clock, metrics, owner="worker-a")


@pytest.fixture
def make_entry():
    """Build stream fields the way they arrive from Redis: flat strings."""
    def _make(device_id="sensor-001", received_at=T0, payload=None, **extra):
        fields = {
            "messageId": str(uuid4()),
            "topic": f"devices/{device_id}/telemetry",
            "payload": json.dumps(payload if payload is not None else {"temperature": 21.5}),
            "receivedAt": received_at.isoformat().replace("+00:00", "Z"),
            "tenantId": "acme",
            "siteId": "plant-1",
            "deviceId": device_id,
        }
        for key, value in extra.items():
            fields[key] = value if isinstance(value, str) else json.dumps(value)
        return fields
    return _make


def build_message(device_id: str, received_at: datetime, payload, **fields) -> Message:
    return Message(
        id=str(uuid4()),
        payload=payload,
        received_at=received_at,
        device_id=device_id,
        hash=Hasher.hash_message(device_id, received_at, payload),
        **fields,
    )


@pytest.fixture
def save_batch(store):
    """Persist a batch of count messages starting at start, one second apart."""
    def _save(count=3, start=T0, **message_fields):
        batch = Batch(opened_at=start)
        for i in range(count):
            batch.add(build_message(
                f"sensor-{i % 2 + 1:03d}",
                start + timedelta(seconds=i),
                {"seq": i, "temperature": 20 + i},
                **message_fields,
            ))
        return store.save_batch(batch, Hasher.hash_batch(batch), created_at=start)
    return _save


@pytest.fixture
def located_message():
    def _make(device_id="sensor-001", lat=52.52, lon=13.405, received_at=T0):
        return build_message(
            device_id,
            received_at,
            {"v": 1},
            location=GeoPoint(lat=lat, lon=lon),
            asset_id=f"asset-{device_id}",
            asset_type="pump",
        )
    return _make
