# Schemas for telemetry messages and persisted batches

from .message import GeoPoint, Message, StreamEntry
from .batch import (
    AnchorRecord,
    AnchorStatus,
    Batch,
    BatchRecord,
    BoundingBox,
    CLAIMABLE_STATUSES,
    LocationSummary,
    can_transition,
)

__all__ = [
    "GeoPoint",
    "Message",
    "StreamEntry",
    "AnchorRecord",
    "AnchorStatus",
    "Batch",
    "BatchRecord",
    "BoundingBox",
    "CLAIMABLE_STATUSES",
    "LocationSummary",
    "can_transition",
]
