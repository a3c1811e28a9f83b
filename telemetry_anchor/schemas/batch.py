"""
Persisted Batch Schemas

A BatchRecord is the durable form of a closed batch. Its header (id, hash,
count, time range) never changes after it is written; only the anchor
record moves, and only forward:

    none -> pending <-> in_progress -> confirmed
                                    -> failed

confirmed and failed are final.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .message import GeoPoint, Message


class AnchorStatus(str, Enum):
    NONE = "none"               # Never attempted
    PENDING = "pending"         # At least one attempt failed, retry due
    IN_PROGRESS = "in_progress" # Claimed by a worker, attempt under way
    CONFIRMED = "confirmed"     # Proof record confirmed on the ledger
    FAILED = "failed"           # Gave up

    @property
    def is_terminal(self) -> bool:
        return self in (AnchorStatus.CONFIRMED, AnchorStatus.FAILED)


# Statuses a worker may claim (in_progress only once its lease has expired)
CLAIMABLE_STATUSES = (AnchorStatus.NONE, AnchorStatus.PENDING, AnchorStatus.IN_PROGRESS)


def can_transition(current: AnchorStatus, target: AnchorStatus) -> bool:
    """True if the anchor status may move from current to target."""
    if current.is_terminal:
        return False
    return target != AnchorStatus.NONE


class BoundingBox(BaseModel):
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float


class LocationSummary(BaseModel):
    """Where the located messages of a batch came from."""
    point_count: int
    device_count: int
    centroid: GeoPoint
    bounding_box: BoundingBox

    @classmethod
    def from_points(cls, points: list[tuple[str, GeoPoint]]) -> Optional["LocationSummary"]:
        """
        Summarize (device_id, point) pairs.

        Returns None when no message carried a location.
        """
        if not points:
            return None
        lats = [p.lat for _, p in points]
        lons = [p.lon for _, p in points]
        return cls(
            point_count=len(points),
            device_count=len({device_id for device_id, _ in points}),
            centroid=GeoPoint(lat=sum(lats) / len(lats), lon=sum(lons) / len(lons)),
            bounding_box=BoundingBox(
                min_lat=min(lats),
                min_lon=min(lons),
                max_lat=max(lats),
                max_lon=max(lons),
            ),
        )


class AnchorRecord(BaseModel):
    """Anchoring state of one batch."""
    status: AnchorStatus = AnchorStatus.NONE
    signature: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    def lease_active(self, now: datetime) -> bool:
        return (
            self.status == AnchorStatus.IN_PROGRESS
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )


class BatchRecord(BaseModel):
    """A persisted batch and its aggregate metadata."""

    id: str
    batch_hash: str
    message_count: int = Field(..., ge=1)
    start_timestamp: datetime
    end_timestamp: datetime
    created_at: datetime
    device_ids: list[str] = Field(default_factory=list)
    asset_ids: list[str] = Field(default_factory=list)
    asset_types: list[str] = Field(default_factory=list)
    site_ids: list[str] = Field(default_factory=list)
    location_summary: Optional[LocationSummary] = None
    anchor: AnchorRecord = Field(default_factory=AnchorRecord)

    @property
    def anchor_status(self) -> AnchorStatus:
        return self.anchor.status

    def is_claimable(self, now: datetime, max_retries: int) -> bool:
        """True if a worker may take this batch for an anchoring attempt."""
        anchor = self.anchor
        if anchor.status not in CLAIMABLE_STATUSES:
            return False
        if anchor.retry_count >= max_retries:
            return False
        return not anchor.lease_active(now)


@dataclass
class Batch:
    """
    A batch being filled by the accumulator.

    Mutable only while open. Messages and their hashes are kept in arrival
    order, which the batch hash depends on.
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    messages: list[Message] = field(default_factory=list)
    opened_at: Optional[datetime] = None

    def add(self, message: Message) -> None:
        self.messages.append(message)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def message_hashes(self) -> list[str]:
        return [m.hash for m in self.messages]

    @property
    def start_timestamp(self) -> datetime:
        return self.messages[0].received_at

    @property
    def end_timestamp(self) -> datetime:
        return self.messages[-1].received_at

    @property
    def is_empty(self) -> bool:
        return not self.messages
