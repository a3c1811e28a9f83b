"""
Telemetry Message Schemas

A StreamEntry is what arrives on the stream. A Message is what gets hashed,
batched and stored. Messages are immutable once created.
"""

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GeoPoint(BaseModel):
    """A WGS84 position."""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    @classmethod
    def coerce(cls, value: Any) -> Optional["GeoPoint"]:
        """
        Accept the location shapes upstream producers send.

        - {"lat": .., "lon": ..} (also "lng", "latitude", "longitude")
        - GeoJSON {"type": "Point", "coordinates": [lon, lat]}
        - [lon, lat]
        - a JSON string of any of the above
        """
        if value is None or value == "":
            return None
        if isinstance(value, GeoPoint):
            return value
        if isinstance(value, str):
            value = json.loads(value)
        if isinstance(value, dict):
            if "coordinates" in value:
                value = value["coordinates"]
            else:
                lat = value.get("lat", value.get("latitude"))
                lon = value.get("lon", value.get("lng", value.get("longitude")))
                if lat is None or lon is None:
                    raise ValueError("location needs lat and lon")
                return cls(lat=lat, lon=lon)
        if isinstance(value, (list, tuple)) and len(value) >= 2:
            return cls(lat=value[1], lon=value[0])
        raise ValueError(f"unrecognized location: {value!r}")


def _contains_nul(value: Any) -> bool:
    if isinstance(value, str):
        return "\x00" in value
    if isinstance(value, dict):
        return any(_contains_nul(k) or _contains_nul(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return any(_contains_nul(v) for v in value)
    return False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StreamEntry(BaseModel):
    """
    One entry read from the telemetry stream.

    Stream fields are flat strings. The payload is JSON text and is parsed
    here; payloads that are not JSON are kept as the raw string.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message_id: Optional[str] = Field(default=None, alias="messageId")
    topic: str = ""
    payload: Any
    received_at: datetime = Field(..., alias="receivedAt")
    tenant_id: str = Field(default="unknown", alias="tenantId")
    site_id: str = Field(default="unknown", alias="siteId")
    device_id: str = Field(..., alias="deviceId", min_length=1)
    asset_id: Optional[str] = Field(default=None, alias="assetId")
    asset_type: Optional[str] = Field(default=None, alias="assetType")
    location: Optional[GeoPoint] = None

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, v: Any) -> Any:
        if isinstance(v, (bytes, bytearray)):
            v = v.decode("utf-8")
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                return v
        return v

    @field_validator("received_at", mode="before")
    @classmethod
    def parse_received_at(cls, v: Any) -> Any:
        # Epoch milliseconds, as sent by some gateways
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return datetime.fromtimestamp(v / 1000.0, tz=timezone.utc)
        if isinstance(v, str) and v.strip().isdigit():
            return datetime.fromtimestamp(int(v) / 1000.0, tz=timezone.utc)
        return v

    @field_validator("received_at")
    @classmethod
    def force_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("message_id", "asset_id", "asset_type", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if v == "":
            return None
        return v

    # PostgreSQL TEXT and JSONB cannot hold U+0000
    @field_validator(
        "message_id", "topic", "payload", "tenant_id", "site_id",
        "device_id", "asset_id", "asset_type",
    )
    @classmethod
    def reject_nul(cls, v: Any) -> Any:
        if _contains_nul(v):
            raise ValueError("NUL characters are not allowed")
        return v

    @field_validator("location", mode="before")
    @classmethod
    def parse_location(cls, v: Any) -> Optional[GeoPoint]:
        return GeoPoint.coerce(v)

    @classmethod
    def from_stream_fields(cls, fields: Mapping[Any, Any]) -> "StreamEntry":
        """Validate raw stream fields, decoding bytes keys and values."""
        decoded = {}
        for key, value in fields.items():
            if isinstance(key, (bytes, bytearray)):
                key = key.decode("utf-8")
            if isinstance(value, (bytes, bytearray)):
                value = value.decode("utf-8")
            decoded[key] = value
        return cls.model_validate(decoded)

    def to_message(self, message_hash: str, fallback_id: Optional[str] = None) -> "Message":
        """
        Build the stored message. Without a messageId the id is
        fallback_id (the stream entry id), or a fresh uuid.
        """
        return Message(
            id=self.message_id or fallback_id or str(uuid4()),
            topic=self.topic,
            payload=self.payload,
            received_at=self.received_at,
            device_id=self.device_id,
            tenant_id=self.tenant_id,
            site_id=self.site_id,
            asset_id=self.asset_id,
            asset_type=self.asset_type,
            location=self.location,
            hash=message_hash,
        )


class Message(BaseModel):
    """A validated, hashed telemetry message. Owned by exactly one batch."""
    model_config = ConfigDict(frozen=True)

    id: str
    topic: str = ""
    payload: Any
    received_at: datetime
    device_id: str
    tenant_id: str = "unknown"
    site_id: str = "unknown"
    asset_id: Optional[str] = None
    asset_type: Optional[str] = None
    location: Optional[GeoPoint] = None
    hash: str = Field(..., min_length=64, max_length=64)

    @field_validator("received_at")
    @classmethod
    def force_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)
