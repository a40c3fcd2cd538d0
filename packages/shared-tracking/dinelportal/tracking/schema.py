"""
Tracking data model - records, fingerprints, conversion events, payloads.

A StorageRecord is what gets mirrored into the cookie, localStorage and
sessionStorage. A ConversionEvent is built once per detected conversion
or explicit API call and turned into a TrackingPayload for the
collection endpoint.

All timestamps are timezone-aware datetimes in UTC. On the wire,
timestamps are ISO-8601 inside stored records and epoch milliseconds in
beacon payloads.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from dinelportal.tracking.exceptions import MalformedRecordError


class CaptureSource(str, Enum):
    """Where a persisted identifier came from."""

    URL = "url"  # Captured from the landing URL
    STORAGE = "storage"  # Restored from an existing mirror


class AttributionConfidence(str, Enum):
    """How strongly an event is tied to the originating click."""

    CONFIDENT = "confident"  # Backed by a stored click identifier
    PROVISIONAL = "provisional"  # Backed only by a device fingerprint


class ConversionTrigger(str, Enum):
    """What caused a conversion event."""

    URL_PATTERN = "url_pattern"
    TITLE_PATTERN = "title_pattern"
    CUSTOM_DETECTOR = "custom_detector"
    MANUAL = "manual"


class PayloadType(str, Enum):
    """Type of beacon sent to the collection endpoint."""

    TRACK = "track"
    CONVERSION = "conversion"


def _parse_datetime(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise MalformedRecordError(f"Missing or invalid {field_name}: {value!r}")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise MalformedRecordError(f"Invalid {field_name} format: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_epoch_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(value.timestamp() * 1000)


@dataclass
class StorageRecord:
    """
    A captured click identifier as persisted in every storage backend.

    The identifier is immutable once captured; re-capturing the same
    identifier keeps the original captured_at. written_at changes on every
    write and decides which mirror wins when mirrors disagree.

    Example:
        record = StorageRecord(
            identifier="dep_abc123",
            partner_id="acme",
            captured_at=now,
            expires_at=now + timedelta(days=90),
        )
    """

    identifier: str
    partner_id: str | None
    captured_at: datetime
    expires_at: datetime
    written_at: datetime | None = None
    session_id: str | None = None
    source: CaptureSource = CaptureSource.URL
    page_url: str | None = None
    referrer: str | None = None

    def __post_init__(self) -> None:
        if not self.identifier:
            raise ValueError("identifier must not be empty")
        if self.written_at is None:
            self.written_at = self.captured_at

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True if the record's expiry is in the past."""
        now = now or datetime.now(UTC)
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "identifier": self.identifier,
            "partner_id": self.partner_id,
            "captured_at": self.captured_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "written_at": self.written_at.isoformat() if self.written_at else None,
            "session_id": self.session_id,
            "source": self.source.value,
            "page_url": self.page_url,
            "referrer": self.referrer,
        }

    @classmethod
    def from_dict(cls, data: Any) -> StorageRecord:
        """Create a StorageRecord from a dictionary.

        Args:
            data: Dictionary as produced by to_dict().

        Returns:
            StorageRecord instance.

        Raises:
            MalformedRecordError: If required fields are missing or invalid.
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(f"Record must be an object, got {type(data).__name__}")

        identifier = data.get("identifier")
        if not isinstance(identifier, str) or not identifier:
            raise MalformedRecordError("Missing required field: identifier")

        captured_at = _parse_datetime(data.get("captured_at"), "captured_at")
        expires_at = _parse_datetime(data.get("expires_at"), "expires_at")
        written_at = (
            _parse_datetime(data["written_at"], "written_at")
            if data.get("written_at")
            else captured_at
        )

        try:
            source = CaptureSource(data.get("source", "url"))
        except ValueError as e:
            raise MalformedRecordError(f"Invalid source: {data.get('source')}") from e

        return cls(
            identifier=identifier,
            partner_id=data.get("partner_id"),
            captured_at=captured_at,
            expires_at=expires_at,
            written_at=written_at,
            session_id=data.get("session_id"),
            source=source,
            page_url=data.get("page_url"),
            referrer=data.get("referrer"),
        )

    def serialize(self, include_page_details: bool = True) -> str:
        """Serialize to the compact JSON stored in each backend.

        Args:
            include_page_details: Keep page_url and referrer. Size-limited
                backends such as cookies may store the record without them.
        """
        data = self.to_dict()
        if not include_page_details:
            data.pop("page_url")
            data.pop("referrer")
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def deserialize(cls, raw: str) -> StorageRecord:
        """Parse a stored JSON value.

        Raises:
            MalformedRecordError: If the value is not a valid record.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedRecordError(f"Stored value is not JSON: {raw!r:.80}") from e
        return cls.from_dict(data)


@dataclass(frozen=True)
class DeviceFingerprint:
    """A provisional, non-reversible device identifier.

    Only ever used as a substitute key when no StorageRecord is
    retrievable; never persisted as a click identifier.
    """

    value: str
    signals: tuple[str, ...] = ()
    provisional: bool = True


@dataclass
class ConversionEvent:
    """A single conversion, detected or reported explicitly.

    Exactly one of identifier or fingerprint identifies the visitor;
    confidence tells downstream consumers which one it is.
    """

    identifier: str | None
    fingerprint: str | None
    confidence: AttributionConfidence
    trigger: ConversionTrigger
    matched_pattern: str | None = None
    page_url: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        if not self.identifier and not self.fingerprint:
            raise ValueError("ConversionEvent needs an identifier or a fingerprint")


@dataclass
class TrackingPayload:
    """Body of one beacon sent to the collection endpoint."""

    type: PayloadType
    partner_id: str
    partner_domain: str
    identifier: str | None
    fingerprint: str | None
    confidence: AttributionConfidence
    timestamp: datetime
    session_id: str | None = None
    page_url: str | None = None
    referrer: str | None = None
    matched_pattern: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format, omitting empty optional fields."""
        data: dict[str, Any] = {
            "type": self.type.value,
            "identifier": self.identifier,
            "fingerprint": self.fingerprint,
            "confidence": self.confidence.value,
            "partner_id": self.partner_id,
            "partner_domain": self.partner_domain,
            "session_id": self.session_id,
            "page_url": self.page_url,
            "timestamp": to_epoch_millis(self.timestamp),
        }
        if self.referrer:
            data["referrer"] = self.referrer
        if self.matched_pattern is not None:
            data["matched_pattern"] = self.matched_pattern
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    def to_json(self) -> str:
        """Encode the wire format as a JSON body.

        Metadata values JSON cannot represent (Decimal amounts, datetimes)
        are sent as their string form, as in to_query_params().

        Raises:
            TypeError: If metadata has keys JSON cannot represent.
            ValueError: If metadata contains a circular reference.
        """
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    def to_query_params(self) -> dict[str, str]:
        """Flatten to query parameters for pixel (GET) beacons."""
        params: dict[str, str] = {}
        for key, value in self.to_dict().items():
            if value is None:
                continue
            if isinstance(value, dict):
                params[key] = json.dumps(value, separators=(",", ":"), default=str)
            else:
                params[key] = str(value)
        return params

    @classmethod
    def for_conversion(
        cls,
        event: ConversionEvent,
        partner_id: str,
        partner_domain: str,
        session_id: str | None = None,
    ) -> TrackingPayload:
        """Build the payload for a conversion event."""
        return cls(
            type=PayloadType.CONVERSION,
            partner_id=partner_id,
            partner_domain=partner_domain,
            identifier=event.identifier,
            fingerprint=event.fingerprint,
            confidence=event.confidence,
            timestamp=event.timestamp,
            session_id=session_id,
            page_url=event.page_url,
            matched_pattern=event.matched_pattern,
            metadata={
                **event.metadata,
                "trigger": event.trigger.value,
                "event_id": str(event.event_id),
            },
        )
