from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import IntEnum, StrEnum


class DisasterType(StrEnum):
    EARTHQUAKE = "earthquake"
    WILDFIRE = "wildfire"
    FLOOD = "flood"
    CYCLONE = "cyclone"
    VOLCANO = "volcano"
    DROUGHT = "drought"
    LANDSLIDE = "landslide"
    TSUNAMI = "tsunami"

    @classmethod
    def parse(cls, value: str | DisasterType) -> DisasterType:
        if isinstance(value, DisasterType):
            return value
        key = str(value).strip().casefold()
        if key in _PLURALS:
            return _PLURALS[key]
        return cls(key)


_PLURALS = {
    "earthquakes": DisasterType.EARTHQUAKE,
    "wildfires": DisasterType.WILDFIRE,
    "floods": DisasterType.FLOOD,
    "cyclones": DisasterType.CYCLONE,
    "volcanoes": DisasterType.VOLCANO,
    "droughts": DisasterType.DROUGHT,
    "landslides": DisasterType.LANDSLIDE,
    "tsunamis": DisasterType.TSUNAMI,
}


class AlertLevel(IntEnum):
    GREEN = 1
    YELLOW = 2
    ORANGE = 3
    RED = 4

    @classmethod
    def parse(cls, value: object) -> AlertLevel | None:
        if value is None:
            return None
        if isinstance(value, AlertLevel):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            return None


def alert_rank(level: AlertLevel | None) -> int:
    return int(level) if level is not None else 0


STATUS_ACTIVE = "active"
STATUS_JUST_ENDED = "just_ended"
STATUS_ENDED = "ended"

FRESHNESS_CURRENT = "current"
FRESHNESS_RECENT = "recent"
FRESHNESS_AGING = "aging"
FRESHNESS_STALE = "stale"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime | None:
    """Coerce provider timestamps to aware UTC datetimes.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings with or
    without a trailing ``Z``, date-only strings, and epoch numbers in seconds
    or milliseconds. Empty values yield ``None``; anything else unparseable
    raises ``ValueError``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"not a timestamp: {value!r}")
        seconds = value / 1000.0 if abs(value) >= 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=UTC)

    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text.removesuffix("Z") + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class Lifecycle:
    is_active: bool
    status: str
    freshness: str
    days_since_start: int | None = None
    days_since_end: int | None = None


@dataclass(frozen=True)
class Event:
    """Canonical disaster report, independent of the provider schema.

    Instances are immutable; every stage derives new ones with
    ``dataclasses.replace`` instead of editing in place.
    """

    id: str
    source_id: str
    disaster_type: DisasterType
    name: str
    lat: float
    lon: float
    lifecycle: Lifecycle
    alert_level: AlertLevel | None = None
    magnitude: float | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_observed_at: datetime | None = None
    provider_says_current: bool = False
    extra: dict = field(default_factory=dict, compare=False)

    @property
    def is_active(self) -> bool:
        return self.lifecycle.is_active

    @property
    def reference_time(self) -> datetime | None:
        return self.start_time or self.last_observed_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "disaster_type": str(self.disaster_type),
            "name": self.name,
            "lat": self.lat,
            "lon": self.lon,
            "alert_level": self.alert_level.name.title() if self.alert_level else None,
            "magnitude": self.magnitude,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "last_observed_at": format_timestamp(self.last_observed_at),
            "provider_says_current": self.provider_says_current,
            "is_active": self.lifecycle.is_active,
            "status": self.lifecycle.status,
            "freshness": self.lifecycle.freshness,
            "days_since_start": self.lifecycle.days_since_start,
            "days_since_end": self.lifecycle.days_since_end,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Event:
        magnitude = data.get("magnitude")
        return cls(
            id=str(data["id"]),
            source_id=str(data["source_id"]),
            disaster_type=DisasterType.parse(data["disaster_type"]),
            name=str(data.get("name") or ""),
            lat=float(data["lat"]),
            lon=float(data["lon"]),
            alert_level=AlertLevel.parse(data.get("alert_level")),
            magnitude=float(magnitude) if magnitude is not None else None,
            start_time=parse_timestamp(data.get("start_time")),
            end_time=parse_timestamp(data.get("end_time")),
            last_observed_at=parse_timestamp(data.get("last_observed_at")),
            provider_says_current=bool(data.get("provider_says_current", False)),
            lifecycle=Lifecycle(
                is_active=bool(data["is_active"]),
                status=str(data["status"]),
                freshness=str(data["freshness"]),
                days_since_start=data.get("days_since_start"),
                days_since_end=data.get("days_since_end"),
            ),
            extra=dict(data.get("extra") or {}),
        )
