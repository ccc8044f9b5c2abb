from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from datetime import datetime

from events.model import AlertLevel, DisasterType, Event, parse_timestamp
from ingest.errors import MalformedRecordError
from lifecycle.classify import classify


logger = logging.getLogger(__name__)

MapFn = Callable[[dict], dict | None]

_TRUTHY = {"true", "1", "yes", "y", "current"}


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().casefold() in _TRUTHY


def _as_float(value: object, name: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"{name} is not numeric: {value!r}") from e
    if not math.isfinite(number):
        raise MalformedRecordError(f"{name} is not finite: {value!r}")
    return number


def _as_time(value: object, name: str) -> datetime | None:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedRecordError(f"{name} is not a timestamp: {value!r}") from e


def build_event(fields: dict, *, source_id: str, now: datetime) -> Event:
    """Validate mapped provider fields and produce a classified Event."""
    raw_id = fields.get("id")
    if raw_id is None or str(raw_id).strip() == "":
        raise MalformedRecordError("missing id")

    raw_type = fields.get("disaster_type")
    if raw_type is None:
        raise MalformedRecordError("missing disaster_type")
    try:
        disaster_type = DisasterType.parse(raw_type)
    except ValueError as e:
        raise MalformedRecordError(f"unknown disaster_type: {raw_type!r}") from e

    lat = _as_float(fields.get("lat"), "lat")
    lon = _as_float(fields.get("lon"), "lon")
    if lat is None or lon is None:
        raise MalformedRecordError("missing coordinates")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise MalformedRecordError(f"coordinates out of range: {lat}, {lon}")
    if lat == 0.0 and lon == 0.0:
        raise MalformedRecordError("null island coordinates")

    start = _as_time(fields.get("start_time"), "start_time")
    end = _as_time(fields.get("end_time"), "end_time")
    last_observed = _as_time(fields.get("last_observed_at"), "last_observed_at")
    says_current = _as_bool(fields.get("provider_says_current"))

    return Event(
        id=str(raw_id).strip(),
        source_id=source_id,
        disaster_type=disaster_type,
        name=str(fields.get("name") or "").strip() or disaster_type.value.title(),
        lat=lat,
        lon=lon,
        alert_level=AlertLevel.parse(fields.get("alert_level")),
        magnitude=_as_float(fields.get("magnitude"), "magnitude"),
        start_time=start,
        end_time=end,
        last_observed_at=last_observed,
        provider_says_current=says_current,
        lifecycle=classify(start, end, last_observed, says_current, now),
        extra=dict(fields.get("extra") or {}),
    )


def build_events(
    records: Iterable[dict],
    map_record: MapFn,
    *,
    source_id: str,
    now: datetime,
) -> tuple[list[Event], int]:
    """Map and validate a batch; malformed records are dropped individually.

    Returns the events and the number of dropped malformed records. Records
    the mapping skips on purpose (unmapped types) are not counted.
    """
    events: list[Event] = []
    dropped = 0
    for record in records:
        fields = map_record(record)
        if fields is None:
            continue
        try:
            events.append(build_event(fields, source_id=source_id, now=now))
        except MalformedRecordError as e:
            dropped += 1
            logger.debug("%s: dropping malformed record: %s", source_id, e)
    if dropped:
        logger.warning("%s: dropped %d malformed records", source_id, dropped)
    return events, dropped


def unique_by_id(events: list[Event]) -> list[Event]:
    """Keep one event per id, preferring the most recently observed.

    Providers occasionally repeat an id within one payload with diverging
    contents; the first occurrence's position is kept.
    """
    positions: dict[str, int] = {}
    out: list[Event] = []
    for event in events:
        pos = positions.get(event.id)
        if pos is None:
            positions[event.id] = len(out)
            out.append(event)
            continue
        current = out[pos]
        if (event.last_observed_at is not None) and (
            current.last_observed_at is None
            or event.last_observed_at > current.last_observed_at
        ):
            out[pos] = event
    return out
