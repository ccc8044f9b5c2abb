from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from cluster.dedup import DedupConfig, deduplicate
from events.model import (
    FRESHNESS_STALE,
    AlertLevel,
    DisasterType,
    Event,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from lifecycle.classify import reclassify, whole_days_between


logger = logging.getLogger(__name__)

_NAME_KEY_RE = re.compile(r"[^a-z0-9]")

_SEVERITY_ORDER = {
    AlertLevel.RED: 0,
    AlertLevel.ORANGE: 1,
    AlertLevel.YELLOW: 2,
    AlertLevel.GREEN: 3,
}


@dataclass(frozen=True)
class MergePolicy:
    max_stale_days: int = 14
    suspicious_age_days: int = 90
    coord_buckets_per_degree: int = 2
    name_key_length: int = 10


@dataclass(frozen=True)
class CanonicalFeed:
    disaster_type: DisasterType
    events: tuple[Event, ...]
    generated_at: datetime
    per_source_counts: dict[str, int] = field(default_factory=dict)
    removed_as_stale: int = 0
    removed_as_duplicate: int = 0

    @property
    def count(self) -> int:
        return len(self.events)

    @property
    def active_count(self) -> int:
        return sum(1 for e in self.events if e.is_active)

    def to_dict(self) -> dict:
        return {
            "disaster_type": str(self.disaster_type),
            "generated_at": format_timestamp(self.generated_at),
            "count": self.count,
            "active_count": self.active_count,
            "per_source_counts": dict(self.per_source_counts),
            "removed_as_stale": self.removed_as_stale,
            "removed_as_duplicate": self.removed_as_duplicate,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict) -> CanonicalFeed:
        generated_at = parse_timestamp(data["generated_at"])
        if generated_at is None:
            raise ValueError("canonical feed without generated_at")
        return cls(
            disaster_type=DisasterType.parse(data["disaster_type"]),
            events=tuple(Event.from_dict(e) for e in data.get("events") or []),
            generated_at=generated_at,
            per_source_counts={
                str(k): int(v) for k, v in (data.get("per_source_counts") or {}).items()
            },
            removed_as_stale=int(data.get("removed_as_stale") or 0),
            removed_as_duplicate=int(data.get("removed_as_duplicate") or 0),
        )


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def identity_key(event: Event, policy: MergePolicy) -> tuple[int, int, str]:
    buckets = policy.coord_buckets_per_degree
    name_key = _NAME_KEY_RE.sub("", event.name.casefold())[: policy.name_key_length]
    return (
        _round_half_up(event.lat * buckets),
        _round_half_up(event.lon * buckets),
        name_key,
    )


def stale_reason(event: Event, policy: MergePolicy, now: datetime) -> str | None:
    if event.end_time is not None:
        if event.end_time < now:
            days = whole_days_between(event.end_time, now)
            if days > policy.max_stale_days:
                return f"ended {days} days ago"
        return None
    if event.start_time is not None:
        days = whole_days_between(event.start_time, now)
        if (
            days > policy.suspicious_age_days
            and event.lifecycle.freshness == FRESHNESS_STALE
        ):
            return f"started {days} days ago and no longer updated"
    return None


def _sort_key(event: Event) -> tuple[int, int]:
    severity = _SEVERITY_ORDER.get(event.alert_level, len(_SEVERITY_ORDER))
    return (0 if event.is_active else 1, severity)


def merge_feeds(
    disaster_type: DisasterType,
    per_source: Mapping[str, list[Event]],
    policy: MergePolicy,
    *,
    dedup_config: DedupConfig | None = None,
    now: datetime | None = None,
) -> CanonicalFeed:
    """Combine one disaster type as reported by several providers.

    ``per_source`` must iterate in provider priority order: on an identity
    collision the first provider's record is kept. Runs fine with empty
    sources, which is how entries that went stale get purged.
    Lifecycles are recomputed at ``now`` before the staleness gate.
    """
    now = now or utc_now()
    combined = [
        reclassify(e, now) for events in per_source.values() for e in events
    ]

    fresh: list[Event] = []
    for event in combined:
        reason = stale_reason(event, policy, now)
        if reason is None:
            fresh.append(event)
            continue
        logger.debug(
            "removing stale %s %r (%s, source %s)",
            disaster_type,
            event.name,
            reason,
            event.source_id,
        )
    removed_as_stale = len(combined) - len(fresh)

    seen: set[tuple[int, int, str]] = set()
    unique: list[Event] = []
    for event in fresh:
        key = identity_key(event, policy)
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    removed_as_duplicate = len(fresh) - len(unique)

    if dedup_config is not None:
        result = deduplicate(unique, dedup_config, now=now)
        unique = result.events
        removed_as_duplicate += result.removed_count

    unique.sort(key=_sort_key)

    logger.info(
        "merged %d unique %s events from %d sources (%d stale, %d duplicate)",
        len(unique),
        disaster_type,
        len(per_source),
        removed_as_stale,
        removed_as_duplicate,
    )
    return CanonicalFeed(
        disaster_type=disaster_type,
        events=tuple(unique),
        generated_at=now,
        per_source_counts={source: len(events) for source, events in per_source.items()},
        removed_as_stale=removed_as_stale,
        removed_as_duplicate=removed_as_duplicate,
    )


def single_source_feed(
    disaster_type: DisasterType,
    source_id: str,
    events: list[Event],
    *,
    removed_as_duplicate: int = 0,
    now: datetime | None = None,
) -> CanonicalFeed:
    now = now or utc_now()
    return CanonicalFeed(
        disaster_type=disaster_type,
        events=tuple(reclassify(e, now) for e in events),
        generated_at=now,
        per_source_counts={source_id: len(events)},
        removed_as_duplicate=removed_as_duplicate,
    )
