from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from events.model import Event, alert_rank, utc_now


logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

JOIN_SCORE_MIN = 0.3
NAME_OVERRIDE_MIN = 0.6


class MergeStrategy(StrEnum):
    KEEP_HIGHEST_ALERT = "keep_highest_alert"
    KEEP_STRONGEST = "keep_strongest"
    KEEP_LATEST = "keep_latest"


@dataclass(frozen=True)
class DedupConfig:
    radius_km: float
    time_window_days: float
    name_weight: float
    merge_strategy: MergeStrategy

    def __post_init__(self) -> None:
        if self.radius_km <= 0:
            raise ValueError("radius_km must be positive")
        if self.time_window_days < 0:
            raise ValueError("time_window_days must be >= 0")
        if not 0.0 <= self.name_weight <= 1.0:
            raise ValueError("name_weight must be within [0, 1]")


@dataclass(frozen=True)
class DedupResult:
    events: list[Event]
    removed_count: int
    cluster_count: int


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * r * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def name_tokens(name: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(name.casefold()) if len(t) > 2}


def name_similarity(a: str, b: str) -> float:
    a_tokens = name_tokens(a)
    b_tokens = name_tokens(b)
    if not a_tokens or not b_tokens:
        return 0.0
    return len(a_tokens & b_tokens) / len(a_tokens | b_tokens)


def _timestamp(event: Event, now: datetime) -> float:
    return (event.reference_time or now).timestamp()


def _pick_winner(
    members: list[int], events: list[Event], strategy: MergeStrategy, now: datetime
) -> int:
    # max() keeps the first of equal keys, so full ties favour the earliest member.
    if strategy == MergeStrategy.KEEP_HIGHEST_ALERT:
        return max(
            members,
            key=lambda i: (
                alert_rank(events[i].alert_level),
                events[i].is_active,
                _timestamp(events[i], now),
            ),
        )
    if strategy == MergeStrategy.KEEP_STRONGEST:
        return max(members, key=lambda i: events[i].magnitude or 0.0)
    if strategy == MergeStrategy.KEEP_LATEST:
        return max(members, key=lambda i: _timestamp(events[i], now))
    return members[0]


def _cluster_once(
    events: list[Event], config: DedupConfig, now: datetime
) -> tuple[list[Event], int]:
    window_seconds = config.time_window_days * 24 * 60 * 60
    use_names = config.name_weight > 0
    timestamps = [_timestamp(e, now) for e in events]

    used: set[int] = set()
    winners: list[int] = []
    cluster_count = 0

    for i, anchor in enumerate(events):
        if i in used:
            continue
        used.add(i)
        members = [i]

        for j in range(i + 1, len(events)):
            if j in used:
                continue
            candidate = events[j]
            if abs(timestamps[i] - timestamps[j]) > window_seconds:
                continue

            similarity = (
                name_similarity(anchor.name, candidate.name) if use_names else 0.0
            )
            distance = haversine_km(anchor.lat, anchor.lon, candidate.lat, candidate.lon)
            if distance <= config.radius_km:
                geo_score = 1 - distance / config.radius_km
                combined = (
                    geo_score * (1 - config.name_weight)
                    + similarity * config.name_weight
                )
                if combined < JOIN_SCORE_MIN:
                    continue
            elif not (use_names and similarity >= NAME_OVERRIDE_MIN):
                continue

            members.append(j)
            used.add(j)

        if len(members) > 1:
            cluster_count += 1
        winners.append(_pick_winner(members, events, config.merge_strategy, now))

    return [events[i] for i in sorted(winners)], cluster_count


def deduplicate(
    events: list[Event], config: DedupConfig | None, *, now: datetime | None = None
) -> DedupResult:
    """Collapse near-duplicate reports of one physical event.

    Greedy passes in input order: each unclustered anchor absorbs every later
    unclustered event inside the time window that is either close enough
    (blended geo/name score >= 0.3) or, when names count, named alike enough
    (Jaccard >= 0.6) regardless of distance. Each cluster keeps one winner per
    the merge strategy; winners keep their original relative order. Passes
    repeat over the winners until one removes nothing, so running the result
    through again is a no-op.
    """
    if not events or config is None:
        return DedupResult(events=list(events), removed_count=0, cluster_count=0)

    now = now or utc_now()
    result = list(events)
    cluster_count = 0
    while True:
        survivors, clusters = _cluster_once(result, config, now)
        cluster_count += clusters
        if len(survivors) == len(result):
            break
        result = survivors

    removed = len(events) - len(result)
    if removed:
        logger.info(
            "dedup %s: %d -> %d (removed %d across %d clusters)",
            events[0].disaster_type,
            len(events),
            len(result),
            removed,
            cluster_count,
        )
    return DedupResult(events=result, removed_count=removed, cluster_count=cluster_count)
