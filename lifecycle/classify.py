from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime

from events.model import (
    FRESHNESS_AGING,
    FRESHNESS_CURRENT,
    FRESHNESS_RECENT,
    FRESHNESS_STALE,
    STATUS_ACTIVE,
    STATUS_ENDED,
    STATUS_JUST_ENDED,
    Event,
    Lifecycle,
)


logger = logging.getLogger(__name__)

_DAY_SECONDS = 24 * 60 * 60
_HOUR_SECONDS = 60 * 60

CURRENT_MAX_HOURS = 6
RECENT_MAX_HOURS = 24
AGING_MAX_HOURS = 72


def whole_days_between(earlier: datetime, later: datetime) -> int:
    return math.floor((later - earlier).total_seconds() / _DAY_SECONDS)


def freshness_for(last_update: datetime | None, now: datetime) -> str:
    if last_update is None:
        return FRESHNESS_CURRENT
    hours = (now - last_update).total_seconds() / _HOUR_SECONDS
    if hours <= CURRENT_MAX_HOURS:
        return FRESHNESS_CURRENT
    if hours <= RECENT_MAX_HOURS:
        return FRESHNESS_RECENT
    if hours <= AGING_MAX_HOURS:
        return FRESHNESS_AGING
    return FRESHNESS_STALE


def classify(
    start: datetime | None,
    end: datetime | None,
    last_update: datetime | None,
    provider_says_current: bool,
    now: datetime,
) -> Lifecycle:
    """Derive lifecycle fields from partial provider dates.

    The provider's "current" flag overrides date math because sources drop
    end dates inconsistently. Contradictory inputs are resolved by rule order
    and only logged.
    """
    is_active = True
    status = STATUS_ACTIVE
    days_since_end = None

    if end is not None and end < now:
        days_since_end = whole_days_between(end, now)
        is_active = False
        status = STATUS_JUST_ENDED if days_since_end <= 1 else STATUS_ENDED

    if provider_says_current:
        if not is_active:
            logger.debug(
                "classification ambiguity: ended %s day(s) ago but flagged current",
                days_since_end,
            )
        is_active = True
        status = STATUS_ACTIVE

    if start is not None and end is not None and end < start:
        logger.debug("classification ambiguity: end %s precedes start %s", end, start)

    days_since_start = None
    if start is not None:
        days_since_start = whole_days_between(start, now)
        if days_since_start < 0:
            logger.debug("classification ambiguity: start %s is in the future", start)

    return Lifecycle(
        is_active=is_active,
        status=status,
        freshness=freshness_for(last_update, now),
        days_since_start=days_since_start,
        days_since_end=days_since_end,
    )


def reclassify(event: Event, now: datetime) -> Event:
    """Recompute a stored event's lifecycle as of ``now``."""
    lifecycle = classify(
        event.start_time,
        event.end_time,
        event.last_observed_at,
        event.provider_says_current,
        now,
    )
    if lifecycle == event.lifecycle:
        return event
    return replace(event, lifecycle=lifecycle)
