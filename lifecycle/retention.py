from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from events.model import FRESHNESS_STALE, STATUS_JUST_ENDED, Event


logger = logging.getLogger(__name__)

KeepFn = Callable[[Event, datetime], bool]

_YEAR_RE = re.compile(r"(\d{4})")


@dataclass(frozen=True)
class RetentionRule:
    name: str
    keep: KeepFn


def ended_within(days: int) -> RetentionRule:
    def keep(event: Event, now: datetime) -> bool:
        lc = event.lifecycle
        if lc.is_active or lc.status == STATUS_JUST_ENDED:
            return True
        return lc.days_since_end is None or lc.days_since_end <= days

    return RetentionRule(name=f"ended_within_{days}d", keep=keep)


def name_year_within(max_lag_years: int) -> RetentionRule:
    """Reject records whose name carries a year too far behind the current one.

    GDACS keeps refreshing end dates on old drought cycles ("South
    America-2023"), so the year embedded in the name is the only reliable age
    signal for those records.
    """

    def keep(event: Event, now: datetime) -> bool:
        match = _YEAR_RE.search(event.name)
        if match is None:
            return True
        return int(match.group(1)) >= now.year - max_lag_years

    return RetentionRule(name=f"name_year_within_{max_lag_years}y", keep=keep)


def started_within_unless_current(days: int) -> RetentionRule:
    def keep(event: Event, now: datetime) -> bool:
        started = event.lifecycle.days_since_start
        if started is None or started <= days:
            return True
        return event.provider_says_current

    return RetentionRule(name=f"started_within_{days}d_unless_current", keep=keep)


def ongoing_not_stale_beyond(days: int) -> RetentionRule:
    def keep(event: Event, now: datetime) -> bool:
        lc = event.lifecycle
        if lc.days_since_end is not None:
            return True
        if lc.days_since_start is None or lc.days_since_start <= days:
            return True
        return lc.freshness != FRESHNESS_STALE

    return RetentionRule(name=f"ongoing_not_stale_beyond_{days}d", keep=keep)


def dates_in_order() -> RetentionRule:
    def keep(event: Event, now: datetime) -> bool:
        if event.start_time is None or event.end_time is None:
            return True
        return event.end_time >= event.start_time

    return RetentionRule(name="dates_in_order", keep=keep)


@dataclass(frozen=True)
class RetentionPolicy:
    ended_within_days: int | None = None
    name_year_max_lag: int | None = None
    started_within_days_unless_current: int | None = None
    ongoing_stale_max_days: int | None = None
    reject_inverted_dates: bool = True

    def rules(self) -> list[RetentionRule]:
        rules: list[RetentionRule] = []
        if self.name_year_max_lag is not None:
            rules.append(name_year_within(self.name_year_max_lag))
        if self.reject_inverted_dates:
            rules.append(dates_in_order())
        if self.started_within_days_unless_current is not None:
            rules.append(
                started_within_unless_current(self.started_within_days_unless_current)
            )
        if self.ended_within_days is not None:
            rules.append(ended_within(self.ended_within_days))
        if self.ongoing_stale_max_days is not None:
            rules.append(ongoing_not_stale_beyond(self.ongoing_stale_max_days))
        return rules


@dataclass(frozen=True)
class RetentionResult:
    events: list[Event]
    dropped: dict[str, int] = field(default_factory=dict)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


def apply_retention(
    events: Iterable[Event], rules: list[RetentionRule], now: datetime
) -> RetentionResult:
    kept: list[Event] = []
    dropped: dict[str, int] = {}
    for event in events:
        failed = next((r for r in rules if not r.keep(event, now)), None)
        if failed is None:
            kept.append(event)
            continue
        dropped[failed.name] = dropped.get(failed.name, 0) + 1
        logger.debug("dropping %s %r: %s", event.disaster_type, event.name, failed.name)
    return RetentionResult(events=kept, dropped=dropped)
