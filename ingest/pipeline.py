from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

import httpx

from app.policies import Policies
from cluster.dedup import deduplicate
from events.model import DisasterType, Event, format_timestamp, utc_now
from health.circuit import CircuitBreaker
from health.health import ensure_sources, record_fetch_error, record_fetch_success
from ingest.errors import (
    CircuitOpenRejection,
    MalformedPayloadError,
    TransientUpstreamError,
)
from ingest.fetch import fetch_payload
from ingest.source_packs import SourceSpec
from lifecycle.retention import apply_retention
from merge.canonical import CanonicalFeed, merge_feeds, single_source_feed
from normalize.records import build_events, unique_by_id
from realtime.bus import HEALTH_TOPIC, FeedBus, Message, feed_topic
from store.cache import FEED_KEY_PREFIX, FeedCache, feed_key, source_key


logger = logging.getLogger(__name__)

MERGE_TARGET_PREFIX = "merge-for-type:"


@dataclass(frozen=True)
class LoadedPayload:
    records: list[dict]
    status_code: int | None = None
    elapsed_ms: int | None = None


LoadFn = Callable[[SourceSpec], Awaitable[LoadedPayload]]
StoreFn = Callable[
    [SourceSpec, DisasterType, list[Event], int, datetime], Awaitable[None]
]


@dataclass(frozen=True)
class AggregatorConfig:
    sources: tuple[SourceSpec, ...]
    policies: Policies = field(default_factory=Policies)
    cache_ttl_margin_seconds: int = 2 * 60 * 60
    fetch_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.cache_ttl_margin_seconds <= 0:
            raise ValueError("cache_ttl_margin_seconds must be positive")
        ids = [s.source_id for s in self.sources]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate source ids")

    def source(self, source_id: str) -> SourceSpec:
        for source in self.sources:
            if source.source_id == source_id:
                return source
        raise KeyError(source_id)

    def sources_for(self, disaster_type: DisasterType) -> list[SourceSpec]:
        matching = [
            s for s in self.sources if s.enabled and disaster_type in s.disaster_types
        ]
        return sorted(matching, key=lambda s: s.priority)

    def disaster_types(self) -> list[DisasterType]:
        seen: dict[DisasterType, None] = {}
        for source in self.sources:
            if source.enabled:
                for kind in source.disaster_types:
                    seen[kind] = None
        return list(seen)

    def source_ttl(self, source: SourceSpec) -> int:
        return source.poll_interval_seconds + self.cache_ttl_margin_seconds

    def feed_ttl(self, disaster_type: DisasterType) -> int:
        intervals = [s.poll_interval_seconds for s in self.sources_for(disaster_type)]
        return max(intervals, default=0) + self.cache_ttl_margin_seconds


@dataclass(frozen=True)
class TickResult:
    target: str
    status: str
    reason: str | None = None
    counts: dict[str, int] = field(default_factory=dict)
    dropped_malformed: int = 0
    dropped_by_retention: int = 0

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "status": self.status,
            "reason": self.reason,
            "counts": dict(self.counts),
            "dropped_malformed": self.dropped_malformed,
            "dropped_by_retention": self.dropped_by_retention,
        }


def http_loader(
    client: httpx.AsyncClient, *, user_agent: str, timeout_seconds: float
) -> LoadFn:
    async def load(source: SourceSpec) -> LoadedPayload:
        result = await fetch_payload(
            client,
            url=source.url,
            user_agent=user_agent,
            timeout_seconds=timeout_seconds,
            extra_headers=source.headers,
        )
        return LoadedPayload(
            records=source.parse(result.content),
            status_code=result.status_code,
            elapsed_ms=result.elapsed_ms,
        )

    return load


def circuit_guarded(
    load: LoadFn, breaker: CircuitBreaker, *, timeout_seconds: float
) -> LoadFn:
    """Gate ``load`` behind the breaker and bound it by a hard timeout.

    Every failure class (timeout, transport, HTTP status, undecodable payload)
    counts once toward the breaker.
    """

    async def guarded(source: SourceSpec) -> LoadedPayload:
        decision = breaker.can_request(source.source_id)
        if not decision.allowed:
            raise CircuitOpenRejection(source.source_id, decision)
        try:
            payload = await asyncio.wait_for(load(source), timeout=timeout_seconds)
        except TimeoutError as e:
            breaker.on_failure(source.source_id)
            raise TransientUpstreamError(f"timeout after {timeout_seconds}s") from e
        except Exception:
            breaker.on_failure(source.source_id)
            raise
        breaker.on_success(source.source_id)
        return payload

    return guarded


def deduplicating(store: StoreFn, policies: Policies) -> StoreFn:
    async def store_deduplicated(
        source: SourceSpec,
        disaster_type: DisasterType,
        events: list[Event],
        removed: int,
        now: datetime,
    ) -> None:
        result = deduplicate(events, policies.dedup_for(disaster_type), now=now)
        await store(
            source, disaster_type, result.events, removed + result.removed_count, now
        )

    return store_deduplicated


class Aggregator:
    """Drives fetch -> classify -> dedup -> store -> merge -> publish per source.

    Built once at startup from an explicit ``AggregatorConfig``; the scheduler
    and the refresh endpoint call into the same instance.
    """

    def __init__(
        self,
        config: AggregatorConfig,
        *,
        cache: FeedCache,
        bus: FeedBus,
        breaker: CircuitBreaker,
        load: LoadFn,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.cache = cache
        self.bus = bus
        self.breaker = breaker
        self._clock = clock
        self._load = circuit_guarded(
            load, breaker, timeout_seconds=config.fetch_timeout_seconds
        )
        self._store = deduplicating(self._store_source_events, config.policies)
        self._merge_locks: dict[DisasterType, asyncio.Lock] = {}

    def register_sources(self) -> None:
        ensure_sources(
            self.cache.db,
            (
                (s.source_id, s.name, s.url, s.poll_interval_seconds, s.enabled)
                for s in self.config.sources
            ),
        )

    def _merge_lock(self, disaster_type: DisasterType) -> asyncio.Lock:
        lock = self._merge_locks.get(disaster_type)
        if lock is None:
            lock = asyncio.Lock()
            self._merge_locks[disaster_type] = lock
        return lock

    async def _cache_get(self, key: str) -> dict | None:
        try:
            return await asyncio.to_thread(self.cache.get, key)
        except sqlite3.Error:
            logger.exception("cache read failed for %s", key)
            return None

    async def _cache_put(self, key: str, payload: dict, ttl_seconds: int) -> bool:
        try:
            await asyncio.to_thread(self.cache.put, key, payload, ttl_seconds)
        except sqlite3.Error:
            logger.exception("cache write failed for %s", key)
            return False
        return True

    async def _record_health(self, fn: Callable[..., object], **kwargs: object) -> None:
        try:
            await asyncio.to_thread(fn, self.cache.db, **kwargs)
        except sqlite3.Error:
            logger.exception("source health bookkeeping failed")

    async def _store_source_events(
        self,
        source: SourceSpec,
        disaster_type: DisasterType,
        events: list[Event],
        removed: int,
        now: datetime,
    ) -> None:
        payload = {
            "source_id": source.source_id,
            "disaster_type": str(disaster_type),
            "stored_at": format_timestamp(now),
            "removed_as_duplicate": removed,
            "events": [e.to_dict() for e in events],
        }
        await self._cache_put(
            source_key(source.source_id, disaster_type),
            payload,
            self.config.source_ttl(source),
        )

    async def run_source(self, source_id: str) -> TickResult:
        source = self.config.source(source_id)
        try:
            payload = await self._load(source)
        except CircuitOpenRejection as e:
            logger.info("%s skipped (%s), serving cached data", source_id, e.decision.reason)
            return TickResult(target=source_id, status="skipped", reason=e.decision.reason)
        except (TransientUpstreamError, MalformedPayloadError) as e:
            logger.warning("%s fetch failed: %s", source_id, e)
            status_code = e.status_code if isinstance(e, TransientUpstreamError) else None
            await self._record_health(
                record_fetch_error,
                source_id=source_id,
                status_code=status_code,
                error=str(e),
            )
            await self.bus.publish(
                HEALTH_TOPIC,
                Message(
                    type="source.health",
                    data={
                        "source_id": source_id,
                        "status": "failed",
                        "error": str(e),
                        "circuit": self.breaker.status()[source_id].to_dict(),
                    },
                ),
            )
            return TickResult(target=source_id, status="failed", reason=str(e))

        now = self._clock()
        events, dropped_malformed = build_events(
            payload.records, source.mapping.apply, source_id=source_id, now=now
        )
        events = unique_by_id(events)

        by_type: dict[DisasterType, list[Event]] = {t: [] for t in source.disaster_types}
        for event in events:
            bucket = by_type.get(event.disaster_type)
            if bucket is None:
                logger.debug("%s: ignoring undeclared type %s", source_id, event.disaster_type)
                continue
            bucket.append(event)

        counts: dict[str, int] = {}
        dropped_by_retention = 0
        for disaster_type, typed in by_type.items():
            rules = self.config.policies.retention_for(disaster_type).rules()
            retained = apply_retention(typed, rules, now)
            dropped_by_retention += retained.dropped_total
            # Empty results are stored too so the merge purges old entries.
            await self._store(source, disaster_type, retained.events, 0, now)
            counts[str(disaster_type)] = len(retained.events)

        await self._record_health(
            record_fetch_success,
            source_id=source_id,
            status_code=payload.status_code,
            fetch_ms=payload.elapsed_ms,
            record_count=len(payload.records),
        )
        logger.info(
            "%s: %d records -> %s (%d malformed, %d retention)",
            source_id,
            len(payload.records),
            counts,
            dropped_malformed,
            dropped_by_retention,
        )

        for disaster_type in by_type:
            if self.config.sources_for(disaster_type):
                await self.merge_type(disaster_type)

        return TickResult(
            target=source_id,
            status="ok",
            counts=counts,
            dropped_malformed=dropped_malformed,
            dropped_by_retention=dropped_by_retention,
        )

    async def merge_type(self, disaster_type: DisasterType) -> CanonicalFeed:
        """Rebuild and publish the canonical feed for one type.

        Runs after any contributing source updates, against whatever its
        siblings last stored.
        """
        contributors = self.config.sources_for(disaster_type)
        if not contributors:
            raise KeyError(str(disaster_type))

        async with self._merge_lock(disaster_type):
            now = self._clock()
            per_source: dict[str, list[Event]] = {}
            removed_upstream = 0
            for source in contributors:
                stored = await self._cache_get(source_key(source.source_id, disaster_type))
                if stored is None:
                    continue
                per_source[source.source_id] = [
                    Event.from_dict(e) for e in stored.get("events") or []
                ]
                removed_upstream += int(stored.get("removed_as_duplicate") or 0)

            if len(contributors) > 1:
                feed = merge_feeds(
                    disaster_type,
                    per_source,
                    self.config.policies.merge,
                    dedup_config=self.config.policies.dedup_for(disaster_type),
                    now=now,
                )
                feed = replace(
                    feed,
                    removed_as_duplicate=feed.removed_as_duplicate + removed_upstream,
                )
            else:
                only = contributors[0].source_id
                feed = single_source_feed(
                    disaster_type,
                    only,
                    per_source.get(only, []),
                    removed_as_duplicate=removed_upstream,
                    now=now,
                )

            data = feed.to_dict()
            await self._cache_put(
                feed_key(disaster_type), data, self.config.feed_ttl(disaster_type)
            )
            await self.bus.publish(
                feed_topic(disaster_type), Message(type="feed.updated", data=data)
            )
        return feed

    async def refresh(self, target: str) -> TickResult:
        """Administrative re-run of a source or of one type's merge.

        Sources still go through the circuit breaker. Unknown targets raise
        ``KeyError``.
        """
        if target.startswith(MERGE_TARGET_PREFIX):
            raw_type = target.removeprefix(MERGE_TARGET_PREFIX)
            try:
                disaster_type = DisasterType.parse(raw_type)
            except ValueError as e:
                raise KeyError(raw_type) from e
            feed = await self.merge_type(disaster_type)
            return TickResult(
                target=target, status="ok", counts={str(disaster_type): feed.count}
            )
        return await self.run_source(target)

    def get_feed(self, disaster_type: DisasterType) -> CanonicalFeed | None:
        payload = self.cache.get(feed_key(disaster_type))
        if payload is None:
            return None
        return CanonicalFeed.from_dict(payload)

    def find_event(self, event_id: str) -> Event | None:
        for key in self.cache.keys(FEED_KEY_PREFIX):
            payload = self.cache.get(key)
            if payload is None:
                continue
            for raw in payload.get("events") or []:
                if raw.get("id") == event_id:
                    return Event.from_dict(raw)
        return None

    def circuit_status(self) -> dict[str, dict]:
        return {name: snap.to_dict() for name, snap in self.breaker.status().items()}

