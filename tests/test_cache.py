from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from events.model import DisasterType
from health.health import ensure_sources, list_sources, record_fetch_error, record_fetch_success
from store.cache import FeedCache, feed_key, source_key
from store.db import open_database


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def test_keys() -> None:
    assert source_key("gdacs_combined", DisasterType.FLOOD) == "source:gdacs_combined:flood"
    assert feed_key(DisasterType.FLOOD) == "feed:flood"


def test_put_get_and_expiry(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = FeedCache(open_database(tmp_path / "cache.db"), clock=clock)
    cache.put("feed:flood", {"count": 1}, ttl_seconds=60)

    clock.now += timedelta(seconds=59)
    assert cache.get("feed:flood") == {"count": 1}

    clock.now += timedelta(seconds=1)
    assert cache.get("feed:flood") is None
    assert cache.purge_expired() == 1
    assert cache.purge_expired() == 0


def test_put_replaces_entry_and_extends_ttl(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = FeedCache(open_database(tmp_path / "cache.db"), clock=clock)
    cache.put("feed:flood", {"count": 1}, ttl_seconds=60)
    clock.now += timedelta(seconds=50)
    cache.put("feed:flood", {"count": 2}, ttl_seconds=60)
    clock.now += timedelta(seconds=50)
    assert cache.get("feed:flood") == {"count": 2}


def test_expiry_across_microsecond_boundaries(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = FeedCache(open_database(tmp_path / "cache.db"), clock=clock)
    cache.put("feed:flood", {"count": 1}, ttl_seconds=1)
    clock.now += timedelta(microseconds=500)
    assert cache.get("feed:flood") == {"count": 1}


def test_keys_by_prefix_escapes_wildcards(tmp_path: Path) -> None:
    cache = FeedCache(open_database(tmp_path / "cache.db"))
    cache.put("source:usgs_earthquakes:earthquake", {}, ttl_seconds=60)
    cache.put("source:usgsXearthquakes:earthquake", {}, ttl_seconds=60)
    cache.put("feed:earthquake", {}, ttl_seconds=60)
    assert cache.keys("source:usgs_") == ["source:usgs_earthquakes:earthquake"]
    assert cache.keys("feed:") == ["feed:earthquake"]


def test_non_positive_ttl_rejected(tmp_path: Path) -> None:
    cache = FeedCache(open_database(tmp_path / "cache.db"))
    with pytest.raises(ValueError):
        cache.put("feed:flood", {}, ttl_seconds=0)


def test_cache_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "cache.db"
    FeedCache(open_database(path)).put("feed:flood", {"count": 3}, ttl_seconds=600)
    assert FeedCache(open_database(path)).get("feed:flood") == {"count": 3}


def test_source_health_bookkeeping(tmp_path: Path) -> None:
    db = open_database(tmp_path / "cache.db")
    ensure_sources(db, [("gdacs_combined", "GDACS", "https://example.org", 900, True)])

    assert record_fetch_error(db, source_id="gdacs_combined", status_code=503, error="http_503") == 1
    assert record_fetch_error(db, source_id="gdacs_combined", status_code=None, error="timeout") == 2
    row = list_sources(db)[0]
    assert row["consecutive_failures"] == 2
    assert row["last_status_code"] == 503
    assert row["last_error"] == "timeout"

    record_fetch_success(db, source_id="gdacs_combined", status_code=200, fetch_ms=120, record_count=42)
    row = list_sources(db)[0]
    assert row["consecutive_failures"] == 0
    assert row["last_error"] is None
    assert row["last_record_count"] == 42
    assert row["success_count"] == 1
    assert row["error_count"] == 2
