from datetime import UTC, datetime, timedelta

import pytest

from app.policies import DEFAULT_DEDUP
from cluster.dedup import (
    DedupConfig,
    MergeStrategy,
    deduplicate,
    haversine_km,
    name_similarity,
)
from events.model import AlertLevel, DisasterType, Event
from lifecycle.classify import classify


NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


def _event(
    event_id: str,
    *,
    disaster_type: DisasterType = DisasterType.FLOOD,
    name: str = "",
    lat: float = 10.0,
    lon: float = 20.0,
    alert: AlertLevel | None = None,
    magnitude: float | None = None,
    start: datetime | None = None,
) -> Event:
    start = start or NOW - timedelta(days=1)
    return Event(
        id=event_id,
        source_id="test",
        disaster_type=disaster_type,
        name=name or event_id,
        lat=lat,
        lon=lon,
        alert_level=alert,
        magnitude=magnitude,
        start_time=start,
        lifecycle=classify(start, None, None, False, NOW),
    )


def _km_north(km: float) -> float:
    return km / 111.195


def test_haversine_known_distance() -> None:
    assert haversine_km(0, 0, 0, 1) == pytest.approx(111.195, rel=1e-3)
    assert haversine_km(10, 20, 10, 20) == 0


def test_name_similarity_ignores_short_tokens_and_case() -> None:
    assert name_similarity("Flood in Kenya", "FLOOD KENYA") == 1.0
    assert name_similarity("Tropical Cyclone A-23", "Tropical Cyclone B-24") == 1.0
    assert name_similarity("", "Flood") == 0.0
    assert name_similarity("Flood Kenya", "Flood Somalia") == pytest.approx(1 / 3)


def test_nearby_floods_keep_highest_alert() -> None:
    orange = _event("gdacs_1", name="Flood Kenya", alert=AlertLevel.ORANGE)
    red = _event(
        "nasa_1",
        name="Kenya Floods",
        lat=10.0 + _km_north(5),
        alert=AlertLevel.RED,
    )
    result = deduplicate([orange, red], DEFAULT_DEDUP[DisasterType.FLOOD], now=NOW)
    assert result.events == [red]
    assert result.removed_count == 1
    assert result.cluster_count == 1


def test_distant_earthquakes_pass_through() -> None:
    quakes = [
        _event("q1", disaster_type=DisasterType.EARTHQUAKE, lat=35.0, lon=139.0, magnitude=5.0),
        _event("q2", disaster_type=DisasterType.EARTHQUAKE, lat=-33.0, lon=-70.0, magnitude=6.1),
        _event("q3", disaster_type=DisasterType.EARTHQUAKE, lat=38.0, lon=-122.0, magnitude=4.2),
    ]
    result = deduplicate(quakes, DEFAULT_DEDUP[DisasterType.EARTHQUAKE], now=NOW)
    assert result.events == quakes
    assert result.removed_count == 0
    assert result.cluster_count == 0


def test_keep_strongest_earthquake() -> None:
    weak = _event("q1", disaster_type=DisasterType.EARTHQUAKE, magnitude=5.1)
    strong = _event(
        "q2",
        disaster_type=DisasterType.EARTHQUAKE,
        lat=10.0 + _km_north(10),
        magnitude=6.0,
    )
    result = deduplicate([weak, strong], DEFAULT_DEDUP[DisasterType.EARTHQUAKE], now=NOW)
    assert result.events == [strong]


def test_similar_names_merge_beyond_radius() -> None:
    older = _event(
        "c1",
        disaster_type=DisasterType.CYCLONE,
        name="Tropical Cyclone FREDDY-23",
        start=NOW - timedelta(days=2),
    )
    newer = _event(
        "c2",
        disaster_type=DisasterType.CYCLONE,
        name="Tropical Cyclone Freddy",
        lat=10.0 + _km_north(500),
        start=NOW - timedelta(days=1),
    )
    result = deduplicate([older, newer], DEFAULT_DEDUP[DisasterType.CYCLONE], now=NOW)
    assert result.events == [newer]


def test_name_override_disabled_without_name_weight() -> None:
    a = _event("q1", disaster_type=DisasterType.EARTHQUAKE, name="M 5.0 Tonga")
    b = _event(
        "q2",
        disaster_type=DisasterType.EARTHQUAKE,
        name="M 5.0 Tonga",
        lat=10.0 + _km_north(100),
    )
    result = deduplicate([a, b], DEFAULT_DEDUP[DisasterType.EARTHQUAKE], now=NOW)
    assert result.removed_count == 0


def test_time_window_separates_events() -> None:
    a = _event("f1", name="Flood Kenya", start=NOW - timedelta(days=20))
    b = _event("f2", name="Flood Kenya", lat=10.0 + _km_north(5), start=NOW)
    result = deduplicate([a, b], DEFAULT_DEDUP[DisasterType.FLOOD], now=NOW)
    assert result.events == [a, b]


def test_winners_keep_input_order() -> None:
    config = DedupConfig(50, 7, 0.0, MergeStrategy.KEEP_HIGHEST_ALERT)
    a = _event("a", lat=1.0, lon=1.0)
    b = _event("b", lat=40.0, lon=40.0, alert=AlertLevel.GREEN)
    c = _event("c", lat=1.0 + _km_north(1), lon=1.0, alert=AlertLevel.RED)
    result = deduplicate([a, b, c], config, now=NOW)
    assert [e.id for e in result.events] == ["b", "c"]


def test_deduplicate_is_idempotent() -> None:
    events = [
        _event("f1", name="Flood Kenya", alert=AlertLevel.ORANGE),
        _event("f2", name="Kenya Flood", lat=10.0 + _km_north(5), alert=AlertLevel.RED),
        _event("f3", name="Flood Peru", lat=-12.0, lon=-77.0),
        _event("f4", name="Flood Lima Peru", lat=-12.0 + _km_north(20), lon=-77.0),
    ]
    config = DEFAULT_DEDUP[DisasterType.FLOOD]
    once = deduplicate(events, config, now=NOW)
    twice = deduplicate(once.events, config, now=NOW)
    assert twice.events == once.events
    assert twice.removed_count == 0
    assert len(once.events) <= len(events)


def test_chained_clusters_collapse_in_one_call() -> None:
    config = DedupConfig(50, 7, 0.0, MergeStrategy.KEEP_HIGHEST_ALERT)
    a = _event("a")
    b = _event("b", lat=10.0 + _km_north(30), alert=AlertLevel.RED)
    c = _event("c", lat=10.0 + _km_north(60))
    result = deduplicate([a, b, c], config, now=NOW)
    assert [e.id for e in result.events] == ["b"]
    assert result.removed_count == 2
    assert result.cluster_count == 2

    again = deduplicate(result.events, config, now=NOW)
    assert again.events == result.events
    assert again.removed_count == 0


def test_no_config_passes_events_through() -> None:
    events = [_event("a"), _event("b")]
    result = deduplicate(events, None, now=NOW)
    assert result.events == events
    assert result.removed_count == 0


def test_empty_input() -> None:
    result = deduplicate([], DEFAULT_DEDUP[DisasterType.FLOOD], now=NOW)
    assert result.events == []


def test_invalid_config_rejected() -> None:
    with pytest.raises(ValueError):
        DedupConfig(0, 1, 0.5, MergeStrategy.KEEP_LATEST)
    with pytest.raises(ValueError):
        DedupConfig(10, 1, 1.5, MergeStrategy.KEEP_LATEST)
