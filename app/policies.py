from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

from cluster.dedup import DedupConfig, MergeStrategy
from events.model import DisasterType
from lifecycle.retention import RetentionPolicy
from merge.canonical import MergePolicy


DEFAULT_DEDUP: dict[DisasterType, DedupConfig] = {
    DisasterType.FLOOD: DedupConfig(80, 14, 0.5, MergeStrategy.KEEP_HIGHEST_ALERT),
    DisasterType.WILDFIRE: DedupConfig(50, 7, 0.3, MergeStrategy.KEEP_HIGHEST_ALERT),
    DisasterType.EARTHQUAKE: DedupConfig(30, 1, 0.0, MergeStrategy.KEEP_STRONGEST),
    DisasterType.CYCLONE: DedupConfig(200, 3, 0.8, MergeStrategy.KEEP_LATEST),
    DisasterType.VOLCANO: DedupConfig(15, 30, 0.7, MergeStrategy.KEEP_HIGHEST_ALERT),
    DisasterType.DROUGHT: DedupConfig(150, 30, 0.4, MergeStrategy.KEEP_HIGHEST_ALERT),
    DisasterType.LANDSLIDE: DedupConfig(10, 3, 0.2, MergeStrategy.KEEP_LATEST),
    DisasterType.TSUNAMI: DedupConfig(100, 2, 0.5, MergeStrategy.KEEP_LATEST),
}

# Thresholds encode provider quirks observed in GDACS feeds.
DEFAULT_RETENTION: dict[DisasterType, RetentionPolicy] = {
    DisasterType.WILDFIRE: RetentionPolicy(ended_within_days=3),
    DisasterType.FLOOD: RetentionPolicy(ended_within_days=7),
    DisasterType.DROUGHT: RetentionPolicy(
        ended_within_days=30,
        name_year_max_lag=1,
        started_within_days_unless_current=730,
        ongoing_stale_max_days=365,
    ),
}


@dataclass(frozen=True)
class Policies:
    dedup: dict[DisasterType, DedupConfig] = field(
        default_factory=lambda: dict(DEFAULT_DEDUP)
    )
    retention: dict[DisasterType, RetentionPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RETENTION)
    )
    merge: MergePolicy = field(default_factory=MergePolicy)

    def dedup_for(self, disaster_type: DisasterType) -> DedupConfig | None:
        return self.dedup.get(disaster_type)

    def retention_for(self, disaster_type: DisasterType) -> RetentionPolicy:
        return self.retention.get(disaster_type, RetentionPolicy())


def _check_keys(raw: dict, allowed: set[str], where: str) -> None:
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"unknown keys in {where}: {sorted(unknown)}")


def _field_names(cls: type) -> set[str]:
    return {f.name for f in fields(cls)}


def _dedup_override(base: DedupConfig | None, raw: dict, where: str) -> DedupConfig:
    _check_keys(raw, _field_names(DedupConfig), where)
    if "merge_strategy" in raw:
        raw = {**raw, "merge_strategy": MergeStrategy(raw["merge_strategy"])}
    if base is None:
        return DedupConfig(**raw)
    return replace(base, **raw)


def policies_from_dict(raw: dict) -> Policies:
    """Overlay per-type overrides on the defaults.

    ``dedup`` and ``retention`` are keyed by disaster type and may set any
    subset of fields; ``merge`` overrides the single merge policy.
    """
    _check_keys(raw, {"dedup", "retention", "merge"}, "policies")
    policies = Policies()

    dedup = dict(policies.dedup)
    for key, value in (raw.get("dedup") or {}).items():
        kind = DisasterType.parse(key)
        if value is None:
            dedup.pop(kind, None)
            continue
        dedup[kind] = _dedup_override(dedup.get(kind), dict(value), f"dedup.{key}")

    retention = dict(policies.retention)
    for key, value in (raw.get("retention") or {}).items():
        kind = DisasterType.parse(key)
        value = dict(value or {})
        _check_keys(value, _field_names(RetentionPolicy), f"retention.{key}")
        retention[kind] = replace(retention.get(kind, RetentionPolicy()), **value)

    merge_raw = dict(raw.get("merge") or {})
    _check_keys(merge_raw, _field_names(MergePolicy), "merge")
    merge = replace(policies.merge, **merge_raw)

    return Policies(dedup=dedup, retention=retention, merge=merge)


def load_policies(path: Path | None) -> Policies:
    if path is None:
        return Policies()
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return Policies()
    if not isinstance(raw, dict):
        raise ValueError(f"invalid policies file: {path}")
    return policies_from_dict(raw)
