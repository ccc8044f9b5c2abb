from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import yaml

from events.model import DisasterType
from ingest.mapping import RecordMapping
from ingest.parsers.geojson import parse_geojson
from ingest.parsers.json import parse_json_records


ParseFn = Callable[[bytes], list[dict]]

PARSERS: dict[str, ParseFn] = {
    "geojson": parse_geojson,
    "json": parse_json_records,
}


@dataclass(frozen=True)
class SourceSpec:
    source_id: str
    name: str
    url: str
    format: str
    poll_interval_seconds: int
    priority: int
    disaster_types: tuple[DisasterType, ...]
    mapping: RecordMapping
    enabled: bool = True
    headers: dict[str, str] | None = None

    @property
    def parse(self) -> ParseFn:
        return PARSERS[self.format]


def _source_from_entry(entry: dict, path: Path) -> SourceSpec:
    source_id = str(entry["id"])
    fmt = str(entry.get("format") or "json")
    if fmt not in PARSERS:
        raise ValueError(f"unknown format {fmt!r} for {source_id} in {path}")

    mapping = RecordMapping.from_dict(entry.get("mapping") or {})
    declared = entry.get("disaster_types")
    if declared:
        disaster_types = tuple(DisasterType.parse(t) for t in declared)
    elif mapping.disaster_type is not None:
        disaster_types = (mapping.disaster_type,)
    else:
        disaster_types = tuple(dict.fromkeys(mapping.type_map.values()))
    if not disaster_types:
        raise ValueError(f"source {source_id} in {path} feeds no disaster type")

    poll_seconds = int(entry.get("poll_seconds") or 600)
    if poll_seconds <= 0:
        raise ValueError(f"poll_seconds must be positive for {source_id}")

    headers = entry.get("headers")
    return SourceSpec(
        source_id=source_id,
        name=str(entry.get("name") or source_id),
        url=str(entry["url"]),
        format=fmt,
        poll_interval_seconds=poll_seconds,
        priority=int(entry.get("priority") or 100),
        disaster_types=disaster_types,
        mapping=mapping,
        enabled=bool(entry.get("enabled", True)),
        headers={str(k): str(v) for k, v in headers.items()} if headers else None,
    )


def load_source_pack(path: Path) -> list[SourceSpec]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"invalid source pack: {path}")

    sources: list[SourceSpec] = []
    seen: set[str] = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValueError(f"invalid source entry in: {path}")
        source = _source_from_entry(entry, path)
        if source.source_id in seen:
            raise ValueError(f"duplicate source id {source.source_id} in {path}")
        seen.add(source.source_id)
        sources.append(source)
    return sorted(sources, key=lambda s: s.priority)


def load_source_packs(feeds_dir: Path) -> list[SourceSpec]:
    if feeds_dir.is_file():
        return load_source_pack(feeds_dir)
    sources: list[SourceSpec] = []
    if not feeds_dir.exists():
        return sources
    for path in sorted(feeds_dir.glob("*.yaml")):
        sources.extend(load_source_pack(path))
    ids = [s.source_id for s in sources]
    if len(ids) != len(set(ids)):
        raise ValueError(f"duplicate source ids across packs in {feeds_dir}")
    return sorted(sources, key=lambda s: s.priority)
