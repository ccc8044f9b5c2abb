from __future__ import annotations

from dataclasses import dataclass, field

from events.model import DisasterType


_MISSING = object()

CANONICAL_FIELDS = (
    "id",
    "name",
    "lat",
    "lon",
    "alert_level",
    "magnitude",
    "start_time",
    "end_time",
    "last_observed_at",
    "provider_says_current",
)


def resolve_path(record: object, path: str) -> object:
    """Walk a dotted path through nested dicts and lists.

    Integer segments index lists; negative indices count from the end, so
    ``geometry.-1.coordinates.1`` reads the latitude of the last geometry.
    Missing segments yield ``None``.
    """
    current: object = record
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                current = _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


@dataclass(frozen=True)
class RecordMapping:
    fields: dict[str, str]
    disaster_type: DisasterType | None = None
    type_field: str | None = None
    type_map: dict[str, DisasterType] = field(default_factory=dict)
    id_prefix: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.fields) - set(CANONICAL_FIELDS)
        if unknown:
            raise ValueError(f"unknown mapped fields: {sorted(unknown)}")
        if self.disaster_type is None and self.type_field is None:
            raise ValueError("mapping needs disaster_type or type_field")

    def record_type(self, record: dict) -> DisasterType | None:
        if self.type_field is None:
            return self.disaster_type
        raw = resolve_path(record, self.type_field)
        if raw is None:
            return None
        return self.type_map.get(str(raw).strip().upper())

    def apply(self, record: dict) -> dict | None:
        """Project a provider record onto canonical field names.

        Returns ``None`` for records of a type this source does not map
        (e.g. GDACS earthquakes when only storms and floods are wanted).
        """
        disaster_type = self.record_type(record)
        if disaster_type is None:
            return None
        out: dict = {
            name: resolve_path(record, path) for name, path in self.fields.items()
        }
        out["disaster_type"] = disaster_type
        if out.get("id") is not None:
            prefix = self.id_prefix.format(type=disaster_type.value)
            out["id"] = f"{prefix}{out['id']}"

        extra: dict = {}
        for name, path in self.extra.items():
            value = resolve_path(record, path)
            if value is not None:
                extra[name] = value
        out["extra"] = extra
        return out

    @classmethod
    def from_dict(cls, raw: dict) -> RecordMapping:
        disaster_type = raw.get("disaster_type")
        return cls(
            fields={str(k): str(v) for k, v in (raw.get("fields") or {}).items()},
            disaster_type=DisasterType.parse(disaster_type) if disaster_type else None,
            type_field=raw.get("type_field"),
            type_map={
                str(k).upper(): DisasterType.parse(v)
                for k, v in (raw.get("type_map") or {}).items()
            },
            id_prefix=str(raw.get("id_prefix") or ""),
            extra={str(k): str(v) for k, v in (raw.get("extra") or {}).items()},
        )
