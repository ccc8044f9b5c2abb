from __future__ import annotations

import json

from ingest.errors import MalformedPayloadError


def parse_geojson(data: bytes) -> list[dict]:
    try:
        doc = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayloadError(f"invalid geojson: {e}") from e
    if not isinstance(doc, dict) or doc.get("type") != "FeatureCollection":
        raise MalformedPayloadError("expected a GeoJSON FeatureCollection")
    features = doc.get("features") or []
    return [f for f in features if isinstance(f, dict)]
