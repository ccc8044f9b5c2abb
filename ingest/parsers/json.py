from __future__ import annotations

import json

from ingest.errors import MalformedPayloadError


def parse_json_records(data: bytes) -> list[dict]:
    try:
        doc = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayloadError(f"invalid json: {e}") from e
    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in ("events", "features", "items", "data", "results"):
            value = doc.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
        return []
    raise MalformedPayloadError("expected a JSON object or array")
