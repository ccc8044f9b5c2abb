from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from events.model import DisasterType, utc_now
from store.db import Database


FEED_KEY_PREFIX = "feed:"


def source_key(source_id: str, disaster_type: DisasterType) -> str:
    return f"source:{source_id}:{disaster_type}"


def feed_key(disaster_type: DisasterType) -> str:
    return f"{FEED_KEY_PREFIX}{disaster_type}"


class FeedCache:
    """JSON entries keyed by source/type with a hard expiry.

    Each ``put`` replaces the whole entry in one statement, so readers see
    either the previous or the new payload, never a mix. Expired entries read
    as missing and are removed by ``purge_expired``.
    """

    def __init__(self, db: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock

    def put(self, key: str, payload: dict, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self._clock()
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO feed_cache(key, payload, stored_at, expires_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  payload = excluded.payload,
                  stored_at = excluded.stored_at,
                  expires_at = excluded.expires_at;
                """,
                (
                    key,
                    text,
                    _ts(now),
                    _ts(now + timedelta(seconds=ttl_seconds)),
                ),
            )
            self.db.conn.commit()

    def get(self, key: str) -> dict | None:
        now_iso = _ts(self._clock())
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT payload FROM feed_cache WHERE key = ? AND expires_at > ?;",
                (key, now_iso),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["payload"])

    def keys(self, prefix: str = "") -> list[str]:
        now_iso = _ts(self._clock())
        with self.db.lock:
            rows = self.db.conn.execute(
                """
                SELECT key FROM feed_cache
                WHERE key LIKE ? ESCAPE '\\' AND expires_at > ?
                ORDER BY key;
                """,
                (_like_prefix(prefix), now_iso),
            ).fetchall()
        return [str(r["key"]) for r in rows]

    def purge_expired(self) -> int:
        now_iso = _ts(self._clock())
        with self.db.lock:
            cur = self.db.conn.execute(
                "DELETE FROM feed_cache WHERE expires_at <= ?;", (now_iso,)
            )
            self.db.conn.commit()
        return cur.rowcount


def _ts(value: datetime) -> str:
    # fixed width so expiry comparisons in SQL order lexically
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"
