from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from store.db import Database


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def ensure_sources(db: Database, sources: Iterable[tuple[str, str, str, int, bool]]) -> None:
    """Upsert (source_id, name, url, poll_interval_seconds, enabled) rows."""
    with db.lock:
        for source_id, name, url, poll_seconds, enabled in sources:
            db.conn.execute(
                """
                INSERT INTO sources(source_id, name, url, poll_interval_seconds, enabled)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                  name = excluded.name,
                  url = excluded.url,
                  poll_interval_seconds = excluded.poll_interval_seconds,
                  enabled = excluded.enabled;
                """,
                (source_id, name, url, poll_seconds, 1 if enabled else 0),
            )
        db.conn.commit()


def record_fetch_success(
    db: Database,
    *,
    source_id: str,
    status_code: int | None,
    fetch_ms: int | None,
    record_count: int,
) -> None:
    now_iso = _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            UPDATE sources
            SET last_fetch_at = ?,
                last_success_at = ?,
                last_status_code = COALESCE(?, last_status_code),
                last_fetch_ms = COALESCE(?, last_fetch_ms),
                last_record_count = ?,
                consecutive_failures = 0,
                last_error = NULL,
                last_error_at = NULL,
                success_count = success_count + 1
            WHERE source_id = ?;
            """,
            (now_iso, now_iso, status_code, fetch_ms, record_count, source_id),
        )
        db.conn.commit()


def record_fetch_error(
    db: Database,
    *,
    source_id: str,
    status_code: int | None,
    error: str,
) -> int:
    now_iso = _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            UPDATE sources
            SET last_fetch_at = ?,
                last_error_at = ?,
                last_status_code = COALESCE(?, last_status_code),
                consecutive_failures = consecutive_failures + 1,
                last_error = ?,
                error_count = error_count + 1
            WHERE source_id = ?;
            """,
            (now_iso, now_iso, status_code, error, source_id),
        )
        row = db.conn.execute(
            "SELECT consecutive_failures FROM sources WHERE source_id = ?;",
            (source_id,),
        ).fetchone()
        db.conn.commit()
    return int(row["consecutive_failures"]) if row is not None else 0


def list_sources(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT source_id, name, url, poll_interval_seconds, enabled,
                   last_fetch_at, last_success_at, last_error_at, last_status_code,
                   last_fetch_ms, last_error, last_record_count,
                   consecutive_failures, success_count, error_count
            FROM sources
            ORDER BY source_id;
            """
        ).fetchall()
    return [dict(r) for r in rows]
