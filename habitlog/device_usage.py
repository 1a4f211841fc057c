"""Daily screen time from the macOS knowledgeC database.

The ``ZOBJECT`` table records app-usage intervals as seconds since the Apple
epoch (2001-01-01 UTC). Reading it needs Full Disk Access for the process.
"""

import os
import sqlite3
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

APPLE_EPOCH_SECONDS = 978307200
DEFAULT_STREAMS = ("/app/usage",)
QUERY_TIMEOUT_SECONDS = 15.0
DEFAULT_DB_PATH = Path.home() / "Library" / "Application Support" / "Knowledge" / "knowledgeC.db"


class UsageReadError(RuntimeError):
    pass


@dataclass
class UsageRow:
    start_date: float
    end_date: float
    stream_name: str


def parse_stream_names(value: str | None, fallback: Sequence[str] = DEFAULT_STREAMS) -> list[str]:
    raw = (value or "").strip()
    items = raw.split(",") if raw else list(fallback)
    streams: list[str] = []
    for item in items:
        item = item.strip()
        if not item:
            continue
        name = item if item.startswith("/") else f"/{item}"
        if name not in streams:
            streams.append(name)
    return streams or list(fallback)


def local_day_bounds(day: str) -> tuple[datetime, datetime]:
    """Start/end of ``day`` (YYYY-MM-DD) in the machine's local timezone."""
    try:
        midnight = datetime.strptime(day, "%Y-%m-%d")
    except ValueError:
        raise UsageReadError(f"Invalid date: {day}. Expected YYYY-MM-DD") from None
    # Naive datetimes are taken as local time, so DST shifts land on the right day
    return midnight.astimezone(), (midnight + timedelta(days=1)).astimezone()


def _ensure_readable(db_path: Path) -> None:
    if not db_path.exists():
        raise UsageReadError(f"Database not found: {db_path}")
    if not os.access(db_path, os.R_OK):
        raise UsageReadError(
            f"No read access to {db_path}. Grant Full Disk Access to the app running this script and retry."
        )


def read_usage_rows(
    db_path: str | Path,
    start: datetime,
    end: datetime,
    streams: Sequence[str] = DEFAULT_STREAMS,
    timeout: float = QUERY_TIMEOUT_SECONDS,
) -> list[UsageRow]:
    """Usage intervals overlapping [start, end), read with a read-only connection."""
    db_path = Path(db_path)
    _ensure_readable(db_path)
    streams = parse_stream_names(",".join(streams))
    placeholders = ", ".join("?" for _ in streams)
    sql = f"""
        SELECT ZSTARTDATE AS start_date, ZENDDATE AS end_date, ZSTREAMNAME AS stream_name
        FROM ZOBJECT
        WHERE ZSTREAMNAME IN ({placeholders})
          AND ZENDDATE > ?
          AND ZSTARTDATE < ?
          AND ZENDDATE > ZSTARTDATE
    """
    params: list[Any] = [
        *streams,
        start.timestamp() - APPLE_EPOCH_SECONDS,
        end.timestamp() - APPLE_EPOCH_SECONDS,
    ]

    deadline = time.monotonic() + timeout
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    # Non-zero return from the progress handler aborts the running query
    conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 10_000)
    try:
        rows = conn.execute(sql, params).fetchall()
    except sqlite3.OperationalError as exc:
        if time.monotonic() > deadline:
            raise UsageReadError(f"Timed out reading {db_path.name}") from exc
        raise
    finally:
        conn.close()
    return [UsageRow(float(r[0]), float(r[1]), str(r[2] or "UNKNOWN")) for r in rows]


def overlap_seconds(row: UsageRow, start: datetime, end: datetime) -> float:
    if row.end_date <= row.start_date:
        return 0.0
    row_start = row.start_date + APPLE_EPOCH_SECONDS
    row_end = row.end_date + APPLE_EPOCH_SECONDS
    lo = max(start.timestamp(), row_start)
    hi = min(end.timestamp(), row_end)
    return hi - lo if hi > lo else 0.0


def aggregate_by_stream(rows: Iterable[UsageRow], start: datetime, end: datetime) -> dict[str, float]:
    totals: dict[str, float] = {}
    for row in rows:
        seconds = overlap_seconds(row, start, end)
        if seconds > 0:
            totals[row.stream_name] = totals.get(row.stream_name, 0.0) + seconds
    return totals


def total_minutes(rows: Iterable[UsageRow], start: datetime, end: datetime) -> int:
    return round(sum(aggregate_by_stream(rows, start, end).values()) / 60)
