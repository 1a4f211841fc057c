"""Latest-entry-per-date resolution over append-style record collections.

A collection may hold several records for the same ``date``. The authoritative
one is the record with the largest ordering key, where the key is the numeric
``id`` when it has one and the record's position in the collection otherwise.
Keys are compared with strict ``>`` so on an exact tie the first record seen
wins.

Every function here is pure: callers get new lists back and the input
sequence is never modified. Entries that are not mappings, or that lack the
requested date, are skipped rather than rejected.
"""

import math
import re
from collections.abc import Mapping, Sequence
from datetime import date as date_cls
from datetime import datetime, timezone
from typing import Any

Record = dict[str, Any]

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)


def is_valid_date_string(value: Any) -> bool:
    """True for ``YYYY-MM-DD`` strings that name a real calendar day."""
    if not isinstance(value, str) or not _DATE_RE.fullmatch(value):
        return False
    try:
        return date_cls.fromisoformat(value).isoformat() == value
    except ValueError:
        return False


def today_string() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def created_at_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def numeric_id(value: Any) -> int | float | None:
    """Return ``value`` as a finite number, or None when it is not usable as an ordering key.

    Whole numbers come back as ``int`` ("12" and 12.0 both give 12); fractional
    ids are returned as they are, never truncated.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError:
            pass
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def ordering_key(record: Mapping[str, Any], index: int) -> int | float:
    key = numeric_id(record.get("id"))
    return key if key is not None else float(index)


def find_latest_index(records: Sequence[Any], date: str) -> int:
    """Index of the authoritative record for ``date``, or -1."""
    latest_index = -1
    latest_key = -math.inf
    for index, record in enumerate(records):
        if not isinstance(record, Mapping) or record.get("date") != date:
            continue
        key = ordering_key(record, index)
        if latest_index == -1 or key > latest_key:
            latest_index = index
            latest_key = key
    return latest_index


def resolve_latest(records: Sequence[Any], date: str) -> Record | None:
    index = find_latest_index(records, date)
    return dict(records[index]) if index >= 0 else None


def latest_per_date(records: Sequence[Any]) -> list[Record]:
    """Latest record for every valid date, ordered by date."""
    by_date: dict[str, tuple[float, Mapping[str, Any]]] = {}
    for index, record in enumerate(records):
        if not isinstance(record, Mapping) or not is_valid_date_string(record.get("date")):
            continue
        key = ordering_key(record, index)
        current = by_date.get(record["date"])
        if current is None or key > current[0]:
            by_date[record["date"]] = (key, record)
    return [dict(by_date[d][1]) for d in sorted(by_date)]


def next_id(records: Sequence[Any]) -> int | float:
    """One past the largest numeric id (1 for none); a fractional max gives a fractional next id."""
    max_id: int | float = 0
    for record in records:
        if not isinstance(record, Mapping):
            continue
        current = numeric_id(record.get("id"))
        if current is not None and current > max_id:
            max_id = current
    return max_id + 1


def _build(fields: Mapping[str, Any], record_id: int | float, date: str) -> Record:
    record: Record = {"id": record_id, "date": date}
    record.update((k, v) for k, v in fields.items() if k not in ("id", "date"))
    return record


def upsert(
    records: Sequence[Any], fields: Mapping[str, Any], date: str
) -> tuple[list[Any], int | float, bool]:
    """Insert or replace the record for ``date``.

    Returns ``(updated_records, assigned_id, is_update)``. On update the latest
    record's slot is overwritten (keeping its id when numeric) and every other
    record for the same date is dropped.
    """
    updated = list(records)
    latest_index = find_latest_index(updated, date)

    if latest_index < 0:
        assigned_id = next_id(updated)
        updated.append(_build(fields, assigned_id, date))
        return updated, assigned_id, False

    existing_id = numeric_id(updated[latest_index].get("id"))
    assigned_id = existing_id if existing_id is not None else next_id(updated)
    updated[latest_index] = _build(fields, assigned_id, date)

    # Walk backwards so deletions don't shift indexes still to be visited
    for index in range(len(updated) - 1, -1, -1):
        record = updated[index]
        if index != latest_index and isinstance(record, Mapping) and record.get("date") == date:
            del updated[index]
    return updated, assigned_id, True
