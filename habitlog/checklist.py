import csv
import io
from collections.abc import Iterable, Mapping
from datetime import date as date_cls
from typing import Annotated, Any

from pydantic import BaseModel, Field, Strict, field_validator

from habitlog.records import is_valid_date_string, today_string

COLLECTION_KEY = "entries"

REQUIRED_FLAGS = ("dishwasher", "creatine", "bed")
OPTIONAL_FLAGS = ("omega3", "multivitamin", "water", "workout")
FLAG_FIELDS = ("dishwasher", "creatine", "omega3", "multivitamin", "water", "workout", "bed")
NOTE_MAX_LENGTH = 500

# Saturday; datetime.weekday() is Mon=0 .. Sun=6
REST_DAY_WEEKDAY = 5

CSV_HEADER = [
    "Date",
    "Dishwasher emptied",
    "Creatine taken",
    "Omega-3 taken",
    "Multivitamin taken",
    "2L water",
    "Workout done",
    "Bed made",
    "Note",
]
NOTES_CSV_HEADER = ["Date", "Note"]

# Strict: true/false and "1" are not flags
Flag = Annotated[int, Strict(), Field(ge=0, le=1)]


class EntryIn(BaseModel):
    """Checklist payload. Optional flags default to 0 only when absent; null is rejected."""

    date: str
    dishwasher: Flag
    creatine: Flag
    omega3: Flag = 0
    multivitamin: Flag = 0
    water: Flag = 0
    workout: Flag = 0
    bed: Flag
    note: Annotated[str, Field(max_length=NOTE_MAX_LENGTH)] | None = ""

    @field_validator("date")
    @classmethod
    def _calendar_date(cls, value: str) -> str:
        if not is_valid_date_string(value):
            raise ValueError("date must be a real YYYY-MM-DD day")
        return value

    @field_validator("note")
    @classmethod
    def _note_default(cls, value: str | None) -> str:
        return value if value is not None else ""


class ChecklistStatus(BaseModel):
    date: str
    dishwasher: int
    creatine: int
    omega3: int
    multivitamin: int
    water: int
    workout: int
    bed: int
    note: str
    all_done: bool


def workout_required(date: str) -> bool:
    if not is_valid_date_string(date):
        return False
    return date_cls.fromisoformat(date).weekday() != REST_DAY_WEEKDAY


def _flag(record: Mapping[str, Any] | None, name: str) -> int:
    return 1 if record is not None and record.get(name, 0) == 1 else 0


def daily_status(latest: Mapping[str, Any] | None, date: str | None = None) -> ChecklistStatus:
    """Project the latest record for ``date`` (or its absence) into a full status."""
    date = date or today_string()
    flags = {name: _flag(latest, name) for name in FLAG_FIELDS}
    note = latest.get("note") if latest is not None else None

    base_done = all(flags[name] == 1 for name in FLAG_FIELDS if name != "workout")
    workout_done = flags["workout"] == 1 or not workout_required(date)
    return ChecklistStatus(
        date=date,
        **flags,
        note=note if isinstance(note, str) else "",
        all_done=base_done and workout_done,
    )


def _csv_text(header: list[str], rows: Iterable[list[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\r\n")
    writer.writerow(header)
    writer.writerows(rows)
    # BOM so spreadsheet apps pick up UTF-8; no trailing newline after the last row
    return "\ufeff" + buf.getvalue().removesuffix("\r\n")


def _cell(value: Any) -> Any:
    return "" if value is None else value


def to_csv(latest_records: Iterable[Mapping[str, Any]]) -> str:
    """CSV of one row per date; expects the output of ``latest_per_date``."""
    rows = [
        [_cell(r.get("date"))]
        + [_cell(r.get(name, 0 if name in OPTIONAL_FLAGS else None)) for name in FLAG_FIELDS]
        + [_cell(r.get("note"))]
        for r in latest_records
    ]
    return _csv_text(CSV_HEADER, rows)


def to_notes_csv(latest_records: Iterable[Mapping[str, Any]]) -> str:
    rows = [
        [r.get("date"), r["note"]]
        for r in latest_records
        if isinstance(r.get("note"), str) and r["note"].strip()
    ]
    return _csv_text(NOTES_CSV_HEADER, rows)
