from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import BaseModel, Field, Strict, field_validator, model_validator

from habitlog.records import is_valid_date_string, numeric_id, today_string

COLLECTION_KEY = "screen-time-entries"
SOURCE_MAX_LENGTH = 120

Count = Annotated[int, Strict(), Field(ge=0)]


class ScreenTimeIn(BaseModel):
    """Screen-time payload; ``date`` falls back to today (UTC) when absent or empty."""

    date: str
    total_minutes: Count
    pickups: Count | None = None
    source: Annotated[str, Field(max_length=SOURCE_MAX_LENGTH)] | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_date(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and data.get("date") in (None, ""):
            data = {**data, "date": today_string()}
        return data

    @field_validator("date")
    @classmethod
    def _calendar_date(cls, value: str) -> str:
        if not is_valid_date_string(value):
            raise ValueError("date must be a real YYYY-MM-DD day")
        return value

    @field_validator("pickups", mode="before")
    @classmethod
    def _blank_pickups(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_validator("source")
    @classmethod
    def _trim_source(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class ScreenTimeStatus(BaseModel):
    date: str
    total_minutes: int | None = None
    pickups: int | None = None
    source: str = ""
    created_at: str | None = None
    has_data: bool = False


def _count(value: Any) -> int | None:
    # Stored files can be hand-edited; unreadable numbers show as missing
    number = numeric_id(value)
    return int(number) if number is not None else None


def daily_status(latest: Mapping[str, Any] | None, date: str | None = None) -> ScreenTimeStatus:
    date = date or today_string()
    if latest is None:
        return ScreenTimeStatus(date=date)
    source = latest.get("source")
    created_at = latest.get("created_at")
    return ScreenTimeStatus(
        date=date,
        total_minutes=_count(latest.get("total_minutes")),
        pickups=_count(latest.get("pickups")),
        source=source if isinstance(source, str) else "",
        created_at=created_at if isinstance(created_at, str) else None,
        has_data=True,
    )
