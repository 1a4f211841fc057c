from unittest import mock

import pydantic
import pytest

from habitlog import screen_time


def _validate(payload):
    return screen_time.ScreenTimeIn.model_validate(payload).model_dump()


def test_full_payload():
    value = _validate({"date": "2024-01-01", "total_minutes": 95, "pickups": 40, "source": "  iPhone  "})
    assert value == {"date": "2024-01-01", "total_minutes": 95, "pickups": 40, "source": "iPhone"}


def test_date_defaults_to_today():
    with mock.patch.object(screen_time, "today_string", return_value="2024-05-05"):
        assert _validate({"total_minutes": 0})["date"] == "2024-05-05"
        assert _validate({"date": "", "total_minutes": 0})["date"] == "2024-05-05"
        assert _validate({"date": None, "total_minutes": 0})["date"] == "2024-05-05"


def test_blank_pickups_and_source_become_none():
    value = _validate({"date": "2024-01-01", "total_minutes": 10, "pickups": "", "source": "   "})
    assert value["pickups"] is None
    assert value["source"] is None


@pytest.mark.parametrize(
    "payload",
    [
        {"date": "2024-01-01"},
        {"date": "2024-01-01", "total_minutes": None},
        {"date": "2024-01-01", "total_minutes": -1},
        {"date": "2024-01-01", "total_minutes": 1.5},
        {"date": "2024-01-01", "total_minutes": "30"},
        {"date": "2024-01-01", "total_minutes": True},
        {"date": "2024-02-30", "total_minutes": 10},
        {"date": "2024-01-01", "total_minutes": 10, "pickups": -3},
        {"date": "2024-01-01", "total_minutes": 10, "pickups": "many"},
        {"date": "2024-01-01", "total_minutes": 10, "source": 7},
        {"date": "2024-01-01", "total_minutes": 10, "source": "s" * 121},
        ["not", "an", "object"],
    ],
)
def test_rejects(payload):
    with pytest.raises(pydantic.ValidationError):
        screen_time.ScreenTimeIn.model_validate(payload)


def test_status_without_record():
    status = screen_time.daily_status(None, "2024-01-01")
    assert status.model_dump() == {
        "date": "2024-01-01",
        "total_minutes": None,
        "pickups": None,
        "source": "",
        "created_at": None,
        "has_data": False,
    }


def test_status_with_record():
    record = {
        "id": 4,
        "date": "2024-01-01",
        "total_minutes": 120,
        "pickups": None,
        "source": None,
        "created_at": "2024-01-02 06:00:00",
    }
    status = screen_time.daily_status(record, "2024-01-01")
    assert status.has_data is True
    assert (status.total_minutes, status.pickups, status.source) == (120, None, "")
    assert status.created_at == "2024-01-02 06:00:00"


def test_status_with_unreadable_stored_numbers():
    record = {"id": 5, "date": "2024-01-01", "total_minutes": "abc", "pickups": {"n": 3}}
    status = screen_time.daily_status(record, "2024-01-01")
    assert status.has_data is True
    assert (status.total_minutes, status.pickups) == (None, None)


def test_status_reads_numeric_strings():
    status = screen_time.daily_status({"date": "2024-01-01", "total_minutes": "45", "pickups": 12.0}, "2024-01-01")
    assert (status.total_minutes, status.pickups) == (45, 12)
