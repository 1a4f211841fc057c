import pydantic
import pytest

from habitlog import checklist

MONDAY = "2024-01-01"
SATURDAY = "2024-01-06"


def _payload(**overrides):
    body = {"date": MONDAY, "dishwasher": 1, "creatine": 0, "bed": 1}
    body.update(overrides)
    return body


def test_entry_fills_optional_flags_and_note():
    assert checklist.EntryIn.model_validate(_payload()).model_dump() == {
        "date": MONDAY,
        "dishwasher": 1,
        "creatine": 0,
        "omega3": 0,
        "multivitamin": 0,
        "water": 0,
        "workout": 0,
        "bed": 1,
        "note": "",
    }


def test_entry_ignores_unknown_fields():
    value = checklist.EntryIn.model_validate(_payload(mood="great", id=40)).model_dump()
    assert "mood" not in value and "id" not in value


def test_entry_null_note_becomes_empty():
    assert checklist.EntryIn.model_validate(_payload(note=None)).note == ""


@pytest.mark.parametrize(
    "payload",
    [
        _payload(date="2024-13-40"),
        _payload(date="01.01.2024"),
        _payload(date=None),
        _payload(dishwasher=2),
        _payload(creatine=True),
        _payload(bed="1"),
        _payload(water=-1),
        _payload(workout=0.5),
        _payload(omega3=None),
        _payload(bed=None),
        {"date": MONDAY, "creatine": 1, "bed": 1},
        _payload(note=42),
        _payload(note="x" * (checklist.NOTE_MAX_LENGTH + 1)),
        [],
        "text",
        None,
    ],
)
def test_entry_rejects_whole_payload(payload):
    with pytest.raises(pydantic.ValidationError):
        checklist.EntryIn.model_validate(payload)


def test_entry_keeps_note_at_max_length():
    note = "n" * checklist.NOTE_MAX_LENGTH
    assert checklist.EntryIn.model_validate(_payload(note=note)).note == note


def test_status_without_record_is_all_zero():
    status = checklist.daily_status(None, MONDAY)
    assert status.model_dump() == {
        "date": MONDAY,
        "dishwasher": 0,
        "creatine": 0,
        "omega3": 0,
        "multivitamin": 0,
        "water": 0,
        "workout": 0,
        "bed": 0,
        "note": "",
        "all_done": False,
    }


def _all_flags(**overrides):
    record = {name: 1 for name in checklist.FLAG_FIELDS}
    record.update(overrides)
    return record


def test_all_done_requires_workout_on_weekdays():
    assert checklist.daily_status(_all_flags(), MONDAY).all_done is True
    assert checklist.daily_status(_all_flags(workout=0), MONDAY).all_done is False


def test_saturday_is_rest_day():
    assert checklist.workout_required(SATURDAY) is False
    assert checklist.daily_status(_all_flags(workout=0), SATURDAY).all_done is True
    assert checklist.daily_status(_all_flags(workout=0, water=0), SATURDAY).all_done is False


def test_status_treats_missing_optional_flags_as_zero():
    legacy = {"id": 3, "date": MONDAY, "dishwasher": 1, "creatine": 1, "bed": 1, "note": None}
    status = checklist.daily_status(legacy, MONDAY)
    assert (status.omega3, status.water, status.note, status.all_done) == (0, 0, "", False)


def test_csv_has_bom_crlf_and_quoting():
    rows = [
        {"id": 1, "date": "2024-01-01", **_all_flags(), "note": "tired, but done"},
        {"id": 2, "date": "2024-01-02", "dishwasher": 0, "creatine": 1, "bed": 1, "note": None},
    ]
    body = checklist.to_csv(rows)

    assert body.startswith("\ufeffDate,Dishwasher emptied,")
    assert not body.endswith("\r\n")
    lines = body.lstrip("\ufeff").split("\r\n")
    assert lines[0] == ",".join(checklist.CSV_HEADER)
    assert lines[1] == '2024-01-01,1,1,1,1,1,1,1,"tired, but done"'
    assert lines[2] == "2024-01-02,0,1,0,0,0,0,1,"


def test_csv_quotes_embedded_quotes():
    body = checklist.to_csv([{"date": MONDAY, **_all_flags(), "note": 'said "hi"'}])
    assert body.endswith('"said ""hi"""')


def test_notes_csv_skips_blank_notes():
    rows = [
        {"date": "2024-01-01", "note": "  "},
        {"date": "2024-01-02", "note": "slept well"},
        {"date": "2024-01-03"},
    ]
    assert checklist.to_notes_csv(rows) == "\ufeffDate,Note\r\n2024-01-02,slept well"


def test_empty_csv_is_header_only():
    assert checklist.to_csv([]) == "\ufeff" + ",".join(checklist.CSV_HEADER)
