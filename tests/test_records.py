import copy

import pytest

from habitlog.records import (
    find_latest_index,
    is_valid_date_string,
    latest_per_date,
    next_id,
    numeric_id,
    resolve_latest,
    upsert,
)

D = "2024-01-01"


def test_resolve_latest_picks_max_numeric_id():
    records = [
        {"id": 3, "date": D, "v": "a"},
        {"id": 7, "date": D, "v": "b"},
        {"id": 5, "date": D, "v": "c"},
        {"id": 9, "date": "2024-01-02", "v": "other day"},
    ]
    assert resolve_latest(records, D)["v"] == "b"


def test_resolve_latest_falls_back_to_store_index():
    records = [
        {"id": "x", "date": D, "v": 1},
        {"date": D, "v": 2},
        {"id": None, "date": D, "v": 3},
    ]
    assert resolve_latest(records, D)["v"] == 3


def test_resolve_latest_first_occurrence_wins_on_equal_ids():
    records = [{"id": 4, "date": D, "v": "first"}, {"id": 4, "date": D, "v": "second"}]
    assert resolve_latest(records, D)["v"] == "first"


def test_resolve_latest_skips_malformed_entries():
    records = [None, "junk", 17, {"id": 9}, {"id": 2, "date": D}]
    assert resolve_latest(records, D) == {"id": 2, "date": D}


def test_resolve_latest_missing_date():
    assert resolve_latest([{"id": 1, "date": D}], "2030-01-01") is None
    assert resolve_latest([], D) is None
    assert find_latest_index([], D) == -1


def test_numeric_id_accepts_numeric_strings_only():
    assert numeric_id(5) == 5
    assert numeric_id("12") == 12
    assert numeric_id("x") is None
    assert numeric_id(True) is None
    assert numeric_id(float("inf")) is None
    assert numeric_id(None) is None


def test_next_id():
    assert next_id([]) == 1
    assert next_id([{"id": 5}, {"id": "x"}]) == 6
    assert next_id([{"id": "12"}, None, {"id": 3}]) == 13
    assert next_id([{"id": "x"}]) == 1


def test_upsert_inserts_with_fresh_id():
    records, record_id, is_update = upsert([], {"v": 1}, D)
    assert (record_id, is_update) == (1, False)
    assert records == [{"id": 1, "date": D, "v": 1}]


def test_upsert_twice_keeps_single_record_for_date():
    first, first_id, _ = upsert([{"id": 1, "date": "2023-12-31"}], {"v": 1}, D)
    second, second_id, is_update = upsert(first, {"v": 2}, D)

    assert is_update is True
    assert second_id == first_id == 2
    assert len(second) == len(first) == 2
    assert [r for r in second if r["date"] == D] == [{"id": 2, "date": D, "v": 2}]


def test_upsert_replaces_latest_and_removes_other_duplicates():
    records = [
        {"id": 1, "date": D, "v": "old"},
        {"id": 2, "date": "2024-01-02", "v": "keep"},
        {"id": 3, "date": D, "v": "newer"},
        {"id": 0, "date": D, "v": "oldest"},
    ]
    updated, record_id, is_update = upsert(records, {"v": "new"}, D)

    assert (record_id, is_update) == (3, True)
    assert updated == [
        {"id": 2, "date": "2024-01-02", "v": "keep"},
        {"id": 3, "date": D, "v": "new"},
    ]


def test_upsert_non_numeric_existing_id_gets_fresh_id():
    records = [{"id": "abc", "date": D}, {"id": 4, "date": "2024-01-02"}]
    updated, record_id, is_update = upsert(records, {}, D)
    assert (record_id, is_update) == (5, True)
    assert updated[0] == {"id": 5, "date": D}


def test_numeric_id_keeps_fractions():
    assert numeric_id(2.5) == 2.5
    assert numeric_id("2.5") == 2.5
    assert numeric_id(12.0) == 12 and isinstance(numeric_id(12.0), int)


def test_next_id_after_fractional_max():
    assert next_id([{"id": 2}, {"id": 2.5}]) == 3.5


def test_upsert_keeps_fractional_existing_id():
    records = [{"id": 2, "date": "2024-01-02"}, {"id": 2.5, "date": D, "v": "old"}]
    updated, record_id, is_update = upsert(records, {"v": "new"}, D)

    assert (record_id, is_update) == (2.5, True)
    assert sorted(r["id"] for r in updated) == [2, 2.5]
    assert resolve_latest(updated, "2024-01-02") == {"id": 2, "date": "2024-01-02"}


def test_upsert_does_not_mutate_input():
    records = [{"id": 1, "date": D, "v": 1}, {"id": 2, "date": D, "v": 2}]
    before = copy.deepcopy(records)
    upsert(records, {"v": 3}, D)
    assert records == before


def test_upsert_ignores_id_and_date_in_fields():
    updated, record_id, _ = upsert([], {"id": 99, "date": "1999-01-01", "v": 1}, D)
    assert updated == [{"id": 1, "date": D, "v": 1}]


def test_latest_per_date_sorted_and_filtered():
    records = [
        {"id": 1, "date": "2024-01-03", "v": "a"},
        {"id": 2, "date": "2024-01-01", "v": "b"},
        {"id": 3, "date": "2024-01-03", "v": "c"},
        {"id": 4, "date": "not-a-date"},
        None,
    ]
    assert [(r["date"], r["v"]) for r in latest_per_date(records)] == [
        ("2024-01-01", "b"),
        ("2024-01-03", "c"),
    ]


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-01-01", True),
        ("2024-02-29", True),
        ("2023-02-29", False),
        ("2024-13-40", False),
        ("2024-1-01", False),
        ("20240101", False),
        ("", False),
        (None, False),
        (20240101, False),
    ],
)
def test_is_valid_date_string(value, expected):
    assert is_valid_date_string(value) is expected
