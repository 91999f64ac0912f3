from concurrent.futures import ThreadPoolExecutor

from bug_ids import (
    DEFAULT_KEY, current_bug_sequence, derive_project_key, format_bug_id, next_bug_id, reset_bug_counter,
)


def test_sequential_ids_per_key(db):
    assert next_bug_id(db, "ABC") == "ABC-001"
    assert next_bug_id(db, "ABC") == "ABC-002"
    assert next_bug_id(db, "XYZ") == "XYZ-001"
    assert current_bug_sequence(db, "ABC") == 2


def test_concurrent_requests_get_distinct_ids(db):
    with ThreadPoolExecutor(max_workers=20) as pool:
        ids = list(pool.map(lambda _: next_bug_id(db, "ABC"), range(20)))

    assert len(set(ids)) == 20
    assert sorted(ids) == [format_bug_id("ABC", n) for n in range(1, 21)]
    assert current_bug_sequence(db, "ABC") == 20


def test_default_key(db):
    assert next_bug_id(db) == f"{DEFAULT_KEY}-001"
    assert next_bug_id(db, None) == f"{DEFAULT_KEY}-002"


def test_reset_counter(db):
    next_bug_id(db, "ABC")
    reset_bug_counter(db, "ABC")
    assert current_bug_sequence(db, "ABC") == 0
    assert next_bug_id(db, "ABC") == "ABC-001"


def test_format_pads_to_three_digits():
    assert format_bug_id("ABC", 7) == "ABC-007"
    assert format_bug_id("ABC", 1234) == "ABC-1234"


def test_derive_project_key():
    assert derive_project_key("Bug Tracker App") == "BUTRAP"
    assert derive_project_key("mobile") == "MO"
    assert derive_project_key("x") == "XX"
    assert derive_project_key("9 lives") == "P9LI"
    assert derive_project_key("One Two Three Four") == "ONTWTH"
