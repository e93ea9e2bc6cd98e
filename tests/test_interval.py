import pytest

from utils import FetchOutcome, clamp_interval, next_interval


def test_new_entries_halve_interval():
    assert next_interval(300, FetchOutcome.NEW_ENTRIES, 60, 43200) == 150


def test_quiet_feed_grows_by_a_fifth():
    assert next_interval(150, FetchOutcome.NO_CHANGE, 60, 43200) == 180


def test_error_doubles_interval():
    assert next_interval(300, FetchOutcome.ERROR, 60, 43200) == 600


def test_active_then_quiet_sequence():
    """300s feed with two new entries then a not-modified fetch: 300 -> 150 -> 180."""
    interval = next_interval(300, FetchOutcome.NEW_ENTRIES, 60, 43200)
    assert interval == 150
    interval = next_interval(interval, FetchOutcome.NO_CHANGE, 60, 43200)
    assert interval == 180


def test_small_intervals_still_grow():
    # round(2 * 1.2) == 2, growth must still move forward
    assert next_interval(2, FetchOutcome.NO_CHANGE, 1, 100) == 3


@pytest.mark.parametrize("outcome", list(FetchOutcome))
def test_interval_stays_within_bounds(outcome):
    min_interval, max_interval = 60, 3600
    interval = 300
    for _ in range(50):
        interval = next_interval(interval, outcome, min_interval, max_interval)
        assert min_interval <= interval <= max_interval
    expected = min_interval if outcome is FetchOutcome.NEW_ENTRIES else max_interval
    assert interval == expected


def test_clamp_interval():
    assert clamp_interval(10, 60, 600) == 60
    assert clamp_interval(6000, 60, 600) == 600
    assert clamp_interval(120.4, 60, 600) == 120


def test_outcome_accepts_plain_strings():
    assert next_interval(300, "error", 60, 43200) == 600
