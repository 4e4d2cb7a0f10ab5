"""
Tests for interval merging and free-slot filtering.
"""

import itertools

import pendulum

from slotbooker.domain.intervals import filter_free, merge_intervals, overlaps_any
from slotbooker.domain.models import TimeInterval


def _interval(start: str, end: str, tz: str = "Europe/Berlin") -> TimeInterval:
    return TimeInterval(start=pendulum.parse(start, tz=tz), end=pendulum.parse(end, tz=tz), timezone=tz)


class TestMergeIntervals:
    """Tests for merge_intervals."""

    def test_empty_input(self):
        assert merge_intervals([]) == []

    def test_overlapping_and_adjacent_collapse(self):
        merged = merge_intervals([
            _interval("2025-01-06 09:00", "2025-01-06 10:00"),
            _interval("2025-01-06 10:00", "2025-01-06 11:00"),
            _interval("2025-01-06 10:30", "2025-01-06 12:00"),
        ])

        assert len(merged) == 1
        assert merged[0].start == pendulum.parse("2025-01-06 09:00", tz="Europe/Berlin")
        assert merged[0].end == pendulum.parse("2025-01-06 12:00", tz="Europe/Berlin")
        assert merged[0].timezone == "UTC"

    def test_contained_interval_is_absorbed(self):
        merged = merge_intervals([
            _interval("2025-01-06 09:00", "2025-01-06 17:00"),
            _interval("2025-01-06 11:00", "2025-01-06 12:00"),
        ])

        assert len(merged) == 1
        assert merged[0].duration_minutes() == 480

    def test_gaps_are_preserved(self):
        merged = merge_intervals([
            _interval("2025-01-06 13:00", "2025-01-06 14:00"),
            _interval("2025-01-06 09:00", "2025-01-06 10:00"),
        ])

        assert [interval.start.in_timezone("Europe/Berlin").hour for interval in merged] == [9, 13]

    def test_mixed_timezones_merge_by_instant(self):
        merged = merge_intervals([
            _interval("2025-01-06 09:00", "2025-01-06 10:00"),
            _interval("2025-01-06 09:00", "2025-01-06 10:00", tz="UTC"),
        ])

        # 09:00-10:00 Berlin is 08:00-09:00 UTC, adjacent to 09:00-10:00 UTC
        assert len(merged) == 1
        assert merged[0].start == pendulum.parse("2025-01-06 08:00", tz="UTC")
        assert merged[0].end == pendulum.parse("2025-01-06 10:00", tz="UTC")

    def test_merge_is_idempotent(self):
        intervals = [
            _interval("2025-01-06 09:00", "2025-01-06 10:00"),
            _interval("2025-01-06 09:30", "2025-01-06 11:00"),
            _interval("2025-01-06 14:00", "2025-01-06 15:00"),
        ]

        once = merge_intervals(intervals)

        assert merge_intervals(once) == once

    def test_merge_is_order_independent(self):
        intervals = [
            _interval("2025-01-06 09:00", "2025-01-06 10:00"),
            _interval("2025-01-06 09:30", "2025-01-06 11:00"),
            _interval("2025-01-06 14:00", "2025-01-06 15:00"),
            _interval("2025-01-06 15:00", "2025-01-06 15:30"),
        ]

        expected = merge_intervals(intervals)
        for permutation in itertools.permutations(intervals):
            assert merge_intervals(permutation) == expected


class TestFilterFree:
    """Tests for overlaps_any and filter_free."""

    def test_filter_free_drops_overlapping_candidates(self):
        busy = merge_intervals([_interval("2025-01-06 10:00", "2025-01-06 11:00")])
        candidates = [
            _interval("2025-01-06 09:00", "2025-01-06 10:00"),
            _interval("2025-01-06 09:30", "2025-01-06 10:30"),
            _interval("2025-01-06 10:30", "2025-01-06 11:30"),
            _interval("2025-01-06 11:00", "2025-01-06 12:00"),
        ]

        free = filter_free(candidates, busy)

        assert [slot.start.hour for slot in free] == [9, 11]

    def test_filter_free_without_busy_keeps_everything(self):
        candidates = [_interval("2025-01-06 09:00", "2025-01-06 10:00")]

        assert filter_free(candidates, []) == candidates

    def test_overlaps_any(self):
        busy = merge_intervals([
            _interval("2025-01-06 10:00", "2025-01-06 11:00"),
            _interval("2025-01-06 14:00", "2025-01-06 15:00"),
        ])

        assert overlaps_any(_interval("2025-01-06 14:30", "2025-01-06 16:00"), busy)
        assert not overlaps_any(_interval("2025-01-06 11:00", "2025-01-06 14:00"), busy)
        assert not overlaps_any(_interval("2025-01-06 16:00", "2025-01-06 17:00"), busy)
        assert not overlaps_any(_interval("2025-01-06 16:00", "2025-01-06 17:00"), [])
