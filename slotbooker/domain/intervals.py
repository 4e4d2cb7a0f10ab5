"""
Interval set operations used by availability resolution.

Pure functions over ``TimeInterval`` values; every result is expressed in
UTC so that intervals from different timezones merge correctly.
"""

from bisect import bisect_right
from typing import Iterable, List, Sequence

from .models import TimeInterval


def sort_key(interval: TimeInterval):
    """Total order on intervals: by UTC start, then UTC end."""
    return (interval.start.in_timezone("UTC"), interval.end.in_timezone("UTC"))


def merge_intervals(intervals: Iterable[TimeInterval]) -> List[TimeInterval]:
    """
    Merge overlapping or adjacent intervals into a minimal disjoint set.

    Example: [09:00-10:00, 10:00-11:00, 10:30-12:00] -> [09:00-12:00]

    The output is sorted by start and does not depend on input order.
    """
    normalized = sorted((interval.normalized() for interval in intervals), key=sort_key)

    if not normalized:
        return []

    merged: List[TimeInterval] = [normalized[0]]

    for current in normalized[1:]:
        last = merged[-1]

        # Overlapping or adjacent (no gap) ranges collapse into one
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = TimeInterval(start=last.start, end=current.end, timezone="UTC")
        else:
            merged.append(current)

    return merged


def overlaps_any(interval: TimeInterval, merged: Sequence[TimeInterval]) -> bool:
    """
    Check ``interval`` against a merged (sorted, disjoint) busy set.

    Ends of a merged set are strictly increasing, so the only candidate is
    the first busy interval ending after ``interval.start``.
    """
    if not merged:
        return False
    ends = [busy.end for busy in merged]
    index = bisect_right(ends, interval.start)
    if index >= len(merged):
        return False
    return merged[index].start < interval.end


def filter_free(candidates: Iterable[TimeInterval], merged: Sequence[TimeInterval]) -> List[TimeInterval]:
    """Keep the candidates that do not overlap any merged busy interval."""
    if not merged:
        return list(candidates)

    ends = [busy.end for busy in merged]
    free: List[TimeInterval] = []

    for candidate in candidates:
        index = bisect_right(ends, candidate.start)
        if index < len(merged) and merged[index].start < candidate.end:
            continue
        free.append(candidate)

    return free
