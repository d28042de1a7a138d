"""
Binary searches over lists kept sorted by a comparator.

`compare(a, b)` returns a negative number, zero or a positive number, the
same contract as epubnav.cfi.epubcfi.compare.
"""
from typing import Any, Callable, Optional, Sequence

Comparator = Callable[[Any, Any], int]


def location_of(item, array: Sequence, compare: Comparator, start: int = 0, end: Optional[int] = None) -> int:
    """Index of an equal element, else the index at which `item` would be inserted."""
    lo = start
    hi = len(array) if end is None else end
    while lo < hi:
        mid = (lo + hi) // 2
        result = compare(array[mid], item)
        if result == 0:
            return mid
        if result < 0:
            lo = mid + 1
        else:
            hi = mid
    return lo


def index_of_sorted(item, array: Sequence, compare: Comparator, start: int = 0, end: Optional[int] = None) -> int:
    """Index of an equal element, or -1."""
    index = location_of(item, array, compare, start, end)
    limit = len(array) if end is None else end
    if index < limit and compare(array[index], item) == 0:
        return index
    return -1


def floor_index(item, array: Sequence, compare: Comparator) -> int:
    """Index of the last element that does not sort after `item`, or -1."""
    lo, hi = 0, len(array)
    while lo < hi:
        mid = (lo + hi) // 2
        if compare(array[mid], item) <= 0:
            lo = mid + 1
        else:
            hi = mid
    return lo - 1
