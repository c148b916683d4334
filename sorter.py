"""Time-order sorter: bottom-up merge sort over the index links."""

from __future__ import annotations

import logging

from models import NIL, RecordIndex

LOGGER = logging.getLogger(__name__)


def sort_by_end_time(index: RecordIndex) -> int:
    """Re-link ``index`` into non-decreasing end-time order, in place.

    The merge takes from the left run unless its end time is strictly
    greater, so records with equal end times keep their indexing order.
    Start time is deliberately not consulted: a record becomes deliverable
    when it is complete, so a long record finishing later goes after a short
    one it overlaps even if it started first.

    Only the integer link arrays are rewritten. Runs of size 1, 2, 4, ... are
    merged pairwise until a pass performs at most one merge.

    Returns the number of passes made (0 for an empty or single-entry index).
    """
    if index.count < 2:
        return 0

    entries = index.entries
    nxt = index.next
    top = index.head
    run_size = 1
    passes = 0

    while True:
        left = top
        top = NIL
        tail = NIL
        merges = 0
        passes += 1

        while left != NIL:
            merges += 1

            right = left
            left_size = 0
            for _ in range(run_size):
                left_size += 1
                right = nxt[right]
                if right == NIL:
                    break
            right_size = run_size

            while left_size > 0 or (right_size > 0 and right != NIL):
                if left_size == 0:
                    chosen, right = right, nxt[right]
                    right_size -= 1
                elif right_size == 0 or right == NIL:
                    chosen, left = left, nxt[left]
                    left_size -= 1
                elif entries[left].end_time <= entries[right].end_time:
                    chosen, left = left, nxt[left]
                    left_size -= 1
                else:
                    chosen, right = right, nxt[right]
                    right_size -= 1

                if tail == NIL:
                    top = chosen
                else:
                    nxt[tail] = chosen
                tail = chosen

            left = right

        nxt[tail] = NIL

        if merges <= 1:
            break
        run_size *= 2

    index.head = top
    index.tail = tail
    _relink_prev(index)

    LOGGER.debug("Sorted %s records in %s passes", index.count, passes)
    return passes


def _relink_prev(index: RecordIndex) -> None:
    previous = NIL
    for slot in index.slots():
        index.prev[slot] = previous
        previous = slot
