"""Shared typed models for the record pipeline."""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

NIL = -1


class SourceFile:
    """One input file, opened lazily for re-reading during delivery."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._handle: BinaryIO | None = None

    def __repr__(self) -> str:
        return f"SourceFile({self.path!r})"

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self) -> BinaryIO:
        """Return the read handle, opening the file on first use."""
        if self._handle is None:
            try:
                self._handle = open(self.path, "rb")  # noqa: SIM115 - closed by close()
            except OSError as exc:
                raise RuntimeError(f"Cannot open '{self.path}' for reading: {exc.strerror or exc}") from exc
        return self._handle

    def read_into(self, buffer: memoryview, offset: int, length: int) -> memoryview:
        """Read exactly ``length`` bytes at ``offset`` into ``buffer`` and return that view."""
        handle = self.open()
        try:
            handle.seek(offset, os.SEEK_SET)
        except OSError as exc:
            raise RuntimeError(f"Cannot seek in '{self.path}': {exc}") from exc

        view = buffer[:length]
        count = handle.readinto(view)
        if count != length:
            raise RuntimeError(
                f"Cannot read {length} bytes at offset {offset} from '{self.path}'"
            )
        return view

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


@dataclass(slots=True)
class IndexEntry:
    """Location and time coverage of one on-disk record."""

    source: SourceFile
    offset: int
    length: int
    start_time: int
    end_time: int


class RecordIndex:
    """Doubly linked sequence of index entries stored in an arena.

    Entries live in ``entries`` and never move; order is carried by the
    parallel ``next``/``prev`` integer arrays so re-linking is O(1) and no
    entry is copied while sorting.
    """

    def __init__(self) -> None:
        self.entries: list[IndexEntry] = []
        self.next: list[int] = []
        self.prev: list[int] = []
        self.head = NIL
        self.tail = NIL

    @property
    def count(self) -> int:
        return len(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def append(self, entry: IndexEntry) -> int:
        """Link ``entry`` after the current tail and return its slot."""
        slot = len(self.entries)
        self.entries.append(entry)
        self.next.append(NIL)
        self.prev.append(self.tail)

        if self.tail == NIL:
            self.head = slot
        else:
            self.next[self.tail] = slot
        self.tail = slot
        return slot

    def slots(self) -> Iterator[int]:
        """Yield arena slots in link order."""
        slot = self.head
        while slot != NIL:
            yield slot
            slot = self.next[slot]

    def __iter__(self) -> Iterator[IndexEntry]:
        for slot in self.slots():
            yield self.entries[slot]

    def entries_in_order(self) -> list[IndexEntry]:
        return list(self)

    def check_links(self) -> None:
        """Raise RuntimeError if head/tail/count or the link arrays disagree."""
        if not self.entries:
            if self.head != NIL or self.tail != NIL:
                raise RuntimeError("Empty index must have no head or tail")
            return

        if self.prev[self.head] != NIL:
            raise RuntimeError("Index head has a predecessor")
        if self.next[self.tail] != NIL:
            raise RuntimeError("Index tail has a successor")

        seen = 0
        previous = NIL
        for slot in self.slots():
            if self.prev[slot] != previous:
                raise RuntimeError(f"Broken prev link at slot {slot}")
            previous = slot
            seen += 1
            if seen > len(self.entries):
                raise RuntimeError("Cycle detected in index links")

        if previous != self.tail:
            raise RuntimeError("Index chain does not end at tail")
        if seen != len(self.entries):
            raise RuntimeError(f"Index chain length {seen} does not match count {len(self.entries)}")


@dataclass(frozen=True, slots=True)
class FilterConfig:
    """Time window and source-name patterns applied while indexing.

    A bound of None leaves that side of the window open. Patterns in each
    list are combined with logical OR.
    """

    start_time: int | None = None
    end_time: int | None = None
    match_patterns: tuple[re.Pattern[str], ...] = ()
    reject_patterns: tuple[re.Pattern[str], ...] = ()


@dataclass(slots=True)
class PacingState:
    """Fixed skew between wall clock and feed time, captured on the first record."""

    skew: int | None = None

    def intended_wait(self, end_time: int, now: int) -> int:
        """Microseconds to wait before delivering a record ending at ``end_time``."""
        if self.skew is None:
            self.skew = now - end_time
        return self.skew - (now - end_time)


@dataclass(frozen=True, slots=True)
class DeliveryOptions:
    stream_delay: bool = False
    delay_factor: float = 1.0
    max_record_length: int = 16384


@dataclass(slots=True)
class IndexSummary:
    files: int = 0
    records: int = 0
    samples: int = 0


@dataclass(slots=True)
class DeliveryStats:
    records: int = 0
    bytes: int = 0
