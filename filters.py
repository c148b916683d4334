"""Time-window and source-name filters applied while indexing."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from mseed_reader import RecordInfo
from models import FilterConfig

LOGGER = logging.getLogger(__name__)


def rejection_reason(info: RecordInfo, config: FilterConfig) -> str | None:
    """Return the name of the first rule that rejects ``info``, or None.

    Rules are checked in this order and the first failure wins:
    - ``starttime``: the record must start at/after the start bound, or
      contain it (start <= bound <= end).
    - ``endtime``: the record must end at/before the end bound, or contain it.
    - ``match``: when match patterns exist, one must match the source name.
    - ``reject``: no reject pattern may match the source name.

    The "contains" half of the time rules keeps a record that begins just
    before a cutoff but spans it.
    """
    start = config.start_time
    if start is not None and info.start_time < start and not _contains(info, start):
        return "starttime"

    end = config.end_time
    if end is not None and info.end_time > end and not _contains(info, end):
        return "endtime"

    name = info.source_name
    if config.match_patterns and not any(p.search(name) for p in config.match_patterns):
        return "match"

    if config.reject_patterns and any(p.search(name) for p in config.reject_patterns):
        return "reject"

    return None


def record_passes_filters(info: RecordInfo, config: FilterConfig) -> bool:
    return rejection_reason(info, config) is None


def load_patterns(value: str) -> tuple[re.Pattern[str], ...]:
    """Compile a pattern option: a regex, or ``@file`` naming one regex per line.

    In a pattern file only the first whitespace-delimited token of each line
    is used; blank lines and ``#`` comments are skipped.

    Raises:
        ValueError: Unreadable or empty pattern file, or an invalid regex.
    """
    if not value.startswith("@"):
        return (_compile(value),)

    pattern_file = value[1:]
    try:
        lines = Path(pattern_file).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ValueError(f"Cannot open regex list file {pattern_file}: {exc.strerror or exc}") from exc

    LOGGER.info("Reading regex list from %s", pattern_file)
    patterns: list[re.Pattern[str]] = []
    for line in lines:
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        patterns.append(_compile(tokens[0]))

    if not patterns:
        raise ValueError(f"No patterns found in regex list file {pattern_file}")
    return tuple(patterns)


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"Cannot compile regex '{pattern}': {exc}") from exc


def _contains(info: RecordInfo, moment: int) -> bool:
    return info.start_time <= moment <= info.end_time
