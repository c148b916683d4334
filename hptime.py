"""High-precision time helpers: integer microseconds since the Unix epoch."""

from __future__ import annotations

import calendar
import re
import time
from datetime import UTC, datetime, timedelta

HPTMODULUS = 1_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# YYYY[,DDD,HH,MM,SS,FFFFFF] with any of , : . as delimiters
_SEED_TIME = re.compile(
    r"^(\d{4})(?:[,:.](\d{1,3})(?:[,:.](\d{1,2})(?:[,:.](\d{1,2})(?:[,:.](\d{1,2})(?:[,:.](\d{1,6}))?)?)?)?)?$"
)

# YYYY-MM-DD[THH:MM:SS[.FFFFFF]]
_ISO_TIME = re.compile(
    r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ](\d{1,2})(?::(\d{1,2})(?::(\d{1,2})(?:\.(\d{1,6}))?)?)?)?Z?$"
)


def btime_to_hptime(year: int, day: int, hour: int, minute: int, second: int, microsecond: int) -> int:
    """Convert a year/day-of-year time to microsecond ticks.

    ``second`` may be 60 for a leap second; it rolls into the next minute.
    """
    seconds = calendar.timegm((year, 1, 1, 0, 0, 0, 0, 0, 0))
    seconds += (day - 1) * 86400 + hour * 3600 + minute * 60 + second
    return seconds * HPTMODULUS + microsecond


def parse_time_string(text: str) -> int:
    """Parse a SEED or ISO time string into microsecond ticks.

    Accepted forms:
      - ``YYYY[,DDD,HH,MM,SS,FFFFFF]`` with ``,``, ``:`` or ``.`` delimiters
      - ``YYYY-MM-DD[THH:MM:SS[.FFFFFF]]`` (a space may replace the ``T``)

    Missing fields default to their minimum. The fraction is right-padded,
    so ``.5`` means half a second.
    """
    value = text.strip()

    match = _ISO_TIME.match(value)
    if match:
        year, month, mday, hour, minute, second, fraction = match.groups()
        try:
            moment = datetime(
                int(year),
                int(month),
                int(mday),
                int(hour or 0),
                int(minute or 0),
                tzinfo=UTC,
            )
        except ValueError as exc:
            raise ValueError(f"Invalid time string '{text}': {exc}") from exc
        seconds = int(second or 0)
        if seconds > 60:
            raise ValueError(f"Invalid time string '{text}': second out of range")
        return _datetime_to_hptime(moment) + seconds * HPTMODULUS + _fraction_to_usec(fraction)

    match = _SEED_TIME.match(value)
    if match:
        year, day, hour, minute, second, fraction = (
            match.group(1),
            match.group(2) or "1",
            match.group(3) or "0",
            match.group(4) or "0",
            match.group(5) or "0",
            match.group(6),
        )
        fields = (int(year), int(day), int(hour), int(minute), int(second))
        if not (1 <= fields[1] <= 366 and fields[2] <= 23 and fields[3] <= 59 and fields[4] <= 60):
            raise ValueError(f"Invalid time string '{text}': field out of range")
        if fields[1] == 366 and not calendar.isleap(fields[0]):
            raise ValueError(f"Invalid time string '{text}': day 366 in a non-leap year")
        return btime_to_hptime(*fields, _fraction_to_usec(fraction))

    raise ValueError(f"Invalid time string '{text}'")


def format_hptime(ticks: int) -> str:
    """Render microsecond ticks as an ISO 8601 string with microseconds."""
    moment = _EPOCH + timedelta(microseconds=ticks)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%f")


def now_hptime() -> int:
    """Current wall-clock time in microsecond ticks."""
    return time.time_ns() // 1000


def _datetime_to_hptime(moment: datetime) -> int:
    delta = moment - _EPOCH
    return (delta.days * 86400 + delta.seconds) * HPTMODULUS + delta.microseconds


def _fraction_to_usec(fraction: str | None) -> int:
    if not fraction:
        return 0
    return int(fraction.ljust(6, "0"))
