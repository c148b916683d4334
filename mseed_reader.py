"""miniSEED (SEED 2.x) data record reader.

Only the fixed section of the data header and the blockettes that affect
timing or record length are interpreted. Sample payloads are never decoded:
the pipeline only needs to know where each record lives, how long it is and
which interval of time it covers.
"""

from __future__ import annotations

import io
import logging
import os
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

from hptime import HPTMODULUS, btime_to_hptime

MAX_RECORD_LENGTH = int(os.getenv("MSEED_MAX_RECLEN", "16384"))
MIN_RECORD_LENGTH = 128
FIXED_HEADER_SIZE = 48
STREAM_ID_SUFFIX = "/MSEED"

LOGGER = logging.getLogger(__name__)

# Sequence number, quality, reserved, station, location, channel, network,
# BTIME (year, day, hour, minute, second, unused, fraction), sample count,
# rate factor, rate multiplier, activity/io/quality flags, blockette count,
# time correction, data offset, first blockette offset.
_FIXED_HEADER = "6scc5s2s3s2sHHBBBBHHhhBBBBiHH"

_ACTIVITY_TIME_CORRECTION_APPLIED = 0x02
_QUALITY_CODES = frozenset(b"DRQM")


class RecordDecodeError(RuntimeError):
    """Raised when bytes at a record boundary are not a usable data record."""


@dataclass(frozen=True, slots=True)
class RecordInfo:
    """Header metadata for one miniSEED data record."""

    offset: int
    length: int
    start_time: int
    end_time: int
    network: str
    station: str
    location: str
    channel: str
    quality: str
    sample_count: int
    sample_rate: float

    @property
    def source_name(self) -> str:
        """``NET_STA_LOC_CHAN_QUAL``, the string selection patterns are applied to."""
        return f"{self.network}_{self.station}_{self.location}_{self.channel}_{self.quality}"

    @property
    def stream_id(self) -> str:
        """``NET_STA_LOC_CHAN/MSEED``, the DataLink stream identifier."""
        return f"{self.network}_{self.station}_{self.location}_{self.channel}{STREAM_ID_SUFFIX}"


def is_valid_header(buffer: bytes | memoryview, position: int = 0) -> bool:
    """Return True if ``buffer[position:]`` starts with a plausible data header."""
    if len(buffer) - position < FIXED_HEADER_SIZE:
        return False

    head = bytes(buffer[position : position + FIXED_HEADER_SIZE])
    for char in head[0:6]:
        if not (48 <= char <= 57 or char in (32, 0)):
            return False
    if head[6] not in _QUALITY_CODES:
        return False
    if head[7] not in (32, 0):
        return False
    return head[24] <= 23 and head[25] <= 59 and head[26] <= 60


def decode_record(
    buffer: bytes | memoryview,
    offset: int = 0,
    at_eof: bool = True,
    max_record_length: int = MAX_RECORD_LENGTH,
) -> RecordInfo:
    """Decode the header of the record starting at the beginning of ``buffer``.

    Args:
        buffer: Bytes starting at the record boundary. Must hold the whole
            record; extra trailing bytes (following records) are allowed.
        offset: File offset of the record, copied into the result.
        at_eof: True when ``buffer`` extends to the end of the file, which
            lets a record without blockette 1000 claim the remaining bytes.
        max_record_length: Largest record length accepted.

    Raises:
        RecordDecodeError: Invalid header, unsupported length or truncated record.
    """
    if not is_valid_header(buffer):
        raise RecordDecodeError(f"No miniSEED data record found at offset {offset}")

    endian = _detect_byte_order(buffer)
    (
        _sequence,
        quality,
        _reserved,
        station,
        location,
        channel,
        network,
        year,
        day,
        hour,
        minute,
        second,
        _unused,
        fraction,
        sample_count,
        rate_factor,
        rate_multiplier,
        activity_flags,
        _io_flags,
        _quality_flags,
        blockette_count,
        time_correction,
        _data_offset,
        blockette_offset,
    ) = struct.unpack_from(endian + _FIXED_HEADER, buffer, 0)

    sample_rate = _nominal_sample_rate(rate_factor, rate_multiplier)
    blockettes = _read_blockettes(buffer, endian, blockette_offset, blockette_count, offset)

    if 100 in blockettes:
        sample_rate = blockettes[100]

    microsecond = fraction * 100 + blockettes.get(1001, 0)
    if not activity_flags & _ACTIVITY_TIME_CORRECTION_APPLIED:
        microsecond += time_correction * 100

    if not 1 <= day <= 366:
        raise RecordDecodeError(f"Invalid day of year {day} in record at offset {offset}")
    start_time = btime_to_hptime(year, day, hour, minute, second, microsecond)

    if sample_rate > 0 and sample_count > 0:
        end_time = start_time + int((sample_count - 1) / sample_rate * HPTMODULUS + 0.5)
    else:
        end_time = start_time

    length = blockettes.get(1000) or _detect_record_length(buffer, at_eof, offset, max_record_length)
    if length < MIN_RECORD_LENGTH or length > max_record_length:
        raise RecordDecodeError(
            f"Unsupported record length {length} at offset {offset} "
            f"(supported {MIN_RECORD_LENGTH}-{max_record_length})"
        )
    if len(buffer) < length:
        raise RecordDecodeError(
            f"Truncated record at offset {offset}: expected {length} bytes, found {len(buffer)}"
        )

    return RecordInfo(
        offset=offset,
        length=length,
        start_time=start_time,
        end_time=end_time,
        network=_text(network),
        station=_text(station),
        location=_text(location),
        channel=_text(channel),
        quality=quality.decode("ascii"),
        sample_count=sample_count,
        sample_rate=sample_rate,
    )


class MSeedReader:
    """Iterate over the data records of a binary stream, in file order.

    Blank padding and non-data blocks (SEED control headers, stray bytes) are
    skipped in MIN_RECORD_LENGTH steps. A block that starts like a data record
    but cannot be decoded raises RecordDecodeError.
    """

    def __init__(self, stream: BinaryIO, max_record_length: int = MAX_RECORD_LENGTH) -> None:
        self._stream = stream
        self._max_record_length = max_record_length
        self._size = stream.seek(0, io.SEEK_END)
        self._offset = stream.seek(0, io.SEEK_SET)

    @property
    def offset(self) -> int:
        """Byte offset of the next record to be read."""
        return self._offset

    def __iter__(self) -> Iterator[RecordInfo]:
        return self

    def __next__(self) -> RecordInfo:
        while self._offset < self._size:
            self._stream.seek(self._offset, io.SEEK_SET)
            chunk = self._stream.read(self._max_record_length)
            if not chunk:
                break

            if not is_valid_header(chunk):
                self._skip_block(chunk)
                continue

            at_eof = self._offset + len(chunk) >= self._size
            info = decode_record(chunk, self._offset, at_eof, self._max_record_length)
            self._offset += info.length
            return info

        raise StopIteration

    def _skip_block(self, chunk: bytes) -> None:
        block = chunk[:MIN_RECORD_LENGTH]
        kind = "blank" if not block.strip(b" \x00") else "non-data"
        LOGGER.debug("Skipping %s %s bytes at offset %s", len(block), kind, self._offset)
        self._offset += len(block)


def _detect_byte_order(buffer: bytes | memoryview) -> str:
    year, day = struct.unpack_from(">HH", buffer, 20)
    if 1900 <= year <= 2100 and 1 <= day <= 366:
        return ">"
    return "<"


def _nominal_sample_rate(factor: int, multiplier: int) -> float:
    if factor > 0 and multiplier > 0:
        return float(factor * multiplier)
    if factor > 0 and multiplier < 0:
        return -float(factor) / multiplier
    if factor < 0 and multiplier > 0:
        return -float(multiplier) / factor
    if factor < 0 and multiplier < 0:
        return 1.0 / (factor * multiplier)
    return 0.0


def _read_blockettes(
    buffer: bytes | memoryview,
    endian: str,
    position: int,
    count: int,
    offset: int,
) -> dict[int, int | float]:
    """Collect the values of blockettes 100, 1000 and 1001 by type."""
    found: dict[int, int | float] = {}
    visited = 0

    while position and visited < count:
        if position < FIXED_HEADER_SIZE or position + 4 > len(buffer):
            raise RecordDecodeError(f"Blockette offset {position} out of range in record at offset {offset}")

        kind, next_position = struct.unpack_from(endian + "HH", buffer, position)
        if kind == 100 and position + 8 <= len(buffer):
            (found[100],) = struct.unpack_from(endian + "f", buffer, position + 4)
        elif kind == 1000 and position + 7 <= len(buffer):
            exponent = buffer[position + 6]
            if not 7 <= exponent <= 30:
                raise RecordDecodeError(f"Invalid record length exponent {exponent} in record at offset {offset}")
            found[1000] = 1 << exponent
        elif kind == 1001 and position + 6 <= len(buffer):
            (found[1001],) = struct.unpack_from("b", buffer, position + 5)

        visited += 1
        if next_position and next_position <= position:
            raise RecordDecodeError(f"Blockette chain loops back in record at offset {offset}")
        position = next_position

    return found


def _detect_record_length(
    buffer: bytes | memoryview,
    at_eof: bool,
    offset: int,
    max_record_length: int,
) -> int:
    """Find the record length of a record that has no blockette 1000."""
    position = MIN_RECORD_LENGTH
    while position + FIXED_HEADER_SIZE <= len(buffer) and position <= max_record_length:
        if is_valid_header(buffer, position):
            LOGGER.debug("Detected record length %s at offset %s", position, offset)
            return position
        position += MIN_RECORD_LENGTH

    if at_eof:
        return len(buffer)

    raise RecordDecodeError(f"Cannot determine record length at offset {offset}")


def _text(raw: bytes) -> str:
    return raw.decode("ascii", errors="replace").strip(" \x00")
