"""Delivery engine: redeliver indexed records in order, optionally paced."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from hptime import HPTMODULUS, format_hptime, now_hptime
from models import DeliveryOptions, DeliveryStats, PacingState, RecordIndex
from sinks import RecordSink
from sources import SourceCatalog

LOGGER = logging.getLogger(__name__)


async def deliver(
    index: RecordIndex,
    catalog: SourceCatalog,
    sinks: Sequence[RecordSink],
    options: DeliveryOptions,
    clock: Callable[[], int] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> DeliveryStats:
    """Read each indexed record back from its file and write it to every sink.

    Records go out strictly in index order and each one reaches all sinks
    before the next is read. With ``options.stream_delay`` the gaps between
    record end times are reproduced in wall-clock time, scaled down by
    ``options.delay_factor``.

    Every input handle and every sink is closed before returning, including
    when a read or write fails or the task is cancelled.

    Raises:
        RuntimeError: Oversized record, seek failure, short read or a file
            sink write failure.
    """
    clock = clock or now_hptime
    sleep = sleep or asyncio.sleep
    stats = DeliveryStats()
    pacing = PacingState() if options.stream_delay else None
    buffer = memoryview(bytearray(options.max_record_length))
    completed = False

    try:
        for entry in index:
            if entry.length > options.max_record_length:
                raise RuntimeError(
                    f"Record length ({entry.length} bytes) larger than buffer "
                    f"({options.max_record_length} bytes)"
                )

            payload = entry.source.read_into(buffer, entry.offset, entry.length)

            if LOGGER.isEnabledFor(logging.DEBUG):
                LOGGER.debug(
                    "Writing %s offset=%s %s",
                    entry.source.path,
                    entry.offset,
                    format_hptime(entry.start_time),
                )

            if pacing is not None:
                await _pace(pacing, entry.end_time, options.delay_factor, clock, sleep)

            for sink in sinks:
                await sink.write(payload, entry)

            stats.records += 1
            stats.bytes += entry.length

            # Yield once per record so cancellation lands between records.
            await asyncio.sleep(0)
        completed = True
    finally:
        catalog.close_all()
        await _close_sinks(sinks, raise_errors=completed)

    LOGGER.info("Wrote %s bytes of %s records to output", stats.bytes, stats.records)
    return stats


async def _pace(
    pacing: PacingState,
    end_time: int,
    delay_factor: float,
    clock: Callable[[], int],
    sleep: Callable[[float], Awaitable[None]],
) -> None:
    wait = pacing.intended_wait(end_time, clock())
    if wait <= 0:
        return

    seconds = wait / delay_factor / HPTMODULUS
    LOGGER.debug("Sleeping %.2f seconds to simulate streaming", seconds)
    await sleep(seconds)


async def _close_sinks(sinks: Sequence[RecordSink], raise_errors: bool = True) -> None:
    """Close every sink; the first close error is raised only if ``raise_errors``."""
    first_error: RuntimeError | None = None
    for sink in sinks:
        try:
            await sink.close()
        except RuntimeError as exc:
            if raise_errors and first_error is None:
                first_error = exc
            else:
                LOGGER.error("Error closing output: %s", exc)
    if first_error is not None:
        raise first_error
