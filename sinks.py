"""Output sinks: a local file (or stdout) and a DataLink server connection."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from typing import BinaryIO, Protocol

from datalink_client import DataLinkClient, DataLinkError
from models import IndexEntry
from mseed_reader import decode_record

RECONNECT_INTERVAL_SECONDS = float(os.getenv("DATALINK_RECONNECT_INTERVAL", "10"))
DATALINK_WRITE_ACK = os.getenv("DATALINK_WRITE_ACK", "0").lower() in ("1", "true", "yes")

LOGGER = logging.getLogger(__name__)


class RecordSink(Protocol):
    async def write(self, payload: memoryview, entry: IndexEntry) -> None: ...

    async def close(self) -> None: ...


class FileSink:
    """Append raw records to a file; ``-`` means standard output."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._owned = path != "-"
        if self._owned:
            try:
                self._stream: BinaryIO | None = open(path, "wb")  # noqa: SIM115 - closed by close()
            except OSError as exc:
                raise RuntimeError(f"Cannot open output file: {path} ({exc.strerror or exc})") from exc
        else:
            self._stream = sys.stdout.buffer
        LOGGER.info("Writing output data to %s", path)

    async def write(self, payload: memoryview, entry: IndexEntry) -> None:
        if self._stream is None:
            raise RuntimeError(f"Output file '{self.path}' is closed")
        try:
            written = self._stream.write(payload)
        except OSError as exc:
            raise RuntimeError(f"Cannot write to '{self.path}': {exc}") from exc
        if written is not None and written != len(payload):
            raise RuntimeError(f"Cannot write to '{self.path}': short write")

    async def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            if self._owned:
                stream.close()
            else:
                stream.flush()
        except OSError as exc:
            raise RuntimeError(f"Cannot close '{self.path}': {exc}") from exc


class DataLinkSink:
    """Send records to a DataLink server, reconnecting until each one is accepted.

    A record is never dropped: a failed write disconnects, reconnects (waiting
    ``reconnect_interval`` seconds between failed attempts, without limit)
    and retries the same record. Only killing the process ends the loop.
    """

    def __init__(
        self,
        client: DataLinkClient,
        reconnect_interval: float = RECONNECT_INTERVAL_SECONDS,
        ack: bool = DATALINK_WRITE_ACK,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.reconnect_interval = reconnect_interval
        self.ack = ack
        self._sleep = sleep
        self.reconnects = 0

    async def open(self) -> None:
        await self.client.connect()
        LOGGER.info("Sending output data to %s", self.client.address)

    async def write(self, payload: memoryview, entry: IndexEntry) -> None:
        stream_id = decode_record(payload, entry.offset, max_record_length=len(payload)).stream_id

        while True:
            try:
                await self.client.write(
                    payload,
                    stream_id,
                    entry.start_time,
                    entry.end_time,
                    ack=self.ack,
                )
                return
            except DataLinkError as exc:
                LOGGER.warning("Write of %s failed: %s", stream_id, exc)

            await self._reconnect()

    async def close(self) -> None:
        if self.client.connected:
            await self.client.disconnect()

    async def _reconnect(self) -> None:
        while True:
            LOGGER.warning("Re-connecting to DataLink server %s", self.client.address)
            if self.client.connected:
                await self.client.disconnect()
            try:
                await self.client.connect()
            except DataLinkError as exc:
                LOGGER.error(
                    "Error re-connecting to DataLink server, sleeping %s seconds: %s",
                    self.reconnect_interval,
                    exc,
                )
                await self._sleep(self.reconnect_interval)
                continue
            self.reconnects += 1
            return


async def open_sinks(
    output_file: str | None,
    datalink_address: str | None,
) -> list[RecordSink]:
    """Open the configured sinks: the output file first, then DataLink.

    The DataLink address is checked before the output file is created, so a
    bad address leaves an existing file untouched. The connection must
    succeed here; reconnect-and-retry only applies once delivery has started.
    """
    client = DataLinkClient(datalink_address) if datalink_address else None

    sinks: list[RecordSink] = []
    if output_file:
        sinks.append(FileSink(output_file))

    if client is not None:
        sink = DataLinkSink(client)
        try:
            await sink.open()
        except BaseException:
            for opened in sinks:
                await opened.close()
            raise
        sinks.append(sink)

    return sinks
