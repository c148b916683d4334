from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from datalink_client import DataLinkError
from mseed_factory import build_record, ticks
from models import IndexEntry, SourceFile
from sinks import DataLinkSink, FileSink, open_sinks

START = ticks(2022, 8, 1)
RECORD = build_record(START, network="GE", station="WLF", location="", channel="BHZ")
ENTRY = IndexEntry(SourceFile("in.mseed"), 0, len(RECORD), START, START + 10_000_000)


class FakeClient:
    """Stands in for DataLinkClient; fails the first ``failures`` writes."""

    def __init__(self, failures: int = 0, connect_failures: int = 0, drop_connection: bool = True) -> None:
        self.address = "fake:16000"
        self.connected = True
        self.failures = failures
        self.drop_connection = drop_connection
        self.connect_failures = connect_failures
        self.connects = 0
        self.disconnects = 0
        self.attempts = 0
        self.delivered: list[tuple[bytes, str, int, int]] = []

    async def connect(self) -> None:
        if self.connect_failures:
            self.connect_failures -= 1
            raise DataLinkError("connection refused")
        self.connects += 1
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    async def write(self, data, stream_id, start_time, end_time, ack=False) -> None:
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            if self.drop_connection:
                self.connected = False
            raise DataLinkError("broken pipe")
        self.delivered.append((bytes(data), stream_id, start_time, end_time))


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.mark.asyncio
async def test_file_sink_appends_exact_bytes(tmp_path: Path) -> None:
    output = tmp_path / "out.mseed"
    sink = FileSink(str(output))

    await sink.write(memoryview(RECORD), ENTRY)
    await sink.write(memoryview(RECORD)[:128], ENTRY)
    await sink.close()

    assert output.read_bytes() == RECORD + RECORD[:128]


@pytest.mark.asyncio
async def test_file_sink_dash_writes_to_stdout(capsysbinary: pytest.CaptureFixture[bytes]) -> None:
    sink = FileSink("-")

    await sink.write(memoryview(RECORD), ENTRY)
    await sink.close()

    assert capsysbinary.readouterr().out == RECORD


def test_file_sink_unwritable_path_raises(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="Cannot open output file"):
        FileSink(str(tmp_path / "missing-dir" / "out.mseed"))


@pytest.mark.asyncio
async def test_file_sink_write_after_close_raises(tmp_path: Path) -> None:
    sink = FileSink(str(tmp_path / "out.mseed"))
    await sink.close()

    with pytest.raises(RuntimeError):
        await sink.write(memoryview(RECORD), ENTRY)


@pytest.mark.asyncio
async def test_datalink_sink_derives_stream_id_from_record() -> None:
    client = FakeClient()
    sink = DataLinkSink(client, sleep=RecordingSleep())

    await sink.write(memoryview(RECORD), ENTRY)

    assert client.delivered == [(RECORD, "GE_WLF__BHZ/MSEED", ENTRY.start_time, ENTRY.end_time)]


@pytest.mark.asyncio
async def test_datalink_sink_reconnects_and_delivers_once() -> None:
    client = FakeClient(failures=1)
    sleep = RecordingSleep()
    sink = DataLinkSink(client, reconnect_interval=10, sleep=sleep)

    await sink.write(memoryview(RECORD), ENTRY)

    assert client.attempts == 2
    assert len(client.delivered) == 1
    assert client.connects == 1
    assert sink.reconnects == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_datalink_sink_disconnects_live_connection_before_reconnecting() -> None:
    client = FakeClient(failures=1, drop_connection=False)
    sink = DataLinkSink(client, sleep=RecordingSleep())

    await sink.write(memoryview(RECORD), ENTRY)

    assert client.disconnects == 1
    assert client.connects == 1
    assert len(client.delivered) == 1


@pytest.mark.asyncio
async def test_datalink_sink_skips_disconnect_when_link_already_down() -> None:
    client = FakeClient(failures=1)
    sink = DataLinkSink(client, sleep=RecordingSleep())

    await sink.write(memoryview(RECORD), ENTRY)

    assert client.disconnects == 0


@pytest.mark.asyncio
async def test_datalink_sink_sleeps_between_failed_reconnects() -> None:
    client = FakeClient(failures=1, connect_failures=3)
    sleep = RecordingSleep()
    sink = DataLinkSink(client, reconnect_interval=10, sleep=sleep)

    await sink.write(memoryview(RECORD), ENTRY)

    assert sleep.calls == [10, 10, 10]
    assert client.connects == 1
    assert len(client.delivered) == 1


@pytest.mark.asyncio
async def test_datalink_sink_close_disconnects() -> None:
    client = FakeClient()
    sink = DataLinkSink(client, sleep=RecordingSleep())

    await sink.close()

    assert client.connected is False
    assert client.disconnects == 1


@pytest.mark.asyncio
async def test_open_sinks_file_only(tmp_path: Path) -> None:
    sinks = await open_sinks(str(tmp_path / "out.mseed"), None)

    assert len(sinks) == 1
    assert isinstance(sinks[0], FileSink)
    await sinks[0].close()


@pytest.mark.asyncio
async def test_open_sinks_closes_file_when_datalink_unreachable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    closed: list[str] = []
    original_close = FileSink.close

    async def tracking_close(self: FileSink) -> None:
        closed.append(self.path)
        await original_close(self)

    async def refuse(self) -> None:
        raise DataLinkError("refused")

    monkeypatch.setattr(FileSink, "close", tracking_close)
    monkeypatch.setattr("sinks.DataLinkClient.connect", refuse)
    output = str(tmp_path / "out.mseed")

    with pytest.raises(DataLinkError):
        await open_sinks(output, "127.0.0.1:16000")

    assert closed == [output]


@pytest.mark.asyncio
async def test_open_sinks_checks_datalink_address_before_creating_file(tmp_path: Path) -> None:
    output = tmp_path / "out.mseed"

    with pytest.raises(ValueError, match="Invalid DataLink port"):
        await open_sinks(str(output), "localhost:notaport")

    assert not output.exists()


@pytest.mark.asyncio
async def test_open_sinks_closes_file_when_connect_is_cancelled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    closed: list[str] = []
    original_close = FileSink.close

    async def tracking_close(self: FileSink) -> None:
        closed.append(self.path)
        await original_close(self)

    async def cancelled(self) -> None:
        raise asyncio.CancelledError

    monkeypatch.setattr(FileSink, "close", tracking_close)
    monkeypatch.setattr("sinks.DataLinkClient.connect", cancelled)
    output = str(tmp_path / "out.mseed")

    with pytest.raises(asyncio.CancelledError):
        await open_sinks(output, "127.0.0.1:16000")

    assert closed == [output]
