"""Minimal asyncio client for the DataLink streaming protocol.

Every packet is ``b"DL"``, a one byte header length, an ASCII header and an
optional binary payload whose size is carried inside the header. Only the
commands needed to push records are implemented: ``ID`` on connect and
``WRITE`` per record.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import platform

DATALINK_PORT = int(os.getenv("DATALINK_PORT", "16000"))
DATALINK_CLIENT_ID = os.getenv("DATALINK_CLIENT_ID", "mseedrtstream")
CONNECT_TIMEOUT_SECONDS = float(os.getenv("DATALINK_CONNECT_TIMEOUT", "30"))
MAX_HEADER_LENGTH = 255

LOGGER = logging.getLogger(__name__)


class DataLinkError(RuntimeError):
    """Connection, protocol or server-side failure talking to a DataLink server."""


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port``; host defaults to localhost and port to 16000."""
    host, sep, port_text = address.rpartition(":")
    if not sep:
        host, port_text = address, ""
    host = host.strip("[]") or "localhost"

    if not port_text:
        return host, DATALINK_PORT
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"Invalid DataLink port in address '{address}'") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Invalid DataLink port in address '{address}'")
    return host, port


def build_packet(header: str, data: bytes = b"") -> bytes:
    """Frame one DataLink packet."""
    encoded = header.encode("ascii")
    if len(encoded) > MAX_HEADER_LENGTH:
        raise DataLinkError(f"DataLink header too long ({len(encoded)} bytes)")
    return b"DL" + bytes([len(encoded)]) + encoded + data


class DataLinkClient:
    """One connection to a DataLink server.

    A client can be connected, disconnected and connected again; the
    address and identity stay the same.
    """

    def __init__(self, address: str, client_id: str = DATALINK_CLIENT_ID) -> None:
        self.address = address
        self.host, self.port = parse_address(address)
        self.client_id = client_id
        self.server_id: str | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def connect(self) -> None:
        """Open the connection and exchange identification with the server."""
        if self.connected:
            return

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=CONNECT_TIMEOUT_SECONDS,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise DataLinkError(f"Cannot connect to DataLink server {self.address}: {exc}") from exc

        try:
            await self._send(build_packet(f"ID {self._identity()}"))
            header, _ = await self._read_packet()
        except DataLinkError:
            await self.disconnect()
            raise

        if not header.startswith("ID"):
            await self.disconnect()
            raise DataLinkError(f"Unexpected identification from {self.address}: {header}")

        self.server_id = header[3:].strip()
        LOGGER.info("Connected to DataLink server %s (%s)", self.address, self.server_id)

    async def write(
        self,
        data: bytes,
        stream_id: str,
        start_time: int,
        end_time: int,
        ack: bool = False,
    ) -> None:
        """Send one record for ``stream_id`` covering ``start_time``..``end_time``.

        With ``ack`` the server must answer OK; an ERROR reply raises
        DataLinkError with the server's message.
        """
        if not self.connected:
            raise DataLinkError(f"Not connected to DataLink server {self.address}")

        flag = "A" if ack else "N"
        header = f"WRITE {stream_id} {start_time} {end_time} {flag} {len(data)}"
        await self._send(build_packet(header, bytes(data)))

        if not ack:
            return

        reply, message = await self._read_packet()
        if reply.startswith("OK"):
            return
        if reply.startswith("ERROR"):
            raise DataLinkError(f"DataLink server rejected {stream_id}: {message or reply}")
        raise DataLinkError(f"Unexpected reply from DataLink server: {reply}")

    async def disconnect(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as exc:
            LOGGER.debug("Error closing DataLink connection to %s: %s", self.address, exc)

    async def _send(self, packet: bytes) -> None:
        assert self._writer is not None
        try:
            self._writer.write(packet)
            await self._writer.drain()
        except OSError as exc:
            raise DataLinkError(f"Cannot send to DataLink server {self.address}: {exc}") from exc

    async def _read_packet(self) -> tuple[str, str]:
        """Read one packet; returns the header and any OK/ERROR message text."""
        assert self._reader is not None
        try:
            preamble = await self._reader.readexactly(3)
            if preamble[:2] != b"DL":
                raise DataLinkError(f"Invalid DataLink packet preamble from {self.address}")
            header = (await self._reader.readexactly(preamble[2])).decode("ascii", errors="replace")

            message = ""
            fields = header.split()
            if fields and fields[0] in ("OK", "ERROR") and len(fields) >= 3:
                size = int(fields[2])
                if size > 0:
                    message = (await self._reader.readexactly(size)).decode("ascii", errors="replace")
            return header, message
        except (asyncio.IncompleteReadError, OSError, ValueError) as exc:
            raise DataLinkError(f"Cannot read from DataLink server {self.address}: {exc}") from exc

    def _identity(self) -> str:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return f"{self.client_id}:{user}:{os.getpid()}:{platform.system()}"
