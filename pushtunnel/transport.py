from __future__ import annotations

import asyncio
import logging
import ssl
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol, Tuple

from .errors import (
    ProxyConnectionClosed,
    ProxyTimeout,
    StreamBusy,
    TlsHandshakeFailed,
    TlsUpgradeError,
    TlsUpgradeUnsupported,
    TransportError,
    TransportOpenError,
)

# The only I/O primitive the handshake engines and the framer depend on.
# Engines talk to a Duplex; the facade gets one from a Transport.

logger = logging.getLogger("pushtunnel.transport")

__all__ = [
    "Duplex",
    "StreamDuplex",
    "Transport",
    "AsyncioTransport",
    "build_tls_context",
    "read_chunk",
    "read_exactly",
    "read_until",
    "write_all",
]


class Duplex:
    """
    Bidirectional byte stream over one network connection.

    read() returns the next available chunk, b"" at end of stream. Nothing is
    buffered beyond that except bytes a stage handed back with unread().
    hold() grants one stage exclusive use; start_tls() refuses a held stream.
    """

    def __init__(self) -> None:
        self._held_by: Optional[str] = None
        self._pushback = b""
        self._closed = False
        self.tls_server_name: Optional[str] = None

    @property
    def held_by(self) -> Optional[str]:
        return self._held_by

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def hold(self, owner: str) -> Iterator["Duplex"]:
        if self._held_by is not None:
            raise StreamBusy(f"stream held by {self._held_by}, wanted by {owner}")
        self._held_by = owner
        try:
            yield self
        finally:
            self._held_by = None

    def release(self) -> None:
        self._held_by = None

    def unread(self, data: bytes) -> None:
        if data:
            self._pushback = bytes(data) + self._pushback

    async def read(self) -> bytes:
        if self._pushback:
            data, self._pushback = self._pushback, b""
            return data
        if self._closed:
            return b""
        return await self._read_chunk()

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("write on closed stream")
        await self._write(bytes(data))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._held_by = None
        await self._close()

    async def start_tls(self, server_name: str) -> "Duplex":
        """Upgrade in place; the returned Duplex owns the connection from now on."""
        if self._held_by is not None:
            raise StreamBusy(f"cannot upgrade to TLS while held by {self._held_by}")
        if self._closed:
            raise TlsUpgradeError("cannot upgrade a closed stream")
        if self._pushback:
            raise TlsHandshakeFailed(f"{len(self._pushback)} plaintext bytes pending before TLS handshake")
        return await self._start_tls(server_name)

    async def _read_chunk(self) -> bytes:
        raise NotImplementedError

    async def _write(self, data: bytes) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        raise NotImplementedError

    async def _start_tls(self, server_name: str) -> "Duplex":
        raise TlsUpgradeUnsupported(f"{type(self).__name__} cannot upgrade to TLS")


def build_tls_context(verify: bool = True) -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    # Single HTTP/1.1 exchange follows; never let ALPN pick h2
    try:
        ctx.set_alpn_protocols(["http/1.1"])
    except NotImplementedError:
        pass
    return ctx


class StreamDuplex(Duplex):
    """Duplex over an asyncio StreamReader/StreamWriter pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        verify_tls: bool = True,
        chunk_size: int = 65536,
        label: str = "",
    ) -> None:
        super().__init__()
        self._reader = reader
        self._writer = writer
        self._verify_tls = verify_tls
        self._chunk_size = max(1, int(chunk_size))
        self.label = label

    async def _read_chunk(self) -> bytes:
        return await self._reader.read(self._chunk_size)

    async def _write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def _close(self) -> None:
        try:
            if not self._writer.is_closing():
                self._writer.close()
            await asyncio.wait_for(self._writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError, ssl.SSLError) as e:
            logger.debug("transport: close %s: %s", self.label or "-", e)

    async def _start_tls(self, server_name: str) -> Duplex:
        start_tls = getattr(self._writer, "start_tls", None)
        if start_tls is None:
            raise TlsUpgradeUnsupported("asyncio StreamWriter.start_tls requires Python 3.11+")
        if not self._verify_tls:
            logger.warning("transport: TLS certificate verification disabled for %s", server_name)
        ctx = build_tls_context(self._verify_tls)
        try:
            await start_tls(ctx, server_hostname=server_name)
        except (ssl.SSLError, ssl.CertificateError) as e:
            raise TlsHandshakeFailed(f"TLS handshake with {server_name} failed: {e}") from e
        except OSError as e:
            raise TlsHandshakeFailed(f"TLS handshake with {server_name} aborted: {e}") from e
        self.tls_server_name = server_name
        return self


class Transport(Protocol):
    async def open(self, host: str, port: int) -> Duplex:
        ...


class AsyncioTransport:
    """Default Transport: plain TCP via asyncio.open_connection."""

    def __init__(self, dial_timeout: float = 10.0, verify_tls: bool = True, chunk_size: int = 65536) -> None:
        self.dial_timeout = float(dial_timeout)
        self.verify_tls = bool(verify_tls)
        self.chunk_size = int(chunk_size)

    async def open(self, host: str, port: int) -> Duplex:
        try:
            r, w = await asyncio.wait_for(
                asyncio.open_connection(host=host, port=int(port)),
                timeout=self.dial_timeout if self.dial_timeout > 0 else None,
            )
        except asyncio.TimeoutError as e:
            raise ProxyTimeout(f"dial {host}:{port} timed out after {self.dial_timeout:.1f}s") from e
        except OSError as e:
            raise TransportOpenError(f"dial {host}:{port} failed: {e}") from e
        return StreamDuplex(r, w, verify_tls=self.verify_tls, chunk_size=self.chunk_size, label=f"{host}:{port}")


async def read_chunk(duplex: Duplex, timeout: Optional[float]) -> bytes:
    try:
        if timeout is not None and timeout > 0:
            return await asyncio.wait_for(duplex.read(), timeout=timeout)
        return await duplex.read()
    except asyncio.TimeoutError as e:
        raise ProxyTimeout(f"no data within {timeout:.1f}s") from e
    except OSError as e:
        raise TransportError(f"read failed: {e}") from e


async def write_all(duplex: Duplex, data: bytes, timeout: Optional[float]) -> None:
    try:
        if timeout is not None and timeout > 0:
            await asyncio.wait_for(duplex.write(data), timeout=timeout)
        else:
            await duplex.write(data)
    except asyncio.TimeoutError as e:
        raise ProxyTimeout(f"write stalled for {timeout:.1f}s") from e
    except OSError as e:
        raise TransportError(f"write failed: {e}") from e


async def read_exactly(duplex: Duplex, n: int, timeout: Optional[float], what: str = "read") -> bytes:
    """Accumulate partial reads until n bytes are available; surplus goes back to the stream."""
    buf = bytearray()
    while len(buf) < n:
        chunk = await read_chunk(duplex, timeout)
        if not chunk:
            raise ProxyConnectionClosed(f"connection closed during {what} ({len(buf)}/{n} bytes)")
        buf += chunk
    if len(buf) > n:
        duplex.unread(bytes(buf[n:]))
    return bytes(buf[:n])


async def read_until(
    duplex: Duplex,
    delimiter: bytes,
    timeout: Optional[float],
    limit: int,
    what: str = "read",
) -> Tuple[bytes, bool]:
    """
    Accumulate reads until `delimiter` appears.

    Returns (data through the delimiter, True). Anything after the delimiter is
    handed back with unread(). When `limit` bytes pass without a delimiter,
    returns (buffer, False) so the caller can pick its own error.
    """
    buf = bytearray()
    scan_from = 0
    while True:
        idx = buf.find(delimiter, scan_from)
        if idx != -1:
            end = idx + len(delimiter)
            duplex.unread(bytes(buf[end:]))
            return bytes(buf[:end]), True
        if len(buf) >= limit:
            return bytes(buf), False
        scan_from = max(0, len(buf) - len(delimiter) + 1)
        chunk = await read_chunk(duplex, timeout)
        if not chunk:
            raise ProxyConnectionClosed(f"connection closed during {what} after {len(buf)} bytes")
        buf += chunk
