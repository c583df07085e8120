"""Shared fixtures: an in-memory scripted Duplex and a transport handing them out."""

import asyncio
from typing import Callable, List, Optional, Sequence, Tuple, Union

import pytest

from pushtunnel.config import TunnelConfig
from pushtunnel.errors import TransportOpenError
from pushtunnel.transport import Duplex

HANG = object()

Step = Union[bytes, BaseException, object]


class ScriptedDuplex(Duplex):
    """
    Plays back server chunks in order, one per read().

    An exception in the script is raised by that read(); HANG blocks forever;
    running out of script is end of stream.
    """

    def __init__(
        self,
        script: Sequence[Step] = (),
        tls_error: Optional[BaseException] = None,
        tls_supported: bool = True,
        label: str = "",
    ) -> None:
        super().__init__()
        self.script: List[Step] = list(script)
        self.tls_error = tls_error
        self.tls_supported = tls_supported
        self.label = label
        self.writes: List[bytes] = []
        self.close_calls = 0
        self.tls_calls: List[str] = []
        self.held_at_tls: List[Optional[str]] = []

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)

    async def _read_chunk(self) -> bytes:
        if not self.script:
            return b""
        step = self.script.pop(0)
        if step is HANG:
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        return step  # type: ignore[return-value]

    async def _write(self, data: bytes) -> None:
        self.writes.append(data)

    async def _close(self) -> None:
        self.close_calls += 1

    async def _start_tls(self, server_name: str) -> Duplex:
        self.held_at_tls.append(self.held_by)
        self.tls_calls.append(server_name)
        if not self.tls_supported:
            return await super()._start_tls(server_name)
        if self.tls_error is not None:
            raise self.tls_error
        self.tls_server_name = server_name
        return self


class FakeTransport:
    """Hands out pre-built duplexes in order and records every open()."""

    def __init__(self, *duplexes: ScriptedDuplex, open_error: Optional[BaseException] = None) -> None:
        self.duplexes: List[ScriptedDuplex] = list(duplexes)
        self.opened: List[Tuple[str, int]] = []
        self.handed_out: List[ScriptedDuplex] = []
        self.open_error = open_error
        self.factory: Optional[Callable[[str, int], ScriptedDuplex]] = None

    async def open(self, host: str, port: int) -> Duplex:
        self.opened.append((host, port))
        if self.open_error is not None:
            raise self.open_error
        if self.factory is not None:
            d = self.factory(host, port)
        else:
            d = self.duplexes.pop(0)
        self.handed_out.append(d)
        return d


def socks_ok_reply(bound: bytes = b"\x01\x00\x00\x00\x00", port: bytes = b"\x00\x00") -> bytes:
    return b"\x05\x00\x00" + bound + port


def http_response(status: int = 200, text: str = "OK", body: bytes = b"", headers: Sequence[Tuple[str, str]] = ()) -> bytes:
    lines = [f"HTTP/1.1 {status} {text}"] + [f"{k}: {v}" for k, v in headers]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin1") + body


@pytest.fixture
def config() -> TunnelConfig:
    return TunnelConfig(io_timeout=2.0, dial_timeout=2.0)


@pytest.fixture
def refused_transport() -> FakeTransport:
    return FakeTransport(open_error=TransportOpenError("dial 10.0.0.1:1080 failed: refused"))
