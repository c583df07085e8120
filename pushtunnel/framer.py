from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from .endpoint import TunnelTarget
from .errors import ApplicationError, MalformedRequest, MalformedResponse
from .transport import Duplex, read_chunk, write_all

__all__ = [
    "DEFAULT_USER_AGENT",
    "HttpRequest",
    "TunnelResponse",
    "validate_request",
    "encode_request",
    "parse_response",
    "read_response",
    "exchange",
]

DEFAULT_USER_AGENT = "pushtunnel/1.0"

# Fixed headers owned by the framer; caller copies are dropped
_RESERVED = ("host", "connection", "content-length", "transfer-encoding")

Headers = List[Tuple[str, str]]


@dataclass
class HttpRequest:
    method: str = "GET"
    path: str = "/"
    headers: Headers = field(default_factory=list)
    body: Optional[bytes] = None


@dataclass
class TunnelResponse:
    status: int
    status_text: str
    headers: Headers = field(default_factory=list)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        low = name.lower()
        for k, v in self.headers:
            if k.lower() == low:
                return v
        return default

    def text(self, encoding: Optional[str] = None) -> str:
        return self.body.decode(encoding or self._charset(), "replace")

    def json(self) -> Any:
        return json.loads(self.text())

    def raise_for_status(self) -> "TunnelResponse":
        if not self.ok:
            raise ApplicationError(self)
        return self

    def _charset(self) -> str:
        ctype = self.header("content-type") or ""
        for part in ctype.split(";")[1:]:
            k, _, v = part.strip().partition("=")
            if k.lower() == "charset" and v:
                return v.strip('"')
        return "utf-8"


def _host_header(target: TunnelTarget, secure: bool) -> str:
    default = 443 if secure else 80
    if target.port == default:
        return f"[{target.host}]" if ":" in target.host else target.host
    return target.authority


_CTL = ("\r", "\n", "\0")


def _check_field(what: str, value: str) -> None:
    if any(c in value for c in _CTL):
        raise MalformedRequest(f"{what} contains a line break or NUL: {value[:64]!r}")
    try:
        value.encode("latin1")
    except UnicodeEncodeError as e:
        raise MalformedRequest(f"{what} is not latin-1 encodable: {value[:64]!r}") from e


def validate_request(request: HttpRequest) -> None:
    """Refuse anything that would split or forge header lines on the wire."""
    method = request.method or ""
    if not method or any(c.isspace() for c in method):
        raise MalformedRequest(f"bad method {method[:64]!r}")
    _check_field("method", method)
    path = request.path or "/"
    _check_field("path", path)
    if " " in path:
        raise MalformedRequest(f"path contains a space: {path[:64]!r}")
    for k, v in request.headers:
        _check_field("header name", k)
        _check_field(f"header {k.strip()!r}", v)
        if ":" in k:
            raise MalformedRequest(f"header name contains ':': {k[:64]!r}")


def encode_request(
    request: HttpRequest,
    target: TunnelTarget,
    secure: bool = True,
    user_agent: str = DEFAULT_USER_AGENT,
) -> bytes:
    """Serialize one HTTP/1.1 request (head and body) for a single write."""
    validate_request(request)
    _check_field("user agent", user_agent)
    caller_ua = any(k.strip().lower() == "user-agent" for k, _ in request.headers)
    lines = [
        f"{request.method.upper()} {request.path or '/'} HTTP/1.1",
        f"Host: {_host_header(target, secure)}",
        "Connection: close",
    ]
    if not caller_ua:
        lines.append(f"User-Agent: {user_agent}")
    for k, v in request.headers:
        kn = k.strip()
        if not kn or kn.lower() in _RESERVED:
            continue
        lines.append(f"{kn}: {v}")
    if request.body is not None:
        lines.append(f"Content-Length: {len(request.body)}")
    try:
        head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin1")
    except UnicodeEncodeError as e:
        raise MalformedRequest(f"request head is not latin-1 encodable: {e}") from e
    return head + (request.body or b"")


async def read_response(duplex: Duplex, timeout: Optional[float], max_bytes: int = 16 * 1024 * 1024) -> bytes:
    # Connection: close means the server ends the body by closing the stream
    buf = bytearray()
    while True:
        chunk = await read_chunk(duplex, timeout)
        if not chunk:
            return bytes(buf)
        buf += chunk
        if len(buf) > max_bytes:
            raise MalformedResponse(f"response exceeds {max_bytes} bytes")


def parse_response(raw: bytes) -> TunnelResponse:
    idx = raw.find(b"\r\n\r\n")
    if idx == -1:
        raise MalformedResponse(f"no header/body delimiter in {len(raw)} response bytes")
    head = raw[:idx].decode("latin1", "replace")
    body = raw[idx + 4:]
    lines = head.split("\r\n")
    status_line = lines[0]
    parts = status_line.split(" ")
    if len(parts) < 2 or not parts[0].upper().startswith("HTTP/") or not parts[1].isdigit():
        raise MalformedResponse(f"bad status line {status_line[:256]!r}")
    headers: Headers = []
    for ln in lines[1:]:
        if ":" in ln:
            k, v = ln.split(":", 1)
            headers.append((k.strip(), v.strip()))
    return TunnelResponse(
        status=int(parts[1]),
        status_text=" ".join(parts[2:]),
        headers=headers,
        body=body,
    )


async def exchange(
    duplex: Duplex,
    request: HttpRequest,
    target: TunnelTarget,
    secure: bool = True,
    user_agent: str = DEFAULT_USER_AGENT,
    io_timeout: Optional[float] = 30.0,
    max_bytes: int = 16 * 1024 * 1024,
) -> TunnelResponse:
    with duplex.hold("framer"):
        await write_all(duplex, encode_request(request, target, secure, user_agent), io_timeout)
        raw = await read_response(duplex, io_timeout, max_bytes)
    return parse_response(raw)
