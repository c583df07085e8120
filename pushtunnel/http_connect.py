from __future__ import annotations

import logging
from typing import Optional

from .endpoint import ProxyDescriptor, TunnelTarget
from .errors import ProxyConnectRejected, ProxyHandshakeError
from .transport import Duplex, read_until, write_all

logger = logging.getLogger("pushtunnel.http_connect")

HEADER_END = b"\r\n\r\n"


def connect_request(proxy: ProxyDescriptor, target: TunnelTarget) -> bytes:
    lines = [
        f"CONNECT {target.authority} HTTP/1.1",
        f"Host: {target.authority}",
    ]
    auth = proxy.auth_header_value()
    if auth:
        lines.append(f"Proxy-Authorization: {auth}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin1")


def parse_status_code(status_line: str) -> int:
    parts = status_line.split(" ", 2)
    if len(parts) >= 2 and parts[0].upper().startswith("HTTP/") and parts[1].isdigit():
        return int(parts[1])
    return 0


async def http_connect_handshake(
    duplex: Duplex,
    proxy: ProxyDescriptor,
    target: TunnelTarget,
    secure: bool = True,
    io_timeout: Optional[float] = 30.0,
    max_header_bytes: int = 64 * 1024,
    cid: Optional[str] = None,
    diag: bool = False,
) -> Duplex:
    """
    Ask an HTTP proxy to open a raw tunnel to `target` with CONNECT.

    The proxy's answer is accumulated until the blank line; only a 200
    status opens the tunnel. Bytes after the header block are handed back to
    the stream. With `secure`, the stream is released and upgraded to TLS
    against the target host's name (never the proxy's). Returns the duplex to
    use from here on. Any failure closes the duplex before propagating.
    """
    try:
        return await _negotiate(duplex, proxy, target, secure, io_timeout, max_header_bytes, cid, diag)
    except BaseException:
        await duplex.close()
        raise


async def _negotiate(
    duplex: Duplex,
    proxy: ProxyDescriptor,
    target: TunnelTarget,
    secure: bool,
    io_timeout: Optional[float],
    max_header_bytes: int,
    cid: Optional[str],
    diag: bool,
) -> Duplex:
    with duplex.hold("http-connect"):
        await write_all(duplex, connect_request(proxy, target), io_timeout)
        head, complete = await read_until(duplex, HEADER_END, io_timeout, max_header_bytes, "CONNECT response")
        if not complete:
            raise ProxyHandshakeError(f"CONNECT response header exceeds {max_header_bytes} bytes")
    status_line = head.split(b"\r\n", 1)[0].decode("latin1", "replace").strip()
    code = parse_status_code(status_line)
    if diag:
        logger.info(
            "tunnel[%s]: CONNECT %s via=%s auth=%s status=%r",
            cid, target.authority, proxy.redacted(), proxy.has_credentials, status_line,
        )
    if code != 200:
        raise ProxyConnectRejected(status_line)
    if not secure:
        return duplex
    if diag:
        logger.info("tunnel[%s]: tls upgrade server_name=%s", cid, target.host)
    return await duplex.start_tls(target.host)
