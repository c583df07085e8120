from __future__ import annotations

import logging
from typing import Optional

from .endpoint import ProxyDescriptor, TunnelTarget
from .errors import (
    AllMethodsRejected,
    AuthenticationFailed,
    AuthRequiredButMissingCredentials,
    SocksNegotiationError,
    UnsupportedAuthMethod,
    UnsupportedSocksVersion,
    socks_reply_error,
)
from .transport import Duplex, read_exactly, write_all

# SOCKS5 client side (RFC 1928 / RFC 1929 subset):
# - no-auth and username/password methods only
# - CONNECT command only, always with ATYP=DOMAIN so the proxy resolves DNS

logger = logging.getLogger("pushtunnel.socks5")

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01
METHOD_NO_AUTH = 0x00
METHOD_USER_PASS = 0x02
METHOD_REJECTED = 0xFF
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04


def greeting(with_credentials: bool) -> bytes:
    methods = [METHOD_NO_AUTH, METHOD_USER_PASS] if with_credentials else [METHOD_NO_AUTH]
    return bytes([SOCKS_VERSION, len(methods), *methods])


def auth_request(username: str, password: str) -> bytes:
    uname = username.encode("utf-8")
    pwd = password.encode("utf-8")
    if len(uname) > 255 or len(pwd) > 255:
        raise AuthenticationFailed("username and password must each fit in 255 bytes")
    return bytes([AUTH_VERSION, len(uname)]) + uname + bytes([len(pwd)]) + pwd


def connect_request(target: TunnelTarget) -> bytes:
    try:
        host_b = target.host.encode("idna")
    except UnicodeError:
        host_b = target.host.encode("utf-8")
    if not host_b or len(host_b) > 255:
        raise SocksNegotiationError(f"target hostname must be 1-255 bytes, got {len(host_b)}")
    req = bytearray()
    req += bytes([SOCKS_VERSION, CMD_CONNECT, 0x00])
    req += bytes([ATYP_DOMAIN, len(host_b)]) + host_b
    req += bytes([(target.port >> 8) & 0xFF, target.port & 0xFF])
    return bytes(req)


async def _negotiate_method(duplex: Duplex, proxy: ProxyDescriptor, io_timeout: Optional[float]) -> int:
    await write_all(duplex, greeting(proxy.has_credentials), io_timeout)
    data = await read_exactly(duplex, 2, io_timeout, "socks5 method negotiation")
    if data[0] != SOCKS_VERSION:
        raise UnsupportedSocksVersion(f"proxy answered greeting with version {data[0]:#04x}")
    method = data[1]
    if method == METHOD_NO_AUTH:
        return method
    if method == METHOD_USER_PASS:
        if not proxy.has_credentials:
            raise AuthRequiredButMissingCredentials("proxy requires username/password but none were supplied")
        return method
    if method == METHOD_REJECTED:
        raise AllMethodsRejected("proxy rejected every offered authentication method")
    raise UnsupportedAuthMethod(f"proxy selected unsupported authentication method {method:#04x}")


async def _authenticate(duplex: Duplex, proxy: ProxyDescriptor, io_timeout: Optional[float]) -> None:
    await write_all(duplex, auth_request(proxy.username or "", proxy.password or ""), io_timeout)
    a = await read_exactly(duplex, 2, io_timeout, "socks5 authentication")
    if a[1] != 0x00:
        raise AuthenticationFailed(f"proxy refused credentials for user {proxy.username!r} (status {a[1]:#04x})")


async def _connect(duplex: Duplex, target: TunnelTarget, io_timeout: Optional[float]) -> None:
    await write_all(duplex, connect_request(target), io_timeout)
    # Reply: VER, REP, RSV, ATYP, BND.ADDR, BND.PORT
    hdr = await read_exactly(duplex, 4, io_timeout, "socks5 connect reply")
    if hdr[0] != SOCKS_VERSION:
        raise UnsupportedSocksVersion(f"proxy answered CONNECT with version {hdr[0]:#04x}")
    if hdr[1] != 0x00:
        raise socks_reply_error(hdr[1], target.authority)
    atyp = hdr[3]
    if atyp == ATYP_IPV4:
        await read_exactly(duplex, 4, io_timeout, "socks5 bound address")
    elif atyp == ATYP_DOMAIN:
        n = await read_exactly(duplex, 1, io_timeout, "socks5 bound address")
        await read_exactly(duplex, n[0], io_timeout, "socks5 bound address")
    elif atyp == ATYP_IPV6:
        await read_exactly(duplex, 16, io_timeout, "socks5 bound address")
    else:
        raise SocksNegotiationError(f"unknown bound address type {atyp:#04x}")
    await read_exactly(duplex, 2, io_timeout, "socks5 bound port")


async def socks5_handshake(
    duplex: Duplex,
    proxy: ProxyDescriptor,
    target: TunnelTarget,
    io_timeout: Optional[float] = 30.0,
    cid: Optional[str] = None,
    diag: bool = False,
) -> Duplex:
    """
    Drive method negotiation, optional username/password auth and CONNECT.

    Returns the same duplex, now tunnelled to `target` and released. TLS is
    left to the caller. Any failure closes the duplex before propagating.
    """
    try:
        with duplex.hold("socks5"):
            method = await _negotiate_method(duplex, proxy, io_timeout)
            if diag:
                logger.info("tunnel[%s]: socks5 method=%#04x proxy=%s", cid, method, proxy.redacted())
            if method == METHOD_USER_PASS:
                await _authenticate(duplex, proxy, io_timeout)
                if diag:
                    logger.info("tunnel[%s]: socks5 auth ok user=%s", cid, proxy.username)
            await _connect(duplex, target, io_timeout)
    except BaseException:
        await duplex.close()
        raise
    if diag:
        logger.info("tunnel[%s]: socks5 connected target=%s", cid, target.authority)
    return duplex
