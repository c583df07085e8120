from __future__ import annotations

import asyncio
import json as jsonlib
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple, Union

from .config import TunnelConfig, load_config_from_env
from .endpoint import ProxyDescriptor, TunnelTarget, parse_proxy, parse_target_url
from .errors import TlsHandshakeFailed, TransportError, TunnelError
from .framer import HttpRequest, TunnelResponse, exchange, validate_request
from .http_connect import http_connect_handshake
from .relay import RelayClient, is_relay, relay_upstream
from .socks5 import socks5_handshake
from .transport import AsyncioTransport, Duplex, Transport

# One call = one transport connection = one HTTP exchange. Nothing is pooled,
# cached or retried; every tunnel is closed before the call returns.

logger = logging.getLogger("pushtunnel.client")

__all__ = [
    "TunnelState",
    "Tunnel",
    "ProxyClient",
    "fetch_via_proxy",
]

HeadersLike = Union[Mapping[str, str], List[Tuple[str, str]], None]


def _new_cid() -> str:
    n = time.time_ns() ^ os.getpid() ^ threading.get_ident()
    return f"{n & 0xFFFFFFFFFFFF:012x}"


class TunnelState(str, Enum):
    CONNECTING = "connecting"
    PROXY_HANDSHAKING = "proxy_handshaking"
    TLS_UPGRADING = "tls_upgrading"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class Tunnel:
    proxy: ProxyDescriptor
    target: TunnelTarget
    secure: bool
    cid: str
    duplex: Optional[Duplex] = None
    state: TunnelState = TunnelState.CONNECTING
    history: List[TunnelState] = field(default_factory=lambda: [TunnelState.CONNECTING])

    def advance(self, state: TunnelState) -> None:
        self.state = state
        self.history.append(state)

    async def close(self, failed: bool = False) -> None:
        d = self.duplex
        if d is not None:
            d.release()
            try:
                await d.close()
            except (OSError, TunnelError) as e:
                logger.debug("tunnel[%s]: close error: %s", self.cid, e)
        self.advance(TunnelState.FAILED if failed else TunnelState.CLOSED)


def _header_pairs(headers: HeadersLike) -> List[Tuple[str, str]]:
    if headers is None:
        return []
    if isinstance(headers, Mapping):
        return [(str(k), str(v)) for k, v in headers.items()]
    return [(str(k), str(v)) for k, v in headers]


class ProxyClient:
    """
    Single-shot HTTP client through one SOCKS5 or HTTP CONNECT proxy.

    The transport is injected; by default plain asyncio TCP. A proxy string
    beginning with relay:// sends requests to the configured relay service
    instead of opening a tunnel.
    """

    def __init__(
        self,
        proxy: Union[str, ProxyDescriptor],
        transport: Optional[Transport] = None,
        config: Optional[TunnelConfig] = None,
        default_scheme: str = "http",
        relay: Optional[RelayClient] = None,
    ) -> None:
        self.config = config or load_config_from_env()
        self.transport: Transport = transport or AsyncioTransport(
            dial_timeout=self.config.dial_timeout,
            verify_tls=self.config.verify_tls,
            chunk_size=self.config.chunk_size,
        )
        self.proxy: Optional[ProxyDescriptor] = None
        self.relay: Optional[RelayClient] = None
        self.relay_upstream: Optional[str] = None
        if isinstance(proxy, ProxyDescriptor):
            self.proxy = proxy
        elif is_relay(proxy):
            self.relay = relay or RelayClient(self.config.relay_url or "", timeout=self.config.relay_timeout)
            self.relay_upstream = relay_upstream(proxy)
        else:
            self.proxy = parse_proxy(proxy, default_scheme=default_scheme)

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: HeadersLike = None,
        body: Union[str, bytes, None] = None,
        json: Any = None,
    ) -> TunnelResponse:
        hdrs = _header_pairs(headers)
        if json is not None:
            body = jsonlib.dumps(json, ensure_ascii=False)
            if not any(k.lower() == "content-type" for k, _ in hdrs):
                hdrs.append(("Content-Type", "application/json"))
        if self.relay is not None:
            return await self.relay.request(url, method, hdrs, body, proxy_url=self.relay_upstream)
        target, path, secure = parse_target_url(url)
        data = body.encode("utf-8") if isinstance(body, str) else body
        return await self.request(target, HttpRequest(method=method, path=path, headers=hdrs, body=data), secure=secure)

    async def request(self, target: TunnelTarget, request: HttpRequest, secure: bool = True) -> TunnelResponse:
        if self.relay is not None:
            scheme = "https" if secure else "http"
            url = f"{scheme}://{target.authority}{request.path or '/'}"
            return await self.relay.request(
                url, request.method, request.headers, request.body, proxy_url=self.relay_upstream
            )
        if self.proxy is None:
            raise TunnelError("no proxy descriptor configured")
        validate_request(request)
        cfg = self.config
        tunnel = Tunnel(proxy=self.proxy, target=target, secure=secure, cid=_new_cid())
        t0 = time.monotonic()
        failed = True
        try:
            duplex = await self._open(tunnel)
            response = await exchange(
                duplex,
                request,
                target,
                secure=secure,
                user_agent=cfg.user_agent,
                io_timeout=cfg.io_timeout,
                max_bytes=cfg.max_response_bytes,
            )
            failed = False
            if cfg.diag:
                logger.info(
                    "tunnel[%s]: %s %s%s status=%d bytes=%d dur_ms=%.0f",
                    tunnel.cid, request.method, target.authority, request.path, response.status,
                    len(response.body), (time.monotonic() - t0) * 1000.0,
                )
            return response
        except TunnelError as e:
            logger.warning(
                "tunnel[%s]: %s %s via %s failed phase=%s state=%s err=%s",
                tunnel.cid, request.method, target.authority, self.proxy.redacted(), e.phase, tunnel.state.value, e.detail,
            )
            raise
        except OSError as e:
            logger.warning("tunnel[%s]: transport failure state=%s err=%s", tunnel.cid, tunnel.state.value, e)
            raise TransportError(f"{tunnel.state.value}: {e}") from e
        finally:
            await tunnel.close(failed=failed)

    async def _open(self, tunnel: Tunnel) -> Duplex:
        cfg = self.config
        proxy, target = tunnel.proxy, tunnel.target
        duplex = tunnel.duplex = await self.transport.open(proxy.host, proxy.port)
        if cfg.diag:
            logger.info("tunnel[%s]: dialed %s", tunnel.cid, proxy.redacted())

        tunnel.advance(TunnelState.PROXY_HANDSHAKING)
        if proxy.scheme == "socks5":
            await socks5_handshake(duplex, proxy, target, io_timeout=cfg.io_timeout, cid=tunnel.cid, diag=cfg.diag)
        else:
            await http_connect_handshake(
                duplex,
                proxy,
                target,
                secure=False,
                io_timeout=cfg.io_timeout,
                max_header_bytes=cfg.max_header_bytes,
                cid=tunnel.cid,
                diag=cfg.diag,
            )

        if tunnel.secure and duplex.tls_server_name is None:
            tunnel.advance(TunnelState.TLS_UPGRADING)
            duplex = tunnel.duplex = await self._start_tls(duplex, target.host)
        tunnel.advance(TunnelState.READY)
        return duplex

    async def _start_tls(self, duplex: Duplex, server_name: str) -> Duplex:
        timeout = self.config.io_timeout
        try:
            if timeout and timeout > 0:
                return await asyncio.wait_for(duplex.start_tls(server_name), timeout=timeout)
            return await duplex.start_tls(server_name)
        except asyncio.TimeoutError as e:
            raise TlsHandshakeFailed(f"TLS handshake with {server_name} timed out after {timeout:.1f}s") from e


async def fetch_via_proxy(
    proxy_url: str,
    url: str,
    method: str = "GET",
    headers: HeadersLike = None,
    body: Union[str, bytes, None] = None,
    json: Any = None,
    config: Optional[TunnelConfig] = None,
    transport: Optional[Transport] = None,
    default_scheme: str = "http",
) -> TunnelResponse:
    client = ProxyClient(proxy_url, transport=transport, config=config, default_scheme=default_scheme)
    return await client.fetch(url, method=method, headers=headers, body=body, json=json)
