"""Facade: phase orchestration, cleanup on every exit path, isolation between calls."""

import asyncio
from typing import List, Optional, Tuple

import pytest

from conftest import HANG, FakeTransport, ScriptedDuplex, http_response, socks_ok_reply
from pushtunnel import errors
from pushtunnel.client import ProxyClient, TunnelState, fetch_via_proxy
from pushtunnel.config import TunnelConfig
from pushtunnel.endpoint import TunnelTarget
from pushtunnel.framer import HttpRequest, TunnelResponse
from pushtunnel.transport import AsyncioTransport

OK_JSON = http_response(200, "OK", b'{"errcode":0,"access_token":"tok"}', [("Content-Type", "application/json")])


async def test_socks5_https_flow(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"\x05\x00", socks_ok_reply(), OK_JSON])
    transport = FakeTransport(d)
    client = ProxyClient("socks5://proxy.example:1080", transport=transport, config=config)
    resp = await client.fetch("https://qyapi.weixin.qq.com/cgi-bin/gettoken?corpid=c&corpsecret=s")
    assert resp.ok
    assert resp.json()["access_token"] == "tok"
    assert transport.opened == [("proxy.example", 1080)]
    assert d.tls_calls == ["qyapi.weixin.qq.com"]
    assert d.held_at_tls == [None]
    assert b"GET /cgi-bin/gettoken?corpid=c&corpsecret=s HTTP/1.1\r\n" in d.written
    assert d.close_calls == 1


async def test_http_connect_https_flow(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"HTTP/1.1 200 Connection Established\r\n\r\n", OK_JSON])
    transport = FakeTransport(d)
    client = ProxyClient("http://u:p@gw.example:3128", transport=transport, config=config)
    resp = await client.fetch(
        "https://qyapi.weixin.qq.com/cgi-bin/message/send?access_token=tok",
        method="POST",
        json={"msgtype": "text", "text": {"content": "hi"}},
    )
    assert resp.status == 200
    assert d.writes[0].startswith(b"CONNECT qyapi.weixin.qq.com:443 HTTP/1.1\r\n")
    assert b"Proxy-Authorization: Basic dTpw\r\n" in d.writes[0]
    assert d.tls_calls == ["qyapi.weixin.qq.com"]
    assert b"Content-Type: application/json\r\n" in d.writes[1]
    assert d.writes[1].endswith(b'{"msgtype": "text", "text": {"content": "hi"}}')
    assert d.close_calls == 1


async def test_plain_http_target_skips_tls(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"\x05\x00", socks_ok_reply(), http_response(204, "No Content")])
    client = ProxyClient("socks5://proxy.example", transport=FakeTransport(d), config=config)
    resp = await client.fetch("http://ipv4.example/")
    assert resp.status == 204
    assert d.tls_calls == []


async def test_state_history_on_success(config: TunnelConfig, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[List[TunnelState]] = []
    from pushtunnel import client as client_mod

    original = client_mod.Tunnel.close

    async def spy(self: client_mod.Tunnel, failed: bool = False) -> None:
        await original(self, failed)
        seen.append(list(self.history))

    monkeypatch.setattr(client_mod.Tunnel, "close", spy)
    d = ScriptedDuplex([b"\x05\x00", socks_ok_reply(), OK_JSON])
    await ProxyClient("socks5://p:1080", transport=FakeTransport(d), config=config).fetch("https://h.example/")
    assert seen == [[
        TunnelState.CONNECTING,
        TunnelState.PROXY_HANDSHAKING,
        TunnelState.TLS_UPGRADING,
        TunnelState.READY,
        TunnelState.CLOSED,
    ]]


async def test_non_2xx_is_returned(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"HTTP/1.1 200 Connection Established\r\n\r\n", http_response(503, "Service Unavailable", b"busy")])
    resp = await ProxyClient("gw:3128", transport=FakeTransport(d), config=config).fetch("https://h.example/")
    assert resp.ok is False
    assert resp.status == 503
    assert resp.text() == "busy"
    assert d.close_calls == 1


async def test_transport_open_failure(config: TunnelConfig, refused_transport: FakeTransport) -> None:
    client = ProxyClient("socks5://10.0.0.1:1080", transport=refused_transport, config=config)
    with pytest.raises(errors.TransportOpenError) as ei:
        await client.fetch("https://h.example/")
    assert ei.value.phase == "transport"
    assert refused_transport.handed_out == []


@pytest.mark.parametrize(
    "proxy, script, tls_error, exc",
    [
        ("socks5://p:1080", [b"\x05\x00", b"\x05\x00"], None, errors.ProxyConnectionClosed),
        ("socks5://p:1080", [b"\x05\x00", b"\x05\x04\x00\x01"], None, errors.HostUnreachable),
        ("socks5://p:1080", [b"\x06\x00"], None, errors.UnsupportedSocksVersion),
        ("socks5://p:1080", [b"\x05\x00", socks_ok_reply()], errors.TlsHandshakeFailed("bad cert"), errors.TlsHandshakeFailed),
        ("http://p:3128", [b"HTTP/1.1 502 Bad Gateway\r\n\r\n"], None, errors.ProxyConnectRejected),
        ("http://p:3128", [b"HTTP/1.1 200 OK\r\n"], None, errors.ProxyConnectionClosed),
        ("http://p:3128", [b"HTTP/1.1 200 OK\r\n\r\n"], errors.TlsHandshakeFailed("reset"), errors.TlsHandshakeFailed),
        ("http://p:3128", [b"HTTP/1.1 200 OK\r\n\r\n", b"no delimiter here"], None, errors.MalformedResponse),
        ("http://p:3128", [b"HTTP/1.1 200 OK\r\n\r\n", ConnectionResetError("reset by peer")], None, errors.TransportError),
    ],
)
async def test_every_failure_closes_exactly_once(
    config: TunnelConfig,
    proxy: str,
    script: list,
    tls_error: Optional[BaseException],
    exc: type,
) -> None:
    d = ScriptedDuplex(script, tls_error=tls_error)
    with pytest.raises(exc):
        await ProxyClient(proxy, transport=FakeTransport(d), config=config).fetch("https://h.example/")
    assert d.close_calls == 1
    assert d.held_by is None


async def test_cancellation_closes_duplex(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"\x05\x00", HANG])
    client = ProxyClient("socks5://p:1080", transport=FakeTransport(d), config=TunnelConfig(io_timeout=0))
    task = asyncio.create_task(client.fetch("https://h.example/"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert d.close_calls == 1


async def test_concurrent_calls_do_not_share_streams(config: TunnelConfig) -> None:
    transport = FakeTransport()

    def factory(host: str, port: int) -> ScriptedDuplex:
        return ScriptedDuplex([b"\x05\x00", socks_ok_reply(), http_response(200, "OK", b"{}")])

    transport.factory = factory
    client = ProxyClient("socks5://shared.proxy:1080", transport=transport, config=config)
    results = await asyncio.gather(
        client.fetch("http://alpha.example/a"),
        client.fetch("http://beta.example/b"),
    )
    assert all(r.ok for r in results)
    assert len(transport.handed_out) == 2
    first, second = transport.handed_out
    assert first is not second
    written = sorted([first.written, second.written], key=lambda w: b"alpha" in w, reverse=True)
    assert b"alpha.example" in written[0] and b"beta.example" not in written[0]
    assert b"beta.example" in written[1] and b"alpha.example" not in written[1]
    assert first.close_calls == second.close_calls == 1


async def test_request_with_explicit_target(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"HTTP/1.1 200 Connection Established\r\n\r\n", http_response(200, "OK", b"pong")])
    client = ProxyClient("gw:3128", transport=FakeTransport(d), config=config)
    resp = await client.request(TunnelTarget("api.example", 8443), HttpRequest(path="/ping"), secure=True)
    assert resp.text() == "pong"
    assert d.writes[0].startswith(b"CONNECT api.example:8443 HTTP/1.1")
    assert b"Host: api.example:8443\r\n" in d.writes[1]


async def test_fetch_via_proxy_parses_per_call(config: TunnelConfig) -> None:
    with pytest.raises(errors.InvalidPort):
        await fetch_via_proxy("socks5://p:70000", "https://h.example/", config=config)


class _FakeRelay:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    async def request(self, url, method="GET", headers=None, body=None, proxy_url=None, multipart=None):
        self.calls.append((url, method, proxy_url))
        return TunnelResponse(200, "OK", [], b'{"ok":true}')


async def test_relay_descriptor_bypasses_tunnel(config: TunnelConfig) -> None:
    relay = _FakeRelay()
    transport = FakeTransport()
    client = ProxyClient("relay://http://u:p@gw:3128", transport=transport, config=config, relay=relay)  # type: ignore[arg-type]
    resp = await client.fetch("https://qyapi.weixin.qq.com/cgi-bin/gettoken", method="GET")
    assert resp.json() == {"ok": True}
    assert relay.calls == [("https://qyapi.weixin.qq.com/cgi-bin/gettoken", "GET", "http://u:p@gw:3128")]
    assert transport.opened == []


async def test_relay_without_endpoint_is_an_error(config: TunnelConfig) -> None:
    with pytest.raises(errors.RelayError):
        ProxyClient("relay://", config=config)


async def _serve_socks5_origin(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, seen: List[bytes]) -> None:
    # SOCKS5 proxy that answers the tunnelled request itself
    await reader.readexactly(3)
    writer.write(b"\x05\x00")
    req = await reader.readexactly(5)
    host = await reader.readexactly(req[4])
    await reader.readexactly(2)
    seen.append(host)
    writer.write(b"\x05\x00\x00\x01\x7f\x00\x00\x01\x04\x38")
    head = await reader.readuntil(b"\r\n\r\n")
    seen.append(head)
    writer.write(b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n\r\n")
    await writer.drain()
    writer.write(b'{"via":"socks5"}')
    await writer.drain()
    writer.close()


async def test_end_to_end_over_real_sockets() -> None:
    seen: List[bytes] = []
    server = await asyncio.start_server(lambda r, w: _serve_socks5_origin(r, w, seen), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        cfg = TunnelConfig(io_timeout=2.0, dial_timeout=2.0)
        resp = await fetch_via_proxy(
            f"127.0.0.1:{port}",
            "http://tunnel.test/status?x=1",
            config=cfg,
            transport=AsyncioTransport(dial_timeout=2.0),
            default_scheme="socks5",
        )
    finally:
        server.close()
        await server.wait_closed()
    assert resp.json() == {"via": "socks5"}
    assert seen[0] == b"tunnel.test"
    assert seen[1].startswith(b"GET /status?x=1 HTTP/1.1\r\nHost: tunnel.test\r\nConnection: close\r\n")


async def test_dial_refused_over_real_sockets() -> None:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    with pytest.raises(errors.TransportOpenError):
        await AsyncioTransport(dial_timeout=2.0).open("127.0.0.1", port)


async def test_non_ascii_url_is_sent_percent_encoded(config: TunnelConfig) -> None:
    d = ScriptedDuplex([b"\x05\x00", socks_ok_reply(), http_response(200, "OK", b"ok")])
    client = ProxyClient("socks5://p:1080", transport=FakeTransport(d), config=config)
    resp = await client.fetch("http://h.example/推送?q=中文")
    assert resp.ok
    assert b"GET /%E6%8E%A8%E9%80%81?q=%E4%B8%AD%E6%96%87 HTTP/1.1\r\n" in d.written


async def test_injected_header_is_refused_before_dialing(config: TunnelConfig) -> None:
    transport = FakeTransport()
    client = ProxyClient("socks5://p:1080", transport=transport, config=config)
    with pytest.raises(errors.MalformedRequest):
        await client.fetch("http://h.example/", headers=[("X-A", "v\r\nX-Injected: 1")])
    assert transport.opened == []


async def test_non_latin1_header_value_is_a_tunnel_error(config: TunnelConfig) -> None:
    transport = FakeTransport()
    client = ProxyClient("socks5://p:1080", transport=transport, config=config)
    with pytest.raises(errors.TunnelError):
        await client.fetch("http://h.example/", headers={"X-Title": "推送"})
    assert transport.opened == []
