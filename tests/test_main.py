"""Command line entry point."""

import os
from typing import Any, Dict, List

import pytest

from pushtunnel import errors, main as cli
from pushtunnel.framer import TunnelResponse


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch):
    for key in [k for k in os.environ if k.startswith("PUSHTUNNEL_")]:
        monkeypatch.delenv(key)
    monkeypatch.setattr(cli, "colorama_init", lambda **kw: None)
    yield
    for key in [k for k in os.environ if k.startswith("PUSHTUNNEL_")]:
        del os.environ[key]


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> List[Dict[str, Any]]:
    seen: List[Dict[str, Any]] = []

    async def fake_fetch(proxy_url, url, **kwargs):
        seen.append({"proxy": proxy_url, "url": url, **kwargs})
        status = int(kwargs["headers"][0][1]) if kwargs["headers"] and kwargs["headers"][0][0] == "X-Want" else 200
        return TunnelResponse(status, "OK" if status == 200 else "Nope", [("Content-Type", "text/plain")], b"hello")

    monkeypatch.setattr(cli, "fetch_via_proxy", fake_fetch)
    return seen


def test_success_prints_body(calls, capsys: pytest.CaptureFixture) -> None:
    rc = cli.main(["https://qyapi.weixin.qq.com/cgi-bin/gettoken", "--proxy", "socks5://p:1080"])
    out, err = capsys.readouterr()
    assert rc == cli.EXIT_OK
    assert out == "hello\n"
    assert "200 OK" in err
    assert calls[0]["proxy"] == "socks5://p:1080"
    assert calls[0]["method"] == "GET"
    assert calls[0]["body"] is None
    assert calls[0]["default_scheme"] == "http"


def test_non_2xx_exit_code(calls, capsys: pytest.CaptureFixture) -> None:
    rc = cli.main(["https://h.example/", "--proxy", "gw:3128", "-H", "X-Want: 503"])
    assert rc == cli.EXIT_HTTP_ERROR
    assert "503 Nope" in capsys.readouterr().err


def test_json_body_and_socks_default(calls) -> None:
    rc = cli.main(["https://h.example/send", "--proxy", "p:1080", "--socks", "-X", "POST", "-d", '{"a":1}', "--json"])
    assert rc == cli.EXIT_OK
    call = calls[0]
    assert call["method"] == "POST"
    assert call["body"] == b'{"a":1}'
    assert ("Content-Type", "application/json") in call["headers"]
    assert call["default_scheme"] == "socks5"


def test_body_from_file(calls, tmp_path) -> None:
    payload = tmp_path / "msg.json"
    payload.write_bytes(b'{"msgtype":"text"}')
    cli.main(["https://h.example/", "--proxy", "p:1080", "-d", f"@{payload}"])
    assert calls[0]["body"] == b'{"msgtype":"text"}'


def test_flags_land_in_config(calls) -> None:
    cli.main(["https://h.example/", "--proxy", "p:1080", "--timeout", "7", "--insecure", "--diag"])
    cfg = calls[0]["config"]
    assert cfg.io_timeout == 7.0
    assert cfg.verify_tls is False
    assert cfg.diag is True


def test_proxy_from_environment(calls, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PUSHTUNNEL_PROXY", "socks5://env.proxy:1080")
    assert cli.main(["https://h.example/"]) == cli.EXIT_OK
    assert calls[0]["proxy"] == "socks5://env.proxy:1080"


def test_missing_proxy(calls, capsys: pytest.CaptureFixture) -> None:
    assert cli.main(["https://h.example/"]) == cli.EXIT_TUNNEL_ERROR
    assert "PUSHTUNNEL_PROXY" in capsys.readouterr().err
    assert calls == []


def test_bad_header(calls, capsys: pytest.CaptureFixture) -> None:
    assert cli.main(["https://h.example/", "--proxy", "p:1080", "-H", "nocolon"]) == cli.EXIT_TUNNEL_ERROR
    assert "bad header" in capsys.readouterr().err
    assert calls == []


@pytest.mark.parametrize(
    "exc, needle",
    [
        (errors.InvalidPort("port '0' out of range"), "bad proxy or URL"),
        (errors.HostUnreachable("qyapi.weixin.qq.com:443"), "socks5 failed"),
        (errors.ProxyConnectRejected("HTTP/1.1 407 Proxy Authentication Required"), "connect failed"),
    ],
)
def test_tunnel_errors_exit_2(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture, exc, needle) -> None:
    async def failing(*args, **kwargs):
        raise exc

    monkeypatch.setattr(cli, "fetch_via_proxy", failing)
    assert cli.main(["https://h.example/", "--proxy", "p:1080"]) == cli.EXIT_TUNNEL_ERROR
    assert needle in capsys.readouterr().err
