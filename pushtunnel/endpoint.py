from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote, unquote, urlsplit

from .errors import InvalidPort, MalformedAddress, MalformedCredentials, UnsupportedScheme

__all__ = [
    "ProxyDescriptor",
    "TunnelTarget",
    "parse_proxy",
    "parse_target_url",
    "DEFAULT_PORTS",
]

# Scheme prefix -> normalized scheme. An https:// proxy URL still names a
# plaintext CONNECT proxy; TLS is only ever negotiated with the target.
_SCHEME_PREFIXES = (
    ("socks5://", "socks5"),
    ("socks://", "socks5"),
    ("http://", "http"),
    ("https://", "http"),
)

DEFAULT_PORTS = {"http": 80, "socks5": 1080}


@dataclass(frozen=True)
class ProxyDescriptor:
    scheme: str
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return self.username is not None and self.password is not None

    def auth_header_value(self) -> Optional[str]:
        if not self.has_credentials:
            return None
        creds = f"{self.username}:{self.password}".encode("utf-8")
        token = base64.b64encode(creds).decode("ascii")
        return f"Basic {token}"

    def _host_label(self) -> str:
        return f"[{self.host}]" if ":" in self.host else self.host

    def to_url(self) -> str:
        auth = ""
        if self.has_credentials:
            auth = f"{quote(self.username or '', safe='')}:{quote(self.password or '', safe='')}@"
        return f"{self.scheme}://{auth}{self._host_label()}:{self.port}"

    def redacted(self) -> str:
        # Safe for logs: never render the password
        auth = f"{self.username}:***@" if self.has_credentials else ""
        return f"{self.scheme}://{auth}{self._host_label()}:{self.port}"


@dataclass(frozen=True)
class TunnelTarget:
    host: str
    port: int

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


def _strip_scheme(s: str, default_scheme: str) -> Tuple[str, str]:
    low = s.lower()
    for prefix, scheme in _SCHEME_PREFIXES:
        if low.startswith(prefix):
            return scheme, s[len(prefix):]
    if "://" in s:
        raise UnsupportedScheme(f"unsupported proxy scheme {s.split('://', 1)[0]!r}")
    return default_scheme, s


def _parse_port(port_s: str) -> int:
    port_s = port_s.strip()
    if not port_s.isdigit():
        raise InvalidPort(f"invalid port {port_s!r}")
    port = int(port_s)
    if port < 1 or port > 65535:
        raise InvalidPort(f"port out of range: {port}")
    return port


def _split_host_port(hp: str, default_port: int) -> Tuple[str, int]:
    if hp.startswith("["):
        end = hp.find("]")
        if end == -1:
            raise MalformedAddress(f"unterminated IPv6 bracket in {hp!r}")
        host = hp[1:end]
        rest = hp[end + 1:]
        if not rest:
            port = default_port
        elif rest.startswith(":"):
            port = _parse_port(rest[1:])
        else:
            raise MalformedAddress(f"unexpected text after IPv6 address: {rest!r}")
    elif ":" in hp:
        host, port_s = hp.rsplit(":", 1)
        if ":" in host:
            raise MalformedAddress(f"IPv6 hosts must be bracketed: {hp!r}")
        port = _parse_port(port_s)
    else:
        host, port = hp, default_port
    if not host:
        raise MalformedAddress(f"missing host in {hp!r}")
    return host, port


def parse_proxy(raw: str, default_scheme: str = "http") -> ProxyDescriptor:
    """
    Parse a proxy connection string into a ProxyDescriptor.

    Accepted forms: socks5://[user:pass@]host:port, socks://..., http://...,
    https://..., bare [user:pass@]host[:port] and [v6]:port. Credentials are
    split at the last '@' and percent-decoded. Missing ports default to 80
    (http) or 1080 (socks5).
    """
    if default_scheme not in DEFAULT_PORTS:
        raise UnsupportedScheme(f"unsupported default scheme {default_scheme!r}")
    s = (raw or "").strip()
    if not s:
        raise MalformedAddress("empty proxy string")
    scheme, rest = _strip_scheme(s, default_scheme)
    rest = rest.rstrip("/")

    username: Optional[str] = None
    password: Optional[str] = None
    at = rest.rfind("@")
    if at != -1:
        auth, rest = rest[:at], rest[at + 1:]
        if auth.count(":") != 1:
            raise MalformedCredentials("credentials must be in user:pass form")
        user_s, pass_s = auth.split(":", 1)
        if not user_s or not pass_s:
            raise MalformedCredentials("username and password must both be present")
        username, password = unquote(user_s), unquote(pass_s)

    host, port = _split_host_port(rest, DEFAULT_PORTS[scheme])
    return ProxyDescriptor(scheme=scheme, host=host, port=port, username=username, password=password)


_PATH_SAFE = "/%:@!$&'()*+,;=~"
_QUERY_SAFE = "/?&=%:@!$'()*+,;~"


def parse_target_url(url: str) -> Tuple[TunnelTarget, str, bool]:
    """Split an http(s) URL into (target, request path, secure)."""
    u = urlsplit((url or "").strip())
    scheme = (u.scheme or "").lower()
    if scheme not in ("http", "https"):
        raise UnsupportedScheme(f"unsupported target scheme {scheme!r}")
    host = u.hostname or ""
    if not host:
        raise MalformedAddress(f"missing host in {url!r}")
    try:
        port = u.port or (443 if scheme == "https" else 80)
    except ValueError as e:
        raise InvalidPort(str(e)) from e
    # Non-ASCII path or query goes out percent-encoded; existing escapes are kept
    path = quote(u.path or "/", safe=_PATH_SAFE)
    if u.query:
        path = f"{path}?{quote(u.query, safe=_QUERY_SAFE)}"
    return TunnelTarget(host=host, port=int(port)), path, scheme == "https"
