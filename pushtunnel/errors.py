from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .framer import TunnelResponse

__all__ = [
    "TunnelError",
    "ParseError",
    "MalformedCredentials",
    "InvalidPort",
    "UnsupportedScheme",
    "MalformedAddress",
    "TransportError",
    "TransportOpenError",
    "ProxyTimeout",
    "ProxyConnectionClosed",
    "StreamBusy",
    "SocksNegotiationError",
    "UnsupportedSocksVersion",
    "AllMethodsRejected",
    "UnsupportedAuthMethod",
    "AuthRequiredButMissingCredentials",
    "AuthenticationFailed",
    "SocksConnectFailed",
    "GeneralSocksFailure",
    "ConnectionNotAllowed",
    "NetworkUnreachable",
    "HostUnreachable",
    "ConnectionRefused",
    "TtlExpired",
    "CommandNotSupported",
    "AddressTypeNotSupported",
    "socks_reply_error",
    "ProxyHandshakeError",
    "ProxyConnectRejected",
    "TlsUpgradeError",
    "TlsUpgradeUnsupported",
    "TlsHandshakeFailed",
    "MalformedResponse",
    "MalformedRequest",
    "RelayError",
    "ApplicationError",
    "WecomError",
]


class TunnelError(Exception):
    """
    Base of every failure raised by pushtunnel.

    `phase` names the stage that failed (parse, transport, socks5, connect,
    tls, framing, relay, application, wecom) and prefixes the message.
    """

    phase = "tunnel"

    def __init__(self, message: str = "") -> None:
        self.detail = message
        super().__init__(f"[{self.phase}] {message}" if message else f"[{self.phase}]")


# Parse

class ParseError(TunnelError):
    phase = "parse"


class MalformedCredentials(ParseError):
    pass


class InvalidPort(ParseError):
    pass


class UnsupportedScheme(ParseError):
    pass


class MalformedAddress(ParseError):
    pass


# Transport

class TransportError(TunnelError):
    phase = "transport"


class TransportOpenError(TransportError):
    pass


class ProxyTimeout(TransportError):
    pass


class ProxyConnectionClosed(TransportError):
    pass


class StreamBusy(TransportError):
    pass


# SOCKS5

class SocksNegotiationError(TunnelError):
    phase = "socks5"


class UnsupportedSocksVersion(SocksNegotiationError):
    pass


class AllMethodsRejected(SocksNegotiationError):
    pass


class UnsupportedAuthMethod(SocksNegotiationError):
    pass


class AuthRequiredButMissingCredentials(SocksNegotiationError):
    pass


class AuthenticationFailed(SocksNegotiationError):
    pass


class SocksConnectFailed(SocksNegotiationError):
    reply = -1
    reason = "unassigned reply code"

    def __init__(self, target: str = "", reply: Optional[int] = None) -> None:
        if reply is not None and type(self) is SocksConnectFailed:
            self.reply = reply
            self.reason = f"unassigned reply code {reply}"
        self.target = target
        msg = f"CONNECT {target} failed: {self.reason}" if target else f"CONNECT failed: {self.reason}"
        super().__init__(msg)


class GeneralSocksFailure(SocksConnectFailed):
    reply = 0x01
    reason = "general SOCKS server failure"


class ConnectionNotAllowed(SocksConnectFailed):
    reply = 0x02
    reason = "connection not allowed by ruleset"


class NetworkUnreachable(SocksConnectFailed):
    reply = 0x03
    reason = "network unreachable"


class HostUnreachable(SocksConnectFailed):
    reply = 0x04
    reason = "host unreachable"


class ConnectionRefused(SocksConnectFailed):
    reply = 0x05
    reason = "connection refused"


class TtlExpired(SocksConnectFailed):
    reply = 0x06
    reason = "TTL expired"


class CommandNotSupported(SocksConnectFailed):
    reply = 0x07
    reason = "command not supported"


class AddressTypeNotSupported(SocksConnectFailed):
    reply = 0x08
    reason = "address type not supported"


_SOCKS_REPLIES = {
    cls.reply: cls
    for cls in (
        GeneralSocksFailure,
        ConnectionNotAllowed,
        NetworkUnreachable,
        HostUnreachable,
        ConnectionRefused,
        TtlExpired,
        CommandNotSupported,
        AddressTypeNotSupported,
    )
}


def socks_reply_error(reply: int, target: str = "") -> SocksConnectFailed:
    cls = _SOCKS_REPLIES.get(reply)
    if cls is None:
        return SocksConnectFailed(target, reply)
    return cls(target)


# HTTP CONNECT

class ProxyHandshakeError(TunnelError):
    phase = "connect"


class ProxyConnectRejected(ProxyHandshakeError):
    def __init__(self, status_line: str) -> None:
        self.status_line = status_line
        super().__init__(f"proxy rejected CONNECT: {status_line}")


# TLS

class TlsUpgradeError(TunnelError):
    phase = "tls"


class TlsUpgradeUnsupported(TlsUpgradeError):
    pass


class TlsHandshakeFailed(TlsUpgradeError):
    pass


# Framing / outer layers

class MalformedResponse(TunnelError):
    phase = "framing"


class MalformedRequest(TunnelError):
    phase = "framing"


class RelayError(TunnelError):
    phase = "relay"


class ApplicationError(TunnelError):
    phase = "application"

    def __init__(self, response: "TunnelResponse") -> None:
        self.response = response
        super().__init__(f"HTTP {response.status} {response.status_text}".rstrip())


class WecomError(TunnelError):
    phase = "wecom"

    def __init__(self, message: str, errcode: Optional[int] = None) -> None:
        self.errcode = errcode
        super().__init__(message if errcode is None else f"{message} (errcode={errcode})")
