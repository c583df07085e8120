from .endpoint import ProxyDescriptor, TunnelTarget, parse_proxy, parse_target_url
from .transport import AsyncioTransport, Duplex, StreamDuplex
from .framer import HttpRequest, TunnelResponse
from .config import TunnelConfig, load_config_from_env
from .client import ProxyClient, Tunnel, TunnelState, fetch_via_proxy
from .relay import RelayClient
from .wecom import WecomAppChannel, markdown_message, text_message
from .errors import TunnelError

__all__ = [
    "ProxyDescriptor",
    "TunnelTarget",
    "parse_proxy",
    "parse_target_url",
    "AsyncioTransport",
    "Duplex",
    "StreamDuplex",
    "HttpRequest",
    "TunnelResponse",
    "TunnelConfig",
    "load_config_from_env",
    "ProxyClient",
    "Tunnel",
    "TunnelState",
    "fetch_via_proxy",
    "RelayClient",
    "WecomAppChannel",
    "markdown_message",
    "text_message",
    "TunnelError",
]
