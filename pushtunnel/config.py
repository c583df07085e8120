from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .framer import DEFAULT_USER_AGENT


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() not in ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class TunnelConfig:
    # Transport
    dial_timeout: float = 10.0
    io_timeout: float = 30.0
    chunk_size: int = 65536
    # Framing limits
    max_header_bytes: int = 64 * 1024
    max_response_bytes: int = 16 * 1024 * 1024
    user_agent: str = DEFAULT_USER_AGENT
    # TLS: verification off only as an explicit diagnostic switch
    verify_tls: bool = True
    # Relay fallback (relay:// descriptors)
    relay_url: Optional[str] = None
    relay_timeout: float = 30.0
    # Diagnostics
    diag: bool = False
    log_level: str = "INFO"


def load_config_from_env() -> TunnelConfig:
    dial_timeout = float(os.environ.get("PUSHTUNNEL_DIAL_TIMEOUT", "10.0"))
    io_timeout = float(os.environ.get("PUSHTUNNEL_IO_TIMEOUT", "30.0"))
    chunk_size = int(os.environ.get("PUSHTUNNEL_CHUNK_SIZE", "65536"))
    max_header_bytes = int(os.environ.get("PUSHTUNNEL_MAX_HEADER_BYTES", str(64 * 1024)))
    max_response_bytes = int(os.environ.get("PUSHTUNNEL_MAX_RESPONSE_BYTES", str(16 * 1024 * 1024)))
    user_agent = os.environ.get("PUSHTUNNEL_USER_AGENT") or DEFAULT_USER_AGENT
    verify_tls = _env_bool("PUSHTUNNEL_VERIFY_TLS", "1")
    relay_url = os.environ.get("PUSHTUNNEL_RELAY_URL") or None
    relay_timeout = float(os.environ.get("PUSHTUNNEL_RELAY_TIMEOUT", "30.0"))

    # Diagnostics: off | on
    _diag_str = os.environ.get("PUSHTUNNEL_DIAG", "off").strip().lower()
    diag = _diag_str not in ("0", "off", "false", "no", "")
    log_level = os.environ.get("PUSHTUNNEL_LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return TunnelConfig(
        dial_timeout=dial_timeout,
        io_timeout=io_timeout,
        chunk_size=max(1, chunk_size),
        max_header_bytes=max(1, max_header_bytes),
        max_response_bytes=max(1, max_response_bytes),
        user_agent=user_agent,
        verify_tls=verify_tls,
        relay_url=relay_url,
        relay_timeout=relay_timeout,
        diag=diag,
        log_level=log_level,
    )
