from __future__ import annotations

import asyncio
import base64
import os
import sys
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp
from loguru import logger

from .errors import RelayError
from .framer import TunnelResponse

# Logging setup (kept simple)
_LOG_LEVEL = os.getenv("PUSHTUNNEL_RELAY_LOG_LEVEL", os.getenv("PUSHTUNNEL_LOG_LEVEL", "INFO"))
try:
    logger.remove()
except ValueError:
    pass
logger.add(sys.stderr, level=_LOG_LEVEL, backtrace=False, diagnose=False)

RELAY_SCHEME = "relay://"

HeadersLike = Union[Mapping[str, str], List[Tuple[str, str]], None]


def is_relay(proxy_url: Optional[str]) -> bool:
    return bool(proxy_url) and proxy_url.strip().lower().startswith(RELAY_SCHEME)


def relay_upstream(proxy_url: str) -> Optional[str]:
    """relay://<proxy-url> -> <proxy-url>; bare relay:// -> None (relay picks its default)."""
    rest = proxy_url.strip()[len(RELAY_SCHEME):].strip()
    return rest or None


def media_part(
    content: bytes,
    filename: str = "upload.bin",
    content_type: str = "application/octet-stream",
    field_name: str = "media",
) -> Dict[str, str]:
    return {
        "fieldName": field_name,
        "filename": filename,
        "contentType": content_type,
        "contentBase64": base64.b64encode(content).decode("ascii"),
    }


class RelayClient:
    """
    Plain HTTPS POST to a relay service that performs the proxied request.

    The relay answers with the upstream status code and the upstream body
    (JSON re-encoded, or text), so the result maps onto a TunnelResponse.
    """

    def __init__(self, endpoint: str, timeout: float = 30.0, session: Optional[aiohttp.ClientSession] = None) -> None:
        if not endpoint:
            raise RelayError("relay endpoint is not configured (PUSHTUNNEL_RELAY_URL)")
        self.endpoint = endpoint
        self.timeout = float(timeout)
        self._session = session

    @staticmethod
    def build_payload(
        target_url: str,
        method: str = "GET",
        headers: HeadersLike = None,
        body: Union[str, bytes, None] = None,
        proxy_url: Optional[str] = None,
        multipart: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        hdrs = dict(headers.items() if isinstance(headers, Mapping) else (headers or []))
        payload: Dict[str, Any] = {
            "targetUrl": target_url,
            "method": method.upper(),
            "headers": hdrs,
        }
        if proxy_url:
            payload["proxyUrl"] = proxy_url
        if multipart is not None:
            payload["multipart"] = multipart
        elif isinstance(body, bytes):
            try:
                payload["body"] = body.decode("utf-8")
            except UnicodeDecodeError as e:
                raise RelayError(f"relay body must be UTF-8 text; send binary content as multipart ({e})") from e
        elif body is not None:
            payload["body"] = body
        return payload

    async def request(
        self,
        target_url: str,
        method: str = "GET",
        headers: HeadersLike = None,
        body: Union[str, bytes, None] = None,
        proxy_url: Optional[str] = None,
        multipart: Optional[Dict[str, str]] = None,
    ) -> TunnelResponse:
        payload = self.build_payload(target_url, method, headers, body, proxy_url, multipart)
        logger.debug("relay: {} {} via {}", payload["method"], target_url, self.endpoint)
        try:
            if self._session is not None:
                return await self._post(self._session, payload)
            timeout_cfg = aiohttp.ClientTimeout(total=float(max(0.1, self.timeout)))
            async with aiohttp.ClientSession(timeout=timeout_cfg, trust_env=False) as session:
                return await self._post(session, payload)
        except asyncio.TimeoutError as e:
            raise RelayError(f"relay {self.endpoint} timed out after {self.timeout:.1f}s") from e
        except aiohttp.ClientError as e:
            raise RelayError(f"relay {self.endpoint} failed: {e.__class__.__name__}: {e}") from e

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> TunnelResponse:
        async with session.post(self.endpoint, json=payload) as resp:
            raw = await resp.read()
            if resp.status >= 500:
                logger.warning("relay: {} answered {} for {}", self.endpoint, resp.status, payload["targetUrl"])
            return TunnelResponse(
                status=resp.status,
                status_text=resp.reason or "",
                headers=list(resp.headers.items()),
                body=raw,
            )
