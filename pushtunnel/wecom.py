from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import aiohttp
from loguru import logger

from .client import ProxyClient
from .config import TunnelConfig, load_config_from_env
from .errors import WecomError
from .framer import TunnelResponse
from .relay import media_part
from .transport import Transport

WECOM_API = "https://qyapi.weixin.qq.com/cgi-bin"
MEDIA_TYPES = ("image", "voice", "video", "file")


def text_message(
    content: str,
    touser: Optional[str] = None,
    toparty: Optional[str] = None,
    totag: Optional[str] = None,
    safe: bool = False,
) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"msgtype": "text", "text": {"content": content}}
    if touser:
        msg["touser"] = touser
    if toparty:
        msg["toparty"] = toparty
    if totag:
        msg["totag"] = totag
    if safe:
        msg["safe"] = 1
    return msg


def markdown_message(
    content: str,
    touser: Optional[str] = None,
    toparty: Optional[str] = None,
    totag: Optional[str] = None,
) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"msgtype": "markdown", "markdown": {"content": content}}
    if touser:
        msg["touser"] = touser
    if toparty:
        msg["toparty"] = toparty
    if totag:
        msg["totag"] = totag
    return msg


def encode_multipart(
    content: bytes,
    filename: str,
    content_type: str = "application/octet-stream",
    field_name: str = "media",
) -> Tuple[bytes, str]:
    boundary = f"----pushtunnelBoundary{time.time_ns():x}"
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
        f"Content-Type: {content_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + content + tail, f"multipart/form-data; boundary={boundary}"


class WecomAppChannel:
    """
    WeCom (企业微信) application messages: access token, send, media upload.

    With `proxy` set every call goes through ProxyClient (SOCKS5 or HTTP
    CONNECT, or relay://), so the gateway sees the proxy's egress IP.
    Without one, aiohttp talks to the gateway directly.
    """

    def __init__(
        self,
        corp_id: str,
        agent_id: str,
        secret: str,
        proxy: Optional[str] = None,
        config: Optional[TunnelConfig] = None,
        transport: Optional[Transport] = None,
        api_base: str = WECOM_API,
    ) -> None:
        if not corp_id or not agent_id or not secret:
            raise WecomError("corp_id, agent_id and secret are all required")
        self.corp_id = corp_id
        self.agent_id = agent_id
        self.secret = secret
        self.api_base = api_base.rstrip("/")
        self.config = config or load_config_from_env()
        self.client: Optional[ProxyClient] = None
        if proxy:
            self.client = ProxyClient(proxy, transport=transport, config=self.config)

    async def _call(
        self,
        url: str,
        method: str = "GET",
        payload: Optional[Dict[str, Any]] = None,
        what: str = "request",
    ) -> Dict[str, Any]:
        if self.client is not None:
            resp = await self.client.fetch(url, method=method, json=payload)
            return self._decode(resp, what)
        timeout_cfg = aiohttp.ClientTimeout(total=float(max(0.1, self.config.io_timeout)))
        try:
            async with aiohttp.ClientSession(timeout=timeout_cfg) as session:
                async with session.request(method, url, json=payload) as r:
                    raw = await r.read()
                    return self._decode(TunnelResponse(status=r.status, status_text=r.reason or "", body=raw), what)
        except asyncio.TimeoutError as e:
            raise WecomError(f"{what} timed out after {self.config.io_timeout:.1f}s") from e
        except aiohttp.ClientError as e:
            raise WecomError(f"{what} failed: {e.__class__.__name__}: {e}") from e

    @staticmethod
    def _decode(resp: TunnelResponse, what: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise WecomError(f"{what}: HTTP {resp.status} with non-JSON body {resp.text()[:200]!r}") from e
        if not isinstance(data, dict):
            raise WecomError(f"{what}: unexpected payload {data!r}")
        return data

    async def get_access_token(self) -> str:
        url = f"{self.api_base}/gettoken?corpid={quote(self.corp_id, safe='')}&corpsecret={quote(self.secret, safe='')}"
        data = await self._call(url, what="gettoken")
        token = data.get("access_token")
        if not token:
            raise WecomError(f"access token request failed: {data.get('errmsg') or 'unknown error'}", data.get("errcode"))
        logger.debug("wecom: access token obtained for corp {} via proxy={}", self.corp_id, self.client is not None)
        return str(token)

    async def send_message(self, message: Dict[str, Any], access_token: Optional[str] = None) -> Dict[str, Any]:
        token = access_token or await self.get_access_token()
        body = dict(message)
        body["agentid"] = int(self.agent_id)
        body["touser"] = message.get("touser") or "@all"
        url = f"{self.api_base}/message/send?access_token={quote(token, safe='')}"
        data = await self._call(url, method="POST", payload=body, what="message/send")
        if data.get("errcode", 0) != 0:
            raise WecomError(f"message push failed: {data.get('errmsg')}", data.get("errcode"))
        logger.info("wecom: {} message sent to {}", body.get("msgtype", "?"), body["touser"])
        return data

    async def upload_media(
        self,
        content: bytes,
        filename: str,
        media_type: str = "file",
        content_type: str = "application/octet-stream",
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        if media_type not in MEDIA_TYPES:
            raise WecomError(f"unsupported media type {media_type!r}")
        token = access_token or await self.get_access_token()
        url = f"{self.api_base}/media/upload?access_token={quote(token, safe='')}&type={media_type}"

        if self.client is not None and self.client.relay is not None:
            resp = await self.client.relay.request(
                url,
                "POST",
                multipart=media_part(content, filename, content_type),
                proxy_url=self.client.relay_upstream,
            )
            data = self._decode(resp, "media/upload")
        elif self.client is not None:
            body, ctype = encode_multipart(content, filename, content_type)
            resp = await self.client.fetch(url, method="POST", headers=[("Content-Type", ctype)], body=body)
            data = self._decode(resp, "media/upload")
        else:
            form = aiohttp.FormData()
            form.add_field("media", content, filename=filename, content_type=content_type)
            timeout_cfg = aiohttp.ClientTimeout(total=float(max(0.1, self.config.io_timeout)))
            try:
                async with aiohttp.ClientSession(timeout=timeout_cfg) as session:
                    async with session.post(url, data=form) as r:
                        data = self._decode(
                            TunnelResponse(status=r.status, status_text=r.reason or "", body=await r.read()),
                            "media/upload",
                        )
            except asyncio.TimeoutError as e:
                raise WecomError(f"media/upload timed out after {self.config.io_timeout:.1f}s") from e
            except aiohttp.ClientError as e:
                raise WecomError(f"media/upload failed: {e.__class__.__name__}: {e}") from e

        if data.get("errcode", 0) != 0 or not data.get("media_id"):
            raise WecomError(f"media upload failed: {data.get('errmsg') or 'unknown error'}", data.get("errcode"))
        return {k: data.get(k) for k in ("media_id", "type", "created_at")}
