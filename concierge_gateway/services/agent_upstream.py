"""Upstream selection for the agent relay.

Two API families serve the same operations: the direct agent API and the
platform services API. The agent family is tried first unless it is
disabled; a 404 from it is retried against the platform family, except when
an agent base URL was configured explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

import httpx

from concierge_gateway import config

from .agent_auth import AccessToken, ClientCredentialsAuth

logger = logging.getLogger(__name__)

AGENT_FAMILY = "agent"
PLATFORM_FAMILY = "platform"


class UpstreamUnavailable(RuntimeError):
    """Neither upstream family could be reached."""


def agent_path(*segments: str) -> str:
    return "/" + "/".join(quote(s, safe=":") for s in segments)


def platform_path(assistant_id: str, *segments: str) -> str:
    base = f"/services/data/{config.platform_api_version()}/agentforce/assistants/{quote(assistant_id, safe='')}"
    if not segments:
        return base
    return base + "/" + "/".join(quote(s, safe=":") for s in segments)


@dataclass
class UpstreamRequest:
    agent_path: str
    platform_path: str
    method: str = "POST"
    json: Optional[object] = None
    headers: Dict[str, str] = field(default_factory=dict)
    streaming: bool = False


class UpstreamResponse:
    """An open upstream response plus the client that owns its connection."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient, family: str) -> None:
        self._response = response
        self._client = client
        self.family = family

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def url(self) -> str:
        return str(self._response.request.url)

    async def aread(self) -> bytes:
        return await self._response.aread()

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class AgentUpstream:
    def __init__(
        self,
        auth: Optional[ClientCredentialsAuth] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._auth = auth or ClientCredentialsAuth()
        self._transport = transport

    def _new_client(self, streaming: bool) -> httpx.AsyncClient:
        base = config.upstream_timeout()
        read = config.stream_idle_timeout() if streaming else base
        return httpx.AsyncClient(timeout=httpx.Timeout(base, read=read), transport=self._transport)

    async def fetch(self, req: UpstreamRequest) -> UpstreamResponse:
        """Send ``req`` to whichever family serves it; the body is left unread."""
        client = self._new_client(req.streaming)
        try:
            return await self._fetch(client, req)
        except BaseException:
            await client.aclose()
            raise

    async def _fetch(self, client: httpx.AsyncClient, req: UpstreamRequest) -> UpstreamResponse:
        agent_response: Optional[httpx.Response] = None
        explicit_base = config.configured_agent_base_url()

        if config.should_use_agent_family():
            token = await self._auth.get_token(client)
            url = f"{config.agent_base_url()}{req.agent_path}"
            agent_response = await self._send(client, url, req, token)
            if explicit_base or agent_response.status_code != 404:
                return UpstreamResponse(agent_response, client, AGENT_FAMILY)
            logger.warning("Agent API returned 404 for %s %s; retrying platform services", req.method, req.agent_path)

        try:
            token = await self._auth.get_token(client)
            base = config.platform_instance_url() or (token.instance_url or "")
            if not base:
                raise UpstreamUnavailable("no platform services instance URL is configured")
            response = await self._send(client, f"{base}{req.platform_path}", req, token)
        except (httpx.HTTPError, UpstreamUnavailable) as e:
            if agent_response is None:
                raise
            logger.error("Platform services fallback failed for %s: %s", req.platform_path, e)
            return UpstreamResponse(agent_response, client, AGENT_FAMILY)

        if agent_response is not None:
            await agent_response.aclose()
        if not req.streaming and response.status_code == 404:
            logger.warning("404 from platform services %s", req.platform_path)
        return UpstreamResponse(response, client, PLATFORM_FAMILY)

    async def _send(
        self,
        client: httpx.AsyncClient,
        url: str,
        req: UpstreamRequest,
        token: AccessToken,
    ) -> httpx.Response:
        """Send with ``token``; a 401 drops the cached token and retries once."""
        response = await self._send_once(client, url, req, token)
        if response.status_code != 401:
            return response

        logger.warning("Upstream rejected the cached token for %s %s; refreshing", req.method, url)
        await response.aclose()
        self._auth.invalidate()
        token = await self._auth.get_token(client)
        return await self._send_once(client, url, req, token)

    async def _send_once(
        self,
        client: httpx.AsyncClient,
        url: str,
        req: UpstreamRequest,
        token: AccessToken,
    ) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            **req.headers,
            "Authorization": f"Bearer {token.access_token}",
        }
        request = client.build_request(req.method, url, headers=headers, json=req.json)
        return await client.send(request, stream=True)
