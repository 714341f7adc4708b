from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from concierge_gateway import config

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECS = 1800
REFRESH_MARGIN_SECS = 60


def _now() -> float:
    return time.monotonic()


class TokenExchangeError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True, slots=True)
class AccessToken:
    access_token: str
    instance_url: Optional[str]
    expires_at: float

    def fresh(self, now: float) -> bool:
        return now < self.expires_at - REFRESH_MARGIN_SECS


class ClientCredentialsAuth:
    """OAuth client-credentials exchange with an in-process token cache."""

    def __init__(
        self,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._token = None

    async def get_token(self, client: httpx.AsyncClient) -> AccessToken:
        token = self._token
        if token is not None and token.fresh(_now()):
            return token
        async with self._lock:
            token = self._token
            if token is not None and token.fresh(_now()):
                return token
            self._token = await self._exchange(client)
            return self._token

    async def _exchange(self, client: httpx.AsyncClient) -> AccessToken:
        token_url = self._token_url or config.oauth_token_url()
        client_id = self._client_id or config.get_str_env("AGENT_OAUTH_CLIENT_ID")
        client_secret = self._client_secret or config.get_str_env("AGENT_OAUTH_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise TokenExchangeError("AGENT_OAUTH_CLIENT_ID / AGENT_OAUTH_CLIENT_SECRET are empty")

        r = await client.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Accept": "application/json"},
        )
        if r.status_code >= 400:
            logger.error("Client credentials exchange failed status=%s body=%r", r.status_code, r.text[:200])
            raise TokenExchangeError(f"client credentials exchange failed: {r.status_code}", status=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise TokenExchangeError("token endpoint returned invalid JSON") from e

        access_token = str(data.get("access_token") or "").strip()
        if not access_token:
            raise TokenExchangeError("token endpoint returned no access_token")

        try:
            ttl = float(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECS)
        except (TypeError, ValueError):
            ttl = DEFAULT_TOKEN_TTL_SECS

        instance_url = data.get("instance_url") or data.get("api_instance_url")
        logger.info("Obtained client credentials token (ttl=%ss)", int(ttl))
        return AccessToken(
            access_token=access_token,
            instance_url=str(instance_url).rstrip("/") if instance_url else None,
            expires_at=_now() + ttl,
        )
