"""
Access tokens for the cloud speech backend.

Tokens are minted by a small backend endpoint (service-account keys never
reach the client) and cached until five minutes before they expire.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from core.errors import CredentialsUnavailable

logger = logging.getLogger(__name__)

EXPIRY_MARGIN_S = 300


@dataclass
class _CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """Token cache keyed by endpoint, with an expiry margin."""

    def __init__(self, margin_s: float = EXPIRY_MARGIN_S, clock: Callable[[], float] = time.time):
        self.margin_s = margin_s
        self.clock = clock
        self._cache: Dict[str, _CachedToken] = {}

    def set(self, key: str, token: str, expires_in: float = 3600) -> None:
        self._cache[key] = _CachedToken(token, self.clock() + expires_in - self.margin_s)

    def get(self, key: str) -> Optional[str]:
        cached = self._cache.get(key)
        if cached is None:
            return None
        if self.clock() >= cached.expires_at:
            del self._cache[key]
            return None
        return cached.token

    def clear(self) -> None:
        self._cache.clear()


class TokenProvider:
    """Fetches access tokens from the token endpoint (POST {} -> {access_token, expires_in})."""

    def __init__(self, endpoint: str, http_client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[TokenCache] = None, timeout: float = 10.0):
        self.endpoint = endpoint
        self.cache = cache or TokenCache()
        self.timeout = timeout
        self._client = http_client
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def get_token(self) -> str:
        token = self.cache.get(self.endpoint)
        if token:
            return token

        async with self._lock:
            token = self.cache.get(self.endpoint)
            if token:
                return token

            client = await self._get_client()
            try:
                response = await client.post(self.endpoint, json={})
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Token request failed: {e}")
                raise CredentialsUnavailable(f"Failed to get access token: {e}") from e

            token = data.get("access_token")
            if not token:
                raise CredentialsUnavailable("No access token received from backend")

            self.cache.set(self.endpoint, token, float(data.get("expires_in", 3600)))
            logger.debug("Fetched new access token")
            return token

    def invalidate(self) -> None:
        self.cache.clear()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
