"""
OAuth2 Token Manager
--------------------
Fetches and caches bearer tokens for machine-to-machine OAuth2.

Supported grants: client_credentials, refresh_token.
Tokens are cached per (client_id, token_url, scope) and refreshed
shortly before they expire. Fetch failures raise TokenFetchError and
are never retried here.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
import asyncio
import hashlib
import logging
import time

import httpx

from core.errors import TokenFetchError, ValidationError

SUPPORTED_GRANTS = ("client_credentials", "refresh_token")


@dataclass(frozen=True)
class OAuth2Config:
    """Client credentials for one OAuth2 token endpoint (immutable)."""
    client_id: str
    client_secret: str = field(repr=False)
    token_url: str
    scope: Optional[str] = None
    grant_type: str = "client_credentials"
    refresh_token: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.grant_type not in SUPPORTED_GRANTS:
            raise ValidationError(
                f"Unsupported OAuth2 grant type: {self.grant_type}",
                details={"supported": list(SUPPORTED_GRANTS)},
            )
        if self.grant_type == "refresh_token" and not self.refresh_token:
            raise ValidationError("refresh_token grant requires a refresh_token")

    @property
    def cache_key(self) -> str:
        raw = f"{self.client_id}:{self.token_url}:{self.scope or ''}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class TokenRecord:
    """Mutable token state for one credential."""
    access_token: str
    expires_at: float
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    refresh_margin: float = 0.0  # Seconds before expiry the token stops being reused


class OAuth2TokenManager:
    """
    Token cache shared by every request of a client.

    Concurrent callers needing the same token wait on one fetch.
    """

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        refresh_margin: float = 30.0,
        request_timeout: float = 30.0,
    ):
        self._http = http
        self._owns_http = http is None
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._request_timeout = request_timeout
        self._tokens: Dict[str, TokenRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logger = logging.getLogger("apiclient.oauth2")

    def _is_valid(self, record: Optional[TokenRecord]) -> bool:
        if record is None:
            return False
        return self._clock() < record.expires_at - record.refresh_margin

    def _get_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_access_token(self, config: OAuth2Config) -> str:
        """Return a valid access token, fetching a new one if needed."""
        key = config.cache_key
        record = self._tokens.get(key)
        if self._is_valid(record):
            return record.access_token

        async with self._get_lock(key):
            # Another caller may have refreshed while we waited
            record = self._tokens.get(key)
            if self._is_valid(record):
                return record.access_token

            refresh_token = record.refresh_token if record else None
            record = await self._request_token(config, refresh_token or config.refresh_token)
            self._tokens[key] = record
            return record.access_token

    def cached_token(self, config: OAuth2Config) -> Optional[TokenRecord]:
        return self._tokens.get(config.cache_key)

    def invalidate(self, config: OAuth2Config) -> None:
        """Forget the cached access token but keep its refresh token."""
        record = self._tokens.get(config.cache_key)
        if record is not None:
            record.expires_at = 0.0

    async def _request_token(self, config: OAuth2Config, refresh_token: Optional[str]) -> TokenRecord:
        form = {
            "grant_type": config.grant_type,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        if config.scope:
            form["scope"] = config.scope
        if config.grant_type == "refresh_token" and refresh_token:
            form["refresh_token"] = refresh_token

        self._logger.info(f"Requesting OAuth2 token ({config.grant_type}) from {config.token_url}")

        try:
            response = await self._client().post(
                config.token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self._request_timeout,
            )
        except httpx.HTTPError as e:
            raise TokenFetchError(f"OAuth2 token request failed: {e}") from e

        if not response.is_success:
            raise TokenFetchError(
                f"OAuth2 token request failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )

        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise TokenFetchError("OAuth2 token response is missing access_token") from e

        return TokenRecord(
            access_token=access_token,
            expires_at=self._clock() + expires_in,
            refresh_token=payload.get("refresh_token") or refresh_token,
            token_type=payload.get("token_type", "Bearer"),
            # Short-lived tokens: the margin never exceeds half the lifetime
            refresh_margin=min(self._refresh_margin, expires_in / 2),
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
