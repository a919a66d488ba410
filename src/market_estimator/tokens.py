"""Login-with-Amazon access token exchange and per-identity token cache."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from . import http
from .cache import InMemoryTTLCache, KeyedLocks
from .config import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
DEFAULT_EXPIRES_IN = 3600
EXPIRY_BUFFER_SECONDS = 300
DEFAULT_IDENTITY = "default"


class CredentialsMissingError(ConfigError):
    """Raised when client id, client secret or refresh token is not configured."""


class TokenExchangeError(Exception):
    """Raised when the token endpoint rejects the exchange or returns a malformed body."""


@dataclass(frozen=True)
class LwaCredentials:
    client_id: str | None
    client_secret: str | None
    refresh_token: str | None

    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    def __repr__(self) -> str:
        return f"LwaCredentials(client_id={self.client_id!r}, client_secret=***, refresh_token=***)"


def cache_key(identity: str | None) -> str:
    return f"user:{identity}" if identity else DEFAULT_IDENTITY


class AccessTokenCache:
    """
    Exchanges a refresh token for a short-lived bearer token and caches it
    per credential identity.

    A token is reused until ``expires_in - expiry_buffer`` seconds after it
    was issued. Concurrent callers for the same identity share one exchange.
    On failure the identity's entry is evicted and the error propagates.
    """

    def __init__(
        self,
        credentials: LwaCredentials,
        *,
        token_url: str = DEFAULT_TOKEN_URL,
        expiry_buffer: float = EXPIRY_BUFFER_SECONDS,
        cache: InMemoryTTLCache[str] | None = None,
        session: requests.Session | None = None,
        timeout: float = http.DEFAULT_TIMEOUT,
    ) -> None:
        self.credentials = credentials
        self.token_url = token_url
        self.expiry_buffer = expiry_buffer
        self._cache: InMemoryTTLCache[str] = cache if cache is not None else InMemoryTTLCache()
        self._locks = KeyedLocks()
        self._session = session
        self._timeout = timeout

    def get_access_token(
        self, identity: str | None = None, refresh_token: str | None = None
    ) -> str:
        """
        Return a valid access token for ``identity``.

        ``refresh_token`` overrides the configured one (per-user OAuth
        grants). Raises CredentialsMissingError or TokenExchangeError.
        """
        refresh = refresh_token or self.credentials.refresh_token
        if not (self.credentials.client_id and self.credentials.client_secret and refresh):
            raise CredentialsMissingError("SP-API credentials not configured")

        key = cache_key(identity)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        with self._locks.hold(key):
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            try:
                token, expires_in = self._exchange(refresh)
            except Exception:
                self._cache.delete(key)
                raise
            ttl = expires_in - self.expiry_buffer
            if ttl > 0:
                self._cache.set(key, token, ttl)
            logger.debug("Access token refreshed for %s (ttl %.0fs)", key, ttl)
            return token

    def invalidate(self, identity: str | None = None) -> None:
        self._cache.delete(cache_key(identity))

    def _exchange(self, refresh_token: str) -> tuple[str, float]:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        }
        try:
            resp = http.post(
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
                retries=1,
                check_status=False,
                session=self._session,
            )
        except http.NetworkError as exc:
            raise TokenExchangeError(f"Token endpoint unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise TokenExchangeError(f"SP-API token refresh failed: HTTP {resp.status_code}")

        try:
            payload: Any = http.decode_json(resp)
        except http.ParseError as exc:
            raise TokenExchangeError(str(exc)) from exc

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise TokenExchangeError("SP-API token response missing access_token")
        try:
            expires_in = float(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return token, expires_in
