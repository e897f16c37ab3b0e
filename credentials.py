"""Short-lived access token provider for the Baidu speech API."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import httpx

from errors import AUTH_FAILED, UNAVAILABLE, RecognitionError, TransportError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://aip.baidubce.com/oauth/2.0/token"


class BaiduTokenProvider:
    """Fetches client-credential tokens and caches them for a bounded time.

    The cache expires ``ttl_margin_s`` before the token itself does and can be
    dropped with :meth:`invalidate` after the service rejects a token.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        ttl_margin_s: float = 300.0,
        request_timeout_s: float = 10.0,
        token_url: str = TOKEN_URL,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api_key = api_key
        self._secret_key = secret_key
        self._ttl_margin_s = ttl_margin_s
        self._request_timeout_s = request_timeout_s
        self._token_url = token_url
        self._client = client
        self._clock = clock
        self._lock = threading.Lock()
        self._token = ""
        self._expires_at = 0.0

    def get_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at:
                return self._token
            token, expires_in = self._fetch()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - self._ttl_margin_s, 0.0)
            logger.info("Fetched speech token %s..., valid for %.0fs", token[:8], expires_in)
            return token

    def invalidate(self) -> None:
        with self._lock:
            if self._token:
                logger.info("Dropping cached speech token")
            self._token = ""
            self._expires_at = 0.0

    def _fetch(self) -> tuple[str, float]:
        if not self._api_key or not self._secret_key:
            raise RecognitionError(AUTH_FAILED, "Speech API credentials are not configured.")

        params = {
            "grant_type": "client_credentials",
            "client_id": self._api_key,
            "client_secret": self._secret_key,
        }
        try:
            if self._client is not None:
                response = self._client.post(
                    self._token_url, params=params, timeout=self._request_timeout_s
                )
            else:
                with httpx.Client(timeout=self._request_timeout_s) as client:
                    response = client.post(self._token_url, params=params)
        except httpx.HTTPError as exc:
            logger.error("Token request failed: %s", exc)
            raise TransportError(UNAVAILABLE, f"Token service is unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(
                UNAVAILABLE, f"Token service returned HTTP {response.status_code}"
            ) from exc

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            detail = ""
            if isinstance(data, dict):
                detail = str(data.get("error_description") or data.get("error") or "")
            logger.error("Token request rejected: %s", detail or response.status_code)
            message = f"Token request was rejected: {detail}" if detail else "Token request was rejected."
            raise RecognitionError(AUTH_FAILED, message)

        return str(token), float(data.get("expires_in", 0) or 0)
