"""Client-credential authentication against Microsoft Entra ID."""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import requests

from .http import UnexpectedResponseError, body_preview, parse_json
from .models import BearerToken, Credentials

logger = logging.getLogger(__name__)

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
MANAGEMENT_RESOURCE = "https://management.azure.com/"


class AuthError(RuntimeError):
    """Raised when the identity provider does not hand out a token."""

    def __init__(self, status_code: Optional[int], message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.status_code is None:
            return f"Token request failed: {self.message}"
        return f"Token request failed (status {self.status_code}): {self.message}"


class ClientCredentialProvider:
    """Exchanges application credentials for a management API bearer token.

    Tokens are cached and shared between threads by default. The lock makes
    refresh single-flight: when the cached token nears expiry, one caller
    fetches a new one while the others wait and then reuse it.
    """

    def __init__(
        self,
        credentials: Credentials,
        authority: str = DEFAULT_AUTHORITY,
        resource: str = MANAGEMENT_RESOURCE,
        timeout: float = 30,
        cache: bool = True,
    ) -> None:
        self._credentials = credentials
        self._authority = authority.rstrip("/")
        self._resource = resource
        self._timeout = timeout
        self._cache = cache
        self._cached: Optional[BearerToken] = None
        self._lock = threading.Lock()

    @property
    def token_url(self) -> str:
        return f"{self._authority}/{self._credentials.tenant_id}/oauth2/token"

    def get_token(self) -> str:
        if not self._cache:
            return self._request_token().access_token
        with self._lock:
            if self._cached is None or self._cached.is_expired():
                self._cached = self._request_token()
            return self._cached.access_token

    def _request_token(self) -> BearerToken:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "resource": self._resource,
        }
        logger.debug("Requesting token for client '%s'", self._credentials.client_id)
        try:
            response = requests.post(self.token_url, data=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            raise AuthError(None, str(exc)) from exc

        if response.status_code >= 300:
            logger.error("Failed to acquire token (status %s)", response.status_code)
            raise AuthError(response.status_code, body_preview(response))

        try:
            body = parse_json(response)
        except UnexpectedResponseError as exc:
            raise AuthError(response.status_code, str(exc)) from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthError(response.status_code, "response did not contain an access_token")

        try:
            expires_in = int(body.get("expires_in", 3600))
        except (TypeError, ValueError) as exc:
            raise AuthError(response.status_code, f"invalid expires_in {body.get('expires_in')!r}") from exc
        return BearerToken(access_token=body["access_token"], expires_at=time.time() + expires_in)
