from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlencode, urlparse

import httpx

from gmail_link.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_ENDPOINT = "https://oauth2.googleapis.com/revoke"
GMAIL_PROFILE_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/profile"

# used when Google omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def now_ms() -> int:
    return int(time.time() * 1000)


class GoogleOAuthError(Exception):
    """
    A failed call to Google. `error` carries the OAuth error code from the
    response body when there is one; status is None for transport failures.
    """

    def __init__(self, message: str, *, status: Optional[int] = None, error: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.error = error

    @property
    def revoked(self) -> bool:
        # invalid_grant: refresh token expired, revoked, or issued to a deleted account
        return self.error == "invalid_grant"


@dataclass
class TokenSet:
    access_token: Optional[str]
    refresh_token: Optional[str]
    expiry_date: int  # epoch ms
    scope: Optional[str]
    token_type: Optional[str]

    @classmethod
    def from_response(cls, j: Dict[str, Any]) -> "TokenSet":
        expires_in = int(j.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        return cls(
            access_token=j.get("access_token"),
            refresh_token=j.get("refresh_token"),
            expiry_date=now_ms() + expires_in * 1000,
            scope=j.get("scope"),
            token_type=j.get("token_type"),
        )


def _json(what: str, resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as e:
        raise GoogleOAuthError(f"{what} returned a non-JSON body", status=resp.status_code) from e
    if not isinstance(body, dict):
        raise GoogleOAuthError(f"{what} returned unexpected JSON", status=resp.status_code)
    return body


def _token_set(what: str, resp: httpx.Response) -> TokenSet:
    try:
        return TokenSet.from_response(_json(what, resp))
    except (TypeError, ValueError) as e:
        raise GoogleOAuthError(f"{what} returned a malformed expires_in", status=resp.status_code) from e


def _error_from_response(what: str, resp: httpx.Response) -> GoogleOAuthError:
    error = None
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        # token endpoint: {"error": "invalid_grant"}; Gmail API: {"error": {"status": ...}}
        if isinstance(err, dict):
            err = err.get("status")
        error = err if isinstance(err, str) else None
    return GoogleOAuthError(f"{what} failed: {resp.status_code} {error or ''}".strip(),
                            status=resp.status_code, error=error)


class GoogleOAuthClient:
    """
    Thin async client for Google's OAuth endpoints and the Gmail profile call.

    Every request is bounded by `timeout`; transport failures and timeouts
    surface as GoogleOAuthError with status None, never as a revocation.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        allowed_redirect_hosts: Sequence[str] = ("localhost", "127.0.0.1"),
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.allowed_redirect_hosts = list(allowed_redirect_hosts)
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, s: Settings = default_settings, **kwargs) -> "GoogleOAuthClient":
        return cls(
            s.GOOGLE_CLIENT_ID,
            s.GOOGLE_CLIENT_SECRET,
            s.oauth_redirect_uri,
            allowed_redirect_hosts=s.ALLOWED_REDIRECT_HOSTS,
            timeout=s.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )

    def _ensure_client_config(self) -> None:
        if not self.client_id or not self.client_secret:
            raise RuntimeError("Missing GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET in environment")

    def _validate_redirect_host(self) -> None:
        host = urlparse(self.redirect_uri).hostname or ""
        if host not in self.allowed_redirect_hosts:
            raise ValueError(f"redirect_uri host '{host}' is not allowed")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post(self, what: str, url: str, data: Dict[str, str]) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.post(url, data=data)
        except httpx.TimeoutException as e:
            raise GoogleOAuthError(f"{what} timed out") from e
        except httpx.HTTPError as e:
            raise GoogleOAuthError(f"{what} failed: {e.__class__.__name__}") from e

    def build_authorization_url(self, scopes: Sequence[str], state: str, code_challenge: str) -> str:
        """
        Consent URL for the given provider scope identifiers.
        prompt=consent makes Google issue a refresh token on every run, including reconnects.
        """
        self._ensure_client_config()
        self._validate_redirect_host()

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{GOOGLE_AUTH_ENDPOINT}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        self._ensure_client_config()
        self._validate_redirect_host()

        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": code_verifier,
        }
        resp = await self._post("token exchange", GOOGLE_TOKEN_ENDPOINT, data)
        if resp.status_code != 200:
            raise _error_from_response("token exchange", resp)
        return _token_set("token exchange", resp)

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Use refresh_token to get a fresh access_token.
        `refresh_token` on the result is set only when Google rotated it.
        """
        self._ensure_client_config()
        if not refresh_token:
            raise ValueError("refresh_token required")

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        resp = await self._post("refresh", GOOGLE_TOKEN_ENDPOINT, data)
        if resp.status_code != 200:
            raise _error_from_response("refresh", resp)
        tokens = _token_set("refresh", resp)
        if not tokens.access_token:
            raise GoogleOAuthError("refresh returned no access_token", status=resp.status_code)
        return tokens

    async def fetch_profile_email(self, access_token: str) -> str:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with self._client() as client:
                resp = await client.get(GMAIL_PROFILE_ENDPOINT, headers=headers)
        except httpx.HTTPError as e:
            raise GoogleOAuthError(f"profile lookup failed: {e.__class__.__name__}") from e
        if resp.status_code != 200:
            raise _error_from_response("profile lookup", resp)
        email = _json("profile lookup", resp).get("emailAddress")
        if not email:
            raise GoogleOAuthError("profile has no emailAddress", status=resp.status_code)
        return email

    async def revoke(self, token: str) -> bool:
        """
        Google OAuth2 token revocation.
        Returns True if Google says OK or already-revoked (200 or 400).
        """
        resp = await self._post("revoke", GOOGLE_REVOKE_ENDPOINT, {"token": token})
        return resp.status_code in (200, 400)
