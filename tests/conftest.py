"""
Shared fixtures.

Settings are read when gmail_link is first imported, so the environment is
prepared here before any test module imports the package.
"""

import asyncio
import json
import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qsl

import httpx
import pytest
from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="gmail-link-logs-")
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["API_INTERNAL_KEY"] = "test-internal-key"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["GOOGLE_REDIRECT_BASE"] = "http://localhost:8000"

from gmail_link.db.models import Base  # noqa: E402
from gmail_link.db.session import build_engine, make_session_factory  # noqa: E402
from gmail_link.services.accounts import CredentialStore  # noqa: E402
from gmail_link.services.google_oauth import GoogleOAuthClient, now_ms  # noqa: E402
from gmail_link.services.state import OAuthStateCache  # noqa: E402

REDIRECT_URI = "http://localhost:8000/oauth/callback"

Reply = Union[Tuple[int, Any], Exception]


class FakeGoogle:
    """
    Stands in for Google's token, revoke and Gmail profile endpoints behind
    httpx.MockTransport. Replies are (status, json body) tuples, or an
    exception to raise from the transport. A str body is sent as-is, as text/html.
    """

    def __init__(self) -> None:
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.exchange_reply: Reply = (200, {
            "access_token": "ya29.fresh-access",
            "refresh_token": "1//fresh-refresh",
            "expires_in": 3599,
            "scope": "https://www.googleapis.com/auth/gmail.readonly",
            "token_type": "Bearer",
        })
        self.refresh_reply: Reply = (200, {
            "access_token": "ya29.refreshed-access",
            "expires_in": 3599,
            "token_type": "Bearer",
        })
        self.profile_reply: Reply = (200, {"emailAddress": "alice@example.com", "messagesTotal": 12})
        self.revoke_reply: Reply = (200, {})
        self.delay: float = 0.0

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.requests if k == kind)

    def form(self, kind: str) -> Dict[str, str]:
        return [f for k, f in self.requests if k == kind][-1]

    @staticmethod
    def _reply(reply: Reply, request: httpx.Request) -> httpx.Response:
        if isinstance(reply, Exception):
            raise reply
        status, body = reply
        if isinstance(body, str):
            return httpx.Response(status, content=body, headers={"content-type": "text/html"}, request=request)
        return httpx.Response(status, content=json.dumps(body), headers={"content-type": "application/json"},
                              request=request)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.delay:
            await asyncio.sleep(self.delay)

        form = dict(parse_qsl(request.content.decode())) if request.content else {}
        path = request.url.path
        if request.url.host == "oauth2.googleapis.com" and path == "/token":
            kind = "exchange" if form.get("grant_type") == "authorization_code" else "refresh"
        elif path == "/revoke":
            kind = "revoke"
        elif path.endswith("/users/me/profile"):
            kind = "profile"
            form = {"authorization": request.headers.get("authorization", "")}
        else:
            return httpx.Response(404, request=request)

        self.requests.append((kind, form))
        return self._reply(getattr(self, f"{kind}_reply"), request)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def states(session_factory):
    return OAuthStateCache(session_factory)


@pytest.fixture
def encryption_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def fake_google():
    return FakeGoogle()


@pytest.fixture
def google(fake_google):
    return GoogleOAuthClient(
        "test-client-id.apps.googleusercontent.com",
        "test-client-secret",
        REDIRECT_URI,
        timeout=2.0,
        transport=httpx.MockTransport(fake_google.handler),
    )


@pytest.fixture
def connect(store) -> Callable[..., Any]:
    """Insert an account straight into the store."""

    def _connect(email: str, principal: str = "u1", *, expires_in_ms: int = 3_600_000,
                 encrypted_refresh_token: str = "enc-refresh", make_default: bool = False,
                 scopes: Optional[List[str]] = None):
        return store.upsert(
            principal=principal,
            email=email,
            external_user_id=email,
            access_token=f"access-{email}",
            encrypted_refresh_token=encrypted_refresh_token,
            expiry_date=now_ms() + expires_in_ms,
            granted_scopes=scopes or ["read"],
            make_default=make_default,
        )

    return _connect


@pytest.fixture
def defaults(store) -> Callable[[str], List[str]]:
    """Emails flagged default for a principal; the invariant wants exactly one."""

    def _defaults(principal: str = "u1") -> List[str]:
        return [a.email for a in store.list(principal) if a.is_default]

    return _defaults
