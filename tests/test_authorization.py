"""
AuthorizationFlow: consent URL construction and the code-exchange callback.
"""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from gmail_link.core.errors import InvalidScope, InvalidState, ProfileFetchError, TokenExchangeError
from gmail_link.db.models import OAuthStateRecord
from gmail_link.services.authorization import AuthorizationFlow, GmailScope, generate_pkce, parse_scopes
from gmail_link.services.crypto import decrypt_str


@pytest.fixture
def flow(store, states, google, encryption_key):
    return AuthorizationFlow(store, states, google, encryption_key=encryption_key)


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestScopes:

    def test_names_map_to_gmail_scopes(self):
        assert [s.provider_scope for s in parse_scopes(["read", "compose"])] == [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.compose",
        ]

    def test_duplicates_collapse(self):
        assert parse_scopes(["read", " read", "labels"]) == [GmailScope.READ, GmailScope.LABELS]

    @pytest.mark.parametrize("names", [["gmail.readonly"], ["read", "admin"], [""], []])
    def test_unknown_or_empty_rejected(self, names):
        with pytest.raises(InvalidScope):
            parse_scopes(names)

    def test_provider_scope_string_is_not_a_name(self):
        with pytest.raises(InvalidScope):
            parse_scopes(["https://www.googleapis.com/auth/gmail.readonly"])


def test_pkce_challenge_is_s256_of_verifier():
    verifier, challenge = generate_pkce()
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    assert challenge == expected
    assert 43 <= len(verifier) <= 128


class TestStartAuthorization:

    def test_url_carries_state_pkce_and_forced_consent(self, flow):
        url = flow.start_authorization("u1", ["read", "labels"])
        parsed = urlparse(url)
        q = _query(url)

        assert parsed.netloc == "accounts.google.com"
        assert q["state"]
        assert q["code_challenge_method"] == "S256"
        assert q["code_challenge"]
        assert q["prompt"] == "consent"
        assert q["access_type"] == "offline"
        assert q["redirect_uri"] == "http://localhost:8000/oauth/callback"
        assert q["scope"].split() == [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.labels",
        ]

    def test_state_is_persisted_with_verifier(self, flow, states):
        q = _query(flow.start_authorization("u1", ["read"]))

        stored = states.consume(q["state"])
        assert stored.principal == "u1"
        assert stored.scopes == ["read"]
        challenge = base64.urlsafe_b64encode(
            hashlib.sha256(stored.code_verifier.encode()).digest()
        ).rstrip(b"=").decode()
        assert challenge == q["code_challenge"]

    def test_invalid_scope_persists_nothing(self, flow, session_factory):
        with pytest.raises(InvalidScope):
            flow.start_authorization("u1", ["read", "delete-everything"])
        with session_factory() as db:
            assert db.execute(select(func.count()).select_from(OAuthStateRecord)).scalar_one() == 0

    def test_every_start_issues_a_new_state(self, flow):
        a = _query(flow.start_authorization("u1", ["read"]))["state"]
        b = _query(flow.start_authorization("u1", ["read"]))["state"]
        assert a != b


class TestCompleteAuthorization:

    @pytest.mark.asyncio
    async def test_end_to_end_connect(self, flow, store, fake_google, encryption_key):
        url = flow.start_authorization("u1", ["read"])
        state = _query(url)["state"]

        with pytest.raises(InvalidState):
            await flow.complete_authorization("auth-code", "not-the-state")

        result = await flow.complete_authorization("auth-code", state)

        account = result.account
        assert account.is_default is True
        assert account.email == "alice@example.com"
        assert account.granted_scopes == frozenset({"read"})
        assert result.reconnected is False
        assert result.action == "connected"
        assert result.account_count == 1

        stored = store.get("u1")
        assert stored.encrypted_refresh_token != "1//fresh-refresh"
        assert "1//fresh-refresh" not in stored.encrypted_refresh_token
        assert decrypt_str(stored.encrypted_refresh_token, encryption_key) == "1//fresh-refresh"

        exchange = fake_google.form("exchange")
        assert exchange["code"] == "auth-code"
        assert exchange["code_verifier"]
        assert fake_google.form("profile")["authorization"] == "Bearer ya29.fresh-access"

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, flow, fake_google):
        state = _query(flow.start_authorization("u1", ["read"]))["state"]
        await flow.complete_authorization("auth-code", state)

        with pytest.raises(InvalidState):
            await flow.complete_authorization("auth-code", state)
        assert fake_google.count("exchange") == 1

    @pytest.mark.asyncio
    async def test_invalid_state_never_calls_google(self, flow, fake_google):
        with pytest.raises(InvalidState):
            await flow.complete_authorization("auth-code", "forged")
        assert fake_google.requests == []

    @pytest.mark.asyncio
    async def test_reconnect_keeps_default_and_reports_it(self, flow, fake_google):
        first = _query(flow.start_authorization("u1", ["read"]))["state"]
        await flow.complete_authorization("code-1", first)

        fake_google.profile_reply = (200, {"emailAddress": "bob@example.com"})
        second = _query(flow.start_authorization("u1", ["read"]))["state"]
        added = await flow.complete_authorization("code-2", second)
        assert added.account.is_default is False
        assert added.account_count == 2

        fake_google.profile_reply = (200, {"emailAddress": "alice@example.com"})
        third = _query(flow.start_authorization("u1", ["read", "compose"]))["state"]
        again = await flow.complete_authorization("code-3", third)

        assert again.reconnected is True
        assert again.action == "reconnected"
        assert again.account_count == 2
        assert again.account.is_default is True
        assert again.account.granted_scopes == frozenset({"read", "compose"})

    @pytest.mark.asyncio
    async def test_scopes_recorded_from_request_not_google_echo(self, flow, fake_google):
        fake_google.exchange_reply[1]["scope"] = "https://www.googleapis.com/auth/gmail.modify openid"
        state = _query(flow.start_authorization("u1", ["labels"]))["state"]
        result = await flow.complete_authorization("code", state)
        assert result.account.granted_scopes == frozenset({"labels"})

    @pytest.mark.asyncio
    async def test_access_token_only_is_an_exchange_error(self, flow, store, fake_google):
        fake_google.exchange_reply = (200, {"access_token": "ya29.only", "expires_in": 3599})
        state = _query(flow.start_authorization("u1", ["read"]))["state"]

        with pytest.raises(TokenExchangeError):
            await flow.complete_authorization("code", state)
        assert store.list("u1") == []
        assert fake_google.count("profile") == 0

    @pytest.mark.asyncio
    async def test_rejected_code_is_an_exchange_error(self, flow, store, fake_google):
        fake_google.exchange_reply = (400, {"error": "invalid_grant", "error_description": "Bad Request"})
        state = _query(flow.start_authorization("u1", ["read"]))["state"]

        with pytest.raises(TokenExchangeError):
            await flow.complete_authorization("code", state)
        assert store.list("u1") == []

    @pytest.mark.asyncio
    async def test_exchange_timeout_is_an_exchange_error(self, flow, fake_google):
        fake_google.exchange_reply = httpx.ReadTimeout("slow")
        state = _query(flow.start_authorization("u1", ["read"]))["state"]

        with pytest.raises(TokenExchangeError):
            await flow.complete_authorization("code", state)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [
        (401, {"error": {"code": 401, "status": "UNAUTHENTICATED"}}),
        (200, {"messagesTotal": 3}),
    ])
    async def test_profile_failure(self, flow, store, fake_google, reply):
        fake_google.profile_reply = reply
        state = _query(flow.start_authorization("u1", ["read"]))["state"]

        with pytest.raises(ProfileFetchError):
            await flow.complete_authorization("code", state)
        assert store.list("u1") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [
        (200, "<html>proxy</html>"),
        (200, ["ya29.fresh-access"]),
        (200, {"access_token": "ya29.a", "refresh_token": "1//r", "expires_in": "an hour"}),
    ])
    async def test_malformed_exchange_reply(self, flow, store, fake_google, reply):
        fake_google.exchange_reply = reply
        state = _query(flow.start_authorization("u1", ["read"]))["state"]

        with pytest.raises(TokenExchangeError):
            await flow.complete_authorization("code", state)
        assert store.list("u1") == []
        assert fake_google.count("profile") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [
        (200, "<html>proxy</html>"),
        (200, "null"),
        (200, ["alice@example.com"]),
        (403, {"error": ["PERMISSION_DENIED"]}),
    ])
    async def test_malformed_profile_reply(self, flow, store, fake_google, reply):
        fake_google.profile_reply = reply
        state = _query(flow.start_authorization("u1", ["read"]))["state"]

        with pytest.raises(ProfileFetchError):
            await flow.complete_authorization("code", state)
        assert store.list("u1") == []
