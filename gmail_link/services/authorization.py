from __future__ import annotations
import hashlib
import logging
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from gmail_link.core.errors import InvalidScope, InvalidState, ProfileFetchError, TokenExchangeError
from gmail_link.db.models import GmailAccount
from gmail_link.services.accounts import CredentialStore
from gmail_link.services.crypto import encrypt_str
from gmail_link.services.google_oauth import GoogleOAuthClient, GoogleOAuthError
from gmail_link.services.state import OAuthState, OAuthStateCache

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL_SECONDS = 600


class GmailScope(str, Enum):
    READ = "read"
    LABELS = "labels"
    MODIFY = "modify"
    COMPOSE = "compose"

    @property
    def provider_scope(self) -> str:
        return GMAIL_SCOPES[self]


GMAIL_SCOPES = {
    GmailScope.READ: "https://www.googleapis.com/auth/gmail.readonly",
    GmailScope.LABELS: "https://www.googleapis.com/auth/gmail.labels",
    GmailScope.MODIFY: "https://www.googleapis.com/auth/gmail.modify",
    GmailScope.COMPOSE: "https://www.googleapis.com/auth/gmail.compose",
}


def parse_scopes(names: Iterable[str]) -> List[GmailScope]:
    """Canonical scopes for `names`, in request order without duplicates."""
    scopes: List[GmailScope] = []
    for name in names:
        try:
            scope = GmailScope((name or "").strip())
        except ValueError:
            valid = ", ".join(s.value for s in GmailScope)
            raise InvalidScope(f"Invalid scope: {name}. Valid scopes are: {valid}") from None
        if scope not in scopes:
            scopes.append(scope)
    if not scopes:
        raise InvalidScope("At least one scope is required")
    return scopes


def _b64url(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_pkce() -> Tuple[str, str]:
    """(code_verifier, S256 code_challenge)"""
    verifier = secrets.token_urlsafe(32)
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


@dataclass
class ConnectResult:
    account: GmailAccount
    reconnected: bool
    account_count: int

    @property
    def action(self) -> str:
        return "reconnected" if self.reconnected else "connected"


class AuthorizationFlow:
    def __init__(
        self,
        store: CredentialStore,
        states: OAuthStateCache,
        google: GoogleOAuthClient,
        *,
        encryption_key: Optional[str] = None,
        state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
    ):
        self.store = store
        self.states = states
        self.google = google
        self.encryption_key = encryption_key
        self.state_ttl_seconds = state_ttl_seconds

    def start_authorization(self, principal: str, scope_names: Iterable[str]) -> str:
        """Persist a fresh state + PKCE verifier and return Google's consent URL."""
        if not principal:
            raise ValueError("principal required")
        scopes = parse_scopes(scope_names)
        verifier, challenge = generate_pkce()

        state = OAuthState.issue(
            principal=principal,
            scopes=[s.value for s in scopes],
            code_verifier=verifier,
            ttl_seconds=self.state_ttl_seconds,
        )
        self.states.save(state)
        logger.info("authorization started", extra={"principal": principal, "scopes": state.scopes})

        return self.google.build_authorization_url(
            [s.provider_scope for s in scopes],
            state=state.state_token,
            code_challenge=challenge,
        )

    async def complete_authorization(self, code: str, state: str) -> ConnectResult:
        stored = self.states.consume(state)
        if stored is None:
            raise InvalidState()
        if not code:
            raise TokenExchangeError("Missing authorization code")

        try:
            tokens = await self.google.exchange_code(code, stored.code_verifier)
        except GoogleOAuthError as e:
            logger.warning("token exchange failed", extra={"principal": stored.principal, "status": e.status})
            raise TokenExchangeError() from e
        if not tokens.access_token or not tokens.refresh_token:
            logger.warning(
                "token exchange returned incomplete tokens",
                extra={"principal": stored.principal, "has_refresh": bool(tokens.refresh_token)},
            )
            raise TokenExchangeError("Failed to obtain tokens from Google")

        try:
            email = await self.google.fetch_profile_email(tokens.access_token)
        except GoogleOAuthError as e:
            logger.warning("profile lookup failed", extra={"principal": stored.principal, "status": e.status})
            raise ProfileFetchError() from e

        # scopes come from our own request, not Google's echo which may be reformatted
        result = self.store.upsert(
            principal=stored.principal,
            email=email,
            external_user_id=email,
            access_token=tokens.access_token,
            encrypted_refresh_token=encrypt_str(tokens.refresh_token, self.encryption_key),
            expiry_date=tokens.expiry_date,
            granted_scopes=stored.scopes,
        )
        return ConnectResult(
            account=result.account,
            reconnected=not result.created,
            account_count=result.account_count,
        )
