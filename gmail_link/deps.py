from __future__ import annotations
from functools import lru_cache

from fastapi import Depends

from gmail_link.core.config import settings
from gmail_link.db.session import SessionLocal
from gmail_link.services.access_tokens import SingleFlight, TokenRefresher
from gmail_link.services.accounts import CredentialStore
from gmail_link.services.authorization import AuthorizationFlow
from gmail_link.services.google_oauth import GoogleOAuthClient
from gmail_link.services.state import OAuthStateCache

# shared by every request in this process so concurrent refreshes of one account collapse
refresh_flights = SingleFlight()

@lru_cache(maxsize=1)
def get_store() -> CredentialStore:
    return CredentialStore(SessionLocal)

@lru_cache(maxsize=1)
def get_state_cache() -> OAuthStateCache:
    return OAuthStateCache(SessionLocal)

def get_google_client() -> GoogleOAuthClient:
    return GoogleOAuthClient.from_settings(settings)

def get_authorization_flow(
    store: CredentialStore = Depends(get_store),
    states: OAuthStateCache = Depends(get_state_cache),
    google: GoogleOAuthClient = Depends(get_google_client),
) -> AuthorizationFlow:
    return AuthorizationFlow(
        store,
        states,
        google,
        encryption_key=settings.ENCRYPTION_KEY,
        state_ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS,
    )

def get_token_refresher(
    store: CredentialStore = Depends(get_store),
    google: GoogleOAuthClient = Depends(get_google_client),
) -> TokenRefresher:
    return TokenRefresher(
        store,
        google,
        encryption_key=settings.ENCRYPTION_KEY,
        refresh_threshold_ms=settings.TOKEN_REFRESH_THRESHOLD_SECONDS * 1000,
        flights=refresh_flights,
    )
