from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, Optional, TypeVar

from gmail_link.core.errors import AccountNotFound, AccountRevoked, NotConnected, ProviderError
from gmail_link.db.models import GmailAccount
from gmail_link.services.accounts import CredentialStore
from gmail_link.services.crypto import decrypt_str, encrypt_str
from gmail_link.services.google_oauth import GoogleOAuthClient, GoogleOAuthError, now_ms

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_THRESHOLD_MS = 5 * 60 * 1000

T = TypeVar("T")


class SingleFlight:
    """
    Collapses concurrent calls for the same key into one task.

    Callers await the task through asyncio.shield, so a caller that gets
    cancelled leaves the work (and its commit) running for everyone else. The
    registry only holds tasks that are still running.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._finished(k, t))
        return await asyncio.shield(task)

    def _finished(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # mark retrieved even when every waiter went away
            task.exception()


class TokenRefresher:
    """
    Hands out Gmail accounts whose access token is good for at least the
    refresh threshold, refreshing through Google when it is not.

    Fresh -> NearExpiry -> Refreshing -> Fresh, Refreshing -> Revoked (row
    deleted), Refreshing -> TransientFailure (row untouched, retry allowed).
    """

    def __init__(
        self,
        store: CredentialStore,
        google: GoogleOAuthClient,
        *,
        encryption_key: Optional[str] = None,
        refresh_threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
        flights: Optional[SingleFlight] = None,
    ):
        self.store = store
        self.google = google
        self.encryption_key = encryption_key
        self.refresh_threshold_ms = refresh_threshold_ms
        self.flights = flights if flights is not None else SingleFlight()

    def needs_refresh(self, account: GmailAccount) -> bool:
        return account.expiry_date - now_ms() < self.refresh_threshold_ms

    async def get_valid_account(self, principal: str, email: Optional[str] = None) -> GmailAccount:
        account = self.store.get(principal, email)
        if account is None:
            if self.store.revocation(principal, email) is not None:
                raise AccountRevoked(email=email)
            if email:
                raise AccountNotFound(email)
            raise NotConnected()

        if not self.needs_refresh(account):
            return account

        key = (account.principal, account.email)
        return await self.flights.run(key, lambda: self._refresh(account))

    async def get_access_token(self, principal: str, email: Optional[str] = None) -> str:
        account = await self.get_valid_account(principal, email)
        return account.access_token

    async def _refresh(self, account: GmailAccount) -> GmailAccount:
        principal, email = account.principal, account.email
        refresh_token = decrypt_str(account.encrypted_refresh_token, self.encryption_key)

        try:
            tokens = await self.google.refresh(refresh_token)
        except GoogleOAuthError as e:
            if e.revoked:
                self.store.delete(principal, email, revoked=True)
                logger.warning("gmail grant revoked, account removed",
                               extra={"principal": principal, "email": email})
                raise AccountRevoked(email=email) from e
            logger.warning("token refresh failed",
                           extra={"principal": principal, "email": email, "status": e.status})
            raise ProviderError(f"Token refresh failed: {e}", email=email) from e

        rotated = None
        if tokens.refresh_token and tokens.refresh_token != refresh_token:
            rotated = encrypt_str(tokens.refresh_token, self.encryption_key)

        updated = self.store.update_tokens(
            principal,
            email,
            tokens.access_token,
            tokens.expiry_date,
            encrypted_refresh_token=rotated,
        )
        logger.info("refreshed gmail access token",
                    extra={"principal": principal, "email": email, "rotated": rotated is not None})
        return updated
