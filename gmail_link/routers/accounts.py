from __future__ import annotations
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from gmail_link.core.errors import AccountNotFound, CredentialError, NotConnected
from gmail_link.db.models import GmailAccount
from gmail_link.deps import get_google_client, get_store, get_token_refresher
from gmail_link.security.internal import require_internal
from gmail_link.security.ratelimit import limit_by_api_key, limit_by_principal
from gmail_link.services.access_tokens import TokenRefresher
from gmail_link.services.accounts import CredentialStore
from gmail_link.services.crypto import decrypt_str
from gmail_link.services.google_oauth import GoogleOAuthClient, GoogleOAuthError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/accounts",
    tags=["accounts"],
    dependencies=[Depends(require_internal), Depends(limit_by_api_key), Depends(limit_by_principal)],
)

class AccountResp(BaseModel):
    email: str
    is_default: bool
    scopes: List[str]
    connected_at: datetime
    updated_at: datetime

    @classmethod
    def of(cls, row: GmailAccount) -> "AccountResp":
        return cls(
            email=row.email,
            is_default=row.is_default,
            scopes=sorted(row.granted_scopes),
            connected_at=row.created_at,
            updated_at=row.updated_at,
        )

class StatusResp(BaseModel):
    authorized: bool
    email: Optional[str] = None
    scopes: List[str] = []
    account_count: int = 0
    last_authorized_at: Optional[datetime] = None
    message: Optional[str] = None

class TokenResp(BaseModel):
    email: str
    access_token: str
    expiry_date: int
    scopes: List[str] = []

class DeleteResp(BaseModel):
    deleted: int
    revoked_at_google: bool

@router.get("", response_model=List[AccountResp], summary="List connected Gmail accounts")
def list_accounts(principal: str = Query(..., min_length=1), store: CredentialStore = Depends(get_store)):
    return [AccountResp.of(row) for row in store.list(principal)]

@router.get("/status", response_model=StatusResp, summary="Whether the principal has Gmail connected")
def status(principal: str = Query(..., min_length=1), store: CredentialStore = Depends(get_store)):
    rows = store.list(principal)
    if not rows:
        return StatusResp(authorized=False, message=NotConnected().user_message)
    default = rows[0]
    return StatusResp(
        authorized=True,
        email=default.email,
        scopes=sorted(default.granted_scopes),
        account_count=len(rows),
        last_authorized_at=default.updated_at,
    )

@router.post("/default", response_model=AccountResp, summary="Choose the default Gmail account")
def set_default(
    principal: str = Query(..., min_length=1),
    email: str = Query(..., min_length=3),
    store: CredentialStore = Depends(get_store),
):
    return AccountResp.of(store.set_default(principal, email))

@router.get("/token", response_model=TokenResp, summary="Valid access token (refreshed when near expiry)")
async def token(
    principal: str = Query(..., min_length=1),
    email: Optional[str] = Query(None),
    refresher: TokenRefresher = Depends(get_token_refresher),
):
    account = await refresher.get_valid_account(principal, email)
    return TokenResp(
        email=account.email,
        access_token=account.access_token,
        expiry_date=account.expiry_date,
        scopes=sorted(account.granted_scopes),
    )

@router.delete("", response_model=DeleteResp, summary="Disconnect one or all Gmail accounts")
async def disconnect(
    principal: str = Query(..., min_length=1),
    email: Optional[str] = Query(None),
    store: CredentialStore = Depends(get_store),
    google: GoogleOAuthClient = Depends(get_google_client),
):
    rows = store.list(principal)
    targets = rows if email is None else [r for r in rows if r.email == email]
    if email is not None and not targets:
        raise AccountNotFound(email)

    # revoke at Google first; local deletion happens regardless
    revoked_all = bool(targets)
    for row in targets:
        try:
            ok = await google.revoke(decrypt_str(row.encrypted_refresh_token))
        except (GoogleOAuthError, CredentialError) as e:
            logger.warning("google revoke failed; deleting locally",
                           extra={"principal": principal, "email": row.email, "reason": str(e)})
            ok = False
        revoked_all = revoked_all and ok

    deleted = store.delete(principal, email)
    return DeleteResp(deleted=deleted, revoked_at_google=revoked_all)
