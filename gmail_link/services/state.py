from __future__ import annotations
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from gmail_link.db.models import OAuthStateRecord, utcnow

logger = logging.getLogger(__name__)

def new_state_token() -> str:
    # 256 bits from the OS CSPRNG
    return secrets.token_urlsafe(32)

@dataclass
class OAuthState:
    state_token: str
    principal: str
    scopes: List[str]
    code_verifier: str
    expires_at: datetime = field(default_factory=lambda: utcnow() + timedelta(minutes=10))

    @classmethod
    def issue(cls, principal: str, scopes: List[str], code_verifier: str, ttl_seconds: int) -> "OAuthState":
        return cls(
            state_token=new_state_token(),
            principal=principal,
            scopes=list(scopes),
            code_verifier=code_verifier,
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )


class OAuthStateCache:
    """One-time CSRF/PKCE state records, durable so any instance can finish a flow."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, state: OAuthState) -> None:
        with self._session_factory.begin() as db:
            db.add(OAuthStateRecord(
                state_token=state.state_token,
                principal=state.principal,
                scopes_json=json.dumps(state.scopes),
                code_verifier=state.code_verifier,
                expires_at=state.expires_at,
            ))

    def consume(self, state_token: str) -> Optional[OAuthState]:
        """
        Return the state and delete it, or None if unknown, expired or already used.
        The DELETE's rowcount decides the winner between concurrent consumers.
        """
        if not state_token:
            return None
        now = utcnow()
        with self._session_factory.begin() as db:
            row = db.execute(
                select(OAuthStateRecord).where(
                    OAuthStateRecord.state_token == state_token,
                    OAuthStateRecord.expires_at > now,
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            state = OAuthState(
                state_token=row.state_token,
                principal=row.principal,
                scopes=json.loads(row.scopes_json),
                code_verifier=row.code_verifier,
                expires_at=row.expires_at,
            )
            res = db.execute(
                delete(OAuthStateRecord)
                .where(OAuthStateRecord.state_token == state_token)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                logger.warning("oauth state consumed concurrently", extra={"principal": state.principal})
                return None
        return state

    def sweep_expired(self) -> int:
        with self._session_factory.begin() as db:
            res = db.execute(
                delete(OAuthStateRecord)
                .where(OAuthStateRecord.expires_at <= utcnow())
                .execution_options(synchronize_session=False)
            )
            removed = res.rowcount or 0
        if removed:
            logger.info("swept %d expired oauth states", removed)
        return removed
