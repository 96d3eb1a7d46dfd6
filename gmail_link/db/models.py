from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import FrozenSet, Iterable
from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from .session import Base

def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)

def dump_scopes(scopes: Iterable[str]) -> str:
    return json.dumps(sorted(set(scopes)))

def load_scopes(scopes_json: str | None) -> list[str]:
    return json.loads(scopes_json) if scopes_json else []


class GmailAccount(Base):
    """One connected Gmail identity belonging to a principal."""
    __tablename__ = "gmail_accounts"

    # surrogate key; gives a strict connection order when created_at ties
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    # Fernet token, never the plaintext refresh token
    encrypted_refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expiry_date: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch ms
    scopes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("principal", "email", name="uq_gmail_accounts_principal_email"),
        Index("ix_gmail_accounts_default", "principal", "is_default"),
        Index(
            "uq_gmail_accounts_one_default", "principal",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    @property
    def granted_scopes(self) -> FrozenSet[str]:
        return frozenset(load_scopes(self.scopes_json))

    def __repr__(self) -> str:
        return f"<GmailAccount principal={self.principal!r} email={self.email!r} default={self.is_default}>"


class OAuthStateRecord(Base):
    __tablename__ = "oauth_states"

    state_token: Mapped[str] = mapped_column(String(128), primary_key=True)
    principal: Mapped[str] = mapped_column(String(255), nullable=False)
    scopes_json: Mapped[str] = mapped_column(Text, nullable=False)
    code_verifier: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class RevokedAccount(Base):
    """Tombstone left behind when Google reports a grant as revoked."""
    __tablename__ = "revoked_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    revoked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("principal", "email", name="uq_revoked_accounts_principal_email"),
    )
