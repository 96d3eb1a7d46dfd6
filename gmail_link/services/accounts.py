from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from gmail_link.core.errors import AccountNotFound, InvariantViolation
from gmail_link.db.models import GmailAccount, RevokedAccount, dump_scopes, utcnow

logger = logging.getLogger(__name__)

# concurrent first connects can collide on the unique indexes; the retry sees the winner's row
_UPSERT_ATTEMPTS = 2


@dataclass
class UpsertResult:
    account: GmailAccount
    created: bool
    account_count: int


class CredentialStore:
    """
    Durable per-(principal, email) Gmail credentials.

    Every public method is one transaction. Mutations re-check that a principal
    with accounts has exactly one default before committing, so a failure at
    any point rolls back to the previous consistent state.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ---- reads ---------------------------------------------------------------

    def get(self, principal: str, email: Optional[str] = None) -> Optional[GmailAccount]:
        with self._session_factory() as db:
            if email:
                return db.execute(
                    select(GmailAccount).where(
                        GmailAccount.principal == principal,
                        GmailAccount.email == email,
                    )
                ).scalar_one_or_none()

            row = db.execute(
                select(GmailAccount).where(
                    GmailAccount.principal == principal,
                    GmailAccount.is_default.is_(True),
                )
            ).scalars().first()
            if row is not None:
                return row

            row = db.execute(
                select(GmailAccount)
                .where(GmailAccount.principal == principal)
                .order_by(GmailAccount.updated_at.desc(), GmailAccount.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is not None:
                logger.error(
                    "invariant violation: no default account flagged, using most recently updated",
                    extra={"principal": principal, "email": row.email},
                )
            return row

    def list(self, principal: str) -> List[GmailAccount]:
        """Default account first, then in connection order."""
        with self._session_factory() as db:
            return self._rows(db, principal)

    def revocation(self, principal: str, email: Optional[str] = None) -> Optional[RevokedAccount]:
        stmt = select(RevokedAccount).where(RevokedAccount.principal == principal)
        if email:
            stmt = stmt.where(RevokedAccount.email == email)
        stmt = stmt.order_by(RevokedAccount.revoked_at.desc(), RevokedAccount.id.desc()).limit(1)
        with self._session_factory() as db:
            return db.execute(stmt).scalar_one_or_none()

    # ---- writes --------------------------------------------------------------

    def upsert(
        self,
        *,
        principal: str,
        email: str,
        external_user_id: str,
        access_token: str,
        encrypted_refresh_token: str,
        expiry_date: int,
        granted_scopes: Iterable[str],
        make_default: bool = False,
    ) -> UpsertResult:
        """
        Insert or reconnect (principal, email).

        A principal's first account always becomes the default. A later new
        account becomes default only with `make_default`. A reconnect replaces
        every field but keeps the current default flag unless `make_default`
        promotes it.
        """
        scopes_json = dump_scopes(granted_scopes)
        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                return self._upsert_once(
                    principal=principal,
                    email=email,
                    external_user_id=external_user_id,
                    access_token=access_token,
                    encrypted_refresh_token=encrypted_refresh_token,
                    expiry_date=expiry_date,
                    scopes_json=scopes_json,
                    make_default=make_default,
                )
            except IntegrityError:
                if attempt == _UPSERT_ATTEMPTS:
                    raise
                logger.warning("concurrent upsert collided, retrying", extra={"principal": principal})
        raise AssertionError("unreachable")

    def _upsert_once(self, *, principal, email, external_user_id, access_token,
                     encrypted_refresh_token, expiry_date, scopes_json, make_default) -> UpsertResult:
        now = utcnow()
        with self._session_factory.begin() as db:
            rows = self._rows(db, principal, lock=True)
            account = next((r for r in rows if r.email == email), None)
            created = account is None

            if created:
                promote = not rows or make_default
                account = GmailAccount(
                    principal=principal,
                    email=email,
                    is_default=False,
                    created_at=now,
                )
                db.add(account)
            else:
                promote = make_default and not account.is_default

            account.external_user_id = external_user_id
            account.access_token = access_token
            account.encrypted_refresh_token = encrypted_refresh_token
            account.expiry_date = expiry_date
            account.scopes_json = scopes_json
            account.updated_at = now
            db.flush()

            if promote:
                self._promote(db, principal, account.id)

            db.execute(
                delete(RevokedAccount)
                .where(RevokedAccount.principal == principal, RevokedAccount.email == email)
                .execution_options(synchronize_session=False)
            )
            self._check_single_default(db, principal)
            db.refresh(account)

            count = len(rows) + (1 if created else 0)
            logger.info(
                "gmail account %s", "connected" if created else "reconnected",
                extra={"principal": principal, "email": email, "is_default": account.is_default},
            )
            return UpsertResult(account=account, created=created, account_count=count)

    def update_tokens(
        self,
        principal: str,
        email: str,
        access_token: str,
        expiry_date: int,
        encrypted_refresh_token: Optional[str] = None,
    ) -> GmailAccount:
        """New access token/expiry; the refresh token only when Google rotated it."""
        values = {"access_token": access_token, "expiry_date": expiry_date, "updated_at": utcnow()}
        if encrypted_refresh_token:
            values["encrypted_refresh_token"] = encrypted_refresh_token

        with self._session_factory.begin() as db:
            res = db.execute(
                update(GmailAccount)
                .where(GmailAccount.principal == principal, GmailAccount.email == email)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise AccountNotFound(email)
            return db.execute(
                select(GmailAccount).where(
                    GmailAccount.principal == principal,
                    GmailAccount.email == email,
                )
            ).scalar_one()

    def delete(self, principal: str, email: Optional[str] = None, *, revoked: bool = False) -> int:
        """
        Delete one account, or all of the principal's accounts when `email` is omitted.

        Removing the default promotes the oldest remaining account. With
        `revoked`, a tombstone per deleted account records that Google
        invalidated the grant; without it, the removed accounts' tombstones
        are dropped, and all of the principal's once no account remains.
        Returns the number of accounts removed.
        """
        with self._session_factory.begin() as db:
            rows = self._rows(db, principal, lock=True)
            doomed = rows if email is None else [r for r in rows if r.email == email]
            remaining = [r for r in rows if r not in doomed]

            if not revoked:
                stmt = delete(RevokedAccount).where(RevokedAccount.principal == principal)
                # with no accounts left, a surviving tombstone means the last one was revoked
                if email is not None and (remaining or not doomed):
                    stmt = stmt.where(RevokedAccount.email == email)
                db.execute(stmt.execution_options(synchronize_session=False))
            if not doomed:
                return 0

            for row in doomed:
                db.delete(row)
            if revoked:
                for row in doomed:
                    db.execute(
                        delete(RevokedAccount)
                        .where(RevokedAccount.principal == principal, RevokedAccount.email == row.email)
                        .execution_options(synchronize_session=False)
                    )
                    db.add(RevokedAccount(principal=principal, email=row.email))
            db.flush()

            if remaining and any(r.is_default for r in doomed):
                successor = min(remaining, key=lambda r: (r.created_at, r.id))
                self._promote(db, principal, successor.id)
                logger.info(
                    "promoted gmail account to default",
                    extra={"principal": principal, "email": successor.email},
                )

            self._check_single_default(db, principal)
            logger.info(
                "deleted %d gmail account(s)", len(doomed),
                extra={"principal": principal, "email": email, "revoked": revoked},
            )
            return len(doomed)

    def set_default(self, principal: str, email: str) -> GmailAccount:
        with self._session_factory.begin() as db:
            rows = self._rows(db, principal, lock=True)
            target = next((r for r in rows if r.email == email), None)
            if target is None:
                raise AccountNotFound(email)
            if not target.is_default:
                self._promote(db, principal, target.id)
            self._check_single_default(db, principal)
            db.refresh(target)
            return target

    # ---- helpers -------------------------------------------------------------

    @staticmethod
    def _rows(db: Session, principal: str, lock: bool = False) -> List[GmailAccount]:
        stmt = (
            select(GmailAccount)
            .where(GmailAccount.principal == principal)
            .order_by(GmailAccount.is_default.desc(), GmailAccount.created_at, GmailAccount.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(db.execute(stmt).scalars())

    @staticmethod
    def _promote(db: Session, principal: str, account_id: int) -> None:
        # clear before set: the partial unique index allows one default per principal
        db.execute(
            update(GmailAccount)
            .where(GmailAccount.principal == principal, GmailAccount.is_default.is_(True))
            .values(is_default=False)
        )
        db.execute(
            update(GmailAccount)
            .where(GmailAccount.id == account_id)
            .values(is_default=True, updated_at=utcnow())
        )

    @staticmethod
    def _check_single_default(db: Session, principal: str) -> None:
        db.flush()
        total, defaults = db.execute(
            select(
                func.count(GmailAccount.id),
                func.coalesce(func.sum(case((GmailAccount.is_default.is_(True), 1), else_=0)), 0),
            ).where(GmailAccount.principal == principal)
        ).one()
        if total and defaults != 1:
            raise InvariantViolation(
                f"principal would have {defaults} default accounts",
                principal=principal,
                defaults=defaults,
            )
