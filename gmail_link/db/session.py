from __future__ import annotations
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from gmail_link.core.config import settings

Base = declarative_base()

def build_engine(url: str) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    database = parsed.database
    if not database or database == ":memory:":
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)

    Path(database).parent.mkdir(parents=True, exist_ok=True)
    # check_same_thread=False required for SQLite + multithreaded servers
    return create_engine(url, connect_args={"check_same_thread": False})

def make_session_factory(bind: Engine) -> sessionmaker:
    # rows handed back by the store outlive their transaction
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)

engine = build_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)
