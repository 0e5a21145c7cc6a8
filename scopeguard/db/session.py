from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from scopeguard.settings import get_settings


_settings = get_settings()

engine = create_engine(
    _settings.resolved_db_url(),
    connect_args={"check_same_thread": False} if _settings.resolved_db_url().startswith("sqlite") else {},
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


def get_db() -> Generator[Session, None, None]:
    """
    Main DB dependency.

    The authorization dependency attaches the request's ScopeSet to
    `Session.info["scope"]`, and `scopeguard/db/filters.py` turns it into
    row criteria for every ORM select on scoped resource tables.
    """

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
