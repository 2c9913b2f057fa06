"""Engine and session factory for the local settlement ledger."""

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from billing_ops.core.config import settings


def engine_options(dsn: str) -> dict[str, Any]:
    """Keyword arguments for ``create_engine`` suited to the ledger's database.

    SQLite connections are shared between the request threads and the
    settlement lock holder, so its same-thread check is turned off. Server
    databases get ``pool_pre_ping`` so a dropped connection never fails a
    settlement halfway through recording it.
    """
    if dsn.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.APP_DATABASE_DSN, **engine_options(settings.APP_DATABASE_DSN))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding one ledger session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
