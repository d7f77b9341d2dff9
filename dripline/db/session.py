"""Engine and session factories for the API, the RQ jobs and the tick."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from dripline.core.config import settings


def build_engine(database_url: str) -> Engine:
    """Postgres gets a sized, pre-pinged pool; SQLite is only used for local runs."""

    url = make_url(database_url)
    options: dict[str, Any] = {"future": True}
    if url.get_backend_name() == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_pre_ping"] = True
        options["pool_size"] = settings.database_pool_size
        if settings.database_sslmode:
            options["connect_args"] = {"sslmode": settings.database_sslmode}
    return create_engine(database_url, **options)


engine = build_engine(settings.database_url)

# Loaded rows stay usable after commit: the scheduler commits per step and
# keeps reading the same subscription.
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """One unit of work for a background job; commits on success."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
