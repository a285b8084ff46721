"""Run ledger storage.

The ledger is a small SQLite database (any SQLAlchemy URL works) holding
one row per pipeline run and one per produced file. It is optional: the
pipeline runs without a session and only the CLI attaches one.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from raphael_imagegen.config import get_settings


class Base(DeclarativeBase):
    """Declarative base of the ledger models."""


def get_engine(db_url: str | None = None) -> Engine:
    """Return an engine for the ledger at db_url (settings.db_url if None).

    The directory of a file-backed SQLite database is created on demand.
    """
    url = make_url(db_url or get_settings().db_url)
    options: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, **options)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


@contextmanager
def get_session(
    factory: sessionmaker[Session] | None = None,
) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create missing ledger tables."""
    from raphael_imagegen.pipeline import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
