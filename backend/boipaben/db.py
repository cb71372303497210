from collections.abc import Generator, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings


def _sqlite_options(url: URL) -> dict[str, Any]:
    database = url.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    # The cleanup timer sweeps from its own thread.
    return {"connect_args": {"check_same_thread": False}}


def _server_options(url: URL) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_recycle": 300}
    if url.get_backend_name().startswith("postgresql"):
        connect_args: dict[str, Any] = {
            "keepalives": 1,
            "keepalives_idle": 120,
            "keepalives_interval": 30,
            "keepalives_count": 5,
        }
        if url.get_driver_name() == "psycopg":
            # Pooled connections in transaction mode reject PREPARE.
            connect_args["prepare_threshold"] = None
        options["connect_args"] = connect_args
    return options


def _create_engine(url: str, *, echo: bool = False) -> Engine:
    parsed = make_url(url)
    options: dict[str, Any] = {"echo": echo, "future": True, "pool_pre_ping": True}
    if parsed.get_backend_name() == "sqlite":
        options.update(_sqlite_options(parsed))
    else:
        options.update(_server_options(parsed))
    return create_engine(parsed, **options)


def build_db_components(url: str, *, echo: bool = False) -> tuple[Engine, sessionmaker[Session]]:
    """Engine plus session factory for ``url``; tests build throwaway pairs with it."""

    engine = _create_engine(url, echo=echo)
    # Sessions expire on commit so a committed sale is re-read from the store.
    factory = sessionmaker(bind=engine, autoflush=True, autocommit=False, future=True)
    return engine, factory


engine, SessionLocal = build_db_components(settings.resolved_database_url, echo=settings.debug)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind=None) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
