"""Engine and session factories shared by the API, the processor and the CLI."""

from __future__ import annotations

import os
import uuid

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from . import Base


def _install_sqlite_hooks(engine: Engine) -> None:
    # Migrations use gen_random_uuid() server defaults and rely on FK cascades.
    @event.listens_for(engine, "connect")
    def _configure_sqlite(dbapi_connection, _connection_record):  # pragma: no cover - dialect hook
        dbapi_connection.create_function("gen_random_uuid", 0, lambda: str(uuid.uuid4()))
        dbapi_connection.execute("PRAGMA foreign_keys=ON")


def get_engine(database_url: str | None = None, **kwargs: object) -> Engine:
    """Create an engine for ``database_url`` or ``DATABASE_URL``.

    Postgres engines ping pooled connections before use because retry timers
    may hold on to a connection long after the request that queued the event.
    SQLite engines get ``gen_random_uuid()`` and enforced foreign keys so the
    shipped migrations and cascades behave as on Postgres.

    Raises:
        RuntimeError: If no URL is given and ``DATABASE_URL`` is unset.
    """

    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not configured.")

    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)
        _install_sqlite_hooks(engine)
        return engine

    kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


def get_sessionmaker(database_url: str | None = None, **kwargs: object) -> sessionmaker[Session]:
    """Session factory whose objects stay readable after commit."""

    return sessionmaker(
        bind=get_engine(database_url=database_url, **kwargs),
        expire_on_commit=False,
    )


__all__ = ["Base", "get_engine", "get_sessionmaker"]
