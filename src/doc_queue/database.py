"""Engine and session factory helpers."""

from pathlib import Path

from sqlalchemy import Engine, create_engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine for the queue database.

    SQLite connections are shared across threads (the worker and the
    progress monitor run in different threads). In-memory SQLite uses a
    single static connection so every session sees the same database.
    File-backed SQLite gets its parent directory created.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, echo=echo)

    if url.database in (None, "", ":memory:"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=echo, connect_args={"check_same_thread": False})


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables if they don't exist."""
    Base.metadata.create_all(engine)
