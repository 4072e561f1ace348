"""SQLAlchemy database engine, session factory, and declarative base.

Provides the shared engine and session factory used by the API process
and the Celery workers. SQLite connections enable WAL mode and foreign
keys via event listeners; other backends are used as configured.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from delisio.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for *url*, applying SQLite pragmas where relevant."""
    connect_args = {}
    kwargs = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if ":memory:" in url:
            # One shared connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, connect_args=connect_args, echo=echo, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


_settings = get_settings()
engine = build_engine(_settings.DATABASE_URL, echo=_settings.DEBUG)

SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine | None = None) -> None:
    """Create all tables from ORM metadata."""
    import delisio.models  # noqa: F401  (registers every mapped class)

    Base.metadata.create_all(bind=bind or engine)
