"""Database connection and session management."""

import os
from typing import Optional

from sqlalchemy import create_engine, Engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Global engine instance
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None

# Base class for all database models
Base = declarative_base()


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None,
                           pool_size: int = 5,
                           max_overflow: int = 10) -> Engine:
    """Create a new engine for ``database_url``.

    In-memory SQLite shares a single connection (StaticPool); file-backed
    SQLite uses a normal pool so scheduler workers get their own connections.
    """
    if database_url.startswith("sqlite"):
        connect_args = dict(connect_args or {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        else:
            engine = create_engine(database_url, connect_args=connect_args, echo=echo)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args or {},
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True
    )


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None,
                        pool_size: int = 5,
                        max_overflow: int = 10) -> Engine:
    """Get or create the process-wide database engine."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("CAMPAIGN_ENGINE_DATABASE_URL", "sqlite:///./campaign_engine.db")
        _engine = create_database_engine(database_url, echo=echo, connect_args=connect_args,
                                         pool_size=pool_size, max_overflow=max_overflow)

    return _engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Session factory bound to ``engine`` (or the global engine)."""
    global _session_factory

    if engine is not None:
        return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    if _session_factory is None:
        _session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=get_database_engine()
        )
    return _session_factory


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mapped tables

    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine or get_database_engine())
