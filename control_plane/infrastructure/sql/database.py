#control_plane\infrastructure\sql\database.py

"""Engine, session factory and transaction scope shared by every SQL store."""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from control_plane.config import settings


Base = declarative_base()


# ============================================
# Engines
# ============================================
def _sqlite_engine(url: str) -> Engine:
    # Worker threads and the API share one database file
    return create_engine(
        url,
        echo=settings.echo_sql,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def _postgres_engine(url: str) -> Engine:
    pg_engine = create_engine(
        url,
        echo=settings.echo_sql,
        pool_pre_ping=True,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )

    @event.listens_for(pg_engine, "connect")
    def set_search_path(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET search_path TO public")
        cursor.close()

    return pg_engine


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """Build an engine for the configured URL (or an explicit one in tests)."""
    url = database_url or settings.sqlalchemy_url

    if url.startswith("sqlite"):
        return _sqlite_engine(url)

    return _postgres_engine(url)


def get_session_factory(engine_instance: Optional[Engine] = None) -> sessionmaker:
    """
    Session factory bound to an engine.

    Stores take a factory in their constructor; tests pass one bound to a
    throwaway SQLite file, services fall back to SessionLocal.
    """
    return sessionmaker(
        bind=engine_instance if engine_instance is not None else engine,
        autoflush=False,
        expire_on_commit=False,
    )


# Process-wide defaults. create_engine does not connect until first use.
engine = create_db_engine()
SessionLocal = get_session_factory(engine)


# ============================================
# Transactions
# ============================================
@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Commit on success, roll back on any error, always close."""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine_instance: Optional[Engine] = None) -> None:
    """Create all tables directly. Production schemas go through Alembic."""
    from control_plane.infrastructure.sql import models  # noqa: F401

    Base.metadata.create_all(bind=engine_instance if engine_instance is not None else engine)
