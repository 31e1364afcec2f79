from contextlib import contextmanager

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models.tables import Base

SQLITE_BEGIN_OPTION = "sqlite_begin"


def build_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine.

    SQLite: check_same_thread=False for FastAPI's threadpool, foreign keys on,
    and write transactions (see write_session) opened with BEGIN IMMEDIATE so
    the lock pre-read and the lock write happen under the same database write
    lock. Read-only sessions use a plain deferred BEGIN.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, _):
        # pysqlite must not emit its own BEGIN; the "begin" hook below does it
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        mode = conn.get_execution_options().get(SQLITE_BEGIN_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def write_session(session_factory: sessionmaker):
    """
    Session inside one write transaction, committed on exit.

    On SQLite the transaction starts with BEGIN IMMEDIATE; other backends
    ignore the option.
    """
    with session_factory() as db, db.begin():
        db.connection(execution_options={SQLITE_BEGIN_OPTION: "IMMEDIATE"})
        yield db


def init_db(engine: Engine) -> None:
    """Create missing tables. Safe to call more than once."""
    Base.metadata.create_all(engine)


# FastAPI dependency
def get_db(request: Request):
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
