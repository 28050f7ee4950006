"""Engine, session factory and declarative base shared by every model."""

import os
from typing import Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import JSON, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

load_dotenv()

TEST_DATABASE_URL: Optional[str] = os.getenv("TEST_DATABASE_URL")
DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or TEST_DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("Set DATABASE_URL (or TEST_DATABASE_URL for the test suite).")

# SQLite is only accepted when explicitly allowed (test runs).
ALLOW_NON_POSTGRES = os.getenv("DATABASE_ALLOW_NON_POSTGRES", "0") == "1"
IS_POSTGRES = DATABASE_URL.lower().startswith("postgresql")
if not IS_POSTGRES and not ALLOW_NON_POSTGRES:
    raise RuntimeError(
        f"Refusing non-PostgreSQL DATABASE_URL {DATABASE_URL!r}; set DATABASE_ALLOW_NON_POSTGRES=1 to override."
    )

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}


def enable_sqlite_savepoints(target: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so pysqlite honours SAVEPOINT."""

    @event.listens_for(target, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=IS_POSTGRES)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for alert, quota and mention tables."""


def get_db() -> Iterator[Session]:
    """Yield a request-scoped session; callers own commit/rollback."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
