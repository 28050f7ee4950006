import os
from typing import Callable, Generator

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import database as database_module
from database import Base, enable_sqlite_savepoints


def _resolve_test_database_url() -> str:
    return os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or "sqlite+pysqlite:///:memory:"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    # Ensure all model metadata is registered before creating tables.
    import models  # noqa: F401

    database_url = _resolve_test_database_url()
    engine_kwargs = {}
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool
    test_engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if test_engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(test_engine)

    original_session_local = database_module.SessionLocal
    original_engine = database_module.engine
    database_module.SessionLocal = sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False)
    database_module.engine = test_engine
    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        database_module.engine = original_engine
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Generator[Callable[[], Session], None, None]:
    """Fresh schema per test; yields a factory bound to the test engine."""

    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
