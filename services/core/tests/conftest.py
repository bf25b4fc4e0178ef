"""Pytest configuration and fixtures for CallBridge Core tests.

This module provides fixtures for:
- Settings: test settings with no inter-batch delay
- Database: SQLite in-memory engine shared by every session of a test
- Sources: a scripted in-memory message source client
"""

from collections.abc import Generator

import pytest
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from callbridge_core.config import Settings
from callbridge_core.domain.models import Base
from factories import FakeSourceClient


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with safe defaults."""
    return Settings(
        database_url="sqlite:///:memory:",
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        log_json=False,
        source_platform="voice_sms",
        sync_inter_batch_delay_ms=0,
        sync_error_budget=5,
        sync_error_budget_consecutive=False,
        sync_progress_retention_seconds=300,
    )


# -----------------------------------------------------------------------------
# Synchronous Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing.

    StaticPool keeps a single connection, so the test session and the
    sessions opened by the sync orchestrator see the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # SQLite only autoincrements INTEGER PRIMARY KEY columns, so compile
    # BigInteger as INTEGER while the tables are created
    from sqlalchemy.dialects import sqlite

    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# -----------------------------------------------------------------------------
# Message Source Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def fake_source() -> FakeSourceClient:
    """Create an empty scripted source client."""
    return FakeSourceClient()
