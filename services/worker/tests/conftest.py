"""Pytest configuration and fixtures for worker tests.

These fixtures enable testing Celery tasks without requiring:
- Running Redis/Celery
- A MySQL server
- The external voice/SMS provider
"""

import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Optional
from unittest.mock import MagicMock, patch

import pytest

# Add worker package to path
worker_path = Path(__file__).parent.parent
sys.path.insert(0, str(worker_path))

# Set test environment variables before importing celery_app
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from sqlalchemy import StaticPool, create_engine, event  # noqa: E402

from callbridge_core.config import Settings  # noqa: E402
from callbridge_core.domain.models import Base  # noqa: E402
from callbridge_core.infra.db import Database  # noqa: E402
from callbridge_core.providers.base import (  # noqa: E402
    FetchPageRequest,
    MessagePage,
    MessageSourceClient,
)


@pytest.fixture
def mock_celery_app():
    """Celery app configured for eager execution."""
    from callbridge_worker.celery_app import app

    # Configure for eager execution (synchronous)
    app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
    )
    return app


@pytest.fixture
def worker_settings() -> Settings:
    """Settings for task runs: in-memory database and no batch delay."""
    return Settings(
        database_url="sqlite:///:memory:",
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        sync_accounts="acct-1,acct-2",
        sync_inter_batch_delay_ms=0,
    )


@pytest.fixture
def database():
    """In-memory store shared by the test and the task under test.

    dispose() is stubbed out so the task's cleanup does not drop the
    in-memory database before the test inspects it.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # SQLite only autoincrements INTEGER PRIMARY KEY columns
    from sqlalchemy.dialects import sqlite

    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    database = Database(engine=engine)
    database.dispose = MagicMock()
    yield database

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


class StaticSourceClient(MessageSourceClient):
    """Source client serving a fixed list of pages keyed by cursor."""

    def __init__(self, pages: Optional[dict[Optional[str], MessagePage]] = None):
        self.pages = pages or {}
        self.requests: list[FetchPageRequest] = []

    async def fetch_page(self, account_id: str, request: FetchPageRequest) -> MessagePage:
        self.requests.append(request)
        return self.pages.get(request.cursor, MessagePage(messages=[]))


@pytest.fixture
def source_client() -> StaticSourceClient:
    """Create an empty static source client."""
    return StaticSourceClient()


@pytest.fixture
def task_env(mock_celery_app, worker_settings, database, source_client) -> SimpleNamespace:
    """Patch the ingest task module to use the test store, settings and source."""
    module = "callbridge_worker.tasks.ingest"
    with (
        patch(f"{module}.get_settings", return_value=worker_settings),
        patch(f"{module}.get_database", return_value=database),
        patch(f"{module}.load_source_client", return_value=source_client),
    ):
        yield SimpleNamespace(
            app=mock_celery_app,
            settings=worker_settings,
            database=database,
            source_client=source_client,
        )
