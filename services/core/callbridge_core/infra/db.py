"""Database infrastructure for CallBridge Core.

The store handle is constructed explicitly and passed to whoever needs it;
there is no process-wide engine.

Usage:
    database = Database.from_settings(get_settings())

    with database.session_scope() as session:
        customer = session.get(Customer, 1)

    orchestrator = SyncOrchestrator(
        session_factory=database.session_factory,
        source_client=client,
    )
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from callbridge_core.config import Settings


class Database:
    """Engine plus session factory for one database."""

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, **engine_kwargs: Any):
        """Initialize the store handle.

        Args:
            url: SQLAlchemy URL, used when no engine is given.
            engine: Pre-built engine (tests pass an in-memory one).
            **engine_kwargs: Extra create_engine arguments.
        """
        if engine is None:
            if not url:
                raise ValueError("either url or engine is required")
            options = {"pool_pre_ping": True, "echo": False}
            if not url.startswith("sqlite"):
                options["pool_recycle"] = 3600
            options.update(engine_kwargs)
            engine = create_engine(url, **options)

        self.engine = engine
        self.session_factory: sessionmaker[Session] = sessionmaker(
            bind=engine,
            autocommit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Build a store handle from application settings."""
        return cls(url=settings.database_url)

    def create_schema(self) -> None:
        """Create all tables known to the model metadata."""
        from callbridge_core.domain.models import Base

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
