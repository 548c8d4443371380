"""Database configuration and session management.

This module provides SQLAlchemy engine configuration and session management
for the snapshot tables.
"""

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from switchboard.storage.base_model import Base


class DatabaseConfig:
    """Database configuration.

    Attributes:
        url: Database connection URL
        echo: Whether to log SQL statements (default: False)
        pool_size: Connection pool size (default: 5)
        max_overflow: Maximum overflow connections (default: 10)
    """

    def __init__(
        self,
        url: str = "sqlite:///:memory:",
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.url = url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow


class Database:
    """Database connection and session manager.

    Example:
        >>> db = Database(DatabaseConfig(url="sqlite:///./context.db"))
        >>> db.create_tables()
        >>> with db.session() as session:
        ...     session.get(ContextSnapshotModel, "conversation_conv_1")
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize database with configuration.

        Args:
            config: Database configuration
        """
        self.config = config

        engine_kwargs: dict[str, Any] = {"echo": config.echo}
        if "sqlite" in config.url:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            # An in-memory database lives only as long as its connection
            if ":memory:" in config.url or config.url.rstrip("/").endswith("sqlite:"):
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_size"] = config.pool_size
            engine_kwargs["max_overflow"] = config.max_overflow

        self.engine = create_engine(config.url, **engine_kwargs)
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)

    def create_tables(self) -> None:
        """Create all tables defined in ORM models."""
        from switchboard.storage import models as _  # noqa: F401

        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all tables defined in ORM models."""
        from switchboard.storage import models as _  # noqa: F401

        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Create a new database session.

        Commits on success and rolls back on error.

        Yields:
            Database session
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        """Close database engine and connections."""
        self.engine.dispose()

    def health_check(self) -> bool:
        """Check database connectivity.

        Returns:
            True if database is healthy

        Raises:
            Exception if database connection fails
        """
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
