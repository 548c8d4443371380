"""SQLAlchemy-backed snapshot store."""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select

from switchboard.storage.base import ContextStore
from switchboard.storage.database import Database
from switchboard.storage.models import ContextSnapshotModel


class SQLContextStore(ContextStore):
    """Snapshot store persisting to the ``context_snapshots`` table.

    Attributes:
        _db: Database wrapper providing sessions

    Example:
        >>> db = Database(DatabaseConfig(url="sqlite:///./context.db"))
        >>> store = SQLContextStore(db)
        >>> manager = ContextManager(store=store)
        >>> manager.persist_context("nightly")
        True
    """

    def __init__(self, db: Database, create_tables: bool = True) -> None:
        """Initialize the store.

        Args:
            db: Database to write snapshots to
            create_tables: Create the snapshot table if it does not exist
        """
        self._db = db
        if create_tables:
            db.create_tables()

    def save(self, key: str, snapshot: dict[str, Any]) -> None:
        try:
            payload = json.dumps(snapshot)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Snapshot '{key}' must be JSON-serialisable") from exc

        with self._db.session() as session:
            row = session.get(ContextSnapshotModel, key)
            if row is None:
                session.add(ContextSnapshotModel(key=key, payload=payload))
            else:
                row.payload = payload
                row.updated_at = datetime.utcnow()

    def load(self, key: str) -> Optional[dict[str, Any]]:
        with self._db.session() as session:
            row = session.get(ContextSnapshotModel, key)
            payload = row.payload if row is not None else None
        return json.loads(payload) if payload is not None else None

    def delete(self, key: str) -> bool:
        with self._db.session() as session:
            result = session.execute(
                delete(ContextSnapshotModel).where(ContextSnapshotModel.key == key)
            )
            return bool(result.rowcount)

    def list_keys(self) -> list[str]:
        with self._db.session() as session:
            return list(session.scalars(select(ContextSnapshotModel.key)).all())
