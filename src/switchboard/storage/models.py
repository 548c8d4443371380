"""SQLAlchemy ORM models for persistence.

This module defines the table holding serialized context snapshots.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from switchboard.storage.base_model import Base


class ContextSnapshotModel(Base):
    """ORM model for context snapshots.

    Attributes:
        key: Storage key selecting the snapshot (``conversation_<id>`` or any
            free-form key for a full snapshot)
        payload: JSON-encoded snapshot
        updated_at: When the snapshot was last written
    """

    __tablename__ = "context_snapshots"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, index=True
    )
