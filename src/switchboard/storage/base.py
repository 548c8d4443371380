"""Abstract snapshot store interface for context persistence."""

from abc import ABC, abstractmethod
from typing import Any, Optional


class ContextStore(ABC):
    """Abstract key → snapshot store.

    A snapshot is a JSON-serialisable dict produced by
    ``ContextManager.persist_context``. Implementations raise ``ValueError``
    for values they cannot encode; the context manager turns any failure
    into a ``False`` return.
    """

    @abstractmethod
    def save(self, key: str, snapshot: dict[str, Any]) -> None:
        """Write (or overwrite) the snapshot stored under ``key``."""

    @abstractmethod
    def load(self, key: str) -> Optional[dict[str, Any]]:
        """Read the snapshot under ``key``. Returns None if missing."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete the snapshot under ``key``. Returns True if one existed."""

    @abstractmethod
    def list_keys(self) -> list[str]:
        """Return every stored key."""
