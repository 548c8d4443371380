"""In-memory snapshot store.

Not durable across process restarts. Snapshots are kept JSON-encoded so the
store behaves like a real backend: callers get a fresh copy on every load
and non-serialisable values are rejected at save time.
"""

import json
import threading
from typing import Any, Optional

from switchboard.storage.base import ContextStore

_MAX_SNAPSHOT_BYTES = 8 * 1024 * 1024  # 8 MB per snapshot cap


class InMemoryContextStore(ContextStore):
    """Thread-safe in-memory store backed by a plain dict."""

    def __init__(self) -> None:
        # key -> JSON text
        self._snapshots: dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, key: str, snapshot: dict[str, Any]) -> None:
        try:
            encoded = json.dumps(snapshot)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Snapshot '{key}' must be JSON-serialisable") from exc

        if len(encoded.encode()) > _MAX_SNAPSHOT_BYTES:
            raise ValueError(f"Snapshot '{key}' exceeds the 8 MB limit")

        with self._lock:
            self._snapshots[key] = encoded

    def load(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            encoded = self._snapshots.get(key)
        return json.loads(encoded) if encoded is not None else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._snapshots.pop(key, None) is not None

    def list_keys(self) -> list[str]:
        with self._lock:
            return list(self._snapshots.keys())
