"""Scoped, expiring context store shared across one orchestration session.

ContextManager keeps three scopes of key/value context (global, per
conversation, per request), a bounded per-conversation message history and a
store of tracked entities. Time-based cleanup only happens when
``prune_expired_context`` is called; capacity-based cleanup only happens when
``optimize_context`` is called.

Locking: every bucket (the global scope, each conversation, each request,
the entity table) has its own ``RLock``, so work on two different
conversations never contends. A short-held registry lock guards creation and
removal of buckets and is always taken before a bucket lock, never after.
"""

import itertools
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, NamedTuple, Optional, Union

from switchboard.observability.logging import get_logger
from switchboard.orchestration.protocol import Message
from switchboard.storage.base import ContextStore

logger = get_logger(__name__)

CONVERSATION_KEY_PREFIX = "conversation_"
SNAPSHOT_VERSION = 1


class ContextScope(str, Enum):
    """Lifetime/visibility partition of a context entry."""

    GLOBAL = "global"
    CONVERSATION = "conversation"
    REQUEST = "request"


class ContextPriority(str, Enum):
    """Eviction hint used by ``optimize_context``."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Eviction rank; lower ranks are evicted first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ContextPriority.LOW: 0,
    ContextPriority.MEDIUM: 1,
    ContextPriority.HIGH: 2,
}


@dataclass
class ContextEntry:
    """A single scoped context value.

    Attributes:
        key: Slot name within its scope bucket
        value: Stored value
        scope: Scope the entry lives in
        priority: Eviction hint
        created_at: Unix seconds of the last write
        sequence: Global write order, used as eviction tie-break
        conversation_id: Owning conversation (conversation scope only)
        request_id: Owning request (request scope only)
    """

    key: str
    value: Any
    scope: ContextScope
    priority: ContextPriority
    created_at: float
    sequence: int
    conversation_id: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "scope": self.scope.value,
            "priority": self.priority.value,
            "created_at": self.created_at,
            "sequence": self.sequence,
            "conversation_id": self.conversation_id,
            "request_id": self.request_id,
        }


@dataclass
class HistoryEntry:
    """A serialized message in a conversation's history."""

    message: Dict[str, Any]
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "created_at": self.created_at}


class EntityKey(NamedTuple):
    """Composite key identifying a tracked entity."""

    type: str
    id: str


@dataclass
class TrackedEntity:
    """A domain object referenced across one or more conversations.

    Attributes:
        type: Entity type (e.g. ``membership``)
        id: Entity identifier within its type
        metadata: Merged metadata; later tracking wins per key
        conversation_ids: Conversations the entity was seen in, in first-seen order
        created_at: When the entity was first tracked
        updated_at: When the entity was last tracked; drives expiry
    """

    type: str
    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    conversation_ids: List[str] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.type, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "metadata": dict(self.metadata),
            "conversation_ids": list(self.conversation_ids),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def copy(self) -> "TrackedEntity":
        return replace(
            self,
            metadata=dict(self.metadata),
            conversation_ids=list(self.conversation_ids),
        )


class _Bucket:
    """Entries of one scope partition plus the lock guarding them."""

    def __init__(self, history_size: Optional[int] = None) -> None:
        self.lock = threading.RLock()
        self.entries: Dict[str, ContextEntry] = {}
        self.history: Deque[HistoryEntry] = deque(maxlen=history_size)
        # Set once the bucket has been dropped from its table
        self.closed = False

    def is_empty(self) -> bool:
        return not self.entries and not self.history


def _coerce(enum_cls: Any, value: Any) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


class ContextManager:
    """Multi-scope key/value, history and entity store.

    Attributes:
        expiration_seconds: Age after which data becomes eligible for pruning
        max_history_size: Messages retained per conversation

    Example:
        >>> manager = ContextManager(expiration_seconds=600, max_history_size=5)
        >>> manager.add_context("plan", "pro", ContextScope.CONVERSATION, "conv_1")
        True
        >>> manager.get_context("plan", ContextScope.CONVERSATION, "conv_1")
        'pro'
        >>> manager.add_context("plan", "pro", ContextScope.CONVERSATION)
        False
    """

    def __init__(
        self,
        expiration_seconds: int = 3600,
        max_history_size: int = 10,
        store: Optional[ContextStore] = None,
        clock: Optional[Callable[[], float]] = None,
        auto_persist_history: bool = False,
        drop_orphaned_entities: bool = False,
    ) -> None:
        """Initialize the context manager.

        Args:
            expiration_seconds: Expiration window in seconds
            max_history_size: History cap per conversation
            store: Optional snapshot store for persist/load
            clock: Callable returning unix seconds (defaults to ``time.time``)
            auto_persist_history: Persist the conversation snapshot after each
                history append (requires ``store``)
            drop_orphaned_entities: Delete entities whose last conversation
                association is removed by ``clear_conversation_context``
        """
        if max_history_size < 1:
            raise ValueError("max_history_size must be at least 1")

        self.expiration_seconds = expiration_seconds
        self.max_history_size = max_history_size
        self._store = store
        self._clock = clock or time.time
        self._auto_persist_history = auto_persist_history
        self._drop_orphaned_entities = drop_orphaned_entities

        self._sequence = itertools.count()
        self._registry_lock = threading.Lock()
        self._global = _Bucket()
        self._conversations: Dict[str, _Bucket] = {}
        self._requests: Dict[str, _Bucket] = {}
        self._entity_lock = threading.RLock()
        self._entities: Dict[EntityKey, TrackedEntity] = {}

    # ------------------------------------------------------------------
    # Bucket helpers
    # ------------------------------------------------------------------

    def _is_expired(self, timestamp: float, now: Optional[float] = None) -> bool:
        current = self._clock() if now is None else now
        return current - timestamp > self.expiration_seconds

    def _new_bucket(self, table: Dict[str, _Bucket]) -> _Bucket:
        if table is self._conversations:
            return _Bucket(history_size=self.max_history_size)
        return _Bucket()

    @contextmanager
    def _writable_bucket(self, table: Dict[str, _Bucket], bucket_id: str) -> Iterator[_Bucket]:
        """Yield the bucket for ``bucket_id`` locked, creating it if needed."""
        while True:
            with self._registry_lock:
                bucket = table.get(bucket_id)
                if bucket is None:
                    bucket = self._new_bucket(table)
                    table[bucket_id] = bucket
            with bucket.lock:
                if bucket.closed:
                    # Dropped between lookup and lock; fetch the replacement
                    continue
                yield bucket
                return

    def _existing_bucket(self, table: Dict[str, _Bucket], bucket_id: Optional[str]) -> Optional[_Bucket]:
        if not bucket_id:
            return None
        with self._registry_lock:
            return table.get(bucket_id)

    def _bucket_for_read(
        self,
        scope: ContextScope,
        conversation_id: Optional[str],
        request_id: Optional[str],
    ) -> Optional[_Bucket]:
        if scope is ContextScope.GLOBAL:
            return self._global
        if scope is ContextScope.CONVERSATION:
            return self._existing_bucket(self._conversations, conversation_id)
        return self._existing_bucket(self._requests, request_id)

    # ------------------------------------------------------------------
    # Scoped key/value context
    # ------------------------------------------------------------------

    def add_context(
        self,
        key: str,
        value: Any,
        scope: Union[ContextScope, str] = ContextScope.CONVERSATION,
        conversation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        priority: Union[ContextPriority, str] = ContextPriority.MEDIUM,
    ) -> bool:
        """Store a value in the given scope.

        Args:
            key: Slot name
            value: Value to store
            scope: Target scope
            conversation_id: Required for conversation scope
            request_id: Required for request scope
            priority: Eviction hint

        Returns:
            False if the scope or priority is unknown, or the scope's id is
            missing; True once stored
        """
        resolved_scope = _coerce(ContextScope, scope)
        resolved_priority = _coerce(ContextPriority, priority)
        if resolved_scope is None or resolved_priority is None:
            logger.warning("context_rejected", key=key, scope=str(scope), priority=str(priority))
            return False

        if resolved_scope is ContextScope.CONVERSATION and not conversation_id:
            logger.debug("context_rejected_missing_conversation_id", key=key)
            return False
        if resolved_scope is ContextScope.REQUEST and not request_id:
            logger.debug("context_rejected_missing_request_id", key=key)
            return False

        entry = ContextEntry(
            key=key,
            value=value,
            scope=resolved_scope,
            priority=resolved_priority,
            created_at=self._clock(),
            sequence=next(self._sequence),
            conversation_id=conversation_id if resolved_scope is ContextScope.CONVERSATION else None,
            request_id=request_id if resolved_scope is ContextScope.REQUEST else None,
        )

        if resolved_scope is ContextScope.GLOBAL:
            with self._global.lock:
                self._global.entries.pop(key, None)
                self._global.entries[key] = entry
            return True

        table = self._conversations if resolved_scope is ContextScope.CONVERSATION else self._requests
        bucket_id = conversation_id if resolved_scope is ContextScope.CONVERSATION else request_id
        with self._writable_bucket(table, bucket_id) as bucket:  # type: ignore[arg-type]
            bucket.entries.pop(key, None)
            bucket.entries[key] = entry
        return True

    def get_context(
        self,
        key: str,
        scope: Union[ContextScope, str] = ContextScope.CONVERSATION,
        conversation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        default: Any = None,
    ) -> Any:
        """Read a value from the given scope.

        Returns:
            The stored value, or ``default`` if it is missing or expired
        """
        resolved_scope = _coerce(ContextScope, scope)
        if resolved_scope is None:
            return default

        bucket = self._bucket_for_read(resolved_scope, conversation_id, request_id)
        if bucket is None:
            return default

        with bucket.lock:
            entry = bucket.entries.get(key)
            if entry is None or self._is_expired(entry.created_at):
                return default
            return entry.value

    # ------------------------------------------------------------------
    # Conversation history
    # ------------------------------------------------------------------

    def add_message_to_history(self, message: Message, conversation_id: str) -> bool:
        """Append a message to a conversation's history.

        The oldest message is evicted once the history holds more than
        ``max_history_size`` messages.

        Returns:
            False if ``conversation_id`` is empty
        """
        if not conversation_id:
            logger.debug("history_rejected_missing_conversation_id", message_id=message.id)
            return False

        with self._writable_bucket(self._conversations, conversation_id) as bucket:
            if len(bucket.history) == self.max_history_size:
                logger.debug(
                    "history_trimmed",
                    conversation_id=conversation_id,
                    evicted_message_id=bucket.history[0].message.get("id"),
                )
            bucket.history.append(HistoryEntry(message=message.to_dict(), created_at=self._clock()))

        if self._auto_persist_history and self._store is not None:
            self.persist_context(f"{CONVERSATION_KEY_PREFIX}{conversation_id}")

        return True

    def get_conversation_history(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Return the conversation's unexpired messages, oldest first."""
        bucket = self._existing_bucket(self._conversations, conversation_id)
        if bucket is None:
            return []

        now = self._clock()
        with bucket.lock:
            return [
                dict(item.message)
                for item in bucket.history
                if not self._is_expired(item.created_at, now)
            ]

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def track_entity(
        self,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> bool:
        """Track an entity, merging into any existing record.

        New metadata wins per key; the conversation id is appended to the
        entity's associations if not already present.

        Returns:
            False if type or id is empty
        """
        if not entity_type or not entity_id:
            return False

        now = self._clock()
        key = EntityKey(str(entity_type), str(entity_id))
        with self._entity_lock:
            entity = self._entities.get(key)
            if entity is None:
                entity = TrackedEntity(
                    type=key.type,
                    id=key.id,
                    metadata=dict(metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
                self._entities[key] = entity
            else:
                entity.metadata.update(metadata or {})
                entity.updated_at = now

            if conversation_id and conversation_id not in entity.conversation_ids:
                entity.conversation_ids.append(conversation_id)

        return True

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[TrackedEntity]:
        """Return a copy of the tracked entity, or None if missing or expired."""
        with self._entity_lock:
            entity = self._entities.get(EntityKey(entity_type, entity_id))
            if entity is None or self._is_expired(entity.updated_at):
                return None
            return entity.copy()

    def get_entities_by_type(self, entity_type: str) -> List[TrackedEntity]:
        """Return copies of all unexpired entities of one type."""
        now = self._clock()
        with self._entity_lock:
            return [
                entity.copy()
                for entity in self._entities.values()
                if entity.type == entity_type and not self._is_expired(entity.updated_at, now)
            ]

    def get_entities_by_conversation(self, conversation_id: str) -> List[TrackedEntity]:
        """Return copies of all unexpired entities associated with a conversation."""
        now = self._clock()
        with self._entity_lock:
            return [
                entity.copy()
                for entity in self._entities.values()
                if conversation_id in entity.conversation_ids
                and not self._is_expired(entity.updated_at, now)
            ]

    # ------------------------------------------------------------------
    # Import from messages
    # ------------------------------------------------------------------

    def extract_context_from_message(
        self, message: Message, conversation_id: Optional[str] = None
    ) -> bool:
        """Import context and entities embedded in a message's metadata.

        Replays ``metadata["context"]`` items (``{key, value, scope,
        priority?}``) through :meth:`add_context`, using the message id as the
        request id, and ``metadata["entities"]`` items (``{type, id,
        metadata?}``) through :meth:`track_entity`, then appends the message
        to the conversation's history. Individual failures are skipped.

        Returns:
            Always True
        """
        context_items = message.get_metadata_value("context")
        if isinstance(context_items, list):
            for item in context_items:
                if not isinstance(item, dict) or "key" not in item or "scope" not in item:
                    continue
                self.add_context(
                    item["key"],
                    item.get("value"),
                    item["scope"],
                    conversation_id,
                    message.id,
                    item.get("priority", ContextPriority.MEDIUM),
                )

        entity_items = message.get_metadata_value("entities")
        if isinstance(entity_items, list):
            for item in entity_items:
                if not isinstance(item, dict) or "type" not in item or "id" not in item:
                    continue
                self.track_entity(
                    item["type"],
                    item["id"],
                    item.get("metadata") or {},
                    conversation_id,
                )

        if conversation_id:
            self.add_message_to_history(message, conversation_id)

        return True

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _prune_bucket(self, bucket: _Bucket, now: float) -> int:
        expired_keys = [
            key for key, entry in bucket.entries.items() if self._is_expired(entry.created_at, now)
        ]
        for key in expired_keys:
            del bucket.entries[key]

        kept = [item for item in bucket.history if not self._is_expired(item.created_at, now)]
        removed_history = len(bucket.history) - len(kept)
        if removed_history:
            bucket.history.clear()
            bucket.history.extend(kept)

        return len(expired_keys) + removed_history

    def _prune_table(self, table: Dict[str, _Bucket], now: float) -> int:
        pruned = 0
        with self._registry_lock:
            for bucket_id in list(table):
                bucket = table[bucket_id]
                with bucket.lock:
                    pruned += self._prune_bucket(bucket, now)
                    if bucket.is_empty():
                        bucket.closed = True
                        del table[bucket_id]
        return pruned

    def prune_expired_context(self) -> int:
        """Remove every context entry, history item and entity past the window.

        Returns:
            Number of items removed
        """
        now = self._clock()

        with self._global.lock:
            pruned = self._prune_bucket(self._global, now)
        pruned += self._prune_table(self._conversations, now)
        pruned += self._prune_table(self._requests, now)

        with self._entity_lock:
            expired = [
                key for key, entity in self._entities.items() if self._is_expired(entity.updated_at, now)
            ]
            for key in expired:
                del self._entities[key]
        pruned += len(expired)

        if pruned:
            logger.info("context_pruned", removed=pruned)
        return pruned

    @staticmethod
    def _evict(
        entries: Dict[str, ContextEntry],
        max_items: int,
        keep_high_priority_floor: int,
        remove_low_priority_first: bool,
    ) -> int:
        excess = len(entries) - max(0, max_items)
        if excess <= 0:
            return 0

        if remove_low_priority_first:
            order = sorted(entries.values(), key=lambda e: (e.priority.rank, e.sequence))
        else:
            order = sorted(entries.values(), key=lambda e: e.sequence)

        protected: set[str] = set()
        floor = max(0, int(keep_high_priority_floor))
        if floor:
            newest_high = sorted(
                (e for e in entries.values() if e.priority is ContextPriority.HIGH),
                key=lambda e: e.sequence,
                reverse=True,
            )
            protected = {e.key for e in newest_high[:floor]}

        removed = 0
        for entry in order:
            if removed >= excess:
                break
            if entry.key in protected:
                continue
            del entries[entry.key]
            removed += 1
        return removed

    def optimize_context(
        self,
        max_items: int = 100,
        keep_high_priority_floor: Union[int, bool] = 0,
        remove_low_priority_first: bool = True,
        *,
        max_conversation_items: Optional[int] = None,
        max_request_items: Optional[int] = None,
    ) -> int:
        """Evict context entries to bring scopes under their capacity.

        Eviction order is lowest priority first (when
        ``remove_low_priority_first``) or purely oldest first, with write
        order breaking ties, so identical inputs always evict the same keys.

        Args:
            max_items: Target size of the global scope
            keep_high_priority_floor: Number of the newest high-priority
                entries in each bucket that are never evicted; eviction stops
                short of the target rather than touch them
            remove_low_priority_first: Order by priority before age
            max_conversation_items: Optional target per conversation bucket
            max_request_items: Optional target per request bucket

        Returns:
            Number of entries removed
        """
        with self._global.lock:
            removed = self._evict(
                self._global.entries, max_items, keep_high_priority_floor, remove_low_priority_first
            )

        for table, limit in (
            (self._conversations, max_conversation_items),
            (self._requests, max_request_items),
        ):
            if limit is None:
                continue
            with self._registry_lock:
                buckets = list(table.values())
            for bucket in buckets:
                with bucket.lock:
                    removed += self._evict(
                        bucket.entries, limit, keep_high_priority_floor, remove_low_priority_first
                    )

        if removed:
            logger.info("context_optimized", removed=removed, max_items=max_items)
        return removed

    def clear_conversation_context(self, conversation_id: str) -> bool:
        """Drop a conversation's entries and history and detach its entities.

        Entities stay tracked (so cross-conversation entities survive) unless
        the manager was built with ``drop_orphaned_entities``. Any stored
        ``conversation_<id>`` snapshot is deleted as well.

        Returns:
            True if anything was removed or detached
        """
        if not conversation_id:
            return False

        with self._registry_lock:
            bucket = self._conversations.pop(conversation_id, None)
            if bucket is not None:
                with bucket.lock:
                    bucket.closed = True

        detached = 0
        with self._entity_lock:
            for key in list(self._entities):
                entity = self._entities[key]
                if conversation_id not in entity.conversation_ids:
                    continue
                entity.conversation_ids.remove(conversation_id)
                detached += 1
                if self._drop_orphaned_entities and not entity.conversation_ids:
                    del self._entities[key]

        if self._store is not None:
            try:
                self._store.delete(f"{CONVERSATION_KEY_PREFIX}{conversation_id}")
            except Exception:
                logger.error(
                    "snapshot_delete_failed", conversation_id=conversation_id, exc_info=True
                )

        cleared = bucket is not None or detached > 0
        logger.debug(
            "conversation_context_cleared",
            conversation_id=conversation_id,
            cleared=cleared,
            entities_detached=detached,
        )
        return cleared

    def clear_request_context(self, request_id: str) -> bool:
        """Drop one request's scope; other scopes are untouched.

        Returns:
            True if the request had any context
        """
        with self._registry_lock:
            bucket = self._requests.pop(request_id, None)
            if bucket is None:
                return False
            with bucket.lock:
                bucket.closed = True
        return True

    def clear_all_context(self) -> None:
        """Reset every scope, history and the entity table."""
        with self._registry_lock:
            for table in (self._conversations, self._requests):
                for bucket in table.values():
                    with bucket.lock:
                        bucket.closed = True
                table.clear()
            with self._global.lock:
                self._global.entries.clear()
        with self._entity_lock:
            self._entities.clear()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _snapshot_bucket(self, bucket: _Bucket) -> Dict[str, Any]:
        with bucket.lock:
            return {
                "entries": [entry.to_dict() for entry in bucket.entries.values()],
                "history": [item.to_dict() for item in bucket.history],
            }

    def _build_snapshot(self, conversation_id: Optional[str]) -> Optional[Dict[str, Any]]:
        snapshot: Dict[str, Any] = {
            "version": SNAPSHOT_VERSION,
            "saved_at": self._clock(),
            "conversation_id": conversation_id,
            "global": [],
            "conversations": {},
            "requests": {},
            "entities": [],
        }

        if conversation_id is not None:
            bucket = self._existing_bucket(self._conversations, conversation_id)
            if bucket is None:
                return None
            snapshot["conversations"][conversation_id] = self._snapshot_bucket(bucket)
            with self._entity_lock:
                snapshot["entities"] = [
                    entity.to_dict()
                    for entity in self._entities.values()
                    if conversation_id in entity.conversation_ids
                ]
            return snapshot

        with self._global.lock:
            snapshot["global"] = [entry.to_dict() for entry in self._global.entries.values()]
        with self._registry_lock:
            conversations = dict(self._conversations)
            requests = dict(self._requests)
        for bucket_id, bucket in conversations.items():
            snapshot["conversations"][bucket_id] = self._snapshot_bucket(bucket)
        for bucket_id, bucket in requests.items():
            snapshot["requests"][bucket_id] = self._snapshot_bucket(bucket)["entries"]
        with self._entity_lock:
            snapshot["entities"] = [entity.to_dict() for entity in self._entities.values()]
        return snapshot

    def persist_context(self, storage_key: str) -> bool:
        """Write a snapshot of the in-memory state to the attached store.

        A key of the form ``conversation_<id>`` snapshots only that
        conversation (its entries, history and associated entities); any
        other key snapshots everything.

        Returns:
            False if no store is attached, the conversation is unknown, or
            the store rejects the snapshot
        """
        if self._store is None:
            logger.warning("persist_skipped_no_store", storage_key=storage_key)
            return False

        conversation_id = None
        if storage_key.startswith(CONVERSATION_KEY_PREFIX):
            conversation_id = storage_key[len(CONVERSATION_KEY_PREFIX):] or None

        snapshot = self._build_snapshot(conversation_id)
        if snapshot is None:
            logger.debug("persist_skipped_unknown_conversation", storage_key=storage_key)
            return False

        try:
            self._store.save(storage_key, snapshot)
        except Exception:
            logger.error("context_persist_failed", storage_key=storage_key, exc_info=True)
            return False

        logger.debug("context_persisted", storage_key=storage_key)
        return True

    def _restore_entries(
        self, raw_entries: List[Dict[str, Any]], scope: ContextScope
    ) -> Dict[str, ContextEntry]:
        entries: Dict[str, ContextEntry] = {}
        for raw in sorted(raw_entries, key=lambda item: item.get("sequence", 0)):
            entries[raw["key"]] = ContextEntry(
                key=raw["key"],
                value=raw.get("value"),
                scope=scope,
                priority=ContextPriority(raw.get("priority", ContextPriority.MEDIUM.value)),
                created_at=float(raw["created_at"]),
                sequence=next(self._sequence),
                conversation_id=raw.get("conversation_id"),
                request_id=raw.get("request_id"),
            )
        return entries

    def _restore_bucket(self, raw: Dict[str, Any], scope: ContextScope) -> _Bucket:
        bucket = self._new_bucket(
            self._conversations if scope is ContextScope.CONVERSATION else self._requests
        )
        bucket.entries = self._restore_entries(raw.get("entries", []), scope)
        for item in raw.get("history", []):
            bucket.history.append(
                HistoryEntry(message=dict(item["message"]), created_at=float(item["created_at"]))
            )
        return bucket

    @staticmethod
    def _restore_entity(raw: Dict[str, Any]) -> TrackedEntity:
        return TrackedEntity(
            type=raw["type"],
            id=raw["id"],
            metadata=dict(raw.get("metadata") or {}),
            conversation_ids=list(raw.get("conversation_ids") or []),
            created_at=float(raw["created_at"]),
            updated_at=float(raw.get("updated_at", raw["created_at"])),
        )

    def load_context(self, storage_key: str) -> bool:
        """Restore state from a snapshot in the attached store.

        A ``conversation_<id>`` snapshot replaces that conversation's bucket
        and merges its entities into the entity table; a full snapshot
        replaces all state. Nothing is applied if the snapshot is malformed.

        Returns:
            False if no store is attached, the key is missing, or the
            snapshot cannot be decoded
        """
        if self._store is None:
            logger.warning("load_skipped_no_store", storage_key=storage_key)
            return False

        try:
            snapshot = self._store.load(storage_key)
        except Exception:
            logger.error("context_load_failed", storage_key=storage_key, exc_info=True)
            return False

        if not isinstance(snapshot, dict):
            logger.debug("context_snapshot_missing", storage_key=storage_key)
            return False

        try:
            global_entries = self._restore_entries(snapshot.get("global", []), ContextScope.GLOBAL)
            conversations = {
                bucket_id: self._restore_bucket(raw, ContextScope.CONVERSATION)
                for bucket_id, raw in snapshot.get("conversations", {}).items()
            }
            requests = {
                bucket_id: self._restore_bucket({"entries": raw}, ContextScope.REQUEST)
                for bucket_id, raw in snapshot.get("requests", {}).items()
            }
            entities = [self._restore_entity(raw) for raw in snapshot.get("entities", [])]
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.error("context_snapshot_malformed", storage_key=storage_key, exc_info=True)
            return False

        if snapshot.get("conversation_id") is not None:
            self._merge_conversation_snapshot(conversations, entities)
        else:
            self._replace_state(global_entries, conversations, requests, entities)

        logger.debug("context_loaded", storage_key=storage_key)
        return True

    def _merge_conversation_snapshot(
        self, conversations: Dict[str, _Bucket], entities: List[TrackedEntity]
    ) -> None:
        with self._registry_lock:
            for bucket_id, bucket in conversations.items():
                previous = self._conversations.get(bucket_id)
                if previous is not None:
                    with previous.lock:
                        previous.closed = True
                self._conversations[bucket_id] = bucket

        with self._entity_lock:
            for restored in entities:
                existing = self._entities.get(restored.key)
                if existing is None:
                    self._entities[restored.key] = restored
                    continue
                existing.metadata.update(restored.metadata)
                existing.updated_at = max(existing.updated_at, restored.updated_at)
                for conversation_id in restored.conversation_ids:
                    if conversation_id not in existing.conversation_ids:
                        existing.conversation_ids.append(conversation_id)

    def _replace_state(
        self,
        global_entries: Dict[str, ContextEntry],
        conversations: Dict[str, _Bucket],
        requests: Dict[str, _Bucket],
        entities: List[TrackedEntity],
    ) -> None:
        with self._registry_lock:
            for table, restored in ((self._conversations, conversations), (self._requests, requests)):
                for bucket in table.values():
                    with bucket.lock:
                        bucket.closed = True
                table.clear()
                table.update(restored)
            with self._global.lock:
                self._global.entries = global_entries
        with self._entity_lock:
            self._entities = {entity.key: entity for entity in entities}

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_context_stats(self) -> Dict[str, Any]:
        """Return exact item counts per scope.

        Returns:
            Dictionary with global_items, conversation_items, request_items,
            entity_items, conversation_count, request_count, conversation_ids,
            request_ids and history_items
        """
        with self._global.lock:
            global_items = len(self._global.entries)

        with self._registry_lock:
            conversations = dict(self._conversations)
            requests = dict(self._requests)

        conversation_items = 0
        history_items = 0
        for bucket in conversations.values():
            with bucket.lock:
                conversation_items += len(bucket.entries)
                history_items += len(bucket.history)

        request_items = 0
        for bucket in requests.values():
            with bucket.lock:
                request_items += len(bucket.entries)

        with self._entity_lock:
            entity_items = len(self._entities)

        return {
            "global_items": global_items,
            "conversation_items": conversation_items,
            "request_items": request_items,
            "entity_items": entity_items,
            "conversation_count": len(conversations),
            "request_count": len(requests),
            "conversation_ids": list(conversations),
            "request_ids": list(requests),
            "history_items": history_items,
        }
