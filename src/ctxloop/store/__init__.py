"""Message storage: in-memory session log and persistence backends."""

from ctxloop.store.memory import (
    ImmutableHistoryError,
    InvalidMutationError,
    MessageNotFoundError,
    MessageStore,
    MessageStoreError,
    SessionNotFoundError,
    SessionRecord,
)
from ctxloop.store.persistence import (
    InMemoryPersistence,
    MessagePersistence,
    SQLitePersistence,
)

__all__ = [
    "ImmutableHistoryError",
    "InMemoryPersistence",
    "InvalidMutationError",
    "MessageNotFoundError",
    "MessagePersistence",
    "MessageStore",
    "MessageStoreError",
    "SQLitePersistence",
    "SessionNotFoundError",
    "SessionRecord",
]
