"""Persistence backends for the message store."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite
import structlog

from ctxloop.models.config import StoreConfig
from ctxloop.models.message import Message, ToolCallRequest
from ctxloop.store.memory import MessageStoreError


@runtime_checkable
class MessagePersistence(Protocol):
    """
    Durable storage for session messages.

    Used only when a session is (re)hydrated and when a run finishes, never
    per message on the hot loop path. ``save`` is an upsert keyed by message
    id, so re-saving a blanked or superseded message updates it in place.
    """

    async def save(self, session_id: str, user_id: str, message: Message) -> None: ...

    async def find_by_session(self, session_id: str) -> list[Message]:
        """Return the active (non-superseded) messages of a session ordered by ``seq``."""
        ...

    async def delete_by_session(self, session_id: str) -> None: ...


class InMemoryPersistence:
    """Dict-backed persistence, useful in tests and short-lived processes."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Message]] = {}
        self._owners: dict[str, str] = {}

    async def save(self, session_id: str, user_id: str, message: Message) -> None:
        self._rows.setdefault(session_id, {})[message.id] = message
        self._owners.setdefault(session_id, user_id)

    async def find_by_session(self, session_id: str) -> list[Message]:
        rows = self._rows.get(session_id, {}).values()
        return sorted((m for m in rows if m.superseded_by is None), key=lambda m: m.seq)

    async def delete_by_session(self, session_id: str) -> None:
        self._rows.pop(session_id, None)
        self._owners.pop(session_id, None)

    def owner(self, session_id: str) -> str | None:
        return self._owners.get(session_id)


class SQLitePersistence:
    """
    SQLite-backed persistence using a single aiosqlite connection.

    Usage::

        persistence = SQLitePersistence(StoreConfig(db_path="~/.ctxloop/sessions.db"))
        await persistence.initialize()
        try:
            store = MessageStore(persistence)
            ...
        finally:
            await persistence.close()
    """

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._conn: aiosqlite.Connection | None = None
        self._logger = structlog.get_logger("ctxloop.persistence")

    async def initialize(self) -> None:
        """
        Open the database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path, timeout=self._config.connection_timeout)
        try:
            conn.row_factory = aiosqlite.Row
            if self._config.wal_mode:
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            schema = (Path(__file__).parent / "schema.sql").read_text()
            await conn.executescript(schema)
            await conn.commit()
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        self._logger.info("persistence_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise MessageStoreError("Persistence is not initialized. Call initialize() first.")
        return self._conn

    async def save(self, session_id: str, user_id: str, message: Message) -> None:
        conn = self._conn_or_raise()
        tool_calls = json.dumps([c.model_dump() for c in message.tool_calls])
        await conn.execute(
            """
            INSERT OR REPLACE INTO messages (
                id, session_id, user_id, seq, role, kind, content, tool_call_id,
                tool_name, tool_calls, turn_index, created_at, compacted_at, superseded_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                session_id,
                user_id,
                message.seq,
                message.role,
                message.kind,
                message.content,
                message.tool_call_id,
                message.tool_name,
                tool_calls,
                message.turn_index,
                message.created_at,
                message.compacted_at,
                message.superseded_by,
            ),
        )
        await conn.commit()

    async def find_by_session(self, session_id: str) -> list[Message]:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages"
            " WHERE session_id=? AND superseded_by IS NULL ORDER BY seq ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def delete_by_session(self, session_id: str) -> None:
        conn = self._conn_or_raise()
        await conn.execute("DELETE FROM messages WHERE session_id=?", (session_id,))
        await conn.commit()

    async def count_archived(self, session_id: str) -> int:
        """Number of superseded messages kept for a session."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT COUNT(*) FROM messages WHERE session_id=? AND superseded_by IS NOT NULL",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        calls = [ToolCallRequest(**c) for c in json.loads(row["tool_calls"] or "[]")]
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            kind=row["kind"],
            content=row["content"],
            tool_call_id=row["tool_call_id"],
            tool_name=row["tool_name"],
            tool_calls=calls,
            turn_index=row["turn_index"],
            seq=row["seq"],
            created_at=row["created_at"],
            compacted_at=row["compacted_at"],
            superseded_by=row["superseded_by"],
        )
