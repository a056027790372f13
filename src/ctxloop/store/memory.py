"""Per-session in-memory message log with a pluggable persistence boundary."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from ctxloop.models.message import Message, TokenUsage

if TYPE_CHECKING:
    from ctxloop.store.persistence import MessagePersistence

# ── Exceptions ─────────────────────────────────────────────────────────────────


class MessageStoreError(Exception):
    """Base class for store errors."""


class SessionNotFoundError(MessageStoreError):
    """Raised when a session_id is not open in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class MessageNotFoundError(MessageStoreError):
    """Raised when a message_id is not part of the session's active history."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id


class ImmutableHistoryError(MessageStoreError):
    """Raised when a mutation targets content before the latest summary boundary."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id!r} precedes the latest summary boundary")
        self.message_id = message_id


class InvalidMutationError(MessageStoreError):
    """Raised when a mutation is not one of the two permitted compaction edits."""


# ── Session record ─────────────────────────────────────────────────────────────


class SessionRecord:
    """
    Mutable state for one session.

    ``messages`` is always a tuple and is only ever rebound, never edited in
    place, so a reader holding a snapshot never sees a half-applied mutation.
    """

    __slots__ = (
        "archived",
        "dirty",
        "id",
        "loop_lock",
        "messages",
        "next_seq",
        "reclaimed_tokens",
        "turn_count",
        "usage",
        "usage_seq",
        "user_id",
    )

    def __init__(self, id: str, user_id: str) -> None:
        self.id = id
        self.user_id = user_id
        self.messages: tuple[Message, ...] = ()
        self.archived: list[Message] = []
        """Messages replaced by a summary, kept for inspection and persistence."""
        self.turn_count = 0
        self.next_seq = 1
        self.usage: TokenUsage | None = None
        """Provider usage reported by the most recent LLM call."""
        self.usage_seq = 0
        """``seq`` of the last message covered by ``usage``."""
        self.reclaimed_tokens = 0
        """Estimated tokens freed by pruning since ``usage`` was recorded."""
        self.dirty: set[str] = set()
        self.loop_lock = asyncio.Lock()

    @property
    def boundary_index(self) -> int:
        """Index of the latest summary message in ``messages``, or -1."""
        for i in range(len(self.messages) - 1, -1, -1):
            if self.messages[i].is_summary:
                return i
        return -1

    @property
    def last_summary(self) -> Message | None:
        idx = self.boundary_index
        return self.messages[idx] if idx >= 0 else None

    def index_of(self, message_id: str) -> int:
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        raise MessageNotFoundError(message_id)


# ── MessageStore ───────────────────────────────────────────────────────────────


class MessageStore:
    """
    Ordered, per-session message log held in memory.

    Writes are synchronous between awaits, so a single event loop gives
    single-writer semantics per session for free. Persistence is touched only
    at (re)hydration in ``open_session()`` and at run boundaries in
    ``flush()``, never on the hot loop path.

    Usage::

        store = MessageStore(persistence=SQLitePersistence(StoreConfig()))
        session = await store.open_session("sess_01J...", user_id="u1")
        store.append(session.id, message)
        await store.flush(session.id)
    """

    def __init__(self, persistence: MessagePersistence | None = None) -> None:
        self._persistence = persistence
        self._sessions: dict[str, SessionRecord] = {}
        self._open_lock = asyncio.Lock()
        self._logger = structlog.get_logger("ctxloop.store")

    @property
    def persistence(self) -> MessagePersistence | None:
        return self._persistence

    # ── Session Methods ────────────────────────────────────────────────────────

    async def open_session(self, session_id: str, user_id: str = "") -> SessionRecord:
        """
        Return the session record, hydrating it from persistence if needed.

        Args:
            session_id: The session to open.
            user_id: Owner of the session; recorded on first open.

        Returns:
            The live SessionRecord.
        """
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing

        async with self._open_lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing

            record = SessionRecord(session_id, user_id)
            if self._persistence is not None:
                loaded = await self._persistence.find_by_session(session_id)
                self._hydrate(record, loaded)
                if loaded:
                    self._logger.info(
                        "session_hydrated",
                        session_id=session_id,
                        message_count=len(record.messages),
                    )
            self._sessions[session_id] = record
            return record

    def get_session(self, session_id: str) -> SessionRecord:
        """
        Return an open session.

        Raises:
            SessionNotFoundError: If the session has not been opened.
        """
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def delete_session(self, session_id: str) -> None:
        """Tear down a session in memory and in persistence. No-op if unknown."""
        self._sessions.pop(session_id, None)
        if self._persistence is not None:
            await self._persistence.delete_by_session(session_id)
        self._logger.info("session_deleted", session_id=session_id)

    # ── Reads ──────────────────────────────────────────────────────────────────

    def messages(self, session_id: str) -> tuple[Message, ...]:
        """Return an immutable snapshot of the session's active history."""
        return self.get_session(session_id).messages

    def archived(self, session_id: str) -> list[Message]:
        """Return the messages replaced by summaries, oldest first."""
        return list(self.get_session(session_id).archived)

    # ── Appends ────────────────────────────────────────────────────────────────

    def begin_turn(self, session_id: str) -> int:
        """Start a new user turn and return its index (1-based)."""
        record = self.get_session(session_id)
        record.turn_count += 1
        return record.turn_count

    def append(self, session_id: str, message: Message) -> Message:
        """
        Append a message to the end of the session's history.

        The store assigns ``seq``. Messages without a ``turn_index`` are
        attributed to the current turn.

        Returns:
            The stored message (a copy carrying the assigned ``seq``).
        """
        record = self.get_session(session_id)
        update: dict[str, object] = {"seq": record.next_seq, "session_id": session_id}
        if message.turn_index is None and record.turn_count > 0:
            update["turn_index"] = record.turn_count
        stored = message.model_copy(update=update)
        record.next_seq += 1
        record.messages = (*record.messages, stored)
        record.dirty.add(stored.id)
        return stored

    def record_usage(self, session_id: str, usage: TokenUsage) -> None:
        """Remember provider usage as covering every message appended so far."""
        record = self.get_session(session_id)
        record.usage = usage
        record.usage_seq = record.messages[-1].seq if record.messages else 0
        record.reclaimed_tokens = 0

    # ── Compaction mutations ───────────────────────────────────────────────────

    def blank_tool_output(
        self,
        session_id: str,
        message_id: str,
        *,
        marker: str,
        compacted_at: int,
        reclaimed_tokens: int = 0,
    ) -> Message:
        """
        Replace a tool result's content with ``marker`` (pruning).

        Args:
            session_id: Owning session.
            message_id: The tool result to blank.
            marker: Replacement content.
            compacted_at: Unix millisecond timestamp recorded on the message.
            reclaimed_tokens: Estimated tokens freed, credited against the last
                recorded provider usage.

        Raises:
            MessageNotFoundError: If the message is not in the active history.
            ImmutableHistoryError: If the message precedes the latest summary.
            InvalidMutationError: If the message is not a tool result.
        """
        record = self.get_session(session_id)
        idx = record.index_of(message_id)
        if idx < record.boundary_index:
            raise ImmutableHistoryError(message_id)
        target = record.messages[idx]
        if not target.is_tool_result:
            raise InvalidMutationError(f"Only tool results can be blanked, got {target.kind!r}")

        blanked = target.model_copy(update={"content": marker, "compacted_at": compacted_at})
        messages = list(record.messages)
        messages[idx] = blanked
        record.messages = tuple(messages)
        record.reclaimed_tokens += reclaimed_tokens
        record.dirty.add(message_id)
        return blanked

    def replace_range(
        self,
        session_id: str,
        first_id: str,
        last_id: str,
        summary: Message,
    ) -> list[Message]:
        """
        Atomically replace the contiguous range ``first_id..last_id`` with ``summary``.

        The range may begin at the latest summary, which is then superseded.
        Replaced messages move to the archive with ``superseded_by`` set.

        Returns:
            The archived messages, in their original order.

        Raises:
            MessageNotFoundError: If either endpoint is not in the active history.
            ImmutableHistoryError: If the range starts before the latest summary.
            InvalidMutationError: If the range is empty, ``summary`` is not a
                summary message, or the range contains a non-summary system message.
        """
        record = self.get_session(session_id)
        start = record.index_of(first_id)
        end = record.index_of(last_id)
        if end < start:
            raise InvalidMutationError("Range end precedes range start")
        if start < record.boundary_index:
            raise ImmutableHistoryError(first_id)
        if not summary.is_summary:
            raise InvalidMutationError("Replacement must be a summary message")

        replaced = record.messages[start : end + 1]
        for msg in replaced:
            if msg.role == "system" and not msg.is_summary:
                raise InvalidMutationError(f"System message {msg.id!r} cannot be summarized")

        stored = summary.model_copy(
            update={"seq": record.next_seq, "session_id": session_id, "turn_index": None}
        )
        record.next_seq += 1
        archived = [m.model_copy(update={"superseded_by": stored.id}) for m in replaced]

        # Single rebinding: readers see either the old or the new tuple.
        record.messages = (*record.messages[:start], stored, *record.messages[end + 1 :])
        record.archived.extend(archived)
        record.usage = None
        record.reclaimed_tokens = 0
        record.dirty.add(stored.id)
        record.dirty.update(m.id for m in archived)

        self._logger.info(
            "range_replaced",
            session_id=session_id,
            replaced=len(archived),
            summary_id=stored.id,
        )
        return archived

    # ── Persistence ────────────────────────────────────────────────────────────

    async def flush(self, session_id: str) -> int:
        """
        Save every message changed since the last flush.

        Returns:
            Number of messages written. 0 when no persistence is configured.
        """
        record = self.get_session(session_id)
        if self._persistence is None or not record.dirty:
            return 0

        pending = [m for m in (*record.archived, *record.messages) if m.id in record.dirty]
        pending.sort(key=lambda m: m.seq)
        for msg in pending:
            await self._persistence.save(session_id, record.user_id, msg)
            record.dirty.discard(msg.id)
        self._logger.debug("session_flushed", session_id=session_id, written=len(pending))
        return len(pending)

    def _hydrate(self, record: SessionRecord, loaded: list[Message]) -> None:
        active = sorted((m for m in loaded if m.superseded_by is None), key=lambda m: m.seq)
        record.messages = tuple(active)
        if loaded:
            record.next_seq = max(m.seq for m in loaded) + 1
            record.turn_count = max((m.turn_index or 0) for m in loaded)
