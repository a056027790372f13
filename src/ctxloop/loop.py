"""The agent loop: the primary public API entry point."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import structlog

from ctxloop.compaction.engine import CompactionEngine
from ctxloop.compaction.overflow import OverflowDetector
from ctxloop.compaction.summarizer import LLMSummarizer, Summarizer
from ctxloop.compaction.truncation import OutputTruncator, SpillStore, spill_store_from_config
from ctxloop.context.builder import ContextBuilder
from ctxloop.events.bus import EventBus, LoopEvent
from ctxloop.ids import make_id
from ctxloop.llm.client import GenerateOptions, LLMClient
from ctxloop.models.config import LoopConfig
from ctxloop.models.message import (
    CompactionResult,
    LLMResponse,
    LoopResult,
    Message,
    TokenUsage,
    ToolExecutionResult,
)
from ctxloop.store.memory import MessageStore, SessionRecord
from ctxloop.tokens.estimator import TokenEstimator
from ctxloop.tools.dispatcher import ToolDispatcher
from ctxloop.tools.registry import ToolRegistry
from ctxloop.tools.spill import SPILL_READER_NAME, make_spill_reader_tool

MAX_ITERATIONS_ERROR = "Max iterations reached, possible infinite loop"

T = TypeVar("T")


class _Aborted(Exception):
    """Internal signal: the caller's abort event fired mid-call."""


class AgentLoop:
    """
    Drives an LLM through a bounded tool-calling loop within its context budget.

    Each ``run()`` appends the user query, then repeats: check the projected
    token usage, compact if it would overflow, call the LLM, and either
    dispatch the requested tools and go around again or record the final
    answer. Runs for the same session are serialized; different sessions run
    independently.

    Usage::

        registry = ToolRegistry([read_file_tool, bash_tool])
        loop = AgentLoop(LiteLLMClient(), registry, config=LoopConfig())

        result = await loop.run("sess_01J...", "Why does the build fail?", user_id="u1")
        if result.ok:
            print(result.content)
        else:
            print(result.failure, result.error)
    """

    def __init__(
        self,
        llm: LLMClient,
        registry: ToolRegistry | None = None,
        *,
        config: LoopConfig | None = None,
        store: MessageStore | None = None,
        summarizer: Summarizer | None = None,
        event_bus: EventBus | None = None,
        estimator: TokenEstimator | None = None,
        spill_store: SpillStore | None = None,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._llm = llm
        self._config = config or LoopConfig.default()
        self._registry = registry if registry is not None else ToolRegistry()
        # Loop-private layer: tools bound to this loop stay out of a shared registry.
        self._tools = ToolRegistry(parent=self._registry)
        self._store = store or MessageStore()
        self._estimator = estimator or TokenEstimator()
        self.event_bus = event_bus or EventBus()
        self._id_gen = id_generator or make_id
        self._logger = structlog.get_logger("ctxloop.loop")

        spill = spill_store if spill_store is not None else spill_store_from_config(
            self._config.truncation
        )
        reader_name: str | None = None
        if self._config.truncation.reader_tool:
            self._tools.register(make_spill_reader_tool(spill))
            reader_name = SPILL_READER_NAME
        self._truncator = OutputTruncator(
            self._config.truncation, spill, reader_tool_name=reader_name
        )
        self._dispatcher = ToolDispatcher(
            self._tools,
            self._truncator,
            tool_timeout=self._config.loop.tool_timeout,
            event_bus=self.event_bus,
        )

        if summarizer is None:
            summarizer = LLMSummarizer(
                llm,
                model=self._config.compaction.summary_model or self._config.loop.model,
                config=self._config.compaction,
            )
        self._detector = OverflowDetector(self._config, self._estimator)
        self._engine = CompactionEngine(
            self._store,
            self._estimator,
            summarizer,
            self.event_bus,
            self._config,
            detector=self._detector,
            id_generator=self._id_gen,
        )
        self._builder = ContextBuilder(self._estimator)
        self._spilled: dict[str, set[str]] = {}

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def registry(self) -> ToolRegistry:
        """Tools this loop offers: the caller's registry plus loop-bound tools."""
        return self._tools

    @property
    def engine(self) -> CompactionEngine:
        return self._engine

    @property
    def spill(self) -> SpillStore:
        return self._truncator.spill

    # ── Public API ─────────────────────────────────────────────────────────────

    async def run(
        self,
        session_id: str,
        query: str,
        *,
        user_id: str = "",
        system_prompt: str | None = None,
        tool_names: Iterable[str] | None = None,
        abort: asyncio.Event | None = None,
    ) -> LoopResult:
        """
        Answer ``query`` within ``session_id``, calling tools as the model asks.

        Args:
            session_id: Session to append to. Created (or rehydrated from
                persistence) on first use.
            query: The user's message for this turn.
            user_id: Owner recorded when the session is first opened.
            system_prompt: Sent first on every LLM call. Not stored.
            tool_names: Restrict the tools offered to the model. None = all.
            abort: Set it to stop the run. In-flight tool calls are cancelled
                and the result has ``status="aborted"``.

        Returns:
            LoopResult. Provider failures and the iteration ceiling are
            reported here, not raised.
        """
        session = await self._open(session_id, user_id)
        log = self._logger.bind(session_id=session_id)
        async with session.loop_lock:
            try:
                result = await self._run_locked(
                    session_id,
                    query,
                    system_prompt=system_prompt,
                    tool_names=tool_names,
                    abort=abort,
                    log=log,
                )
            finally:
                await self._flush(session_id, log)

        event = LoopEvent.LOOP_COMPLETED if result.ok else LoopEvent.LOOP_FAILED
        self.event_bus.publish(event, result.model_dump())
        return result

    async def compact(self, session_id: str, *, user_id: str = "") -> CompactionResult:
        """
        Run a compaction pass now, summarizing even if the session fits.

        Waits for any run in progress on the session to finish first.
        """
        session = await self._open(session_id, user_id)
        async with session.loop_lock:
            try:
                return await self._engine.run_compaction(
                    session_id,
                    model=self._config.model_info(),
                    force=True,
                    overhead=self._request_overhead(None, self._tools.schemas()),
                )
            finally:
                await self._flush(session_id, self._logger.bind(session_id=session_id))

    async def history(self, session_id: str) -> tuple[Message, ...]:
        """Snapshot of the session's active history (summaries included)."""
        await self._open(session_id, "")
        return self._store.messages(session_id)

    async def delete_session(self, session_id: str) -> None:
        """Tear the session down in memory and in persistence."""
        if self._store.has_session(session_id):
            session = self._store.get_session(session_id)
            async with session.loop_lock:
                await self._store.delete_session(session_id)
        else:
            await self._store.delete_session(session_id)
        self._engine.forget(session_id)
        self._evict_spilled(session_id)
        self.event_bus.publish(LoopEvent.SESSION_DELETED, {"session_id": session_id})

    # ── Loop body ──────────────────────────────────────────────────────────────

    async def _run_locked(
        self,
        session_id: str,
        query: str,
        *,
        system_prompt: str | None,
        tool_names: Iterable[str] | None,
        abort: asyncio.Event | None,
        log: Any,
    ) -> LoopResult:
        settings = self._config.loop
        model = self._config.model_info()
        tools = self._tools.schemas(tool_names) or None
        overhead = self._request_overhead(system_prompt, tools)
        options = GenerateOptions(
            model=settings.model,
            max_tokens=min(settings.max_output_tokens, model.max_output_tokens),
            temperature=settings.temperature,
            tools=tools,
        )

        turn = self._store.begin_turn(session_id)
        self._append(session_id, Message(
            id=self._id_gen("msg"),
            session_id=session_id,
            role="user",
            content=query,
            turn_index=turn,
        ))

        usage = TokenUsage()
        compactions: list[CompactionResult] = []
        iteration = 0

        def finish(status: str, **fields: Any) -> LoopResult:
            return LoopResult(
                session_id=session_id,
                status=status,
                iterations=iteration,
                usage=usage,
                compactions=compactions,
                **fields,
            )

        while iteration < settings.max_iterations:
            if abort is not None and abort.is_set():
                log.info("loop_aborted", iteration=iteration)
                return finish("aborted", failure="aborted", error="aborted by caller")
            iteration += 1

            session = self._store.get_session(session_id)
            projected = self._detector.project(session, overhead=overhead)
            self.event_bus.publish(
                LoopEvent.LOOP_ITERATION,
                {"session_id": session_id, "iteration": iteration, "projected_tokens": projected.total},
            )
            if self._detector.should_compact(projected, model):
                try:
                    compaction = await self._until_aborted(
                        self._engine.run_compaction(session_id, model=model, overhead=overhead),
                        abort,
                    )
                except _Aborted:
                    log.info("loop_aborted", iteration=iteration, during="compaction")
                    return finish("aborted", failure="aborted", error="aborted by caller")
                compactions.append(compaction)

            context = self._builder.build(self._store.messages(session_id), system_prompt)
            try:
                response, error = await self._until_aborted(
                    self._generate(context.messages, options, log), abort
                )
            except _Aborted:
                log.info("loop_aborted", iteration=iteration, during="llm_call")
                return finish("aborted", failure="aborted", error="aborted by caller")

            if response is None:
                log.error("loop_failed", iteration=iteration, error=error)
                return finish("failed", failure="provider_error", error=error)
            usage = usage + response.usage

            if response.tool_calls:
                self._append(session_id, Message(
                    id=self._id_gen("msg"),
                    session_id=session_id,
                    role="assistant",
                    kind="tool_call",
                    content=response.content,
                    tool_calls=response.tool_calls,
                ))
                self._store.record_usage(session_id, response.usage)

                results = await self._dispatcher.dispatch(response.tool_calls, abort=abort)
                self._append_results(session_id, results)
                if abort is not None and abort.is_set():
                    log.info("loop_aborted", iteration=iteration, during="tool_dispatch")
                    return finish("aborted", failure="aborted", error="aborted by caller")
                continue

            self._append(session_id, Message(
                id=self._id_gen("msg"),
                session_id=session_id,
                role="assistant",
                content=response.content,
            ))
            self._store.record_usage(session_id, response.usage)
            log.info("loop_completed", iterations=iteration, output_tokens=usage.output_tokens)
            return finish("completed", content=response.content)

        log.error("max_iterations_reached", iterations=iteration, message=MAX_ITERATIONS_ERROR)
        return finish("failed", failure="max_iterations", error=MAX_ITERATIONS_ERROR)

    # ── Helpers ────────────────────────────────────────────────────────────────

    async def _generate(
        self,
        messages: list[dict[str, Any]],
        options: GenerateOptions,
        log: Any,
    ) -> tuple[LLMResponse | None, str | None]:
        """One LLM call under the configured timeout, plus any configured retries."""
        settings = self._config.loop
        error: str | None = None
        for attempt in range(1, settings.llm_retries + 2):
            try:
                async with asyncio.timeout(settings.llm_timeout):
                    response = await self._llm.generate(messages, options)
            except TimeoutError:
                error = f"LLM call timed out after {settings.llm_timeout}s"
            except Exception as exc:
                error = f"LLM call failed: {exc}"
            else:
                if response is not None:
                    return response, None
                error = "LLM returned no response"
            log.warning("llm_call_failed", attempt=attempt, error=error)
        return None, error

    async def _until_aborted(self, coro: Awaitable[T], abort: asyncio.Event | None) -> T:
        if abort is None:
            return await coro
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise _Aborted

    def _request_overhead(
        self, system_prompt: str | None, tools: list[dict[str, Any]] | None
    ) -> int:
        """Estimated tokens every request sends besides the history."""
        overhead = self._estimator.estimate(system_prompt) if system_prompt else 0
        if tools:
            overhead += self._estimator.estimate(json.dumps(tools))
        return overhead

    def _append(self, session_id: str, message: Message) -> Message:
        stored = self._store.append(session_id, message)
        self.event_bus.publish(
            LoopEvent.MESSAGE_APPENDED,
            {
                "session_id": session_id,
                "message_id": stored.id,
                "role": stored.role,
                "kind": stored.kind,
            },
        )
        return stored

    def _append_results(self, session_id: str, results: list[ToolExecutionResult]) -> None:
        """Append every result of one dispatch, in request order, with no await between."""
        for result in results:
            if result.spill_handle is not None:
                self._spilled.setdefault(session_id, set()).add(result.spill_handle)
            self._append(session_id, Message(
                id=self._id_gen("msg"),
                session_id=session_id,
                role="tool",
                kind="tool_result",
                content=result.output,
                tool_call_id=result.tool_call_id,
                tool_name=result.tool_name,
            ))
        self.event_bus.publish(
            LoopEvent.TOOLS_DISPATCHED,
            {
                "session_id": session_id,
                "tool_names": [r.tool_name for r in results],
                "error_count": sum(1 for r in results if r.is_error),
            },
        )

    def _evict_spilled(self, session_id: str) -> None:
        """Discard outputs this loop spilled for the session, unless another session shares them."""
        handles = self._spilled.pop(session_id, set())
        for other in self._spilled.values():
            handles -= other
        for handle in handles:
            self._truncator.spill.discard(handle)
        if handles:
            self._logger.debug("spilled_outputs_evicted", session_id=session_id, count=len(handles))

    async def _open(self, session_id: str, user_id: str) -> SessionRecord:
        was_open = self._store.has_session(session_id)
        session = await self._store.open_session(session_id, user_id)
        if not was_open and session.messages:
            self.event_bus.publish(
                LoopEvent.SESSION_HYDRATED,
                {"session_id": session_id, "message_count": len(session.messages)},
            )
        return session

    async def _flush(self, session_id: str, log: Any) -> None:
        if not self._store.has_session(session_id):
            return
        try:
            await self._store.flush(session_id)
        except Exception as exc:
            # Unsaved messages stay dirty and are retried on the next flush.
            log.error("flush_failed", error=str(exc))
