"""Streaming turn orchestration.

An :class:`Agent` owns one conversation. Each call to :meth:`Agent.run`
records the user message, opens a completion stream over the transcript and
re-emits the backend's fragments to the caller while persisting and notifying
sinks in strict order:

1. sinks: stream start, user message
2. transcript + store: user message
3. backend stream opened over the transcript snapshot
4. per fragment: text is buffered and forwarded; a tool call is appended,
   persisted, announced and forwarded
5. on exhaustion: buffered text becomes one assistant message; sinks: stream end

Store failures during a turn are logged and ignored. A backend that cannot
open its stream fails the turn with :class:`TurnError`; what was already
recorded stays recorded.

If the caller closes the output stream early, the backend stream is closed
and steps after the last forwarded item do not run: the transcript keeps the
user message and every tool call forwarded so far, and buffered text is
dropped.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Sequence

from .errors import StoreError, TurnError
from .events import EventSink, LoggingSink
from .llm import CompletionBackend, create_from_config as create_backend
from .memory import Store, create_from_config as create_store
from .messages import (
    AssistantMessage,
    AssistantText,
    Fragment,
    Message,
    OutputItem,
    ToolCall,
    UserMessage,
    to_backend_message,
)
from .session import Session

logger = logging.getLogger(__name__)


class TurnStream:
    """Output items of one turn.

    Iterate it once. :meth:`aclose` stops the turn early and releases the
    backend stream, whether or not iteration has started.
    """

    def __init__(self, items: AsyncGenerator[OutputItem, None], fragments: AsyncIterator[Fragment]) -> None:
        self._items = items
        self._fragments = fragments

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> OutputItem:
        return await self._items.__anext__()

    async def aclose(self) -> None:
        try:
            await self._items.aclose()
        finally:
            await _close(self._fragments)


async def _close(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class Agent:
    """Drives conversation turns against a completion backend.

    Use :meth:`create` to build one; it loads prior history from the store.
    Turns must be run one after another.
    """

    def __init__(
        self,
        backend: CompletionBackend,
        store: Store,
        sinks: Optional[Sequence[EventSink]] = None,
        *,
        session: Optional[Session] = None,
        history: Optional[Sequence[Message]] = None,
        isolate_sink_errors: bool = False,
    ) -> None:
        self.backend = backend
        self.store = store
        self.sinks: List[EventSink] = list(sinks or [])
        self.session = session or Session.new()
        self.isolate_sink_errors = isolate_sink_errors
        self._transcript: List[Message] = list(history or [])
        self._open_stream: Optional[TurnStream] = None

    @classmethod
    async def create(
        cls,
        backend: CompletionBackend,
        store: Store,
        sinks: Optional[Sequence[EventSink]] = None,
        *,
        session: Optional[Session] = None,
        isolate_sink_errors: bool = False,
    ) -> "Agent":
        """Start (or resume) a session and load its history from the store.

        Raises
        ------
        StoreError
            If the history cannot be loaded.
        """
        session = session or Session.new()
        try:
            history = await store.load_context(session.id)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to load history for session {session.id}: {e}") from e

        logger.info("Session %s started with %d stored messages", session.id, len(history))
        return cls(
            backend,
            store,
            sinks,
            session=session,
            history=history,
            isolate_sink_errors=isolate_sink_errors,
        )

    @property
    def transcript(self) -> List[Message]:
        return list(self._transcript)

    # -------------------------
    # Turn
    # -------------------------
    async def run(self, user_text: str) -> "TurnStream":
        """Start a turn and return its output stream.

        The returned stream can be iterated once. Starting another turn closes
        a previous stream that was not fully consumed.

        Raises
        ------
        TurnError
            If the backend cannot open its stream. Nothing is yielded in that
            case, and the user message stays recorded.
        """
        if self._open_stream is not None:
            await self._open_stream.aclose()
            self._open_stream = None

        await self._notify("on_stream_start")
        await self._notify("on_user_message", user_text)
        await self._record(UserMessage(user_text))

        history = [to_backend_message(m) for m in self._transcript]
        try:
            fragments = await self.backend.stream(history, user_text)
        except Exception as e:
            logger.error("Backend failed to open stream: %s", e)
            raise TurnError(f"Backend failed to open stream: {e}") from e

        self._open_stream = TurnStream(self._forward(fragments), fragments)
        return self._open_stream

    async def _forward(self, fragments: AsyncIterator[Fragment]) -> AsyncGenerator[OutputItem, None]:
        pending_text: List[str] = []
        failure: Optional[Exception] = None
        iterator = aiter(fragments)
        try:
            while True:
                try:
                    fragment = await anext(iterator)
                except StopAsyncIteration:
                    break
                except Exception as e:
                    failure = e
                    break

                if isinstance(fragment, AssistantText):
                    pending_text.append(fragment.text)
                    await self._notify("on_assistant_message", fragment.text)
                    yield AssistantMessage(fragment.text)
                elif isinstance(fragment, ToolCall):
                    # durable before any sink sees it
                    await self._record(fragment)
                    await self._notify("on_tool_call", fragment)
                    yield fragment
                elif isinstance(fragment, UserMessage):
                    # backends may not speak for the user
                    continue
                else:
                    logger.debug("Discarding unexpected fragment: %r", fragment)
        finally:
            await _close(iterator)

        if pending_text:
            await self._record(AssistantMessage("".join(pending_text)))
        await self._notify("on_stream_end")
        self._open_stream = None

        if failure is not None:
            logger.error("Backend stream failed mid-turn: %s", failure)
            raise TurnError(f"Backend stream failed: {failure}") from failure

    # -------------------------
    # Internals
    # -------------------------
    async def _record(self, message: Message) -> None:
        self._transcript.append(message)
        try:
            await self.store.append(message, self.session.id)
        except Exception as e:
            logger.warning("Failed to persist %s for session %s: %s", type(message).__name__, self.session.id, e)

    async def _notify(self, hook: str, *args: Any) -> None:
        for sink in self.sinks:
            handler = getattr(sink, hook)
            if not self.isolate_sink_errors:
                await handler(*args)
                continue
            try:
                await handler(*args)
            except Exception:
                logger.exception("Event sink %r failed in %s", sink, hook)


# -----------------------------
# Convenience factory
# -----------------------------

async def create_from_config(
    cfg: Dict[str, Any],
    *,
    backend: Optional[CompletionBackend] = None,
    store: Optional[Store] = None,
    sinks: Optional[Sequence[EventSink]] = None,
    session_id: Optional[str] = None,
) -> Agent:
    """Build an :class:`Agent` from a config dict, filling in missing parts."""
    agent_cfg = cfg.get("agent", {}) or {}
    if sinks is None:
        sinks = [LoggingSink()] if agent_cfg.get("log_events", False) else []
    return await Agent.create(
        backend or create_backend(cfg),
        store or create_store(cfg),
        sinks,
        session=Session(session_id) if session_id else None,
        isolate_sink_errors=bool(agent_cfg.get("isolate_sink_errors", False)),
    )
