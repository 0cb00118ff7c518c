"""Event sinks notified by the agent as a turn progresses."""

from __future__ import annotations

import logging

from .messages import ToolCall

logger = logging.getLogger(__name__)


class EventSink:
    """Receives lifecycle notifications for each turn.

    Every hook is a no-op here; subclasses override the ones they care about.
    The agent awaits each hook before moving on, so a slow sink slows the turn.
    """

    async def on_stream_start(self) -> None:
        pass

    async def on_user_message(self, text: str) -> None:
        pass

    async def on_assistant_message(self, text: str) -> None:
        pass

    async def on_tool_call(self, tool_call: ToolCall) -> None:
        pass

    async def on_stream_end(self) -> None:
        pass


class LoggingSink(EventSink):
    """Writes every event to a logger."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self.log = log or logger
        self.level = level

    async def on_stream_start(self) -> None:
        self.log.log(self.level, "stream started")

    async def on_user_message(self, text: str) -> None:
        self.log.log(self.level, "user message: %s", text)

    async def on_assistant_message(self, text: str) -> None:
        self.log.log(self.level, "assistant fragment: %r", text)

    async def on_tool_call(self, tool_call: ToolCall) -> None:
        self.log.log(self.level, "tool call %s: %s(%s)", tool_call.id, tool_call.name, tool_call.arguments)

    async def on_stream_end(self) -> None:
        self.log.log(self.level, "stream ended")
