"""Streaming conversational agent with durable history.

Typical usage
-------------
from chat_agent import Agent, DiskStore, OpenAIChatBackend

agent = await Agent.create(OpenAIChatBackend(), DiskStore("data"))
async for item in await agent.run("Hello"):
    ...

or, from the command line:

chat-agent -p "Hello"
"""

from __future__ import annotations

from .agent import Agent, TurnStream
from .errors import BackendError, ChatAgentError, StoreError, TurnError
from .events import EventSink, LoggingSink
from .llm import CompletionBackend, OpenAIChatBackend
from .memory import DiskStore, HistoryPolicy, Store
from .messages import AssistantMessage, AssistantText, ToolCall, UserMessage
from .session import Session

__all__ = [
    "Agent",
    "AssistantMessage",
    "AssistantText",
    "BackendError",
    "ChatAgentError",
    "CompletionBackend",
    "DiskStore",
    "EventSink",
    "HistoryPolicy",
    "LoggingSink",
    "OpenAIChatBackend",
    "Session",
    "Store",
    "StoreError",
    "ToolCall",
    "TurnError",
    "TurnStream",
    "UserMessage",
    "__version__",
    "get_version",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
