"""Exception types raised by the agent and its collaborators."""

from __future__ import annotations


class ChatAgentError(Exception):
    """Base class for all chat_agent errors."""


class BackendError(ChatAgentError):
    """The completion backend could not open or continue its stream."""


class StoreError(ChatAgentError):
    """The conversation store could not load or persist messages."""


class TurnError(ChatAgentError):
    """A single turn failed; the conversation itself can continue."""
