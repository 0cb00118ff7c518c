"""Conversation message types and their encodings.

Three message kinds make up a transcript:

- :class:`UserMessage` -- text typed by the user
- :class:`AssistantMessage` -- text produced by the model
- :class:`ToolCall` -- a structured tool invocation requested by the model

Backends stream :class:`AssistantText` fragments (plus ``ToolCall``); the agent
normalizes them into output items before handing them to its caller.

Storage encoding uses the variant name as the single key of a JSON object::

    {"userMessage": "hi"}
    {"assistantMessage": "hello"}
    {"toolCall": {"id": "call_1", "name": "search", "arguments": "{}"}}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Union


# -----------------------------
# Types
# -----------------------------

@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class AssistantMessage:
    text: str


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation. ``arguments`` is an opaque payload owned by the tool."""
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class AssistantText:
    """One streamed chunk of assistant text (backend fragment)."""
    text: str


Message = Union[UserMessage, AssistantMessage, ToolCall]
Fragment = Union[AssistantText, ToolCall]
OutputItem = Union[AssistantMessage, ToolCall]

USER_KEY = "userMessage"
ASSISTANT_KEY = "assistantMessage"
TOOL_CALL_KEY = "toolCall"


# -----------------------------
# Storage encoding
# -----------------------------

def message_to_dict(msg: Message) -> Dict[str, Any]:
    """Encode a message as a single-key tagged object."""
    if isinstance(msg, UserMessage):
        return {USER_KEY: msg.text}
    if isinstance(msg, AssistantMessage):
        return {ASSISTANT_KEY: msg.text}
    if isinstance(msg, ToolCall):
        return {TOOL_CALL_KEY: {"id": msg.id, "name": msg.name, "arguments": msg.arguments}}
    raise TypeError(f"not a message: {msg!r}")


def message_from_dict(obj: Any) -> Message:
    """Decode a tagged object produced by :func:`message_to_dict`.

    Raises
    ------
    ValueError
        If the object is not a known single-key message encoding.
    """
    if not isinstance(obj, dict) or len(obj) != 1:
        raise ValueError(f"expected a single-key message object, got {obj!r}")

    (tag, payload), = obj.items()
    if tag == USER_KEY and isinstance(payload, str):
        return UserMessage(payload)
    if tag == ASSISTANT_KEY and isinstance(payload, str):
        return AssistantMessage(payload)
    if tag == TOOL_CALL_KEY and isinstance(payload, dict):
        try:
            fields = {key: payload[key] for key in ("id", "name", "arguments")}
        except KeyError as e:
            raise ValueError(f"toolCall is missing field {e}") from e
        for key, value in fields.items():
            if not isinstance(value, str):
                raise ValueError(f"toolCall field {key!r} must be a string, got {type(value).__name__}")
        return ToolCall(**fields)
    raise ValueError(f"unknown message encoding: {tag!r}")


# -----------------------------
# Backend / display conversions
# -----------------------------

def tool_call_label(tc: ToolCall) -> str:
    return f"[Tool Call: {tc.name}]"


def to_backend_message(msg: Message) -> Dict[str, str]:
    """Convert a message to a role/content chat entry for the model.

    A tool call is rendered as an assistant turn that only names the tool.
    This is a lossy, display-oriented summary: the call id and arguments are
    dropped and the model cannot reconstruct the original invocation from it.
    """
    if isinstance(msg, UserMessage):
        return {"role": "user", "content": msg.text}
    if isinstance(msg, AssistantMessage):
        return {"role": "assistant", "content": msg.text}
    if isinstance(msg, ToolCall):
        return {"role": "assistant", "content": tool_call_label(msg)}
    raise TypeError(f"not a message: {msg!r}")


def render_output(item: OutputItem) -> str:
    """Text shown on a terminal for one output item."""
    if isinstance(item, ToolCall):
        return tool_call_label(item)
    return item.text
