"""Completion backends: the streaming contract plus an OpenAI-compatible client."""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .errors import BackendError
from .messages import AssistantText, Fragment, ToolCall

logger = logging.getLogger(__name__)


class CompletionBackend(ABC):
    """Turns a chat history into a stream of fragments."""

    @abstractmethod
    async def stream(self, history: List[Dict[str, str]], prompt: str) -> AsyncIterator[Fragment]:
        """Open a completion stream.

        Parameters
        ----------
        history : list[dict]
            Role/content entries in conversation order. The last entry is the
            user message carrying ``prompt``.
        prompt : str
            The current user text.

        Returns
        -------
        AsyncIterator[Fragment]
            A finite stream of :class:`AssistantText` and :class:`ToolCall`.

        Raises
        ------
        BackendError
            If the stream cannot be opened.
        """


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    model: str = "gpt-4o-mini"
    preamble: str = "Be precise and concise."
    temperature: float = 0.5
    max_tokens: Optional[int] = None


# -----------------------------
# OpenAI-compatible client
# -----------------------------

class OpenAIChatBackend(CompletionBackend):
    """Streams ``/chat/completions`` from an OpenAI-compatible server.

    Works against api.openai.com as well as local llama.cpp / Ollama servers
    that expose the same endpoint. Text deltas are forwarded as they arrive;
    tool-call deltas are accumulated per index and emitted once complete.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        *,
        api_key: Optional[str] = None,
        generation: Optional[GenerationConfig] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.generation = generation or GenerationConfig()
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream(self, history: List[Dict[str, str]], prompt: str) -> AsyncIterator[Fragment]:
        url = f"{self.base_url}/chat/completions"
        request = self._client.build_request(
            "POST", url, json=self._build_body(history), headers=self._headers()
        )
        logger.debug("chat stream request: model=%s messages=%d", self.generation.model, len(history))

        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Cannot reach %s: %s", url, e)
            raise BackendError(f"Cannot reach completion endpoint {url}: {e}") from e

        if response.status_code != 200:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error("Completion HTTP error %d: %s", response.status_code, body)
            raise BackendError(f"Completion endpoint returned {response.status_code}: {body}")

        return _FragmentStream(response, self._iter_fragments(response))

    # -------------------------
    # Internals
    # -------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(self, history: List[Dict[str, str]]) -> Dict[str, Any]:
        gen = self.generation
        messages: List[Dict[str, str]] = []
        if gen.preamble:
            messages.append({"role": "system", "content": gen.preamble})
        messages.extend(history)
        body: Dict[str, Any] = {
            "model": gen.model,
            "messages": messages,
            "temperature": gen.temperature,
            "stream": True,
        }
        if gen.max_tokens:
            body["max_tokens"] = gen.max_tokens
        return body

    async def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[Fragment]:
        pending: Dict[int, Dict[str, str]] = {}  # index -> partial tool call
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Skipping unparseable stream chunk: %s", data)
                    continue

                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield AssistantText(content)
                    for tc_delta in delta.get("tool_calls") or []:
                        _merge_tool_delta(pending, tc_delta)
                    if choice.get("finish_reason") and pending:
                        for tc in _drain(pending):
                            yield tc
        except httpx.HTTPError as e:
            raise BackendError(f"Completion stream interrupted: {e}") from e
        finally:
            await response.aclose()

        for tc in _drain(pending):
            yield tc


class _FragmentStream:
    """Fragments of one open response; closing it closes the response."""

    def __init__(self, response: httpx.Response, fragments: AsyncIterator[Fragment]) -> None:
        self._response = response
        self._fragments = fragments

    def __aiter__(self) -> "_FragmentStream":
        return self

    async def __anext__(self) -> Fragment:
        return await self._fragments.__anext__()

    async def aclose(self) -> None:
        try:
            await self._fragments.aclose()
        finally:
            await self._response.aclose()


def _merge_tool_delta(pending: Dict[int, Dict[str, str]], tc_delta: Dict[str, Any]) -> None:
    idx = int(tc_delta.get("index", 0))
    entry = pending.setdefault(idx, {"id": "", "name": "", "arguments": ""})
    if tc_delta.get("id"):
        entry["id"] = tc_delta["id"]
    func = tc_delta.get("function") or {}
    if func.get("name"):
        entry["name"] += func["name"]
    if func.get("arguments"):
        entry["arguments"] += func["arguments"]


def _drain(pending: Dict[int, Dict[str, str]]) -> List[ToolCall]:
    calls = [ToolCall(**pending[i]) for i in sorted(pending)]
    pending.clear()
    return calls


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> OpenAIChatBackend:
    """Create a backend from a config dict (e.g., loaded YAML)."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    api_key = model_cfg.get("api_key") or os.environ.get(model_cfg.get("api_key_env") or "OPENAI_API_KEY")
    defaults = GenerationConfig()
    generation = GenerationConfig(
        model=str(model_cfg.get("model", defaults.model)),
        preamble=str(model_cfg.get("preamble", defaults.preamble) or ""),
        temperature=float(model_cfg.get("temperature", defaults.temperature)),
        max_tokens=model_cfg.get("max_tokens"),
    )
    return OpenAIChatBackend(
        base_url=str(model_cfg.get("base_url", "https://api.openai.com/v1")),
        api_key=api_key,
        generation=generation,
        timeout=float(model_cfg.get("timeout", 60.0)),
    )
