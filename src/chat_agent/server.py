"""FastAPI application exposing one agent conversation over HTTP."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .agent import Agent, TurnStream, create_from_config
from .config import load_config
from .errors import TurnError
from .events import EventSink
from .llm import CompletionBackend
from .memory import Store
from .messages import OutputItem, message_to_dict

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="The user's next message.")


class HealthResponse(BaseModel):
    ok: bool
    session_id: str
    messages: int


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    backend: Optional[CompletionBackend] = None,
    store: Optional[Store] = None,
    sinks: Optional[Sequence[EventSink]] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    state: Dict[str, Any] = {"agent": None}
    setup_lock = asyncio.Lock()
    turn_lock = asyncio.Lock()

    async def get_agent() -> Agent:
        async with setup_lock:
            if state["agent"] is None:
                state["agent"] = await create_from_config(cfg, backend=backend, store=store, sinks=sinks)
            return state["agent"]

    app = FastAPI(title="Chat Agent", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        agent = await get_agent()
        return HealthResponse(ok=True, session_id=agent.session.id, messages=len(agent.transcript))

    @app.get("/history")
    async def history() -> List[Dict[str, Any]]:
        agent = await get_agent()
        return [message_to_dict(m) for m in agent.transcript]

    @app.post("/chat")
    async def chat(req: ChatRequest) -> StreamingResponse:
        msg = req.message.strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")

        agent = await get_agent()
        # One turn at a time; released once the response is done, sent or not.
        await turn_lock.acquire()
        try:
            stream = await agent.run(msg)
        except TurnError as e:
            turn_lock.release()
            raise HTTPException(status_code=502, detail=str(e))
        except BaseException:
            turn_lock.release()
            raise

        return _TurnResponse(stream, turn_lock)

    return app


class _TurnResponse(StreamingResponse):
    """NDJSON body of one turn that owns the turn lock until it is done."""

    def __init__(self, stream: TurnStream, lock: asyncio.Lock) -> None:
        super().__init__(_ndjson(stream), media_type="application/x-ndjson")
        self._stream = stream
        self._lock = lock

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            try:
                await self._stream.aclose()
            finally:
                self._lock.release()


async def _ndjson(stream: AsyncIterator[OutputItem]) -> AsyncIterator[str]:
    try:
        async for item in stream:
            yield json.dumps(message_to_dict(item), ensure_ascii=False) + "\n"
    except TurnError as e:
        logger.error("Turn failed mid-stream: %s", e)
        yield json.dumps({"error": str(e)}, ensure_ascii=False) + "\n"

