from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from chat_agent.agent import Agent
from chat_agent.memory import DiskStore, HistoryPolicy, create_from_config
from chat_agent.messages import AssistantMessage, AssistantText, ToolCall, UserMessage

from fakes import FakeBackend


@pytest.mark.asyncio
async def test_disk_store_roundtrip(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    msgs = [UserMessage("hi"), ToolCall("c1", "search", '{"q":"x"}'), AssistantMessage("hello")]
    for m in msgs:
        await store.append(m, "s1")

    assert await store.load_context("s1") == msgs


@pytest.mark.asyncio
async def test_disk_store_file_layout_and_record_format(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    await store.append(UserMessage("hi"), "abc")
    await store.append(ToolCall("c1", "search", "{}"), "abc")

    path = tmp_data_dir / "abc" / "chat.json"
    records = json.loads(path.read_text(encoding="utf-8"))
    assert [r["message"] for r in records] == [
        {"userMessage": "hi"},
        {"toolCall": {"id": "c1", "name": "search", "arguments": "{}"}},
    ]
    assert all(r["timestamp"].endswith("Z") for r in records)


@pytest.mark.asyncio
async def test_disk_store_loads_empty_for_missing_session(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    assert await store.load_context("nope") == []


@pytest.mark.asyncio
async def test_per_session_isolation_keeps_sessions_apart(tmp_data_dir: Path):
    store = DiskStore.from_policy(tmp_data_dir, HistoryPolicy.PER_SESSION_ISOLATION)
    first = await Agent.create(FakeBackend([AssistantText("one")]), store)
    second = await Agent.create(FakeBackend([AssistantText("two")]), store)

    [_ async for _ in await first.run("from first")]
    [_ async for _ in await second.run("from second")]

    assert sorted(store.scopes()) == sorted([first.session.id, second.session.id])
    assert await store.load_context(first.session.id) == [UserMessage("from first"), AssistantMessage("one")]
    assert await store.load_context(second.session.id) == [UserMessage("from second"), AssistantMessage("two")]


@pytest.mark.asyncio
async def test_shared_global_history_grows_in_order(tmp_data_dir: Path):
    store = DiskStore.from_policy(tmp_data_dir, "shared_global_history")
    first = await Agent.create(FakeBackend([AssistantText("one")]), store)
    [_ async for _ in await first.run("from first")]

    second = await Agent.create(FakeBackend([AssistantText("two")]), store)
    assert second.transcript == [UserMessage("from first"), AssistantMessage("one")]
    [_ async for _ in await second.run("from second")]

    assert store.scopes() == ["global"]
    assert await store.load_context("anything") == [
        UserMessage("from first"),
        AssistantMessage("one"),
        UserMessage("from second"),
        AssistantMessage("two"),
    ]


@pytest.mark.asyncio
async def test_concurrent_appends_to_global_scope_are_not_lost(tmp_data_dir: Path):
    a = DiskStore(tmp_data_dir, use_global=True)
    b = DiskStore(tmp_data_dir, use_global=True)

    await asyncio.gather(*(
        (a if i % 2 else b).append(UserMessage(f"m{i}"), f"s{i % 2}") for i in range(20)
    ))

    loaded = await a.load_context("s0")
    assert sorted(m.text for m in loaded) == sorted(f"m{i}" for i in range(20))


@pytest.mark.asyncio
async def test_corrupt_file_is_moved_aside(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    path = store.path_for("s1")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    assert await store.load_context("s1") == []
    assert (path.parent / "chat.corrupt.json").exists()

    await store.append(UserMessage("fresh"), "s1")
    assert await store.load_context("s1") == [UserMessage("fresh")]


@pytest.mark.asyncio
async def test_unknown_record_shape_is_treated_as_corrupt(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    path = store.path_for("s1")
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps([{"user": "old format"}]), encoding="utf-8")

    assert await store.load_context("s1") == []
    assert not path.exists()


@pytest.mark.asyncio
async def test_clear_removes_session_file(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    await store.append(UserMessage("bye"), "s1")

    assert store.clear("s1") is True
    assert store.clear("s1") is False
    assert await store.load_context("s1") == []


@pytest.mark.asyncio
async def test_load_records_keeps_timestamps(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    await store.append(AssistantMessage("t"), "s1")

    records = await store.load_records("s1")
    assert len(records) == 1
    assert set(records[0]) == {"timestamp", "message"}


def test_scope_ids_are_filesystem_safe(tmp_data_dir: Path):
    store = DiskStore(tmp_data_dir)
    assert store.scope_id("../../etc") == ".._.._etc"
    assert DiskStore(tmp_data_dir, use_global=True).scope_id("../../etc") == "global"


def test_store_from_config(tmp_data_dir: Path):
    store = create_from_config({"storage": {"root_dir": str(tmp_data_dir), "use_global_context": False}})
    assert store.policy is HistoryPolicy.PER_SESSION_ISOLATION

    store = create_from_config({"storage": {"root_dir": str(tmp_data_dir), "policy": "shared_global_history"}})
    assert store.use_global is True


def test_policy_key_wins_over_use_global_context(tmp_data_dir: Path):
    store = create_from_config({
        "storage": {
            "root_dir": str(tmp_data_dir),
            "use_global_context": True,
            "policy": "per_session_isolation",
        }
    })
    assert store.policy is HistoryPolicy.PER_SESSION_ISOLATION
