"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, List, Tuple

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fakes import FakeBackend, RecordingSink, RecordingStore  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary storage root for chat files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function", autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    monkeypatch.delenv("CHAT_AGENT_CONFIG", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    for var in list(os.environ):
        if var.startswith("CHAT_AGENT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def event_log() -> List[Tuple[Any, ...]]:
    """Ordered log shared by the recording store and sinks."""
    return []


@pytest.fixture
def store(event_log) -> RecordingStore:
    return RecordingStore(event_log)


@pytest.fixture
def sink(event_log) -> RecordingSink:
    return RecordingSink(event_log)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
