"""Durable conversation storage (file-backed, thread-safe, atomic)."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from .errors import StoreError
from .messages import Message, message_from_dict, message_to_dict

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"
CHAT_FILE = "chat.json"


# -----------------------------
# Helpers
# -----------------------------
def _safe_scope(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    if s in {".", ".."}:
        s = s.replace(".", "_")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# One lock per chat file, shared by every store in the process.
_PATH_LOCKS: Dict[str, threading.Lock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = _PATH_LOCKS[key] = threading.Lock()
        return lock


class HistoryPolicy(str, Enum):
    """Where a session's messages are read from and written to."""
    PER_SESSION_ISOLATION = "per_session_isolation"
    SHARED_GLOBAL_HISTORY = "shared_global_history"


# -----------------------------
# Store contract
# -----------------------------
class Store(ABC):
    """Durable message log consumed by :class:`chat_agent.agent.Agent`."""

    @abstractmethod
    async def append(self, message: Message, session_id: str) -> None:
        """Persist one message, creating the record if needed. Raises on failure."""

    @abstractmethod
    async def load_context(self, session_id: str) -> List[Message]:
        """Return previously persisted messages in order; ``[]`` if none."""


# -----------------------------
# DiskStore
# -----------------------------
class DiskStore(Store):
    """JSON-file store, one ``chat.json`` per scope.

    Layout:
        root/
          <session id>/chat.json   # per-session isolation
          global/chat.json         # shared history (use_global=True)

    Each file holds a list of ``{"timestamp": ..., "message": {...}}`` records.
    The scope policy is fixed at construction.
    """

    def __init__(self, root: str | os.PathLike, *, use_global: bool = False) -> None:
        self.root = Path(root)
        self.use_global = use_global

    @classmethod
    def from_policy(cls, root: str | os.PathLike, policy: HistoryPolicy | str) -> "DiskStore":
        policy = HistoryPolicy(policy)
        return cls(root, use_global=policy is HistoryPolicy.SHARED_GLOBAL_HISTORY)

    @property
    def policy(self) -> HistoryPolicy:
        if self.use_global:
            return HistoryPolicy.SHARED_GLOBAL_HISTORY
        return HistoryPolicy.PER_SESSION_ISOLATION

    # --------- paths ----------
    def scope_id(self, session_id: str) -> str:
        return GLOBAL_SCOPE if self.use_global else _safe_scope(session_id)

    def path_for(self, session_id: str) -> Path:
        return self.root / self.scope_id(session_id) / CHAT_FILE

    # --------- core API ----------
    async def append(self, message: Message, session_id: str) -> None:
        record = {"timestamp": _utc_timestamp(), "message": message_to_dict(message)}
        await asyncio.to_thread(self._append_sync, self.path_for(session_id), record)

    async def load_context(self, session_id: str) -> List[Message]:
        records = await self.load_records(session_id)
        return [message_from_dict(r["message"]) for r in records]

    async def load_records(self, session_id: str) -> List[Dict[str, Any]]:
        """Return the raw timestamped records for a session's scope."""
        path = self.path_for(session_id)
        return await asyncio.to_thread(self._locked_read, path)

    # --------- convenience ----------
    def scopes(self) -> List[str]:
        """Return every scope id that has a stored chat file."""
        if not self.root.exists():
            return []
        return sorted(p.parent.name for p in self.root.glob(f"*/{CHAT_FILE}"))

    def clear(self, session_id: str) -> bool:
        """Delete the chat file for a session's scope. Returns True if one existed."""
        path = self.path_for(session_id)
        with _lock_for(path):
            existed = path.exists()
            path.unlink(missing_ok=True)
        return existed

    # --------- internals ----------
    def _locked_read(self, path: Path) -> List[Dict[str, Any]]:
        with _lock_for(path):
            return self._read_records(path)

    def _append_sync(self, path: Path, record: Dict[str, Any]) -> None:
        with _lock_for(path):
            records = self._read_records(path)
            records.append(record)
            try:
                _write_json(path, records)
            except OSError as e:
                raise StoreError(f"Failed to write {path}: {e}") from e

    def _read_records(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        try:
            data = _read_json(path)
        except OSError as e:
            raise StoreError(f"Failed to read {path}: {e}") from e
        except ValueError as e:
            self._quarantine(path, e)
            return []

        if not isinstance(data, list) or not all(self._is_record(r) for r in data):
            self._quarantine(path, "expected a list of records")
            return []
        return data

    @staticmethod
    def _is_record(obj: Any) -> bool:
        if not isinstance(obj, dict) or "message" not in obj:
            return False
        try:
            message_from_dict(obj["message"])
        except ValueError:
            return False
        return True

    @staticmethod
    def _quarantine(path: Path, reason: Any) -> None:
        # Corruption fallback: keep a backup and start fresh.
        bad = path.with_suffix(".corrupt.json")
        logger.warning("Unreadable chat file %s (%s); moving it to %s", path, reason, bad)
        try:
            os.replace(path, bad)
        except OSError as e:
            raise StoreError(f"Failed to move corrupt file {path}: {e}") from e


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: Dict[str, Any]) -> DiskStore:
    """Create a DiskStore from a config dict (e.g., loaded YAML)."""
    storage_cfg = (cfg or {}).get("storage", {}) if isinstance(cfg, dict) else {}
    root = storage_cfg.get("root_dir") or "data"
    policy = storage_cfg.get("policy")
    if policy:
        return DiskStore.from_policy(root, policy)
    return DiskStore(root, use_global=bool(storage_cfg.get("use_global_context", True)))
