"""Conversation session identity."""

from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class Session:
    """Identifies one conversation; scopes where its messages are persisted."""

    id: str

    @classmethod
    def new(cls) -> "Session":
        return cls(id=str(uuid.uuid4()))

    def __str__(self) -> str:
        return self.id
