"""Chat message model shared by the session, extraction and reply layers."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """One chat message. Immutable once appended to a transcript."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)

    @property
    def speaker(self) -> str:
        """Display name used in summaries handed to the call provider."""
        return "User" if self.role == Role.USER else "Roy"
