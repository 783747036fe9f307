"""Chat, message and per-model turn session records."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from parley.abort import AbortController
from parley.metrics import StreamMetrics


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ChatSettings:
    """Per-chat generation and capability settings."""

    model: str = ""
    system: str = ""
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    reasoning_effort: str | None = None
    search_enabled: bool = False
    tutor_enabled: bool = False
    tools: list[str] = field(default_factory=list)  # extra registered tools offered to the model
    learner_nudge: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "system": self.system,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
            "reasoning_effort": self.reasoning_effort,
            "search_enabled": self.search_enabled,
            "tutor_enabled": self.tutor_enabled,
            "tools": list(self.tools),
            "learner_nudge": self.learner_nudge,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatSettings":
        return cls(
            model=data.get("model", ""),
            system=data.get("system", ""),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
            max_tokens=data.get("max_tokens"),
            reasoning_effort=data.get("reasoning_effort"),
            search_enabled=bool(data.get("search_enabled", False)),
            tutor_enabled=bool(data.get("tutor_enabled", False)),
            tools=list(data.get("tools") or []),
            learner_nudge=data.get("learner_nudge"),
        )


@dataclass
class ChatMessage:
    """A message as shown to the user and persisted by the store."""

    chat_id: str
    role: str  # "user" or "assistant"
    content: str = ""
    id: str = field(default_factory=new_id)
    model: str | None = None
    reasoning: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    metrics: StreamMetrics | None = None
    system_snapshot: str | None = None
    tutor: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "role": self.role,
            "content": self.content,
            "model": self.model,
            "reasoning": self.reasoning,
            "attachments": list(self.attachments),
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "system_snapshot": self.system_snapshot,
            "tutor": dict(self.tutor),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        """Create from dictionary."""
        metrics = data.get("metrics")
        return cls(
            id=data["id"],
            chat_id=data["chat_id"],
            role=data["role"],
            content=data.get("content") or "",
            model=data.get("model"),
            reasoning=data.get("reasoning"),
            attachments=list(data.get("attachments") or []),
            metrics=StreamMetrics(**metrics) if isinstance(metrics, dict) else None,
            system_snapshot=data.get("system_snapshot"),
            tutor=dict(data.get("tutor") or {}),
            created_at=data.get("created_at", _utcnow_iso()),
        )


@dataclass
class Chat:
    """A conversation with its settings and ordered messages."""

    id: str = field(default_factory=new_id)
    title: str = "New Chat"
    settings: ChatSettings = field(default_factory=ChatSettings)
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def replace_message(self, message: ChatMessage) -> None:
        """Swap in the final version of a message, keeping its position."""
        for index, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[index] = message
                break
        else:
            self.messages.append(message)
        self.updated_at = _utcnow_iso()


class SessionStatus(str, Enum):
    """Lifecycle of one model's work within a turn."""

    PENDING = "pending"
    PLANNING = "planning"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.DONE, SessionStatus.ERROR, SessionStatus.ABORTED)


@dataclass
class TurnSession:
    """One participating model's state for one user turn."""

    model_id: str
    assistant_message_id: str
    controller: AbortController
    status: SessionStatus = SessionStatus.PENDING
    error: str | None = None
    short_circuited: bool = False

    def finish(self, status: SessionStatus, error: str | None = None) -> None:
        if self.status.terminal:
            return
        self.status = status
        self.error = error
