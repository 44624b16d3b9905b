"""Conversation turns exchanged with the model during one run.

Each role is its own frozen dataclass carrying a typed payload, tagged with a
``TurnRole``. A run keeps them in an ordered list that is only appended to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class TurnRole(str, Enum):
    CONTEXT = "context"
    USER = "user"
    MODEL = "model"
    TOOL_REQUEST = "tool_request"
    TOOL_RESULT = "tool_result"


@dataclass(frozen=True)
class Attachment:
    """Inline binary part sent along with a user prompt (images only)."""

    data: bytes
    mime_type: str
    filename: str = ""


@dataclass(frozen=True)
class ToolCall:
    """A single tool invocation requested by the model.

    Attributes:
        name: Tool name as registered.
        args: Parsed arguments dict.
        id: Provider-assigned call id, None when the provider matches by name.
    """

    name: str
    args: dict
    id: str | None = None


@dataclass(frozen=True)
class ToolInvocationResult:
    tool_name: str
    arguments: dict
    output: dict | None = None
    error_kind: str | None = None
    error_message: str | None = None
    timestamp_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed(self) -> bool:
        return self.error_kind is not None

    def model_payload(self) -> dict:
        """What the model gets back for this call."""
        if self.failed:
            return {"errorKind": self.error_kind, "message": self.error_message}
        return self.output or {}

    def to_record(self) -> dict[str, Any]:
        """JSON-safe form stored in the usage log."""
        record: dict[str, Any] = {
            "name": self.tool_name,
            "arguments": self.arguments,
            "timestamp": self.timestamp_utc.isoformat(),
            "status": "error" if self.failed else "success",
        }
        if self.failed:
            record["errorKind"] = self.error_kind
            record["message"] = self.error_message
        return record


@dataclass(frozen=True)
class ContextTurn:
    text: str
    role: TurnRole = field(default=TurnRole.CONTEXT, init=False)


@dataclass(frozen=True)
class UserTurn:
    text: str
    attachments: tuple[Attachment, ...] = ()
    role: TurnRole = field(default=TurnRole.USER, init=False)


@dataclass(frozen=True)
class ModelTurn:
    text: str
    role: TurnRole = field(default=TurnRole.MODEL, init=False)


@dataclass(frozen=True)
class ToolRequestTurn:
    calls: tuple[ToolCall, ...]
    # Whatever the model said in the same pass, replayed with the calls
    text: str = ""
    role: TurnRole = field(default=TurnRole.TOOL_REQUEST, init=False)


@dataclass(frozen=True)
class ToolResultTurn:
    calls: tuple[ToolCall, ...]
    results: tuple[ToolInvocationResult, ...]
    role: TurnRole = field(default=TurnRole.TOOL_RESULT, init=False)


ConversationTurn = Union[ContextTurn, UserTurn, ModelTurn, ToolRequestTurn, ToolResultTurn]
