from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from ..tools.base import Part, ToolError

Role = Literal["user", "model"]

@dataclass
class Message:
    role: Role
    parts: list[Part]

    @staticmethod
    def user_text(text: str) -> "Message":
        return Message(role="user", parts=[{"text": text}])

@dataclass
class ToolCallRequest:
    call_id: str
    name: str
    args: dict[str, Any]
    prompt_id: str
    client_initiated: bool = False

@dataclass
class ToolCallResponse:
    call_id: str
    response_parts: list[Part]
    display: str | None = None
    error: ToolError | None = None

class StreamEventType(str, Enum):
    CONTENT = "content"
    TOOL_CALL_REQUEST = "tool_call_request"

@dataclass
class StreamEvent:
    type: StreamEventType
    # str for CONTENT, ToolCallRequest for TOOL_CALL_REQUEST
    value: Any

    @staticmethod
    def content(text: str) -> "StreamEvent":
        return StreamEvent(StreamEventType.CONTENT, text)

    @staticmethod
    def tool_call(request: ToolCallRequest) -> "StreamEvent":
        return StreamEvent(StreamEventType.TOOL_CALL_REQUEST, request)

class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming_response"
    AGGREGATING = "aggregating_calls"
    EXECUTING = "executing_tools"
    FALLBACK_RESTART = "fallback_restart"
    DONE = "done"
    ABORTED = "aborted"

@dataclass
class SessionState:
    current_model: str
    max_turns: int = -1
    fallback_active: bool = False
    turn_count: int = 0
    conversation: list[Message] = field(default_factory=list)
