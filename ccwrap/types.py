"""Message types for the CLI stream-json protocol.

The CLI writes one JSON object per line on stdout and reads one JSON
object per line on stdin. The ``type`` field discriminates:

    in   system            session announcement (subtype "init")
    in   assistant         agent output: text and tool invocations
    in   user              tool results echoed back
    in   stream_event      partial message deltas (--include-partial-messages)
    in   result            end of one query
    in   control_response  reply to a control_request, by request_id
    out  user              a user turn
    out  control_request   out-of-band command (currently "interrupt")

Every parsed message keeps the decoded object in ``raw`` so callers can
reach fields this module does not model.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class MessageType(str, Enum):
    """Values of the ``type`` discriminant."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    STREAM_EVENT = "stream_event"
    CONTROL_REQUEST = "control_request"
    CONTROL_RESPONSE = "control_response"


# ==================== Content Blocks ====================


@dataclass
class TextBlock:
    """Text content block."""

    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextBlock":
        return cls(text=data.get("text", ""))


@dataclass
class ToolUseBlock:
    """Tool invocation made by the agent."""

    id: str
    name: str
    input: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolUseBlock":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            input=data.get("input") or {},
        )


@dataclass
class ToolResultBlock:
    """Result of a tool invocation, correlated by ``tool_use_id``."""

    tool_use_id: str
    content: Any
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            result["is_error"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResultBlock":
        return cls(
            tool_use_id=data.get("tool_use_id", ""),
            content=data.get("content", ""),
            is_error=bool(data.get("is_error", False)),
        )


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def parse_content_block(data: Any) -> ContentBlock:
    """Parse a content block; unknown block types become text."""
    if not isinstance(data, dict):
        return TextBlock(text=str(data))

    block_type = data.get("type", "")
    if block_type == "text":
        return TextBlock.from_dict(data)
    elif block_type == "tool_use":
        return ToolUseBlock.from_dict(data)
    elif block_type == "tool_result":
        return ToolResultBlock.from_dict(data)
    return TextBlock(text=str(data))


def _content_list(data: Dict[str, Any]) -> List[Any]:
    # Flat {"content": [...]} or nested {"message": {"content": [...]}}
    content = data.get("content")
    if not content and isinstance(data.get("message"), dict):
        content = data["message"].get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return content or []


# ==================== Inbound Messages ====================


@dataclass
class SystemMessage:
    """Session announcement. The ``init`` subtype opens every process."""

    subtype: str
    session_id: str
    model: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    mcp_servers: List[Dict[str, Any]] = field(default_factory=list)
    permission_mode: Optional[str] = None
    api_key_source: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def type(self) -> MessageType:
        return MessageType.SYSTEM

    @property
    def is_init(self) -> bool:
        return self.subtype == "init"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemMessage":
        return cls(
            subtype=data.get("subtype", ""),
            session_id=data.get("session_id") or "",
            model=data.get("model"),
            tools=list(data.get("tools") or []),
            cwd=data.get("cwd"),
            mcp_servers=list(data.get("mcp_servers") or []),
            permission_mode=data.get("permissionMode"),
            api_key_source=data.get("apiKeySource"),
            raw=data,
        )


@dataclass
class AssistantMessage:
    """Agent output: text and/or tool invocations."""

    content_blocks: List[ContentBlock]
    session_id: str
    parent_tool_use_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def type(self) -> MessageType:
        return MessageType.ASSISTANT

    @property
    def text(self) -> str:
        """All text content of this message, concatenated."""
        return "".join(b.text for b in self.content_blocks if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content_blocks if isinstance(b, ToolUseBlock)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssistantMessage":
        return cls(
            content_blocks=[parse_content_block(b) for b in _content_list(data)],
            session_id=data.get("session_id") or "",
            parent_tool_use_id=data.get("parent_tool_use_id"),
            raw=data,
        )


@dataclass
class UserMessage:
    """Tool results echoed back by the CLI."""

    content_blocks: List[ContentBlock]
    session_id: str
    parent_tool_use_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def type(self) -> MessageType:
        return MessageType.USER

    @property
    def tool_results(self) -> List[ToolResultBlock]:
        return [b for b in self.content_blocks if isinstance(b, ToolResultBlock)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserMessage":
        return cls(
            content_blocks=[parse_content_block(b) for b in _content_list(data)],
            session_id=data.get("session_id") or "",
            parent_tool_use_id=data.get("parent_tool_use_id"),
            raw=data,
        )


@dataclass
class StreamEvent:
    """Partial message delta."""

    event_type: str
    session_id: str
    delta_text: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def type(self) -> MessageType:
        return MessageType.STREAM_EVENT

    @property
    def is_text_delta(self) -> bool:
        return self.event_type == "content_block_delta" and self.delta_text is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamEvent":
        event = data.get("event") or {}
        event_type = event.get("type", "")

        delta_text = None
        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                delta_text = delta.get("text", "")

        return cls(
            event_type=event_type,
            session_id=data.get("session_id") or "",
            delta_text=delta_text,
            raw=data,
        )


@dataclass
class Usage:
    """Token usage totals of a query."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Usage":
        return cls(
            input_tokens=data.get("input_tokens") or 0,
            output_tokens=data.get("output_tokens") or 0,
            cache_read_tokens=(
                data.get("cache_read_input_tokens") or data.get("cache_read_tokens") or 0
            ),
            cache_creation_tokens=(
                data.get("cache_creation_input_tokens")
                or data.get("cache_creation_tokens")
                or 0
            ),
        )


@dataclass
class ResultMessage:
    """Terminal message of a query."""

    subtype: str
    session_id: str
    is_error: bool = False
    result: Optional[str] = None
    num_turns: int = 0
    duration_ms: int = 0
    duration_api_ms: int = 0
    total_cost_usd: Optional[float] = None
    usage: Optional[Usage] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def type(self) -> MessageType:
        return MessageType.RESULT

    @property
    def is_success(self) -> bool:
        return self.subtype == "success" and not self.is_error

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultMessage":
        usage_data = data.get("usage")
        return cls(
            subtype=data.get("subtype", ""),
            session_id=data.get("session_id") or "",
            is_error=bool(data.get("is_error", False)),
            result=data.get("result"),
            num_turns=data.get("num_turns") or 0,
            duration_ms=data.get("duration_ms") or 0,
            duration_api_ms=data.get("duration_api_ms") or 0,
            total_cost_usd=data.get("total_cost_usd"),
            usage=Usage.from_dict(usage_data) if isinstance(usage_data, dict) else None,
            raw=data,
        )


@dataclass
class ControlResponse:
    """Reply to a control request. Consumed by the decoder, never streamed."""

    request_id: str
    subtype: str
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def type(self) -> MessageType:
        return MessageType.CONTROL_RESPONSE

    @property
    def is_success(self) -> bool:
        return self.subtype == "success"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlResponse":
        response = data.get("response") or {}
        return cls(
            request_id=str(response.get("request_id") or ""),
            subtype=response.get("subtype", ""),
            error=response.get("error"),
            raw=data,
        )


@dataclass
class UnknownMessage:
    """Any object whose ``type`` this module does not model."""

    raw: Dict[str, Any]

    @property
    def type(self) -> str:
        return str(self.raw.get("type", ""))


# ==================== Outbound Messages ====================


@dataclass
class ControlRequest:
    """Out-of-band command sent to the CLI."""

    request_id: str
    subtype: str = "interrupt"

    @property
    def type(self) -> MessageType:
        return MessageType.CONTROL_REQUEST

    @classmethod
    def interrupt(cls) -> "ControlRequest":
        return cls(request_id=new_request_id(), subtype="interrupt")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "control_request",
            "request_id": self.request_id,
            "request": {"subtype": self.subtype},
        }


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def build_user_turn(prompt: str, session_id: str = "") -> Dict[str, Any]:
    """Build the stdin payload for one user turn.

    ``session_id`` may be empty before the CLI has announced one.
    """
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [TextBlock(text=prompt).to_dict()],
        },
        "parent_tool_use_id": None,
        "session_id": session_id or "",
    }


def encode_line(payload: Dict[str, Any]) -> bytes:
    """Serialize one protocol object as a newline-terminated line."""
    return (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")


# Union type for everything the decoder can produce
CLIMessage = Union[
    SystemMessage,
    AssistantMessage,
    UserMessage,
    StreamEvent,
    ResultMessage,
    ControlResponse,
    UnknownMessage,
]


def parse_message(data: Dict[str, Any]) -> CLIMessage:
    """Parse a decoded protocol object into its message type."""
    msg_type = data.get("type", "")

    if msg_type == "system":
        return SystemMessage.from_dict(data)
    elif msg_type == "assistant":
        return AssistantMessage.from_dict(data)
    elif msg_type == "user":
        return UserMessage.from_dict(data)
    elif msg_type == "stream_event":
        return StreamEvent.from_dict(data)
    elif msg_type == "result":
        return ResultMessage.from_dict(data)
    elif msg_type == "control_response":
        return ControlResponse.from_dict(data)
    return UnknownMessage(raw=data)
