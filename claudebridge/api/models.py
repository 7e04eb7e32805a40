"""Shared data models for the API layer.

Content blocks are parsed once from their wire dicts into one dataclass
per kind, so the truncation code dispatches on the block class and never
on which keys happen to be present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union


# ------------------------------------------------------------------
# Content blocks
# ------------------------------------------------------------------


@dataclass
class TextBlock:
    type: ClassVar[str] = "text"
    text: str = ""


@dataclass
class ThinkingBlock:
    type: ClassVar[str] = "thinking"
    text: str = ""


@dataclass
class ToolUseBlock:
    type: ClassVar[str] = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = None


@dataclass
class ToolResultBlock:
    type: ClassVar[str] = "tool_result"
    tool_use_id: str = ""
    content: Any = None


@dataclass
class ImageBlock:
    type: ClassVar[str] = "image"
    payload: Any = None


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, ImageBlock]


def parse_block(raw: Any) -> ContentBlock:
    """Parse one wire content block into its typed form.

    Unknown block types (documents, server tool blocks, ...) count as
    ordinary content for structural purposes.
    """
    if isinstance(raw, str):
        return TextBlock(text=raw)
    if not isinstance(raw, dict):
        return TextBlock()

    kind = raw.get("type")
    if kind == "text":
        return TextBlock(text=str(raw.get("text") or ""))
    if kind in ("thinking", "redacted_thinking"):
        return ThinkingBlock(text=str(raw.get("thinking") or ""))
    if kind == "tool_use":
        return ToolUseBlock(
            id=raw.get("id") or "",
            name=raw.get("name") or "",
            input=raw.get("input"),
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=raw.get("tool_use_id") or "",
            content=raw.get("content"),
        )
    if kind in ("image", "image_url"):
        return ImageBlock(payload=raw.get("source") or raw.get("image_url"))
    return TextBlock()


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass
class Message:
    """A typed view of one transcript message."""

    role: str  # "user" or "assistant"
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        content = raw.get("content")
        if isinstance(content, list):
            blocks = [parse_block(item) for item in content]
        elif content is None:
            blocks = []
        else:
            blocks = [TextBlock(text=str(content))]
        return cls(role=raw.get("role", ""), content=blocks)

    @property
    def is_real_user_turn(self) -> bool:
        """A user message that is not made up entirely of tool results."""
        if self.role != "user":
            return False
        if not self.content:
            return True
        return not all(isinstance(b, ToolResultBlock) for b in self.content)

    def has_tool_use(self) -> bool:
        return any(isinstance(b, ToolUseBlock) for b in self.content)

    def has_tool_result(self) -> bool:
        return any(isinstance(b, ToolResultBlock) for b in self.content)

    def tool_use_ids(self) -> set[str]:
        return {b.id for b in self.content if isinstance(b, ToolUseBlock) and b.id}

    def tool_result_ids(self) -> set[str]:
        return {
            b.tool_use_id
            for b in self.content
            if isinstance(b, ToolResultBlock) and b.tool_use_id
        }


def parse_messages(raw_messages: list[dict[str, Any]]) -> list[Message]:
    return [Message.from_dict(m) for m in raw_messages]


# ------------------------------------------------------------------
# Truncation views
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Round:
    """A contiguous span [start, end) beginning at a real user turn."""

    start: int
    end: int
    token_estimate: int

    @property
    def span(self) -> range:
        return range(self.start, self.end)


@dataclass(frozen=True)
class ToolPair:
    """Assistant tool_use message immediately followed by a tool_result message."""

    assistant_index: int
    user_index: int
    token_estimate: int


@dataclass(frozen=True)
class TokenLimitError:
    """Parsed "prompt is too long" upstream error."""

    actual_tokens: int
    max_tokens: int


# ------------------------------------------------------------------
# Streaming state
# ------------------------------------------------------------------


@dataclass
class ToolCallTracker:
    id: str
    name: str
    arguments: str = ""


@dataclass
class StreamMetrics:
    model: str = ""
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    client_message_id: str | None = None
    upstream_message_id: str | None = None


@dataclass
class ThinkingFlags:
    in_thinking: bool = False
    had_thinking: bool = False
    answer_started: bool = False
    needs_bullet: bool = True


@dataclass
class ConverterState:
    """Per-connection streaming state. Never shared between streams."""

    tool_calls: dict[int, ToolCallTracker] = field(default_factory=dict)
    metrics: StreamMetrics = field(default_factory=StreamMetrics)
    thinking: ThinkingFlags = field(default_factory=ThinkingFlags)


@dataclass
class StreamOutput:
    """One unit emitted by the stream converter."""

    kind: str  # chunk, ping, done
    chunk: dict[str, Any] | None = None
