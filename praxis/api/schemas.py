"""Pydantic DTOs for the model wire contract.

Content blocks are a closed, tagged union discriminated on ``type``:
TextBlock | ToolUseBlock | ToolResultBlock. Code that walks blocks uses
``match`` with ``assert_never`` so a new variant cannot be silently ignored.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant"]

# Only "tool_use" continues the agentic loop.
STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation message. Content is plain text or a list of blocks."""

    role: Role
    content: str | list[ContentBlock]

    def to_api(self) -> dict[str, Any]:
        """Serialize to the Messages API shape."""
        return self.model_dump(mode="json")


class ToolDefinition(BaseModel):
    """Tool manifest advertised to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ToolCompletionRequest(BaseModel):
    messages: list[Message]
    system: str | None = None
    tools: list[ToolDefinition] = Field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None


class ToolCompletionResponse(BaseModel):
    content: list[ContentBlock]
    usage: Usage = Field(default_factory=Usage)
    stop_reason: str = STOP_END_TURN  # end_turn, tool_use, max_tokens, ...


class CompletionRequest(BaseModel):
    """Plain text completion, no tools (used for summarization)."""

    messages: list[Message]
    system: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


class CompletionResponse(BaseModel):
    content: str
    usage: Usage = Field(default_factory=Usage)
    stop_reason: str = STOP_END_TURN


# ---------------------------------------------------------------------------
# Block helpers
# ---------------------------------------------------------------------------


def extract_text(blocks: list[ContentBlock]) -> str:
    """Concatenate all text blocks."""
    return "".join(b.text for b in blocks if isinstance(b, TextBlock))


def extract_tool_use_blocks(blocks: list[ContentBlock]) -> list[ToolUseBlock]:
    return [b for b in blocks if isinstance(b, ToolUseBlock)]


def tool_result_block(tool_use_id: str, content: str, is_error: bool = False) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)
