"""Runtime records produced by tools and the agentic loop.

Kept separate from schemas.py (wire DTOs) so the loop, registry and
orchestrator can share them without circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from praxis.api.schemas import Message

# Tool output kept per call record
MAX_RECORDED_OUTPUT = 500


@dataclass
class ToolMetadata:
    """Side effects a tool reports for audit trails."""

    files_read: list[str] = field(default_factory=list)
    files_written: list[str] = field(default_factory=list)
    commands_run: list[str] = field(default_factory=list)


@dataclass
class ToolExecutionResult:
    """Result returned from a single tool execution."""

    content: str
    is_error: bool = False
    metadata: ToolMetadata | None = None

    @classmethod
    def error(cls, content: str) -> ToolExecutionResult:
        return cls(content=content, is_error=True)


@dataclass(frozen=True)
class AgenticCall:
    """One tool invocation made during a loop run."""

    tool_name: str
    input: dict[str, Any]
    output: str  # truncated to MAX_RECORDED_OUTPUT chars
    is_error: bool
    duration_ms: int


@dataclass(frozen=True)
class LoopResult:
    """Outcome of one run_agentic_loop() invocation."""

    messages: tuple[Message, ...]
    final_text: str
    tool_call_count: int
    iterations: int  # model turns requested
    agentic_calls: tuple[AgenticCall, ...]
    files_read: frozenset[str]
    files_written: frozenset[str]
