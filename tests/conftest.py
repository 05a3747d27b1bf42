"""Shared fixtures: scripted model clients, tool context, response builders.

Nothing here touches the network. Model clients are scripted stand-ins
that record every request they receive.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from praxis.api.models import ToolExecutionResult
from praxis.api.schemas import (
    STOP_END_TURN,
    STOP_TOOL_USE,
    CompletionRequest,
    CompletionResponse,
    TextBlock,
    ToolCompletionRequest,
    ToolCompletionResponse,
    ToolUseBlock,
    Usage,
)
from praxis.api.tools import FunctionTool, ToolContext, function_tool

# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------


def text_response(text: str, stop_reason: str = STOP_END_TURN) -> ToolCompletionResponse:
    return ToolCompletionResponse(
        content=[TextBlock(text=text)],
        usage=Usage(input_tokens=10, output_tokens=5),
        stop_reason=stop_reason,
    )


def tool_use_response(
    *calls: tuple[str, str, dict[str, Any]],
    text: str | None = None,
) -> ToolCompletionResponse:
    """calls are (tool_use_id, tool_name, input) triples."""
    content: list = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=i, name=n, input=inp) for i, n, inp in calls)
    return ToolCompletionResponse(
        content=content,
        usage=Usage(input_tokens=20, output_tokens=8),
        stop_reason=STOP_TOOL_USE,
    )


# ---------------------------------------------------------------------------
# Scripted model clients
# ---------------------------------------------------------------------------


class ScriptedClient:
    """Tool-calling client that replays a list of responses.

    ``script`` is either a list (consumed in order) or a callable taking
    the request count and returning a response. Every request is kept on
    ``requests`` (tool) / ``summary_requests`` (plain).
    """

    name = "scripted"

    def __init__(
        self,
        script: list[ToolCompletionResponse] | Callable[[int], ToolCompletionResponse],
        summary: str = "summary of earlier work",
        summary_error: Exception | None = None,
    ) -> None:
        self._script = script
        self._summary = summary
        self._summary_error = summary_error
        self.requests: list[ToolCompletionRequest] = []
        self.summary_requests: list[CompletionRequest] = []

    async def complete_with_tools(self, request: ToolCompletionRequest) -> ToolCompletionResponse:
        self.requests.append(request)
        if callable(self._script):
            return self._script(len(self.requests))
        return self._script[len(self.requests) - 1]

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.summary_requests.append(request)
        if self._summary_error is not None:
            raise self._summary_error
        return CompletionResponse(content=self._summary)


class StreamingScriptedClient(ScriptedClient):
    """Adds complete_with_tools_streaming, emitting each text block as one delta."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.streamed = 0

    async def complete_with_tools_streaming(
        self,
        request: ToolCompletionRequest,
        on_text_delta=None,
        on_tool_use_start=None,
    ) -> ToolCompletionResponse:
        self.streamed += 1
        response = await self.complete_with_tools(request)
        for block in response.content:
            if isinstance(block, TextBlock) and on_text_delta:
                on_text_delta(block.text)
            elif isinstance(block, ToolUseBlock) and on_tool_use_start:
                on_tool_use_start(block.id, block.name)
        return response


class TextOnlyClient:
    """A model client without tool calling."""

    name = "text-only"

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        return CompletionResponse(content="plain")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def echo_tool(name: str = "echo") -> FunctionTool:
    """Tool that echoes its input's ``text`` back."""

    async def handler(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
        return ToolExecutionResult(content=f"{name}:{input.get('text', '')}")

    return function_tool(
        name,
        f"Echo tool {name}",
        {"type": "object", "properties": {"text": {"type": "string"}}},
        handler,
    )


def failing_tool(name: str = "boom") -> FunctionTool:
    async def handler(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
        raise RuntimeError("kaboom")

    return function_tool(name, "Always raises", {"type": "object", "properties": {}}, handler)


@pytest.fixture
def tool_context(tmp_path) -> ToolContext:
    return ToolContext(cwd=str(tmp_path))
