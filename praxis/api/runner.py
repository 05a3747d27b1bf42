"""Agentic loop -- drives one multi-turn model/tool exchange.

The model answers with content blocks; when it stops for ``tool_use`` we
run every requested tool in order, send all results back in a single user
message, and ask again. The loop ends on any other stop reason or when
max_iterations model turns have been requested.

Tool failures never escape: the registry turns them into is_error results
so the model can adapt. Model client failures do escape, as does running
against a client without tool calling.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from praxis.api.client import supports_streaming, supports_tool_calling
from praxis.api.models import MAX_RECORDED_OUTPUT, AgenticCall, LoopResult
from praxis.api.schemas import (
    STOP_TOOL_USE,
    Message,
    ToolCompletionRequest,
    ToolCompletionResponse,
    ToolResultBlock,
    extract_text,
    extract_tool_use_blocks,
    tool_result_block,
)
from praxis.api.tools import ToolContext, ToolRegistry
from praxis.api.tracer import UsageTracer
from praxis.errors import CapabilityError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50


@dataclass
class LoopConfig:
    """Everything one run_agentic_loop() call needs."""

    client: Any  # ToolCallingClient; checked at runtime
    registry: ToolRegistry
    system_prompt: str
    context: ToolContext
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_tokens: int | None = None
    temperature: float | None = None
    streaming: bool = False
    tracer: UsageTracer = field(default_factory=UsageTracer)
    on_tool_call: Callable[[str, dict[str, Any]], None] | None = None
    on_tool_result: Callable[[str, str, bool], None] | None = None
    on_text_output: Callable[[str], None] | None = None
    on_text_delta: Callable[[str], None] | None = None


async def run_agentic_loop(
    user_message: str,
    history: Sequence[Message],
    config: LoopConfig,
) -> LoopResult:
    """Run the tool use loop until the model stops or max_iterations is hit.

    history is not mutated; the returned LoopResult.messages holds history,
    the new user message, and everything appended during the run.
    """
    client = config.client
    if not supports_tool_calling(client):
        raise CapabilityError(getattr(client, "name", type(client).__name__))

    use_streaming = config.streaming and supports_streaming(client)
    tool_defs = config.registry.definitions()

    messages: list[Message] = [*history, Message(role="user", content=user_message)]
    agentic_calls: list[AgenticCall] = []
    files_read: set[str] = set()
    files_written: set[str] = set()
    tool_call_count = 0
    final_text = ""
    iterations = 0
    stopped = False

    while iterations < config.max_iterations:
        request = ToolCompletionRequest(
            messages=list(messages),
            system=config.system_prompt,
            tools=tool_defs,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )

        timer = config.tracer.start_call("agentic_loop")
        response = await _request_turn(client, request, config, use_streaming)
        iterations += 1
        timer.finish(
            response.usage.input_tokens,
            response.usage.output_tokens,
            {"iteration": iterations, "stop_reason": response.stop_reason},
        )

        text = extract_text(response.content)
        if text:
            final_text = text
            # Streaming already surfaced the text as deltas
            if not use_streaming and config.on_text_output:
                config.on_text_output(text)

        messages.append(Message(role="assistant", content=response.content))

        tool_uses = extract_tool_use_blocks(response.content)
        if response.stop_reason != STOP_TOOL_USE or not tool_uses:
            stopped = True
            break

        tool_results: list[ToolResultBlock] = []
        for tool_use in tool_uses:
            tool_call_count += 1
            if config.on_tool_call:
                config.on_tool_call(tool_use.name, tool_use.input)

            start_time = time.monotonic()
            result = await config.registry.execute(tool_use.name, tool_use.input, config.context)
            duration_ms = int((time.monotonic() - start_time) * 1000)

            agentic_calls.append(
                AgenticCall(
                    tool_name=tool_use.name,
                    input=tool_use.input,
                    output=result.content[:MAX_RECORDED_OUTPUT],
                    is_error=result.is_error,
                    duration_ms=duration_ms,
                )
            )
            if result.metadata:
                files_read.update(result.metadata.files_read)
                files_written.update(result.metadata.files_written)

            if config.on_tool_result:
                config.on_tool_result(tool_use.name, result.content, result.is_error)

            tool_results.append(tool_result_block(tool_use.id, result.content, result.is_error))

        # All results for this turn go back in one user message
        messages.append(Message(role="user", content=tool_results))

    if not stopped:
        logger.warning("Agentic loop reached max_iterations=%d", config.max_iterations)

    return LoopResult(
        messages=tuple(messages),
        final_text=final_text,
        tool_call_count=tool_call_count,
        iterations=iterations,
        agentic_calls=tuple(agentic_calls),
        files_read=frozenset(files_read),
        files_written=frozenset(files_written),
    )


async def _request_turn(
    client: Any,
    request: ToolCompletionRequest,
    config: LoopConfig,
    use_streaming: bool,
) -> ToolCompletionResponse:
    if use_streaming:
        return await client.complete_with_tools_streaming(
            request,
            on_text_delta=config.on_text_delta,
            on_tool_use_start=lambda tool_id, name: logger.debug(
                "Model started tool_use %s (%s)", name, tool_id
            ),
        )
    return await client.complete_with_tools(request)
