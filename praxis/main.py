"""praxis entry point.

Initializes components and runs one agentic loop for the goal given on
the command line:
  Settings -> AnthropicClient -> UsageTracer -> ToolRegistry (+ MCP tools) -> loop

Usage: praxis <goal...>   (all arguments are joined into the goal text)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from praxis.api.builtin_tools import create_default_registry
from praxis.api.client import AnthropicClient
from praxis.api.compaction import ContextWindowManager
from praxis.api.models import LoopResult
from praxis.api.runner import LoopConfig, run_agentic_loop
from praxis.api.tools import ToolContext
from praxis.api.tracer import UsageTracer
from praxis.config import Settings
from praxis.errors import PraxisError
from praxis.mcp import MCPManager

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. AnthropicClient - model API (httpx)
    2. UsageTracer - token/cost side channel
    3. ToolRegistry - built-ins + command tools
    4. MCPManager - connects configured servers, registers their tools
    5. ContextWindowManager - conversation compaction
    """
    client = AnthropicClient(settings)
    await client.start()

    tracer = UsageTracer()
    tracer.configure(client.name, settings.model)

    registry = create_default_registry(settings)

    mcp = MCPManager(request_timeout=settings.mcp_request_timeout)
    if settings.mcp_servers:
        await mcp.connect_all(settings.mcp_servers)
        added = await mcp.discover_tools(registry)
        logger.info(
            "MCP: %d/%d servers connected, %d tools registered",
            len(mcp.connected_servers()),
            len(settings.mcp_servers),
            added,
        )

    return {
        "settings": settings,
        "client": client,
        "tracer": tracer,
        "registry": registry,
        "mcp": mcp,
        "context": ContextWindowManager(settings, client),
    }


async def shutdown_components(components: dict) -> None:
    """Close components in reverse order."""
    mcp = components.get("mcp")
    if mcp:
        await mcp.disconnect_all()
    client = components.get("client")
    if client:
        await client.close()
    logger.info("praxis shutdown complete.")


def build_loop_config(components: dict) -> LoopConfig:
    settings: Settings = components["settings"]

    def on_tool_call(name: str, input: dict) -> None:
        logger.info("Tool: %s", name)

    def on_tool_result(name: str, result: str, is_error: bool) -> None:
        if is_error:
            logger.warning("Tool %s failed: %s", name, result[:200])

    def on_text_delta(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    return LoopConfig(
        client=components["client"],
        registry=components["registry"],
        system_prompt=settings.system_prompt,
        context=ToolContext(cwd=str(Path(settings.workspace_dir).resolve())),
        max_iterations=settings.max_iterations,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        streaming=settings.streaming,
        tracer=components["tracer"],
        on_tool_call=on_tool_call,
        on_tool_result=on_tool_result,
        on_text_delta=on_text_delta,
    )


async def run_goal(settings: Settings, goal: str) -> LoopResult:
    components = await create_components(settings)
    try:
        result = await run_agentic_loop(goal, [], build_loop_config(components))
    finally:
        await shutdown_components(components)

    tracer: UsageTracer = components["tracer"]
    cost = tracer.estimated_cost()
    logger.info(
        "Done: %d tool calls, %d iterations, %d in / %d out tokens%s",
        result.tool_call_count,
        result.iterations,
        tracer.total_input_tokens,
        tracer.total_output_tokens,
        f", ~${cost:.4f}" if cost is not None else "",
    )
    return result


def main() -> None:
    """Entry point -- parse settings, run the goal, print the answer."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    goal = " ".join(sys.argv[1:]).strip()
    if not goal:
        print("usage: praxis <goal>", file=sys.stderr)
        sys.exit(2)

    logger.info("Model: %s", settings.model)
    logger.info("Workspace: %s", settings.workspace_dir)

    try:
        result = asyncio.run(run_goal(settings, goal))
    except PraxisError as e:
        logger.error("Run failed: %s", e)
        sys.exit(1)

    if settings.streaming:
        print()
    else:
        print(result.final_text)


if __name__ == "__main__":
    main()
