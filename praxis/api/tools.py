"""Tool contract and ToolRegistry.

Provides:
- ToolContext: what every tool execution receives (cwd, path scoping, policy, confirm)
- Tool: the contract (manifest + async execute)
- FunctionTool: adapts a plain async function to the Tool contract
- ToolRegistry: registers tools, advertises manifests, dispatches calls,
  consults pre/post hooks, and builds scoped subsets

Dispatch never raises: unknown tools, hook denials and tool exceptions are
all turned into is_error results so the model can adapt.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from praxis.api.models import ToolExecutionResult
from praxis.api.schemas import ToolDefinition
from praxis.hooks import (
    PostToolUseHook,
    PreToolUseHook,
    evaluate_pre_tool_hooks,
    run_post_tool_hooks,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], Awaitable[bool]]


class Policy(BaseModel):
    """Safety policy shared by every agent in a run."""

    protected_paths: list[str] = Field(default_factory=list)


@dataclass
class ToolContext:
    """Context passed to every tool execution."""

    cwd: str
    allowed_paths: list[str] | None = None  # globs; None means unrestricted
    protected_paths: list[str] | None = None  # globs that must not be written
    policy: Policy | None = None
    confirm: ConfirmCallback | None = None


@runtime_checkable
class Tool(Protocol):
    definition: ToolDefinition

    async def execute(
        self, input: dict[str, Any], context: ToolContext
    ) -> ToolExecutionResult: ...


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolExecutionResult]]


@dataclass
class FunctionTool:
    """A Tool backed by an async function handler(input, context)."""

    definition: ToolDefinition
    handler: ToolHandler = field(repr=False)

    @property
    def name(self) -> str:
        return self.definition.name

    async def execute(self, input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
        return await self.handler(input, context)


def function_tool(
    name: str,
    description: str,
    input_schema: dict[str, Any],
    handler: ToolHandler,
) -> FunctionTool:
    return FunctionTool(
        definition=ToolDefinition(name=name, description=description, input_schema=input_schema),
        handler=handler,
    )


class ToolRegistry:
    """Name -> tool map. Re-registering a name replaces the earlier tool."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._pre_hooks: list[PreToolUseHook] = []
        self._post_hooks: list[PostToolUseHook] = []

    def register(self, tool: Tool) -> None:
        self._tools[tool.definition.name] = tool

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def size(self) -> int:
        return len(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def definitions(self) -> list[ToolDefinition]:
        """Return the full tool manifest."""
        return [tool.definition for tool in self._tools.values()]

    def filtered_definitions(self, allowed_names: Iterable[str]) -> list[ToolDefinition]:
        allowed = set(allowed_names)
        return [tool.definition for name, tool in self._tools.items() if name in allowed]

    def set_pre_hooks(self, hooks: Iterable[PreToolUseHook]) -> None:
        self._pre_hooks = list(hooks)

    def set_post_hooks(self, hooks: Iterable[PostToolUseHook]) -> None:
        self._post_hooks = list(hooks)

    async def execute(
        self,
        name: str,
        input: dict[str, Any],
        context: ToolContext,
    ) -> ToolExecutionResult:
        """Dispatch a tool call. Always returns a result, never raises."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolExecutionResult.error(
                f'Error: Unknown tool "{name}". Available tools: {", ".join(self.names())}'
            )

        if self._pre_hooks:
            verdict = evaluate_pre_tool_hooks(name, self._pre_hooks)
            if verdict.decision == "deny":
                return ToolExecutionResult.error(
                    f'Tool "{name}" blocked by hook: {verdict.reason or "denied by policy"}'
                )
            if verdict.decision == "ask_user" and context.confirm is not None:
                try:
                    confirmed = await context.confirm(
                        f'Hook requires confirmation for "{name}": {verdict.reason or "proceed?"} (y/N) '
                    )
                except Exception as e:
                    logger.warning("Confirmation for %s failed: %s", name, e)
                    return ToolExecutionResult.error(f'Tool "{name}" cancelled: confirmation failed ({e})')
                if not confirmed:
                    return ToolExecutionResult.error(f'Tool "{name}" cancelled by user')

        try:
            result = await tool.execute(input, context)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            result = ToolExecutionResult.error(f"Tool error: {e}")

        if self._post_hooks:
            run_post_tool_hooks(name, result.content, result.is_error, self._post_hooks)

        return result

    def create_scoped(self, allowed_names: Iterable[str]) -> ToolRegistry:
        """New registry holding only the allowed tools that are registered here.

        Hooks carry over so scoping never loosens policy. The parent is untouched.
        """
        allowed = set(allowed_names)
        scoped = ToolRegistry()
        for name, tool in self._tools.items():
            if name in allowed:
                scoped.register(tool)
        scoped.set_pre_hooks(self._pre_hooks)
        scoped.set_post_hooks(self._post_hooks)
        return scoped
