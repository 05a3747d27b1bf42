"""Expose tools discovered on an MCP server as registry Tools."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from praxis.api.models import ToolExecutionResult
from praxis.api.schemas import ToolDefinition
from praxis.api.tools import ToolContext

logger = logging.getLogger(__name__)


class MCPConnection(Protocol):
    """What the bridge and MCPManager need from a server connection."""

    server_name: str

    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def list_tools(self) -> list[ToolDefinition]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> tuple[str, bool]: ...


def namespaced_tool_name(server_name: str, tool_name: str) -> str:
    return f"mcp_{server_name}_{tool_name}"


class MCPTool:
    """A remote MCP tool behind the local Tool contract."""

    def __init__(self, info: ToolDefinition, connection: MCPConnection, server_name: str) -> None:
        self.remote_name = info.name
        self.server_name = server_name
        self._connection = connection
        self.definition = ToolDefinition(
            name=namespaced_tool_name(server_name, info.name),
            description=f"[MCP:{server_name}] {info.description}",
            input_schema=info.input_schema,
        )

    async def execute(self, input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
        # Fail fast instead of sending a call that can only time out
        if not self._connection.is_connected():
            return ToolExecutionResult.error(
                f'Error: MCP server "{self.server_name}" is not connected'
            )
        try:
            text, is_error = await self._connection.call_tool(self.remote_name, input)
        except Exception as e:
            logger.warning("MCP [%s] %s failed: %s", self.server_name, self.remote_name, e)
            return ToolExecutionResult.error(f"MCP tool error: {e}")
        return ToolExecutionResult(content=text, is_error=is_error)


def wrap_mcp_tool(info: ToolDefinition, connection: MCPConnection, server_name: str) -> MCPTool:
    return MCPTool(info, connection, server_name)
