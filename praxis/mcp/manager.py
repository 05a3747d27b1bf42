"""MCPManager -- owns every configured MCP server connection.

Servers are independent: one that fails to start is logged and skipped,
the rest carry on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from praxis.api.tools import ToolRegistry
from praxis.config import MCPServerConfig
from praxis.mcp.bridge import MCPConnection, wrap_mcp_tool
from praxis.mcp.connection import DEFAULT_REQUEST_TIMEOUT, StdioConnection

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[MCPServerConfig], MCPConnection]


class MCPManager:
    def __init__(
        self,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._request_timeout = request_timeout
        self._factory = connection_factory or self._stdio_connection
        self._connections: dict[str, MCPConnection] = {}

    def _stdio_connection(self, config: MCPServerConfig) -> MCPConnection:
        return StdioConnection(config, request_timeout=self._request_timeout)

    async def connect_all(self, configs: Iterable[MCPServerConfig]) -> None:
        """Connect each server in turn. Failures are logged, never raised."""
        for config in configs:
            if config.name in self._connections:
                logger.warning("MCP [%s] already connected, skipping duplicate", config.name)
                continue
            connection = self._factory(config)
            try:
                await connection.connect()
            except Exception as e:
                logger.warning("MCP [%s] failed to connect: %s", config.name, e)
                continue
            self._connections[config.name] = connection

    async def discover_tools(self, registry: ToolRegistry) -> int:
        """Register wrapped tools from every connected server. Returns the count added."""
        count = 0
        for server_name, connection in self._connections.items():
            if not connection.is_connected():
                continue
            try:
                tools = await connection.list_tools()
            except Exception as e:
                logger.warning("MCP [%s] tools/list failed: %s", server_name, e)
                continue
            for info in tools:
                registry.register(wrap_mcp_tool(info, connection, server_name))
            count += len(tools)
            logger.info("MCP [%s] registered %d tools", server_name, len(tools))
        return count

    async def disconnect_all(self) -> None:
        for server_name, connection in self._connections.items():
            try:
                await connection.disconnect()
            except Exception as e:
                logger.debug("MCP [%s] disconnect error ignored: %s", server_name, e)
        self._connections.clear()

    def get_connection(self, name: str) -> MCPConnection | None:
        return self._connections.get(name)

    def connected_servers(self) -> list[str]:
        return [name for name, conn in self._connections.items() if conn.is_connected()]
