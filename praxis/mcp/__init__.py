"""MCP client side -- stdio transport, registry bridge and connection manager.

Public API: StdioConnection, MCPManager, wrap_mcp_tool.
"""

from praxis.mcp.bridge import MCPConnection, MCPTool, namespaced_tool_name, wrap_mcp_tool
from praxis.mcp.connection import PROTOCOL_VERSION, StdioConnection
from praxis.mcp.manager import MCPManager

__all__ = [
    "MCPConnection",
    "MCPManager",
    "MCPTool",
    "PROTOCOL_VERSION",
    "StdioConnection",
    "namespaced_tool_name",
    "wrap_mcp_tool",
]
