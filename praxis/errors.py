"""Typed errors for praxis.

Hierarchy:
  PraxisError (base)
    ProviderError        - model API failures (status_code, provider, is_retryable)
    CapabilityError      - model client cannot do tool calling
    ToolExecutionError   - a tool failed in a way it could not report itself
    MCPError             - MCP transport failures
      MCPHandshakeError
      MCPRemoteError     - JSON-RPC error object from the server
      MCPTimeoutError
      MCPConnectionClosedError
"""

from __future__ import annotations


class PraxisError(Exception):
    """Base class for all praxis errors."""

    def __init__(self, message: str, code: str = "PRAXIS_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ProviderError(PraxisError):
    """Raised when the model provider returns an error or cannot be reached."""

    RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})

    def __init__(self, message: str, status_code: int | None, provider: str) -> None:
        code = f"PROVIDER_{status_code}" if status_code else "PROVIDER_ERROR"
        super().__init__(message, code)
        self.status_code = status_code
        self.provider = provider

    @property
    def is_retryable(self) -> bool:
        return self.status_code in self.RETRYABLE_STATUS_CODES


class CapabilityError(PraxisError):
    """Raised when a model client lacks tool-calling support."""

    def __init__(self, client_name: str) -> None:
        super().__init__(
            f"Model client '{client_name}' does not support tool calling",
            "CAPABILITY_ERROR",
        )
        self.client_name = client_name


class ToolExecutionError(PraxisError):
    def __init__(self, message: str, tool_name: str) -> None:
        super().__init__(message, "TOOL_EXECUTION_ERROR")
        self.tool_name = tool_name


class MCPError(PraxisError):
    """Base class for MCP transport errors."""

    def __init__(self, message: str, code: str = "MCP_ERROR") -> None:
        super().__init__(message, code)


class MCPHandshakeError(MCPError):
    def __init__(self, server: str, reason: str) -> None:
        super().__init__(f"MCP [{server}] init failed: {reason}", "MCP_HANDSHAKE")
        self.server = server


class MCPRemoteError(MCPError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, rpc_code: int, rpc_message: str) -> None:
        super().__init__(f"MCP error {rpc_code}: {rpc_message}", "MCP_REMOTE")
        self.rpc_code = rpc_code
        self.rpc_message = rpc_message


class MCPTimeoutError(MCPError):
    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(
            f"MCP request {method} timed out after {timeout:g}s", "MCP_TIMEOUT"
        )
        self.method = method
        self.timeout = timeout


class MCPConnectionClosedError(MCPError):
    """The server process exited or was never started."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message, "MCP_CLOSED")
        self.returncode = returncode
