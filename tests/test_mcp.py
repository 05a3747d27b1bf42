"""Tests for praxis/mcp -- stdio transport, registry bridge, manager.

Transport tests drive a real child process: a small JSON-RPC server run
with ``sys.executable -c``. Bridge and manager tests also use in-memory
fake connections where a process adds nothing.
"""

import asyncio
import logging
import sys
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from praxis.api.schemas import ToolDefinition
from praxis.api.tools import ToolRegistry
from praxis.config import MCPServerConfig
from praxis.errors import (
    MCPConnectionClosedError,
    MCPError,
    MCPHandshakeError,
    MCPRemoteError,
    MCPTimeoutError,
)
from praxis.mcp import MCPManager, StdioConnection, namespaced_tool_name, wrap_mcp_tool
from praxis.mcp.connection import PROTOCOL_VERSION, _PendingRequest

FAKE_SERVER = r'''
import json, os, sys, time

def send(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()

def text(mid, value, **extra):
    send({"jsonrpc": "2.0", "id": mid, "result": {"content": [{"type": "text", "text": value}], **extra}})

TOOLS = [
    {"name": n, "description": "fake " + n, "inputSchema": {"type": "object", "properties": {}}}
    for n in ("echo", "fail", "remote_error", "hang", "noise", "exit", "env", "empty")
]

for line in sys.stdin:
    msg = json.loads(line)
    method, mid = msg.get("method"), msg.get("id")
    if method == "initialize":
        assert msg["params"]["protocolVersion"]
        send({"jsonrpc": "2.0", "id": mid, "result": {
            "protocolVersion": msg["params"]["protocolVersion"],
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake", "version": "1.0"},
        }})
    elif method == "notifications/initialized":
        sys.stderr.write("client initialized\n")
        sys.stderr.flush()
    elif method == "tools/list":
        send({"jsonrpc": "2.0", "id": mid, "result": {"tools": TOOLS}})
    elif method == "tools/call":
        name, args = msg["params"]["name"], msg["params"]["arguments"]
        if name == "echo":
            send({"jsonrpc": "2.0", "id": mid, "result": {"content": [
                {"type": "text", "text": args.get("text", "")},
                {"type": "image", "data": "AAAA", "mimeType": "image/png"},
                {"type": "text", "text": "second"},
            ]}})
        elif name == "fail":
            text(mid, "it broke", isError=True)
        elif name == "remote_error":
            send({"jsonrpc": "2.0", "id": mid, "error": {"code": -32602, "message": "bad params"}})
        elif name == "hang":
            pass
        elif name == "noise":
            sys.stdout.write("this is not json\n")
            send({"jsonrpc": "2.0", "method": "notifications/message", "params": {}})
            send({"jsonrpc": "2.0", "id": 9999, "result": {}})
            payload = json.dumps({"jsonrpc": "2.0", "id": mid, "result": {
                "content": [{"type": "text", "text": "survived"}]}}) + "\n"
            sys.stdout.write(payload[:15])
            sys.stdout.flush()
            time.sleep(0.05)
            sys.stdout.write(payload[15:])
            sys.stdout.flush()
        elif name == "exit":
            sys.exit(3)
        elif name == "env":
            text(mid, os.environ.get("PRAXIS_MCP_TEST", "<unset>"))
        elif name == "empty":
            send({"jsonrpc": "2.0", "id": mid, "result": {"content": []}})
'''

TOOL_COUNT = 8

NOISY_STDERR = r'''
import sys
sys.stderr.write("x" * 70000)
sys.stderr.write("\n" + "log line\n" * 50000)
sys.stderr.write("last words")
sys.stderr.flush()
'''


def _server(name: str = "fake", script: str = FAKE_SERVER, **kwargs) -> MCPServerConfig:
    return MCPServerConfig(name=name, command=sys.executable, args=["-c", script], **kwargs)


@pytest_asyncio.fixture
async def connection():
    conn = StdioConnection(_server(env={"PRAXIS_MCP_TEST": "from-config"}), request_timeout=5)
    await conn.connect()
    yield conn
    await conn.disconnect()


# ---------------------------------------------------------------------------
# Stdio transport against a real process
# ---------------------------------------------------------------------------


class TestStdioConnection:
    @pytest.mark.asyncio
    async def test_handshake_connects(self, connection):
        assert connection.is_connected()
        assert connection.state == "connected"
        assert PROTOCOL_VERSION == "2024-11-05"

    @pytest.mark.asyncio
    async def test_list_tools_maps_definitions(self, connection):
        tools = await connection.list_tools()
        assert len(tools) == TOOL_COUNT
        assert tools[0] == ToolDefinition(
            name="echo",
            description="fake echo",
            input_schema={"type": "object", "properties": {}},
        )

    @pytest.mark.asyncio
    async def test_call_tool_joins_text_drops_other_segments(self, connection):
        text, is_error = await connection.call_tool("echo", {"text": "hello"})
        assert text == "hello\nsecond"
        assert is_error is False

    @pytest.mark.asyncio
    async def test_remote_is_error_flag(self, connection):
        assert await connection.call_tool("fail", {}) == ("it broke", True)

    @pytest.mark.asyncio
    async def test_no_text_returns_raw_json(self, connection):
        text, is_error = await connection.call_tool("empty", {})
        assert text == '{"content": []}'
        assert is_error is False

    @pytest.mark.asyncio
    async def test_remote_error_rejects_only_that_request(self, connection):
        with pytest.raises(MCPRemoteError, match="MCP error -32602: bad params") as exc_info:
            await connection.call_tool("remote_error", {})
        assert exc_info.value.rpc_code == -32602
        assert connection.is_connected()
        assert (await connection.call_tool("echo", {"text": "still"}))[0].startswith("still")

    @pytest.mark.asyncio
    async def test_noise_and_split_frames_tolerated(self, connection):
        """Malformed line, unmatched id and a response split across writes."""
        text, _ = await connection.call_tool("noise", {})
        assert text == "survived"
        assert connection.is_connected()

    @pytest.mark.asyncio
    async def test_concurrent_requests_correlated_by_id(self, connection):
        results = await asyncio.gather(
            *(connection.call_tool("echo", {"text": f"n{i}"}) for i in range(10))
        )
        assert [r[0].split("\n")[0] for r in results] == [f"n{i}" for i in range(10)]
        assert connection.pending_count == 0

    @pytest.mark.asyncio
    async def test_env_merged_over_process_env(self, connection):
        text, _ = await connection.call_tool("env", {})
        assert text == "from-config"

    @pytest.mark.asyncio
    async def test_stderr_logged_at_debug(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="praxis.mcp.connection"):
            conn = StdioConnection(_server())
            await conn.connect()
            for _ in range(50):
                if "client initialized" in caplog.text:
                    break
                await asyncio.sleep(0.05)
            await conn.disconnect()
        assert "stderr: client initialized" in caplog.text

    @pytest.mark.asyncio
    async def test_oversized_stderr_does_not_block_handshake(self, caplog):
        conn = StdioConnection(_server(script=NOISY_STDERR + FAKE_SERVER, timeout_sec=5))
        with caplog.at_level(logging.DEBUG, logger="praxis.mcp.connection"):
            await asyncio.wait_for(conn.connect(), timeout=15)
            try:
                assert conn.is_connected()
                assert (await conn.call_tool("echo", {"text": "still here"}))[0].startswith("still here")
            finally:
                await asyncio.wait_for(conn.disconnect(), timeout=15)

        stderr_lines = [r.getMessage() for r in caplog.records if "stderr:" in r.getMessage()]
        assert any(line.endswith("x" * 100) for line in stderr_lines)
        assert all(len(line) < 9000 for line in stderr_lines)

    @pytest.mark.asyncio
    async def test_list_tools_passes_schema_through(self):
        schema = {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
            "additionalProperties": False,
        }
        conn = StdioConnection(_server())
        conn._request = AsyncMock(
            return_value={"tools": [{"name": "read", "description": "Read", "inputSchema": schema}]}
        )

        tools = await conn.list_tools()

        assert tools == [ToolDefinition(name="read", description="Read", input_schema=schema)]
        conn._request.assert_awaited_once_with("tools/list", {})

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        conn = StdioConnection(_server(), request_timeout=0.3)
        await conn.connect()
        try:
            with pytest.raises(MCPTimeoutError, match="tools/call timed out after 0.3s"):
                await conn.call_tool("hang", {})
            assert conn.pending_count == 0
            assert conn.is_connected()
            assert (await conn.call_tool("echo", {"text": "after"}))[0].startswith("after")
        finally:
            await conn.disconnect()

    @pytest.mark.asyncio
    async def test_process_killed_rejects_pending(self, connection):
        pending = asyncio.create_task(connection.call_tool("hang", {}))
        await asyncio.sleep(0.1)
        assert connection.pending_count == 1

        connection._process.kill()

        with pytest.raises(MCPConnectionClosedError, match="exited"):
            await asyncio.wait_for(pending, timeout=5)
        assert not connection.is_connected()
        assert connection.pending_count == 0

    @pytest.mark.asyncio
    async def test_process_exit_disables_connection(self, connection):
        with pytest.raises(MCPConnectionClosedError) as exc_info:
            await connection.call_tool("exit", {})
        assert exc_info.value.returncode == 3

        with pytest.raises(MCPConnectionClosedError, match="is not connected"):
            await connection.call_tool("echo", {})

    @pytest.mark.asyncio
    async def test_disconnect_rejects_pending_and_is_idempotent(self, connection):
        pending = asyncio.create_task(connection.call_tool("hang", {}))
        await asyncio.sleep(0.1)

        await connection.disconnect()
        await connection.disconnect()

        with pytest.raises(MCPConnectionClosedError, match="disconnected"):
            await pending
        assert connection.state == "closed"

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, connection):
        with pytest.raises(MCPError, match="cannot connect"):
            await connection.connect()


class TestHandshakeFailures:
    @pytest.mark.asyncio
    async def test_server_exits_during_handshake(self):
        conn = StdioConnection(_server(script="import sys; sys.exit(1)"))
        with pytest.raises(MCPHandshakeError, match=r"MCP \[fake\] init failed"):
            await conn.connect()
        assert conn.state == "closed"

    @pytest.mark.asyncio
    async def test_handshake_timeout_kills_process(self):
        conn = StdioConnection(_server(script="import time; time.sleep(30)", timeout_sec=0.3))
        with pytest.raises(MCPHandshakeError, match="timed out"):
            await conn.connect()
        assert conn._process.returncode is not None
        assert not conn.is_connected()

    @pytest.mark.asyncio
    async def test_missing_command(self):
        conn = StdioConnection(
            MCPServerConfig(name="ghost", command="/nonexistent/praxis-mcp-server")
        )
        with pytest.raises(MCPHandshakeError, match="ghost"):
            await conn.connect()


# ---------------------------------------------------------------------------
# Line framing without a process
# ---------------------------------------------------------------------------


class TestFraming:
    def _with_pending(self, conn: StdioConnection, req_id: int) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(10, lambda: None)
        conn._pending[req_id] = _PendingRequest("tools/list", 10, future, timer)
        return future

    @pytest.mark.asyncio
    async def test_chunks_split_mid_message(self):
        conn = StdioConnection(_server())
        future = self._with_pending(conn, 1)

        conn._feed('{"jsonrpc": "2.0", "id"')
        assert not future.done()
        conn._feed(': 1, "result": {"ok": true}}\n{"jsonrpc"')

        assert future.result() == {"ok": True}
        assert conn._buffer == '{"jsonrpc"'

    @pytest.mark.asyncio
    async def test_malformed_and_unmatched_lines_ignored(self):
        conn = StdioConnection(_server())
        future = self._with_pending(conn, 2)

        conn._feed("garbage\n\n[1, 2]\n")
        conn._feed('{"jsonrpc": "2.0", "id": 42, "result": {}}\n')
        assert not future.done()

        conn._feed('{"jsonrpc": "2.0", "id": 2, "error": {"code": -1, "message": "nope"}}\n')
        with pytest.raises(MCPRemoteError, match="nope"):
            future.result()
        assert conn.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_before_connect_rejected(self):
        conn = StdioConnection(_server())
        with pytest.raises(MCPConnectionClosedError, match="not connected"):
            await conn.list_tools()


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


def _fake_connection(name: str = "srv", connected: bool = True, tools=None) -> AsyncMock:
    conn = AsyncMock()
    conn.server_name = name
    conn.is_connected = lambda: connected
    conn.list_tools.return_value = tools or [
        ToolDefinition(name="read", description="Read a thing"),
        ToolDefinition(name="write", description="Write a thing"),
    ]
    conn.call_tool.return_value = ("remote output", False)
    return conn


class TestBridge:
    def test_namespaced_definition(self):
        info = ToolDefinition(name="read", description="Read a thing")
        tool = wrap_mcp_tool(info, _fake_connection(), "srv")
        assert tool.definition.name == "mcp_srv_read"
        assert tool.definition.description == "[MCP:srv] Read a thing"
        assert namespaced_tool_name("a", "b") == "mcp_a_b"

    @pytest.mark.asyncio
    async def test_execute_calls_remote_name(self, tool_context):
        conn = _fake_connection()
        tool = wrap_mcp_tool(ToolDefinition(name="read"), conn, "srv")

        result = await tool.execute({"path": "x"}, tool_context)

        conn.call_tool.assert_awaited_once_with("read", {"path": "x"})
        assert result.content == "remote output"
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_disconnected_fails_fast(self, tool_context):
        conn = _fake_connection(connected=False)
        tool = wrap_mcp_tool(ToolDefinition(name="read"), conn, "srv")

        result = await tool.execute({}, tool_context)

        assert result.is_error is True
        assert result.content == 'Error: MCP server "srv" is not connected'
        conn.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_call_failure_becomes_error(self, tool_context):
        conn = _fake_connection()
        conn.call_tool.side_effect = MCPTimeoutError("tools/call", 30)
        tool = wrap_mcp_tool(ToolDefinition(name="read"), conn, "srv")

        result = await tool.execute({}, tool_context)

        assert result.is_error is True
        assert result.content.startswith("MCP tool error: MCP request tools/call timed out")


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class TestMCPManager:
    @pytest.mark.asyncio
    async def test_partial_success(self):
        good = _fake_connection("good")
        bad = _fake_connection("bad")
        bad.connect.side_effect = MCPHandshakeError("bad", "boom")
        fakes = {"good": good, "bad": bad}
        manager = MCPManager(connection_factory=lambda cfg: fakes[cfg.name])

        await manager.connect_all(
            [MCPServerConfig(name="bad", command="x"), MCPServerConfig(name="good", command="y")]
        )

        assert manager.connected_servers() == ["good"]
        assert manager.get_connection("good") is good
        assert manager.get_connection("bad") is None

    @pytest.mark.asyncio
    async def test_discover_registers_namespaced_tools(self):
        fakes = {"one": _fake_connection("one"), "two": _fake_connection("two")}
        manager = MCPManager(connection_factory=lambda cfg: fakes[cfg.name])
        await manager.connect_all([MCPServerConfig(name=n, command="x") for n in fakes])
        registry = ToolRegistry()

        added = await manager.discover_tools(registry)

        assert added == 4
        assert registry.names() == ["mcp_one_read", "mcp_one_write", "mcp_two_read", "mcp_two_write"]

    @pytest.mark.asyncio
    async def test_discover_skips_failing_server(self):
        broken = _fake_connection("broken")
        broken.list_tools.side_effect = MCPTimeoutError("tools/list", 30)
        fakes = {"broken": broken, "ok": _fake_connection("ok")}
        manager = MCPManager(connection_factory=lambda cfg: fakes[cfg.name])
        await manager.connect_all([MCPServerConfig(name=n, command="x") for n in fakes])

        added = await manager.discover_tools(ToolRegistry())

        assert added == 2

    @pytest.mark.asyncio
    async def test_disconnect_all_swallows_errors(self):
        first = _fake_connection("first")
        first.disconnect.side_effect = RuntimeError("already dead")
        second = _fake_connection("second")
        fakes = {"first": first, "second": second}
        manager = MCPManager(connection_factory=lambda cfg: fakes[cfg.name])
        await manager.connect_all([MCPServerConfig(name=n, command="x") for n in fakes])

        await manager.disconnect_all()

        second.disconnect.assert_awaited_once()
        assert manager.connected_servers() == []

    @pytest.mark.asyncio
    async def test_end_to_end_with_real_servers(self, tool_context):
        manager = MCPManager(request_timeout=5)
        await manager.connect_all(
            [
                _server("fs"),
                MCPServerConfig(name="ghost", command="/nonexistent/praxis-mcp-server"),
            ]
        )
        registry = ToolRegistry()
        try:
            assert manager.connected_servers() == ["fs"]
            assert await manager.discover_tools(registry) == TOOL_COUNT

            result = await registry.execute("mcp_fs_echo", {"text": "via registry"}, tool_context)
            assert result.content == "via registry\nsecond"
        finally:
            await manager.disconnect_all()

        result = await registry.execute("mcp_fs_echo", {"text": "late"}, tool_context)
        assert result.is_error is True
        assert "not connected" in result.content
