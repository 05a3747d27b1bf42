"""MCP stdio transport -- JSON-RPC 2.0 over a child process's stdin/stdout.

One StdioConnection owns one child process. Requests are newline-delimited
JSON objects with integer ids counting up from 1; responses are matched to
requests by id only. Several requests may be outstanding at once, each
with its own timer.

Lifecycle: disconnected -> connecting -> connected -> closed. A failed
handshake kills the child and leaves the connection closed. Once the child
exits (or disconnect() is called) every pending request is rejected and the
connection is never reused.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Literal

from mcp.types import TextContent, Tool

from praxis.api.schemas import ToolDefinition
from praxis.config import MCPServerConfig
from praxis.errors import (
    MCPConnectionClosedError,
    MCPError,
    MCPHandshakeError,
    MCPRemoteError,
    MCPTimeoutError,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "praxis"
CLIENT_VERSION = "0.1.0"
DEFAULT_REQUEST_TIMEOUT = 30.0
_READ_CHUNK = 4096
_STDERR_LINE_LIMIT = 8192

ConnectionState = Literal["disconnected", "connecting", "connected", "closed"]


@dataclass
class _PendingRequest:
    method: str
    timeout: float
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle


class StdioConnection:
    """Client side of one MCP server spoken to over stdio."""

    def __init__(
        self,
        config: MCPServerConfig,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.config = config
        self.server_name = config.name
        self._request_timeout = request_timeout
        self._state: ConnectionState = "disconnected"
        self._process: asyncio.subprocess.Process | None = None
        self._next_id = 1
        self._pending: dict[int, _PendingRequest] = {}
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_connected(self) -> bool:
        return self._state == "connected"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Spawn the server and perform the initialize handshake."""
        if self._state != "disconnected":
            raise MCPError(f"MCP [{self.server_name}] cannot connect from state {self._state}")
        self._state = "connecting"

        env = {**os.environ, **(self.config.env or {})}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            self._state = "closed"
            raise MCPHandshakeError(self.server_name, str(e)) from e

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
                },
                timeout=self.config.timeout_sec,
            )
        except MCPError as e:
            self._state = "closed"
            self._fail_pending(MCPConnectionClosedError(f"MCP [{self.server_name}] handshake failed"))
            await self._teardown()
            raise MCPHandshakeError(self.server_name, str(e)) from e

        self._state = "connected"
        await self._notify("notifications/initialized")
        server_info = (result or {}).get("serverInfo") or {}
        logger.info(
            "MCP [%s] connected (server: %s %s)",
            self.server_name,
            server_info.get("name", "?"),
            server_info.get("version", ""),
        )

    async def disconnect(self) -> None:
        """Kill the child and reject anything still pending. Idempotent."""
        if self._process is None and self._state == "closed":
            return
        self._state = "closed"
        self._fail_pending(MCPConnectionClosedError(f'MCP server "{self.server_name}" disconnected'))
        await self._teardown()
        self._process = None
        logger.debug("MCP [%s] disconnected", self.server_name)

    async def _teardown(self) -> None:
        proc = self._process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # ------------------------------------------------------------------
    # MCP methods
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[ToolDefinition]:
        """tools/list, mapped onto ToolDefinition manifests."""
        result = await self._request("tools/list", {})
        definitions = []
        for raw in (result or {}).get("tools", []):
            tool = Tool.model_validate(raw)
            definitions.append(
                ToolDefinition(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=raw.get("inputSchema") or {"type": "object"},
                )
            )
        return definitions

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> tuple[str, bool]:
        """tools/call. Returns (text, is_error).

        Text segments are joined with newlines. Non-text segments are
        dropped. With no text at all, the raw result is returned as JSON.
        """
        result = await self._request("tools/call", {"name": name, "arguments": arguments})
        if not isinstance(result, dict):
            return json.dumps(result), False

        texts = []
        for segment in result.get("content") or []:
            if isinstance(segment, dict) and segment.get("type") == "text":
                texts.append(TextContent.model_validate(segment).text)
            else:
                logger.debug(
                    "MCP [%s] %s: dropping non-text segment (%s)",
                    self.server_name,
                    name,
                    segment.get("type") if isinstance(segment, dict) else type(segment).__name__,
                )

        is_error = bool(result.get("isError", False))
        return ("\n".join(texts) if texts else json.dumps(result)), is_error

    # ------------------------------------------------------------------
    # JSON-RPC plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        if self._process is None or self._state not in ("connecting", "connected"):
            raise MCPConnectionClosedError(f'MCP server "{self.server_name}" is not connected')

        req_id = self._next_id
        self._next_id += 1
        effective_timeout = timeout if timeout is not None else self._request_timeout

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        timer = loop.call_later(effective_timeout, self._expire, req_id)
        self._pending[req_id] = _PendingRequest(method, effective_timeout, future, timer)

        message = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}}
        try:
            await self._write(message)
        except ConnectionError as e:
            self._reject(req_id, MCPConnectionClosedError(f"MCP [{self.server_name}] write failed: {e}"))

        try:
            return await future
        finally:
            self._discard(req_id)

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        try:
            await self._write(message)
        except ConnectionError as e:
            logger.debug("MCP [%s] notification %s not sent: %s", self.server_name, method, e)

    async def _write(self, message: dict[str, Any]) -> None:
        assert self._process is not None and self._process.stdin is not None
        self._process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await self._process.stdin.drain()

    def _discard(self, req_id: int) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is not None:
            entry.timer.cancel()

    def _reject(self, req_id: int, error: Exception) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is None:
            return
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(error)

    def _expire(self, req_id: int) -> None:
        entry = self._pending.get(req_id)
        if entry is not None:
            self._reject(req_id, MCPTimeoutError(entry.method, entry.timeout))

    def _fail_pending(self, error: Exception) -> None:
        for req_id in list(self._pending):
            self._reject(req_id, error)

    def _feed(self, data: str) -> None:
        """Accept a chunk of stdout text; dispatch every complete line."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("MCP [%s] unparsable line: %s", self.server_name, line[:200])
                continue
            self._handle_message(message)

    def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.debug("MCP [%s] ignoring non-object message", self.server_name)
            return
        if "method" in message:
            # Server-initiated request or notification; nothing is registered for these
            logger.debug("MCP [%s] ignoring server message %s", self.server_name, message["method"])
            return

        msg_id = message.get("id")
        entry = self._pending.pop(msg_id, None) if isinstance(msg_id, int) else None
        if entry is None:
            return
        entry.timer.cancel()
        if entry.future.done():
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                remote = MCPRemoteError(error.get("code", -1), str(error.get("message", "")))
            else:
                remote = MCPRemoteError(-1, str(error))
            entry.future.set_exception(remote)
        else:
            entry.future.set_result(message.get("result"))

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        proc = self._process
        while chunk := await proc.stdout.read(_READ_CHUNK):
            self._feed(self._decoder.decode(chunk))
        returncode = await proc.wait()
        self._on_exit(returncode)

    async def _read_stderr(self) -> None:
        # Chunked reads; lines past _STDERR_LINE_LIMIT are logged in pieces
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while chunk := await stderr.read(_READ_CHUNK):
            pending += decoder.decode(chunk)
            *lines, pending = pending.split("\n")
            if len(pending) > _STDERR_LINE_LIMIT:
                lines.append(pending)
                pending = ""
            for line in lines:
                self._log_stderr(line)
        self._log_stderr(pending + decoder.decode(b"", final=True))

    def _log_stderr(self, line: str) -> None:
        text = line.rstrip()
        if text:
            logger.debug("MCP [%s] stderr: %s", self.server_name, text[:_STDERR_LINE_LIMIT])

    def _on_exit(self, returncode: int | None) -> None:
        was_connected = self._state == "connected"
        self._state = "closed"
        self._fail_pending(
            MCPConnectionClosedError(
                f'MCP server "{self.server_name}" exited with code {returncode}',
                returncode,
            )
        )
        if was_connected:
            logger.warning("MCP [%s] process exited with code %s", self.server_name, returncode)
        else:
            logger.debug("MCP [%s] process exited with code %s", self.server_name, returncode)
