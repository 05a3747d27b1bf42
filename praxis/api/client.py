"""Model clients -- the LLM side of the agentic loop.

ModelClient is the minimal contract (plain completion, used by the
summarizer). Tool calling is an optional capability: a client supports
it when it has a callable ``complete_with_tools``; streaming likewise via
``complete_with_tools_streaming``. The loop refuses to run against a
client without tool calling rather than silently degrading.

AnthropicClient talks to the Messages API directly over httpx.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from praxis.api.schemas import (
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    TextBlock,
    ToolCompletionRequest,
    ToolCompletionResponse,
    ToolUseBlock,
    Usage,
    extract_text,
)
from praxis.config import Settings
from praxis.errors import ProviderError
from praxis.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_PROVIDER = "anthropic"

TextDeltaCallback = Callable[[str], None]
ToolUseStartCallback = Callable[[str, str], None]  # (tool_use_id, name)


@runtime_checkable
class ModelClient(Protocol):
    name: str

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


class ToolCallingClient(ModelClient, Protocol):
    async def complete_with_tools(
        self, request: ToolCompletionRequest
    ) -> ToolCompletionResponse: ...


class StreamingToolCallingClient(ToolCallingClient, Protocol):
    async def complete_with_tools_streaming(
        self,
        request: ToolCompletionRequest,
        on_text_delta: TextDeltaCallback | None = None,
        on_tool_use_start: ToolUseStartCallback | None = None,
    ) -> ToolCompletionResponse: ...


def supports_tool_calling(client: object) -> bool:
    return callable(getattr(client, "complete_with_tools", None))


def supports_streaming(client: object) -> bool:
    return callable(getattr(client, "complete_with_tools_streaming", None))


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, block_stop, done, error, usage
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Ping keepalives are skipped. stop_reason and output token counts
    arrive in message_delta, input token counts in message_start.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {})
        return StreamEvent(type="usage", input_tokens=usage.get("input_tokens", 0))

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", "") or "",
            output_tokens=data.get("usage", {}).get("output_tokens", 0),
        )

    return None


def _parse_content(raw_blocks: list[dict[str, Any]]) -> list[ContentBlock]:
    """Keep text and tool_use blocks; thinking and other block types are dropped."""
    blocks: list[ContentBlock] = []
    for raw in raw_blocks:
        kind = raw.get("type")
        if kind == "text":
            blocks.append(TextBlock(text=raw.get("text", "")))
        elif kind == "tool_use":
            blocks.append(ToolUseBlock(id=raw["id"], name=raw["name"], input=raw.get("input") or {}))
    return blocks


def _is_retryable(err: BaseException) -> bool:
    if isinstance(err, ProviderError):
        return err.is_retryable
    return isinstance(err, httpx.TimeoutException)


# ---------------------------------------------------------------------------
# Anthropic client
# ---------------------------------------------------------------------------


class AnthropicClient:
    """Anthropic Messages API client over httpx with retry on 429/5xx/timeouts."""

    name = _PROVIDER

    def __init__(
        self,
        settings: Settings,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._retry = retry or RetryConfig.from_settings(settings)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def model(self) -> str:
        return self._settings.model

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info("Anthropic client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> AnthropicClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        payload = self._build_payload(
            messages=[m.to_api() for m in request.messages],
            system=request.system,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        data = await self._send(payload)
        blocks = _parse_content(data.get("content", []))
        return CompletionResponse(
            content=extract_text(blocks),
            usage=Usage.model_validate(data.get("usage") or {}),
            stop_reason=data.get("stop_reason") or "end_turn",
        )

    async def complete_with_tools(self, request: ToolCompletionRequest) -> ToolCompletionResponse:
        payload = self._build_payload(
            messages=[m.to_api() for m in request.messages],
            system=request.system,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            tools=[t.model_dump() for t in request.tools],
        )
        data = await self._send(payload)
        return ToolCompletionResponse(
            content=_parse_content(data.get("content", [])),
            usage=Usage.model_validate(data.get("usage") or {}),
            stop_reason=data.get("stop_reason") or "end_turn",
        )

    async def complete_with_tools_streaming(
        self,
        request: ToolCompletionRequest,
        on_text_delta: TextDeltaCallback | None = None,
        on_tool_use_start: ToolUseStartCallback | None = None,
    ) -> ToolCompletionResponse:
        """Stream a tool completion, firing callbacks as deltas arrive.

        Returns the same assembled response complete_with_tools() would.
        """
        http = self._require_http()
        payload = self._build_payload(
            messages=[m.to_api() for m in request.messages],
            system=request.system,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            tools=[t.model_dump() for t in request.tools],
            stream=True,
        )

        # Accumulators keyed by block index, assembled in index order at the end
        text_parts: dict[int, list[str]] = {}
        tool_blocks: dict[int, dict[str, Any]] = {}
        stop_reason = "end_turn"
        usage = Usage()

        async def open_stream() -> httpx.Response:
            response = await http.send(
                http.build_request("POST", "/v1/messages", json=payload), stream=True
            )
            if response.status_code == 200:
                return response
            await response.aread()
            await response.aclose()
            raise self._error_from_response(response)

        # Only opening the stream is retried; once deltas flow they are not replayed
        try:
            response = await with_retry(open_stream, _is_retryable, self._retry)
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}", None, _PROVIDER) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}", None, _PROVIDER) from e

        try:
            async with response:
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        raw_event = json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        raise ProviderError(
                            f"Malformed stream event: {line[6:206]}", None, _PROVIDER
                        ) from e
                    event = _parse_sse_event(raw_event)
                    if event is None:
                        continue

                    if event.type == "error":
                        raise ProviderError(f"Stream error: {event.text}", None, _PROVIDER)
                    elif event.type == "usage":
                        usage.input_tokens = event.input_tokens
                    elif event.type == "text_delta":
                        text_parts.setdefault(event.block_index, []).append(event.text)
                        if on_text_delta:
                            on_text_delta(event.text)
                    elif event.type == "tool_start":
                        tool_blocks[event.block_index] = {
                            "id": event.tool_id,
                            "name": event.tool_name,
                            "input_parts": [],
                        }
                        if on_tool_use_start:
                            on_tool_use_start(event.tool_id, event.tool_name)
                    elif event.type == "tool_input_delta":
                        acc = tool_blocks.get(event.block_index)
                        if acc is not None:
                            acc["input_parts"].append(event.text)
                    elif event.type == "done":
                        stop_reason = event.stop_reason or stop_reason
                        usage.output_tokens = event.output_tokens
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error during stream: {e}", None, _PROVIDER) from e

        content: list[ContentBlock] = []
        for index in sorted(set(text_parts) | set(tool_blocks)):
            if index in tool_blocks:
                acc = tool_blocks[index]
                input_json = "".join(acc["input_parts"])
                try:
                    tool_input = json.loads(input_json) if input_json else {}
                except json.JSONDecodeError:
                    logger.warning("Malformed streamed tool input for %s", acc["name"])
                    tool_input = {}
                content.append(ToolUseBlock(id=acc["id"], name=acc["name"], input=tool_input))
            else:
                content.append(TextBlock(text="".join(text_parts[index])))

        return ToolCompletionResponse(content=content, usage=usage, stop_reason=stop_reason)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_http(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        system: str | None,
        max_tokens: int | None,
        temperature: float | None,
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "temperature": self._settings.temperature if temperature is None else temperature,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def _send(self, payload: dict[str, Any]) -> dict[str, Any]:
        http = self._require_http()

        async def attempt() -> dict[str, Any]:
            response = await http.post("/v1/messages", json=payload)
            if response.status_code == 200:
                return response.json()
            raise self._error_from_response(response)

        try:
            return await with_retry(attempt, _is_retryable, self._retry)
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}", None, _PROVIDER) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}", None, _PROVIDER) from e

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ProviderError:
        try:
            error_data = response.json()
            error_type = error_data.get("error", {}).get("type", "unknown")
            error_msg = error_data.get("error", {}).get("message", "unknown error")
        except ValueError:
            error_type = "http_error"
            error_msg = response.text[:500]
        return ProviderError(
            f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
            response.status_code,
            _PROVIDER,
        )
