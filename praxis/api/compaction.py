"""Context window management -- keeps long conversations under budget.

Token counts are estimated as characters / 4 over text, serialized tool
inputs and tool result text. This is a heuristic, not a tokenizer.

When the estimate passes 80% of the budget, older messages are replaced by
a model-written summary and the most recent ``keep_recent`` messages are
kept verbatim. If summarization fails we fail open: the older messages are
dropped and only the recent suffix survives. That loses information on
purpose rather than blocking the conversation.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Sequence
from typing import assert_never

from praxis.api.client import ModelClient
from praxis.api.schemas import (
    CompletionRequest,
    ContentBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from praxis.config import Settings

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
COMPRESSION_THRESHOLD = 0.8
DEFAULT_KEEP_RECENT = 6
TRANSCRIPT_CHARS_PER_MESSAGE = 500

SUMMARY_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Be concise and preserve technical details."
)
SUMMARY_PROMPT = (
    "Summarize this conversation history in 2-3 concise paragraphs. "
    "Focus on key decisions, findings, and context:\n\n{transcript}"
)
SUMMARY_PREFIX = "[Conversation summary]: "


def _block_chars(block: ContentBlock) -> int:
    match block:
        case TextBlock():
            return len(block.text)
        case ToolUseBlock():
            return len(json.dumps(block.input)) + len(block.name)
        case ToolResultBlock():
            return len(block.content)
        case _:
            assert_never(block)


def _block_text(block: ContentBlock) -> str:
    match block:
        case TextBlock():
            return block.text
        case ToolUseBlock():
            return f"<tool_use {block.name} {json.dumps(block.input)}>"
        case ToolResultBlock():
            return f"<tool_result{' error' if block.is_error else ''}> {block.content}"
        case _:
            assert_never(block)


def estimate_token_count(messages: Sequence[Message]) -> int:
    """Estimate tokens for a message list (chars / 4, rounded up)."""
    chars = 0
    for msg in messages:
        if isinstance(msg.content, str):
            chars += len(msg.content)
        else:
            chars += sum(_block_chars(b) for b in msg.content)
    return math.ceil(chars / CHARS_PER_TOKEN)


def should_compress(messages: Sequence[Message], max_tokens: int) -> bool:
    return estimate_token_count(messages) > max_tokens * COMPRESSION_THRESHOLD


def render_transcript(
    messages: Sequence[Message],
    chars_per_message: int = TRANSCRIPT_CHARS_PER_MESSAGE,
) -> str:
    """Render messages as a bounded plain-text transcript for summarization."""
    lines = []
    for msg in messages:
        if isinstance(msg.content, str):
            text = msg.content
        else:
            text = "\n".join(_block_text(b) for b in msg.content)
        lines.append(f"[{msg.role}]: {text[:chars_per_message]}")
    return "\n".join(lines)


def _opens_with_tool_result(message: Message) -> bool:
    return isinstance(message.content, list) and any(
        isinstance(block, ToolResultBlock) for block in message.content
    )


def _split_index(messages: Sequence[Message], keep_recent: int) -> int:
    split = max(len(messages) - keep_recent, 0)
    while split > 0 and _opens_with_tool_result(messages[split]):
        split -= 1
    return split


async def compress_conversation(
    messages: Sequence[Message],
    client: ModelClient,
    keep_recent: int = DEFAULT_KEEP_RECENT,
    summary_max_tokens: int = 500,
) -> list[Message]:
    """Replace all but the last keep_recent messages with one summary message.

    Returns a new list; the input is never mutated. With keep_recent or
    fewer messages this is a no-op copy.

    The kept suffix never opens on a tool_result message: the boundary moves
    back until the matching tool_use turn is kept too, so the suffix can grow
    past keep_recent.
    """
    split = _split_index(messages, keep_recent)
    if split == 0:
        return list(messages)

    older = messages[:split]
    recent = list(messages[split:])

    try:
        summary = await client.complete(
            CompletionRequest(
                messages=[
                    Message(
                        role="user",
                        content=SUMMARY_PROMPT.format(transcript=render_transcript(older)),
                    )
                ],
                system=SUMMARY_SYSTEM_PROMPT,
                max_tokens=summary_max_tokens,
            )
        )
    except Exception as e:
        logger.warning(
            "Summarization failed, dropping %d older messages: %s", len(older), e
        )
        return recent

    logger.info("Compressed %d messages into summary (%d kept)", len(older), len(recent))
    return [Message(role="user", content=SUMMARY_PREFIX + summary.content), *recent]


class ContextWindowManager:
    """Settings-bound facade: estimate pressure and compress when needed."""

    def __init__(self, settings: Settings, client: ModelClient) -> None:
        self._settings = settings
        self._client = client

    @property
    def max_tokens(self) -> int:
        return self._settings.context_max_tokens

    def estimate(self, messages: Sequence[Message]) -> int:
        return estimate_token_count(messages)

    def needs_compression(self, messages: Sequence[Message]) -> bool:
        return should_compress(messages, self.max_tokens)

    async def maybe_compress(self, messages: Sequence[Message]) -> list[Message]:
        """Compress only when the estimate is over threshold."""
        if not self.needs_compression(messages):
            return list(messages)
        logger.info(
            "Context at ~%d tokens (budget %d), compressing",
            self.estimate(messages),
            self.max_tokens,
        )
        return await compress_conversation(
            messages,
            self._client,
            keep_recent=self._settings.keep_recent,
            summary_max_tokens=self._settings.summary_max_tokens,
        )
