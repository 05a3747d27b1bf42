"""Pre/post tool-use hooks: let policy veto or observe tool executions.

Patterns are matched against tool names: "*" matches everything, a plain
string matches exactly, and a single leading or trailing "*" acts as a
suffix or prefix wildcard ("mcp_*", "*_file").
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

HookDecision = Literal["allow", "deny", "ask_user"]


@dataclass(frozen=True)
class PreToolUseHook:
    pattern: str
    decision: HookDecision
    reason: str | None = None


@dataclass(frozen=True)
class PostToolUseHook:
    pattern: str
    on_complete: Callable[[str, str, bool], None]  # (tool_name, result, is_error)


@dataclass(frozen=True)
class HookVerdict:
    decision: HookDecision
    reason: str | None = None


def matches_pattern(name: str, pattern: str) -> bool:
    if pattern == "*" or pattern == name:
        return True
    if pattern.endswith("*") and name.startswith(pattern[:-1]):
        return True
    if pattern.startswith("*") and name.endswith(pattern[1:]):
        return True
    return False


def evaluate_pre_tool_hooks(
    tool_name: str, hooks: Sequence[PreToolUseHook]
) -> HookVerdict:
    """Return the first matching hook's decision, or allow if none match."""
    for hook in hooks:
        if matches_pattern(tool_name, hook.pattern):
            return HookVerdict(hook.decision, hook.reason)
    return HookVerdict("allow")


def run_post_tool_hooks(
    tool_name: str,
    result: str,
    is_error: bool,
    hooks: Sequence[PostToolUseHook],
) -> None:
    """Invoke every matching post-hook. Hook failures are logged and ignored."""
    for hook in hooks:
        if not matches_pattern(tool_name, hook.pattern):
            continue
        try:
            hook.on_complete(tool_name, result, is_error)
        except Exception:
            logger.debug("Post-tool hook %r failed for %s", hook.pattern, tool_name, exc_info=True)
