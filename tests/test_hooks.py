"""Unit tests for praxis/hooks.py -- pattern matching and hook evaluation."""

import pytest

from praxis.hooks import (
    PostToolUseHook,
    PreToolUseHook,
    evaluate_pre_tool_hooks,
    matches_pattern,
    run_post_tool_hooks,
)


class TestMatchesPattern:
    @pytest.mark.parametrize("name", ["bash", "read_file", "mcp_server_tool", ""])
    def test_star_matches_anything(self, name):
        assert matches_pattern(name, "*")

    def test_prefix_wildcard(self):
        assert matches_pattern("mcp_server_tool", "mcp_*")
        assert not matches_pattern("bash", "mcp_*")

    def test_suffix_wildcard(self):
        assert matches_pattern("read_file", "*_file")
        assert matches_pattern("write_file", "*_file")
        assert not matches_pattern("bash", "*_file")

    def test_exact(self):
        assert matches_pattern("bash", "bash")
        assert not matches_pattern("bash2", "bash")


class TestPreToolHooks:
    def test_no_hooks_allows(self):
        verdict = evaluate_pre_tool_hooks("bash", [])
        assert verdict.decision == "allow"
        assert verdict.reason is None

    def test_first_match_wins(self):
        hooks = [
            PreToolUseHook("read_file", "allow"),
            PreToolUseHook("mcp_*", "deny", "no remote tools"),
            PreToolUseHook("*", "ask_user", "confirm everything"),
        ]

        assert evaluate_pre_tool_hooks("mcp_fs_read", hooks).decision == "deny"
        assert evaluate_pre_tool_hooks("mcp_fs_read", hooks).reason == "no remote tools"
        assert evaluate_pre_tool_hooks("bash", hooks).decision == "ask_user"
        assert evaluate_pre_tool_hooks("read_file", hooks).decision == "allow"

    def test_no_match_allows(self):
        hooks = [PreToolUseHook("mcp_*", "deny")]
        assert evaluate_pre_tool_hooks("bash", hooks).decision == "allow"


class TestPostToolHooks:
    def test_runs_every_match_in_order(self):
        seen = []
        hooks = [
            PostToolUseHook("*", lambda n, r, e: seen.append("first")),
            PostToolUseHook("bash", lambda n, r, e: seen.append("second")),
            PostToolUseHook("mcp_*", lambda n, r, e: seen.append("skipped")),
        ]

        run_post_tool_hooks("bash", "output", False, hooks)

        assert seen == ["first", "second"]

    def test_exception_does_not_stop_later_hooks(self):
        seen = []

        def broken(name, result, is_error):
            raise RuntimeError("bad hook")

        hooks = [
            PostToolUseHook("*", broken),
            PostToolUseHook("*", lambda n, r, e: seen.append((n, r, e))),
        ]

        run_post_tool_hooks("bash", "out", True, hooks)

        assert seen == [("bash", "out", True)]
