"""Built-in tools: read_file, write_file, edit_file, grep, glob, bash, plus command-backed tools.

Built-ins operate relative to ToolContext.cwd and honour the context's
allowed/protected path globs. Command-backed tools expose configured
shell commands (CommandToolConfig) to the model as ``cmd_<name>``.

create_default_registry() merges all of these with externally supplied
tools (e.g. MCP); later registrations shadow earlier ones.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from praxis.api.models import ToolExecutionResult, ToolMetadata
from praxis.api.schemas import ToolDefinition
from praxis.api.tools import FunctionTool, Tool, ToolContext, ToolRegistry, function_tool
from praxis.config import CommandToolConfig, Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_READ_LINES = 5000
_COMMAND_TAIL_CHARS = 20_000
_MAX_GREP_LINES = 200
_MAX_GLOB_FILES = 500
_IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "build"})

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def _resolve(path_str: str, cwd: str) -> Path:
    path = Path(path_str)
    return path.resolve() if path.is_absolute() else (Path(cwd) / path).resolve()


def _relative(target: Path, cwd: str) -> str:
    """Path relative to cwd in posix form, or the absolute path if outside cwd."""
    base = Path(cwd).resolve()
    if target.is_relative_to(base):
        return target.relative_to(base).as_posix()
    return target.as_posix()


def _matches_any(relative: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(relative, p) for p in patterns)


def check_write_allowed(
    target: Path, context: ToolContext, action: str = "written to"
) -> str | None:
    """Return an error message if context forbids writing target, else None."""
    relative = _relative(target, context.cwd)
    if context.protected_paths and _matches_any(relative, context.protected_paths):
        return f"Error: Path is protected and cannot be {action}: {relative}"
    if context.allowed_paths and not _matches_any(relative, context.allowed_paths):
        return (
            f"Error: Path is outside the allowed scope: {relative}. "
            f"Allowed: {', '.join(context.allowed_paths)}"
        )
    return None


async def _run_shell(command: str, cwd: str, timeout: float) -> tuple[int | None, str, str]:
    """Run a shell command. Returns (returncode, stdout, stderr); returncode None on timeout."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return None, "", ""
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
    """Execute a shell command in the context's working directory."""
    command = str(input.get("command", ""))
    if not command:
        return ToolExecutionResult.error("Error: command is required")
    effective_timeout = max(1, min(int(input.get("timeout", 30)), _MAX_BASH_TIMEOUT))
    metadata = ToolMetadata(commands_run=[command])

    returncode, stdout_text, stderr_text = await _run_shell(command, context.cwd, effective_timeout)
    if returncode is None:
        return ToolExecutionResult(
            content=f"Command timed out after {effective_timeout}s.\nCommand: {command}",
            is_error=True,
            metadata=metadata,
        )

    if len(stdout_text) > _MAX_OUTPUT_CHARS:
        stdout_text = stdout_text[:_MAX_OUTPUT_CHARS] + "\n... [output truncated at 100KB]"
    if len(stderr_text) > _MAX_OUTPUT_CHARS:
        stderr_text = stderr_text[:_MAX_OUTPUT_CHARS] + "\n... [stderr truncated at 100KB]"

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if returncode != 0:
        parts.append(f"Exit code: {returncode}")

    return ToolExecutionResult(
        content="\n".join(parts) if parts else "(no output)",
        is_error=returncode != 0,
        metadata=metadata,
    )


async def read_file_tool(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
    """Read a file with cat -n style line numbers.

    offset is 1-based; limit defaults to 2000 lines and is capped at 5000.
    """
    file_path = str(input.get("file_path", ""))
    offset = max(1, int(input.get("offset") or 1))
    limit = min(_MAX_READ_LINES, max(1, int(input.get("limit") or 2000)))
    target = _resolve(file_path, context.cwd)

    if not target.exists():
        return ToolExecutionResult.error(f"Error: File not found: {target}")
    if target.is_dir():
        return ToolExecutionResult.error(f"Error: Path is a directory, not a file: {target}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        return ToolExecutionResult.error(
            f"Error: File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)"
        )

    try:
        raw = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    except OSError as e:
        return ToolExecutionResult.error(f"Error reading file: {e}")

    all_lines = raw.split("\n")
    start = offset - 1
    selected = all_lines[start : start + limit]
    numbered = "\n".join(f"{start + i + 1:>6}\t{line}" for i, line in enumerate(selected))
    last = min(offset + limit - 1, len(all_lines))
    header = f"File: {target} ({len(all_lines)} lines total, showing {offset}-{last})"

    return ToolExecutionResult(
        content=f"{header}\n{numbered}",
        metadata=ToolMetadata(files_read=[str(target)]),
    )


async def write_file_tool(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
    """Write content to a file, creating parent directories."""
    file_path = str(input.get("file_path", ""))
    content = str(input.get("content", ""))
    target = _resolve(file_path, context.cwd)

    denied = check_write_allowed(target, context)
    if denied:
        return ToolExecutionResult.error(denied)

    try:
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    except OSError as e:
        return ToolExecutionResult.error(f"Error writing file: {e}")

    lines = len(content.split("\n"))
    return ToolExecutionResult(
        content=f"Successfully wrote {lines} lines to {target}",
        metadata=ToolMetadata(files_written=[str(target)]),
    )


async def edit_file_tool(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
    """Replace one exact, unique occurrence of old_text with new_text."""
    file_path = str(input.get("file_path", ""))
    old_text = str(input.get("old_text", ""))
    new_text = str(input.get("new_text", ""))
    target = _resolve(file_path, context.cwd)

    denied = check_write_allowed(target, context, action="edited")
    if denied:
        return ToolExecutionResult.error(denied)
    if not old_text:
        return ToolExecutionResult.error("Error: old_text must not be empty")
    if not target.is_file():
        return ToolExecutionResult.error(f"Error: File not found: {target}")

    try:
        content = await asyncio.to_thread(target.read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return ToolExecutionResult.error(f"Error editing file: {e}")

    occurrences = content.count(old_text)
    if occurrences == 0:
        return ToolExecutionResult.error(
            "Error: old_text not found in file. Make sure it matches exactly "
            "(including whitespace and indentation)."
        )
    if occurrences > 1:
        return ToolExecutionResult.error(
            f"Error: old_text is not unique in the file ({occurrences} occurrences). "
            "Provide a larger context string to make it unique."
        )

    index = content.index(old_text)
    updated = content[:index] + new_text + content[index + len(old_text) :]
    try:
        await asyncio.to_thread(target.write_text, updated, encoding="utf-8")
    except OSError as e:
        return ToolExecutionResult.error(f"Error editing file: {e}")

    start_line = content.count("\n", 0, index) + 1
    return ToolExecutionResult(
        content=(
            f"Successfully edited {target}: replaced {old_text.count(chr(10)) + 1} line(s) "
            f"at line {start_line} with {new_text.count(chr(10)) + 1} line(s)."
        ),
        metadata=ToolMetadata(files_read=[str(target)], files_written=[str(target)]),
    )


def _walk_files(root: Path) -> Iterator[Path]:
    """Files under root in sorted order, skipping VCS and build directories."""
    if root.is_file():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _IGNORED_DIRS)
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def _grep(
    regex: re.Pattern[str], root: Path, cwd: str, name_glob: str | None
) -> tuple[list[str], list[str]]:
    """Matching lines and the files they came from. Binary and oversized files are skipped."""
    matches: list[str] = []
    files: list[str] = []
    for path in _walk_files(root):
        if name_glob and not fnmatch.fnmatch(path.name, name_glob):
            continue
        try:
            if path.stat().st_size > _MAX_FILE_SIZE:
                continue
            data = path.read_bytes()
        except OSError:
            continue
        if b"\0" in data[:8192]:
            continue
        hit = False
        for lineno, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), 1):
            if regex.search(line):
                matches.append(f"{_relative(path, cwd)}:{lineno}:{line}")
                hit = True
        if hit:
            files.append(str(path))
    return matches, files


async def search_grep_tool(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
    """Regex search over file contents. Output lines are path:line:text."""
    pattern = str(input.get("pattern", ""))
    if not pattern:
        return ToolExecutionResult.error("Error: pattern is required")
    try:
        regex = re.compile(pattern)
    except re.error as e:
        return ToolExecutionResult.error(f"Search error: invalid pattern {pattern!r}: {e}")

    root = _resolve(str(input.get("path") or "."), context.cwd)
    if not root.exists():
        return ToolExecutionResult.error(f"Search error: path not found: {root}")

    matches, files = await asyncio.to_thread(_grep, regex, root, context.cwd, input.get("glob"))
    if not matches:
        return ToolExecutionResult(content="No matches found.")

    shown = "\n".join(matches[:_MAX_GREP_LINES])
    if len(matches) > _MAX_GREP_LINES:
        shown += f"\n... ({len(matches) - _MAX_GREP_LINES} more matches truncated)"
    return ToolExecutionResult(
        content=f"Found {len(matches)} match(es):\n{shown}",
        metadata=ToolMetadata(files_read=files),
    )


def _glob(root: Path, pattern: str) -> list[str]:
    candidates = root.glob(pattern) if "/" in pattern else root.rglob(pattern)
    found = []
    for path in candidates:
        relative = path.relative_to(root)
        if any(part in _IGNORED_DIRS for part in relative.parts):
            continue
        found.append(relative.as_posix())
    return sorted(found)


async def search_glob_tool(input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
    """Find files by glob. Patterns without a slash match names at any depth."""
    pattern = str(input.get("pattern", ""))
    if not pattern:
        return ToolExecutionResult.error("Error: pattern is required")
    root = _resolve(str(input.get("path") or "."), context.cwd)
    if not root.is_dir():
        return ToolExecutionResult.error(f"Glob error: not a directory: {root}")

    try:
        found = await asyncio.to_thread(_glob, root, pattern)
    except (ValueError, NotImplementedError) as e:
        return ToolExecutionResult.error(f"Glob error: {e}")
    if not found:
        return ToolExecutionResult(content="No files found matching the pattern.")

    shown = "\n".join(found[:_MAX_GLOB_FILES])
    if len(found) > _MAX_GLOB_FILES:
        shown += f"\n... ({len(found) - _MAX_GLOB_FILES} more files truncated)"
    return ToolExecutionResult(content=f"Found {len(found)} file(s):\n{shown}")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "file_path": {
            "type": "string",
            "description": "Path to the file (absolute or relative to working directory)",
        },
        "offset": {"type": "integer", "description": "Line number to start from (1-based). Default: 1"},
        "limit": {"type": "integer", "description": "Maximum number of lines to read. Default: 2000"},
    },
    "required": ["file_path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "file_path": {
            "type": "string",
            "description": "Path to the file (absolute or relative to working directory)",
        },
        "content": {"type": "string", "description": "The content to write to the file"},
    },
    "required": ["file_path", "content"],
}

_EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "file_path": {
            "type": "string",
            "description": "Path to the file (absolute or relative to working directory)",
        },
        "old_text": {
            "type": "string",
            "description": "The exact text to find and replace (must be unique in the file)",
        },
        "new_text": {"type": "string", "description": "The replacement text"},
    },
    "required": ["file_path", "old_text", "new_text"],
}

_GREP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Regex pattern to search for"},
        "path": {
            "type": "string",
            "description": "Directory or file to search in (default: working directory)",
        },
        "glob": {"type": "string", "description": "File name filter, e.g. '*.py'"},
    },
    "required": ["pattern"],
}

_GLOB_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "pattern": {
            "type": "string",
            "description": "Glob pattern, e.g. '**/*.c', 'src/**/*.h', 'Makefile'",
        },
        "path": {"type": "string", "description": "Directory to search in (default: working directory)"},
    },
    "required": ["pattern"],
}

_COMMAND_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "variables": {
            "type": "object",
            "description": "Values substituted into ${name} placeholders of the command "
            "(dotted keys reach into nested objects)",
        },
    },
    "required": [],
}


BUILTIN_TOOLS: list[FunctionTool] = [
    function_tool(
        "read_file",
        "Read a file from the filesystem. Returns content with line numbers. "
        "Use offset and limit to read portions of large files.",
        _READ_FILE_SCHEMA,
        read_file_tool,
    ),
    function_tool(
        "write_file",
        "Write content to a file. Creates parent directories and overwrites "
        "existing files. Respects protected paths.",
        _WRITE_FILE_SCHEMA,
        write_file_tool,
    ),
    function_tool(
        "edit_file",
        "Edit a file by replacing an exact string match with new content. "
        "The old_text must be unique within the file. Respects protected paths.",
        _EDIT_FILE_SCHEMA,
        edit_file_tool,
    ),
    function_tool(
        "grep",
        "Search file contents with a regex pattern. Returns matching lines "
        "with file paths and line numbers.",
        _GREP_SCHEMA,
        search_grep_tool,
    ),
    function_tool(
        "glob",
        "Find files by name pattern using glob matching. Returns matching "
        "paths relative to the search directory.",
        _GLOB_SCHEMA,
        search_glob_tool,
    ),
    function_tool(
        "bash",
        "Execute a shell command in the working directory.",
        _BASH_SCHEMA,
        bash_tool,
    ),
]


# ---------------------------------------------------------------------------
# Command-backed tools
# ---------------------------------------------------------------------------


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace ${key} and ${a.b.c} placeholders; unresolved ones are kept verbatim.

    Anything else in the template, including bare braces and $1-style shell
    references, passes through untouched.
    """

    def _sub(match: re.Match[str]) -> str:
        value: Any = variables
        for part in match.group(1).split("."):
            if not isinstance(value, dict) or part not in value:
                return match.group(0)
            value = value[part]
        return value if isinstance(value, str) else str(value)

    return _PLACEHOLDER.sub(_sub, template)


class CommandTool:
    """Exposes a configured shell command as a tool."""

    def __init__(self, config: CommandToolConfig) -> None:
        self._config = config
        self.definition = ToolDefinition(
            name=f"cmd_{config.name}",
            description=config.description or f"Runs: {config.command}",
            input_schema=_COMMAND_SCHEMA,
        )

    async def execute(self, input: dict[str, Any], context: ToolContext) -> ToolExecutionResult:
        variables = input.get("variables") or {}
        if not isinstance(variables, dict):
            return ToolExecutionResult.error(
                f"Command tool {self._config.name}: variables must be an object"
            )
        command = interpolate(self._config.command, variables)

        workdir = str(_resolve(self._config.working_dir, context.cwd))
        metadata = ToolMetadata(commands_run=[command])
        returncode, stdout_text, stderr_text = await _run_shell(
            command, workdir, self._config.timeout_sec
        )
        if returncode is None:
            return ToolExecutionResult(
                content=f"Command tool {self._config.name} timed out after {self._config.timeout_sec:g}s",
                is_error=True,
                metadata=metadata,
            )

        output = stdout_text + (f"\nSTDERR:\n{stderr_text}" if stderr_text else "")
        if len(output) > _COMMAND_TAIL_CHARS:
            output = output[-_COMMAND_TAIL_CHARS:] + "\n... (output truncated, showing last 20K)"
        status = "pass" if returncode == 0 else f"fail (exit code {returncode})"
        return ToolExecutionResult(
            content=f"Tool {self._config.name}: {status}\n{output}".rstrip(),
            is_error=returncode != 0,
            metadata=metadata,
        )


def create_default_registry(
    settings: Settings | None = None,
    extra_tools: Iterable[Tool] = (),
) -> ToolRegistry:
    """Registry with built-ins, configured command tools, then extra tools.

    Registration order is the shadowing order: an extra tool named like a
    built-in replaces it.
    """
    registry = ToolRegistry()
    registry.register_all(BUILTIN_TOOLS)
    if settings is not None:
        registry.register_all(CommandTool(cfg) for cfg in settings.command_tools)
    registry.register_all(extra_tools)
    logger.debug("Default registry built with %d tools", len(registry))
    return registry
