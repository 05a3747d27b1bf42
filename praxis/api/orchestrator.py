"""Multi-agent orchestrator with bounded concurrency.

Runs several agentic loops at once, each with its own conversation,
under a counting semaphore. A failing task is recorded on its own result
and never disturbs its siblings; the call returns once every task has
settled, with results in input order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from praxis.api.builtin_tools import create_default_registry
from praxis.api.models import LoopResult
from praxis.api.runner import DEFAULT_MAX_ITERATIONS, LoopConfig, run_agentic_loop
from praxis.api.tools import Policy, ToolContext, ToolRegistry
from praxis.api.tracer import UsageTracer

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


# ---------------------------------------------------------------------------
# Semaphore
# ---------------------------------------------------------------------------


class Semaphore:
    """Counting semaphore with a FIFO wait queue.

    release() hands a freed permit straight to the oldest waiter without
    touching the counter, so no newcomer can slip in between a release
    and the waiter resuming.
    """

    def __init__(self, max_permits: int) -> None:
        if max_permits < 1:
            raise ValueError("max_permits must be >= 1")
        self._max = max_permits
        self._held = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def held(self) -> int:
        return self._held

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self._held < self._max and not self.waiting:
            self._held += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Permit was handed over just before cancellation; pass it on
                self.release()
            else:
                waiter.cancel()
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._held <= 0:
            raise RuntimeError("Semaphore released too many times")
        self._held -= 1

    async def __aenter__(self) -> Semaphore:
        await self.acquire()
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Agent definitions
# ---------------------------------------------------------------------------


class AgentDefinition(BaseModel):
    """A named agent: prompt, tool scope and path scope."""

    name: str
    description: str | None = None
    system_prompt: str
    allowed_paths: list[str] = Field(default_factory=list)
    protected_paths: list[str] | None = None
    tools: list[str] | None = None  # None = every registered tool
    max_iterations: int | None = Field(None, ge=1)
    temperature: float | None = Field(None, ge=0.0, le=2.0)


@dataclass
class ProjectContext:
    """Facts about the project, injected ahead of every agent prompt."""

    name: str
    summary: str | None = None
    details: dict[str, str] = field(default_factory=dict)


def format_context_block(project: ProjectContext) -> str:
    lines = ["## Project Context (auto-injected)", f"- Project: {project.name}"]
    if project.summary:
        lines.append(f"- Summary: {project.summary}")
    for key, value in project.details.items():
        lines.append(f"- {key}: {value}")
    return "\n".join(lines)


def build_agent_system_prompt(agent: AgentDefinition, project: ProjectContext | None) -> str:
    if project is None:
        return agent.system_prompt
    return f"{format_context_block(project)}\n\n{agent.system_prompt}"


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass
class AgentTask:
    label: str
    goal: str
    agent: AgentDefinition


@dataclass
class OrchestratorConfig:
    """Shared settings for every task in one run_parallel_agents() call."""

    client: object  # ToolCallingClient
    cwd: str
    project: ProjectContext | None = None
    policy: Policy | None = None
    registry: ToolRegistry | None = None  # defaults to create_default_registry()
    concurrency: int = DEFAULT_CONCURRENCY
    max_tokens: int | None = None
    streaming: bool = False
    tracer: UsageTracer | None = None  # None = fresh tracer per task


@dataclass
class AgentTaskResult:
    label: str
    result: LoopResult | None = None
    error: str | None = None
    duration_ms: int = 0


def create_agent_loop_config(
    agent: AgentDefinition,
    config: OrchestratorConfig,
    registry: ToolRegistry,
    label: str | None = None,
) -> LoopConfig:
    """Build a LoopConfig scoped to one agent definition."""
    tag = label or agent.name
    scoped = registry.create_scoped(agent.tools) if agent.tools is not None else registry

    protected = [
        *(config.policy.protected_paths if config.policy else []),
        *(agent.protected_paths or []),
    ]

    def on_tool_call(name: str, _input: dict) -> None:
        logger.info("  [%s] Tool: %s", tag, name)

    def on_tool_result(name: str, _result: str, is_error: bool) -> None:
        if is_error:
            logger.error("  [%s] Tool %s failed", tag, name)
        else:
            logger.info("  [%s] Tool %s done", tag, name)

    def on_text_output(text: str) -> None:
        logger.info("  [%s] Output: %s%s", tag, text[:200], "..." if len(text) > 200 else "")

    return LoopConfig(
        client=config.client,
        registry=scoped,
        system_prompt=build_agent_system_prompt(agent, config.project),
        context=ToolContext(
            cwd=config.cwd,
            allowed_paths=agent.allowed_paths or None,
            protected_paths=protected or None,
            policy=config.policy,
        ),
        max_iterations=agent.max_iterations or DEFAULT_MAX_ITERATIONS,
        max_tokens=config.max_tokens,
        temperature=agent.temperature,
        streaming=config.streaming,
        tracer=config.tracer or UsageTracer(),
        on_tool_call=on_tool_call,
        on_tool_result=on_tool_result,
        on_text_output=on_text_output,
    )


async def run_parallel_agents(
    tasks: list[AgentTask],
    config: OrchestratorConfig,
) -> list[AgentTaskResult]:
    """Run every task to completion with at most config.concurrency at once.

    Returns one AgentTaskResult per task, in input order. Exceptions are
    captured on the task's result; they never fail the batch.
    """
    semaphore = Semaphore(config.concurrency)
    registry = config.registry if config.registry is not None else create_default_registry()

    logger.info(
        "Orchestrator: running %d agent tasks (concurrency: %d)",
        len(tasks),
        config.concurrency,
    )

    async def run_one(task: AgentTask) -> AgentTaskResult:
        await semaphore.acquire()
        start = time.monotonic()
        try:
            logger.info("Agent [%s]: starting -- %s", task.label, task.goal[:80])
            loop_config = create_agent_loop_config(task.agent, config, registry, task.label)
            result = await run_agentic_loop(task.goal, [], loop_config)
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "Agent [%s]: done (%d tool calls, %d iterations, %dms)",
                task.label,
                result.tool_call_count,
                result.iterations,
                duration_ms,
            )
            return AgentTaskResult(label=task.label, result=result, duration_ms=duration_ms)
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.error("Agent [%s]: failed -- %s", task.label, e)
            return AgentTaskResult(label=task.label, error=str(e), duration_ms=duration_ms)
        finally:
            semaphore.release()

    return list(await asyncio.gather(*(run_one(task) for task in tasks)))
