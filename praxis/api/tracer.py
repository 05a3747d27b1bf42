"""Token usage tracing for model calls.

A UsageTracer is injected into each agentic loop (never a module global)
so concurrent loops keep separate books and tests can inspect exactly
what one loop recorded.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# USD per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-haiku-4-5": (0.8, 4.0),
    "claude-opus-4-20250514": (15.0, 75.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (2.5, 10.0),
    "gpt-4-turbo": (10.0, 30.0),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float | None:
    """Estimate USD cost. Exact model match first, then longest prefix match."""
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        prefixes = sorted((k for k in MODEL_PRICING if model.startswith(k)), key=len, reverse=True)
        if not prefixes:
            return None
        pricing = MODEL_PRICING[prefixes[0]]
    input_price, output_price = pricing
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


@dataclass
class CallRecord:
    purpose: str
    model: str
    input_tokens: int
    output_tokens: int
    duration_ms: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


class CallTimer:
    """Times one model call; finish() records it on the owning tracer."""

    def __init__(self, tracer: UsageTracer, purpose: str, model: str) -> None:
        self._tracer = tracer
        self._purpose = purpose
        self._model = model
        self._start = time.monotonic()

    def finish(
        self,
        input_tokens: int,
        output_tokens: int,
        metadata: dict[str, Any] | None = None,
    ) -> CallRecord:
        record = CallRecord(
            purpose=self._purpose,
            model=self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.monotonic() - self._start) * 1000),
            metadata=metadata or {},
        )
        self._tracer.record(record)
        return record


class UsageTracer:
    """Accumulates CallRecords for a run."""

    def __init__(self, provider: str = "", model: str = "") -> None:
        self._calls: list[CallRecord] = []
        self.provider = provider
        self.model = model

    def configure(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model

    def start_call(self, purpose: str) -> CallTimer:
        return CallTimer(self, purpose, self.model)

    def record(self, record: CallRecord) -> None:
        self._calls.append(record)

    @property
    def calls(self) -> list[CallRecord]:
        return list(self._calls)

    @property
    def total_input_tokens(self) -> int:
        return sum(c.input_tokens for c in self._calls)

    @property
    def total_output_tokens(self) -> int:
        return sum(c.output_tokens for c in self._calls)

    def estimated_cost(self) -> float | None:
        return estimate_cost(self.model, self.total_input_tokens, self.total_output_tokens)

    def reset(self) -> None:
        self._calls.clear()
