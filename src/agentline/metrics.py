# metrics.py
# Per-run counters and durations for the agent loop.
#
# One collector per run. It is mutated while the loop runs and frozen into
# an AgentMetrics snapshot for the completion hook.

import time

from agentline.models import AgentMetrics, TokenTotals, TokenUsage


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


class MetricsCollector:
    """
    Accumulates model calls, tool calls and tool durations.

    Example:
        metrics = MetricsCollector()
        metrics.record_llm_call()
        metrics.record_tool_call("search", 500)
        metrics.snapshot()
        # AgentMetrics(total_duration_ms=..., llm_calls=1, tool_calls=1,
        #              tool_durations={"search": 500})
    """

    def __init__(self, start_ms: int | None = None) -> None:
        self._start_ms = start_ms if start_ms is not None else _now_ms()
        self._llm_calls = 0
        self._tool_calls = 0
        self._tool_durations: dict[str, int] = {}
        self._tokens: TokenTotals | None = None

    def record_llm_call(self, usage: TokenUsage | None = None) -> None:
        self._llm_calls += 1
        if usage is None:
            return
        previous = self._tokens or TokenTotals()
        self._tokens = TokenTotals(
            prompt=previous.prompt + usage.prompt_tokens,
            completion=previous.completion + usage.completion_tokens,
            total=previous.total + usage.total_tokens,
        )

    def record_tool_call(self, tool_name: str, duration_ms: int) -> None:
        """Durations for the same tool add up across calls."""
        self._tool_calls += 1
        self._tool_durations[tool_name] = self._tool_durations.get(tool_name, 0) + int(duration_ms)

    @property
    def llm_calls(self) -> int:
        return self._llm_calls

    @property
    def tool_calls(self) -> int:
        return self._tool_calls

    def tool_duration(self, tool_name: str) -> int:
        return self._tool_durations.get(tool_name, 0)

    def elapsed_ms(self) -> int:
        return max(0, _now_ms() - self._start_ms)

    def snapshot(self) -> AgentMetrics:
        return AgentMetrics(
            total_duration_ms=self.elapsed_ms(),
            llm_calls=self._llm_calls,
            tool_calls=self._tool_calls,
            tool_durations=dict(self._tool_durations),
            tokens=self._tokens,
        )

    def reset(self, start_ms: int | None = None) -> None:
        self._start_ms = start_ms if start_ms is not None else _now_ms()
        self._llm_calls = 0
        self._tool_calls = 0
        self._tool_durations = {}
        self._tokens = None


def format_metrics_summary(metrics: AgentMetrics) -> str:
    """
    One-line summary for logs, e.g.
    "Duration: 1.50s | LLM calls: 2 | Tool calls: 3 (search: 500ms, fetch: 800ms)"
    """
    summary = (
        f"Duration: {metrics.total_duration_ms / 1000:.2f}s"
        f" | LLM calls: {metrics.llm_calls}"
        f" | Tool calls: {metrics.tool_calls}"
    )
    if metrics.tool_durations:
        per_tool = ", ".join(f"{name}: {ms}ms" for name, ms in metrics.tool_durations.items())
        summary += f" ({per_tool})"
    if metrics.tokens is not None:
        summary += f" | Tokens: {metrics.tokens.total}"
    return summary


def average_metrics(runs: list[AgentMetrics]) -> AgentMetrics:
    """Mean of several runs, rounded to whole units. Empty input gives zeros."""
    if not runs:
        return AgentMetrics()

    count = len(runs)
    tool_totals: dict[str, int] = {}
    for run in runs:
        for name, ms in run.tool_durations.items():
            tool_totals[name] = tool_totals.get(name, 0) + ms

    return AgentMetrics(
        total_duration_ms=round(sum(r.total_duration_ms for r in runs) / count),
        llm_calls=round(sum(r.llm_calls for r in runs) / count),
        tool_calls=round(sum(r.tool_calls for r in runs) / count),
        tool_durations={name: round(total / count) for name, total in tool_totals.items()},
    )
