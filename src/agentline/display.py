# display.py
# All terminal output for agentline.
#
# This module owns presentation entirely. The engines never print; they call
# hooks, broadcast stream messages and log. Everything here plugs into one of
# those three seams. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    pipeline and branch routing
#   blue    model calls and responses
#   magenta tool calls
#   yellow  questions for the user
#   green   success / completed
#   red     failures, aborts

import json
import logging
from typing import Any

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from agentline.agent import AgentHooks
from agentline.metrics import format_metrics_summary
from agentline.models import AgentContext, AgentMetrics, LLMResponse, Message
from agentline.pipeline import (
    AgentFailure,
    BranchDefinition,
    ErrorRecovery,
    Pipeline,
    PipelineContext,
    PipelineHooks,
    PipelineStep,
)
from agentline.streaming import StreamMessage

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: Any, max_len: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = text.replace("\n", " ")
    if len(text) > max_len:
        text = text[:max_len] + "…"
    return escape(text)


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Agent hooks
# ---------------------------------------------------------------------------


class ConsoleAgentHooks(AgentHooks):
    """Renders one agent run: model calls, tool calls, result and metrics."""

    def __init__(self, out: Console | None = None) -> None:
        self.console = out or console

    def on_start(self, ctx: AgentContext) -> None:
        self.console.print()
        self.console.print(_label("AGENT", "blue"), f"[blue] {ctx.name}[/blue] [dim]run {ctx.run_id}[/dim]")

    def on_llm_start(self, ctx: AgentContext, messages: list[Message]) -> None:
        self.console.print(f"  [blue]↳ Model call {ctx.iteration}[/blue] [dim]({len(messages)} messages)[/dim]")

    def on_llm_end(self, ctx: AgentContext, response: LLMResponse) -> None:
        if response.has_tool_calls:
            names = ", ".join(call.function_name for call in response.tool_calls)
            self.console.print(f"  [blue]↳ Requested tools:[/blue] [bold white]{names}[/bold white]")
        else:
            self.console.print(f"  [blue]↳ Response[/blue]  [dim white]{_mono(response.content, 200)}[/dim white]")

    def on_tool_start(self, ctx: AgentContext, tool_name: str, args: dict[str, Any]) -> None:
        self.console.print(f"  [magenta]Tool[/magenta]     [bold white]{tool_name}[/bold white]  [dim]{_mono(args, 80)}[/dim]")

    def on_tool_end(self, ctx: AgentContext, tool_name: str, result: Any, duration_ms: int) -> None:
        self.console.print(f"  [magenta]Result[/magenta]   [white]{_mono(result, 140)}[/white] [dim]{duration_ms}ms[/dim]")

    def on_tool_error(self, ctx: AgentContext, tool_name: str, error: str) -> None:
        self.console.print(f"  [bold red]✗ {tool_name}[/bold red]  [white]{_mono(error, 140)}[/white]")

    def on_complete(self, ctx: AgentContext, result: Any, metrics: AgentMetrics) -> None:
        self.console.print(f"  [bold green]✓ {ctx.name} done[/bold green]  [dim]{format_metrics_summary(metrics)}[/dim]")

    def on_error(self, ctx: AgentContext, error: Exception) -> None:
        self.console.print(
            Panel(
                f"[bold white]{escape(str(error))}[/bold white]",
                title=_label(f"AGENT FAILED: {ctx.name}", "red"),
                border_style="red",
                padding=(0, 2),
            )
        )


# ---------------------------------------------------------------------------
# Pipeline hooks
# ---------------------------------------------------------------------------


class ConsolePipelineHooks(PipelineHooks):
    """
    Renders a pipeline run step by step.

    Pass `recovery` to apply one fixed recovery decision to every agent
    failure; the default re-raises.
    """

    def __init__(self, out: Console | None = None, recovery: ErrorRecovery | None = None) -> None:
        self.console = out or console
        self.recovery = recovery
        self.rows: list[tuple[str, str, int | None]] = []

    def on_pipeline_start(self, input: Any, session_id: str | None) -> None:
        self.rows = []
        self.console.print()
        self.console.print(Rule("[cyan]PIPELINE[/cyan]", style="cyan"))
        self.console.print(
            Panel(
                f"[white]{_mono(input, 400)}[/white]",
                title=_label("INPUT", "cyan"),
                subtitle=f"[dim]session {session_id}[/dim]" if session_id else None,
                border_style="cyan",
                padding=(0, 2),
            )
        )

    def on_agent_start(self, agent_name: str, step_index: int, input: Any, ctx: PipelineContext) -> None:
        self.console.print()
        self.console.print(f"[bold cyan]  STEP [{step_index + 1}][/bold cyan]  [white]{agent_name}[/white]")

    def on_agent_end(
        self, agent_name: str, step_index: int, result: Any, duration_ms: int, ctx: PipelineContext
    ) -> None:
        self.rows.append((agent_name, "[bold green]✓[/bold green]", duration_ms))
        self.console.print(f"  [bold green]✓[/bold green] [dim]{duration_ms}ms[/dim]  [white]{_mono(result, 140)}[/white]")

    def on_agent_error(self, failure: AgentFailure, ctx: PipelineContext) -> ErrorRecovery | None:
        self.rows.append((failure.agent_name, "[bold red]✗[/bold red]", None))
        self.console.print(f"  [bold red]✗ {failure.agent_name}[/bold red]  [white]{escape(str(failure.error))}[/white]")
        return self.recovery

    def on_branch_selected(self, branch_name: str, key: Any, selected: str, ctx: PipelineContext) -> None:
        note = "" if key == selected else f" [dim](condition returned {key!r}, using default)[/dim]"
        self.console.print()
        self.console.print(_label("BRANCH", "cyan"), f"[cyan] {branch_name} → [bold]{selected}[/bold][/cyan]{note}")

    def on_pipeline_end(self, result: Any, duration_ms: int, ctx: PipelineContext) -> None:
        self.console.print()
        table = Table(box=box.SIMPLE_HEAVY, border_style="dim", header_style="bold dim", padding=(0, 1))
        table.add_column("Step", style="white")
        table.add_column("Status", justify="center", width=8)
        table.add_column("Duration", justify="right", style="dim")
        for name, status, ms in self.rows:
            table.add_row(name, status, "" if ms is None else f"{ms}ms")
        self.console.print(Panel(table, title="[dim]PIPELINE SUMMARY[/dim]", border_style="dim", padding=(0, 1)))
        final_result(result, out=self.console)

    def on_pipeline_error(self, error: Exception, ctx: PipelineContext) -> None:
        halt(str(error), out=self.console)


# ---------------------------------------------------------------------------
# Step tree
# ---------------------------------------------------------------------------


def pipeline_tree(pipeline: Pipeline) -> Tree:
    """The pipeline's step tree as a rich Tree: agents, branches, keys and defaults."""
    root = Tree(f"[bold green]🗂️  {pipeline.name}[/bold green]")
    if pipeline.description:
        root.add(f"[dim]{pipeline.description}[/dim]")

    def add_steps(node: Tree, steps: list[PipelineStep]) -> None:
        for item in steps:
            if isinstance(item, BranchDefinition):
                branch_node = node.add(f"[bold cyan]⑂ {item.name}[/bold cyan]")
                for key, branch_steps in item.branches.items():
                    marker = " [dim](default)[/dim]" if key == item.default_branch else ""
                    add_steps(branch_node.add(f"[cyan]{key}[/cyan]{marker}"), branch_steps)
            else:
                label = f"[bold magenta]{item.name}[/bold magenta]"
                if item.description:
                    label += f" [dim]{item.description}[/dim]"
                node.add(label)

    add_steps(root, pipeline.steps)
    return root


# ---------------------------------------------------------------------------
# Stream messages
# ---------------------------------------------------------------------------


def render_stream_message(message: StreamMessage, out: Console | None = None) -> None:
    out = out or console
    if message.type == "llm_response":
        if message.streaming:
            return
        out.print(f"  [blue]{message.agent_name}[/blue] [dim]#{message.iteration}[/dim] {_mono(message.content, 160)}")
    elif message.type == "final_response":
        out.print(f"  [bold green]✓ {message.agent_name}[/bold green] {_mono(message.content, 160)}")
    elif message.type == "tool_start":
        out.print(f"  [magenta]→ {message.tool_name}[/magenta] [dim]{_mono(message.args, 80)}[/dim]")
    elif message.type == "tool_progress":
        out.print(f"  [dim magenta]… {message.tool_name}: {escape(message.message)}[/dim magenta]")
    elif message.type == "tool_result":
        out.print(f"  [magenta]← {message.tool_name}[/magenta] {_mono(message.result, 120)}")
    elif message.type == "tool_error":
        out.print(f"  [bold red]✗ {message.tool_name}[/bold red] {escape(message.error)}")
    elif message.type == "questions":
        body = "\n".join(f"[white]• {escape(q)}[/white]" for q in message.questions)
        out.print(
            Panel(
                f"[dim]{message.content}[/dim]\n\n{body}",
                title=_label("QUESTIONS", "yellow"),
                border_style="yellow",
                padding=(0, 2),
            )
        )


def stream_printer(out: Console | None = None):
    """A Broadcaster on_message callback that renders every message."""

    def on_message(session_id: str, message: StreamMessage) -> None:
        render_stream_message(message, out)

    return on_message


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: Any, out: Console | None = None) -> None:
    out = out or console
    out.print()
    out.print(
        Panel(
            f"[white]{_mono(result, 2000)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    out.print()


def halt(reason: str, out: Console | None = None) -> None:
    out = out or console
    out.print()
    out.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    out.print()
