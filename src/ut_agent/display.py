# display.py
# All terminal output for ut-agent.
#
# This module owns presentation entirely. The agent loop, pipeline and
# orchestrator never format strings for the user; they call named functions
# here. Diagnostics go through logging instead.
#
# Colour language:
#   cyan    run / method scaffolding
#   blue    model calls and streamed text
#   magenta tool calls and observations
#   yellow  phases, verification and coverage checkpoints
#   green   success
#   red     failures and halts

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ut_agent.models import AgentResult, MethodCoverageInfo, MethodReport, MethodStatus, RunReport

console = Console()

_STATUS_STYLE = {
    MethodStatus.COVERED: "bold green",
    MethodStatus.PARTIAL: "bold yellow",
    MethodStatus.FAILED: "bold red",
    MethodStatus.SKIPPED: "dim",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ⏎ ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _pct(value: float, threshold: float | None = None) -> str:
    if threshold is None:
        return f"{value:.1f}%"
    color = "green" if value >= threshold else "red"
    return f"[{color}]{value:.1f}%[/{color}]"


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


def banner(version: str, model: str, project_root: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]ut-agent {version}[/bold cyan]\n"
            "[dim]LLM-driven unit test generation with verification and repair[/dim]\n\n"
            f"[dim]Model   :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Project :[/dim] [white]{escape(project_root)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def run_start(target_file: str, mode: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]{escape(target_file)}[/cyan] [dim]({mode} mode)[/dim]", style="cyan"))


# ---------------------------------------------------------------------------
# Pre-check
# ---------------------------------------------------------------------------


def precheck_start(target_file: str) -> None:
    console.print(_label("PRE-CHECK", "cyan"), f"[cyan] {escape(target_file)}[/cyan]")


def precheck_step(message: str) -> None:
    console.print(f"  [cyan]↳[/cyan] [white]{escape(message)}[/white]")


def precheck_failed(output: str) -> None:
    console.print(
        Panel(
            f"[white]{escape(_mono(output, 600))}[/white]",
            title=_label("PRE-CHECK FAILED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def precheck_done(method_count: int) -> None:
    console.print(f"  [bold green]✓ Pre-check done[/bold green]  [dim]{method_count} method(s) found[/dim]")


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------


def coverage_summary(details: str) -> None:
    console.print(
        Panel(
            f"[white]{escape(details)}[/white]",
            title=_label("COVERAGE", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def static_analysis_fallback(method_count: int) -> None:
    console.print(
        f"  [yellow]No coverage data, using static analysis[/yellow]  [dim]{method_count} method(s)[/dim]"
    )


def coverage_measured(method_name: str, coverage: float, threshold: float) -> None:
    console.print(
        f"  [yellow]Coverage[/yellow] [bold white]{escape(method_name)}[/bold white]  "
        f"{_pct(coverage, threshold)} [dim](goal {threshold:.0f}%)[/dim]"
    )


def coverage_retry(method_name: str, coverage: float, threshold: float) -> None:
    console.print(
        f"  [yellow]↻ {escape(method_name)} at {coverage:.1f}%, below {threshold:.0f}%; "
        "asking for more tests[/yellow]"
    )


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------


def method_plan(methods: list[MethodCoverageInfo]) -> None:
    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("#", justify="right", width=3)
    table.add_column("Method", style="bold white")
    table.add_column("Priority", justify="center", width=8)
    table.add_column("Line", justify="right", width=8)
    table.add_column("Branch", justify="right", width=8)

    for i, info in enumerate(methods, start=1):
        table.add_row(
            str(i),
            escape(info.method_name),
            info.priority.value,
            _pct(info.line_coverage),
            _pct(info.branch_coverage),
        )
    console.print(table)


def method_start(index: int, total: int, info: MethodCoverageInfo) -> None:
    console.print()
    console.print(
        f"[bold cyan]  METHOD [{index}/{total}][/bold cyan]  "
        f"[white]{escape(info.method_name)}[/white]  "
        f"[dim]{info.priority.value}, line {info.line_coverage:.1f}%[/dim]"
    )


def method_done(report: MethodReport) -> None:
    style = _STATUS_STYLE[report.status]
    suffix = f"  [dim]{escape(report.message)}[/dim]" if report.message else ""
    console.print(
        f"  [{style}]{report.status.value.upper()}[/{style}] "
        f"[white]{escape(report.method_name)}[/white] {report.coverage:.1f}%{suffix}"
    )


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def phase_switch(previous: str, current: str, tool_count: int) -> None:
    console.print(
        f"  [yellow]Phase[/yellow] [dim]{previous}[/dim] → [bold yellow]{current}[/bold yellow]"
        f"  [dim]{tool_count} tool(s)[/dim]"
    )


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def agent_start(task: str, max_iterations: int) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(_mono(task, 400))}[/white]",
            title=_label("TASK", "blue"),
            subtitle=f"[dim]max {max_iterations} iteration(s)[/dim]",
            border_style="blue",
            padding=(0, 2),
        )
    )


def iteration_start(index: int, max_iterations: int) -> None:
    console.print(f"[dim blue]  ── iteration {index}/{max_iterations}[/dim blue]")


def assistant_reply(content: str) -> None:
    if content:
        console.print(f"  [blue]Model[/blue]    [dim white]{escape(_mono(content, 200))}[/dim white]")


def tool_call(name: str, arguments: dict) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{escape(name)}[/bold white]"
        f"  [dim]{escape(_mono(json.dumps(arguments), 100))}[/dim]"
    )


def tool_result(name: str, observation: str) -> None:
    console.print(f"  [magenta]Observe[/magenta]  [white]{escape(_mono(observation, 140))}[/white]")


def agent_result(result: AgentResult) -> None:
    if result.success:
        console.print(f"  [bold green]✓ Agent {escape(result.summary())}[/bold green]")
    else:
        console.print(f"  [bold red]✗ Agent {escape(result.summary())}[/bold red]")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def stream_token(token: str) -> None:
    console.print(token, end="", style="blue", markup=False, highlight=False)


def stream_end() -> None:
    console.print()


def stream_error(message: str) -> None:
    console.print()
    console.print(f"  [bold red]✗ Stream failed:[/bold red] [white]{escape(message)}[/white]")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verification_start(test_file: str, use_lsp: bool) -> None:
    console.print()
    lsp = " + lint" if use_lsp else ""
    console.print(Rule(f"[yellow]VERIFY {escape(test_file)}{lsp}[/yellow]", style="yellow"))


def verification_step(name: str) -> None:
    console.print(f"  [yellow]↳ {name}[/yellow]…")


def verification_step_passed(name: str) -> None:
    console.print(f"  [bold green]✓ {name} passed[/bold green]")


def verification_step_failed(name: str, message: str) -> None:
    console.print(f"  [bold red]✗ {name}:[/bold red] [white]{escape(_mono(message, 160))}[/white]")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def run_summary(report: RunReport) -> None:
    console.print()
    if report.methods:
        table = Table(
            box=box.SIMPLE_HEAVY,
            border_style="dim",
            show_header=True,
            header_style="bold dim",
            padding=(0, 1),
        )
        table.add_column("Method", style="white")
        table.add_column("Status", justify="center", width=9)
        table.add_column("Coverage", justify="right", width=9)
        table.add_column("Attempts", justify="right", width=8)
        table.add_column("Note", style="dim white")
        for m in report.methods:
            style = _STATUS_STYLE[m.status]
            table.add_row(
                escape(m.method_name),
                f"[{style}]{m.status.value}[/{style}]",
                f"{m.coverage:.1f}%",
                str(m.attempts),
                escape(_mono(m.message, 60)),
            )
        body = table
    else:
        body = Text(report.error_message or ("Done" if report.success else "Unsuccessful"))

    color = "green" if report.success else "red"
    console.print(
        Panel(
            body,
            title=_label("RESULT ✓" if report.success else "RESULT ✗", color),
            subtitle=f"[dim]{escape(report.target_file)}  {report.coverage:.1f}%  {report.duration_ms}ms[/dim]",
            border_style=color,
            padding=(0, 1),
        )
    )


def batch_start(targets: list[str], excluded: int, dry_run: bool) -> None:
    console.print()
    title = "BATCH (dry run)" if dry_run else "BATCH"
    console.print(Rule(f"[cyan]{title}: {len(targets)} target(s), {excluded} excluded[/cyan]", style="cyan"))
    if dry_run:
        for target in targets:
            console.print(f"  [dim]•[/dim] [white]{escape(target)}[/white]")


def batch_item(index: int, total: int, target: str) -> None:
    console.print()
    console.print(f"[bold cyan]  TARGET [{index}/{total}][/bold cyan]  [white]{escape(target)}[/white]")


def batch_summary(reports: list[RunReport]) -> None:
    console.print()
    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("Target", style="white")
    table.add_column("Result", justify="center", width=8)
    table.add_column("Coverage", justify="right", width=9)
    table.add_column("Error", style="dim white")
    for r in reports:
        result = "[bold green]✓[/bold green]" if r.success else "[bold red]✗[/bold red]"
        table.add_row(escape(r.target_file), result, f"{r.coverage:.1f}%", escape(_mono(r.error_message or "", 60)))

    passed = sum(1 for r in reports if r.success)
    console.print(
        Panel(
            table,
            title="[dim]BATCH SUMMARY[/dim]",
            subtitle=f"[dim]{passed}/{len(reports)} succeeded[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
