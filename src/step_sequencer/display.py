# display.py
# All terminal output for the step sequencer.
#
# This module owns presentation entirely. The engine never formats strings;
# it notifies listeners, and ConsoleGuidance turns those notifications into
# calls on the named functions here.
#
# Colour language:
#   cyan: sequence / task group routing
#   blue: step starts and instructions
#   yellow: enablement changes, warnings
#   green: completions
#   red: validation failures, dispatch errors, halts

import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from step_sequencer.controller import GuidanceListener
from step_sequencer.enablement import EnablementState
from step_sequencer.models import (
    Framework,
    Module,
    Program,
    SequenceProgress,
    Severity,
    Step,
    TaskGroup,
    ValidationIssue,
)

console = Console()

_STATE_COLOURS = {
    EnablementState.LOCKED: "dim",
    EnablementState.PREPARED: "yellow",
    EnablementState.ACTIVE: "bold blue",
    EnablementState.COMPLETED: "green",
    EnablementState.RETAINED: "cyan",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def configure_logging(level: str = "INFO") -> None:
    """Route engine logging through rich so it interleaves with guidance output."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Program overview
# ---------------------------------------------------------------------------


def banner(program: Program, framework: Framework) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{program.name}[/bold cyan]\n"
            f"[dim]{program.description or 'Step sequence'}[/dim]\n\n"
            f"[dim]Framework :[/dim] [white]{framework.display_name}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def program_tree(program: Program) -> None:
    tree = Tree(f"[bold cyan]{program.name}[/bold cyan]")
    for module in program.modules:
        module_node = tree.add(f"[cyan]{module.name}[/cyan]")
        for group in module.task_groups:
            suffix = " [dim](optional)[/dim]" if group.is_optional else ""
            group_node = module_node.add(f"[white]{group.name}[/white]{suffix}")
            for step in group.steps:
                flags = []
                if step.allow_parallel:
                    flags.append("parallel")
                if step.is_optional:
                    flags.append("optional")
                extra = f" [dim]({', '.join(flags)})[/dim]" if flags else ""
                group_node.add(f"{step.name} [dim]{step.type.value}[/dim]{extra}")
    console.print()
    console.print(tree)


def validation_report(issues: list[ValidationIssue]) -> None:
    console.print()
    if not issues:
        console.print(_label("VALIDATION", "green"), "[green] No issues found.[/green]")
        return

    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold", padding=(0, 1))
    table.add_column("Severity", width=9)
    table.add_column("Location", style="white")
    table.add_column("Message", style="dim white")
    for issue in issues:
        colour = "red" if issue.severity is Severity.ERROR else "yellow"
        table.add_row(f"[{colour}]{issue.severity.value}[/{colour}]", issue.location, issue.message)

    errors = sum(1 for i in issues if i.severity is Severity.ERROR)
    console.print(
        Panel(
            table,
            title=_label("VALIDATION", "red" if errors else "yellow"),
            subtitle=f"[dim]{errors} error(s), {len(issues) - errors} warning(s)[/dim]",
            border_style="red" if errors else "yellow",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Sequence events
# ---------------------------------------------------------------------------


def task_group_started(module: Module, group: TaskGroup) -> None:
    console.print()
    console.print(Rule(f"[cyan]{module.name} · {group.name}[/cyan]", style="cyan"))
    if group.description:
        console.print(f"[dim]  {group.description}[/dim]")


def step_started(step: Step) -> None:
    console.print(f"  [bold blue]▶ {step.name}[/bold blue]  [dim]{step.type.value}[/dim]")
    if step.hint:
        console.print(f"    [white]{_mono(step.hint, 160)}[/white]")


def step_state_changed(step: Step, state: EnablementState) -> None:
    colour = _STATE_COLOURS[state]
    console.print(f"    [dim]{step.name}[/dim] → [{colour}]{state.value}[/{colour}]")


def step_completed(step: Step, reason: str) -> None:
    console.print(f"  [bold green]✓ {step.name}[/bold green]  [dim]{_mono(reason, 100)}[/dim]")


def task_group_completed(group: TaskGroup) -> None:
    console.print(f"  [green]Task group complete:[/green] [white]{group.name}[/white]")


def module_completed(module: Module) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold green]{module.name}[/bold green] complete.",
            title=_label("MODULE", "green"),
            border_style="green",
            padding=(0, 2),
        )
    )


def sequence_completed(program: Program) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{program.name}[/bold white] finished. All modules complete.",
            title=_label("SEQUENCE COMPLETE", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def sequence_aborted(program: Program) -> None:
    console.print()
    console.print(_label("ABORTED", "red"), f"[red] {program.name} stopped. Interaction restored.[/red]")


def error_reported(step: Step | None, message: str) -> None:
    console.print(
        Panel(
            f"[bold red]{message}[/bold red]",
            title=_label(f"ERROR · {step.name}" if step is not None else "ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def progress_summary(progress: SequenceProgress) -> None:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="white")
    table.add_row("Module", f"{progress.module_name or '-'} ({progress.module_index + 1}/{progress.total_modules})")
    table.add_row(
        "Task group",
        f"{progress.task_group_name or '-'} ({progress.task_group_index + 1}/{progress.total_task_groups})",
    )
    table.add_row("Steps", f"{progress.completed_steps}/{progress.total_steps}")
    table.add_row("Overall", f"{progress.overall_progress():.0%}")
    console.print(table)


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------


class ConsoleGuidance(GuidanceListener):
    """Guidance listener that renders every notification to the console."""

    def __init__(self, show_states: bool = True) -> None:
        self.show_states = show_states

    def sequence_started(self, program: Program) -> None:
        console.print(Rule(f"[bold cyan]{program.name}[/bold cyan]", style="cyan"))

    def task_group_started(self, module: Module, group: TaskGroup) -> None:
        task_group_started(module, group)

    def step_started(self, step: Step) -> None:
        step_started(step)

    def step_state_changed(self, step: Step, state: EnablementState) -> None:
        if self.show_states:
            step_state_changed(step, state)

    def step_completed(self, step: Step, reason: str) -> None:
        step_completed(step, reason)

    def task_group_completed(self, group: TaskGroup) -> None:
        task_group_completed(group)

    def module_completed(self, module: Module) -> None:
        module_completed(module)

    def sequence_completed(self, program: Program) -> None:
        sequence_completed(program)

    def sequence_aborted(self, program: Program) -> None:
        sequence_aborted(program)

    def error_reported(self, step: Step | None, message: str) -> None:
        error_reported(step, message)
