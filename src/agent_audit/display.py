# display.py
# All terminal output for the audit kernel, verifier and replay harness.
#
# This module owns presentation entirely. Library modules never format
# strings for the terminal; they call named functions here.
#
# Colour language:
#   cyan    - kernel / run lifecycle
#   yellow  - digests, hashes, verification checkpoints
#   green   - success / confirmed
#   red     - failures, halts, integrity breaches
#   magenta - replay and diff internals

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import TYPE_CHECKING

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from agent_audit.config import settings
from agent_audit.models import DiffResult, Event, ReplayResult, RunIndex, VerificationResult

if TYPE_CHECKING:
    from pathlib import Path

    from agent_audit.verify import VerificationError

console = Console(quiet=settings.quiet)

_SEVERITY_COLOR = {"warn": "yellow", "error": "red", "fatal": "bold red"}


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


def _short(digest: str | None) -> str:
    if not digest:
        return "-"
    return f"{digest[:12]}…{digest[-6:]}" if len(digest) > 20 else digest


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------


def invariant_failed(event: Event) -> None:
    payload = event.payload
    color = _SEVERITY_COLOR.get(payload.get("severity", "warn"), "yellow")
    console.print(
        _label("INVARIANT", "red"),
        f"[{color}] {payload.get('invariant')} ({payload.get('severity')})[/{color}]",
        f"[white]{_mono(str(payload.get('message', '')), 160)}[/white]",
        f"[dim]seq={event.seq}[/dim]",
    )


def run_halted(run_id: str, reason: str) -> None:
    halt(f"Run {run_id} halted: {reason}")


def persistence_failed(run_id: str, seq: int, error: Exception) -> None:
    console.print(
        _label("STORE", "red"),
        f"[red] Could not persist seq={seq} of run {run_id}:[/red] [white]{error}[/white]",
    )


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------


def blob_missing(run_id: str, ref: str) -> None:
    console.print(
        _label("STORE", "yellow"),
        f"[yellow] Blob {_short(ref)} for run {run_id} is missing; "
        "payload left as reference.[/yellow]",
    )


def run_index(index: RunIndex) -> None:
    console.print(
        f"[cyan]Run[/cyan] [bold white]{index.run_id}[/bold white]  "
        f"[dim]events={index.event_count} started={index.started} finished={index.finished}[/dim]"
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verification_start(path: Path, strict: bool) -> None:
    console.print()
    console.print(Rule(f"[yellow]VERIFYING {path}[/yellow]", style="yellow"))
    if strict:
        console.print("[dim yellow]  Strict mode: a terminal run.commit / run.finished is required.[/dim yellow]")


def verification_pass(result: VerificationResult) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold green]{result.event_count} event(s) verified.[/bold green]\n"
            f"[dim]Run:[/dim] [white]{result.run_id}[/white]\n"
            f"[dim]Workspace hash:[/dim] [yellow]{result.workspace_hash or '-'}[/yellow]",
            title=_label("VERIFY: PASS ✓", "green"),
            border_style="green",
            padding=(0, 2),
        )
    )


def verification_fail(error: VerificationError) -> None:
    lines = [f"[bold red]{error.rule}[/bold red] at seq [white]{error.seq}[/white]", ""]
    lines.append(f"[white]{error.detail}[/white]")
    if error.expected is not None or error.actual is not None:
        lines.append("")
        lines.append(f"[dim]Expected:[/dim] [yellow]{error.expected}[/yellow]")
        lines.append(f"[dim]Actual:  [/dim] [yellow]{error.actual}[/yellow]")
    console.print()
    console.print(
        Panel(
            "\n".join(lines),
            title=_label("VERIFY: FAIL ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Replay / diff
# ---------------------------------------------------------------------------


def diff_report(result: DiffResult) -> None:
    console.print()
    if result.identical:
        console.print(_label("DIFF", "green"), f"[green] {result.summary}[/green]")
        return
    console.print(
        Panel(
            f"[bold magenta]Diverge at:[/bold magenta] [white]{result.diverge_at}[/white]\n"
            f"[dim]{result.summary}[/dim]",
            title=_label("DIFF", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def replay_report(result: ReplayResult) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    table.add_column("Invariant", style="white")
    table.add_column("Valid", justify="center", width=7)
    table.add_column("Severity", width=9)
    table.add_column("Message", style="dim white")

    for outcome in result.invariant_results:
        valid = "[bold green]✓[/bold green]" if outcome.result.valid else "[bold red]✗[/bold red]"
        table.add_row(outcome.invariant, valid, outcome.result.severity, outcome.result.message or "")

    status = "[bold green]SUCCESS[/bold green]" if result.success else "[bold red]FAILED[/bold red]"
    console.print(
        Panel(
            table,
            title=_label("REPLAY", "magenta"),
            subtitle=f"{status} [dim]events={len(result.events)} substituted={result.substituted}[/dim]",
            border_style="magenta",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Log inspection
# ---------------------------------------------------------------------------


def event_table(events: Sequence[Event]) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Seq", justify="right", width=5)
    table.add_column("Type", style="bold white", width=18)
    table.add_column("Id", style="yellow", width=22)
    table.add_column("Causes", style="dim", width=8, justify="center")
    table.add_column("Payload", style="dim white")

    for event in events:
        table.add_row(
            str(event.seq),
            event.type,
            _short(event.id),
            str(len(event.causes)),
            _mono(json.dumps(event.payload, ensure_ascii=False), 60),
        )
    console.print(table)


def causal_tree(events: Sequence[Event]) -> None:
    """Render the causal DAG as a tree; events with several causes hang under the latest one."""
    by_id = {event.id: event for event in events}
    root_label = events[0].run_id if events else "empty run"
    graph = Tree(f"[bold green]Causal graph: {root_label}[/bold green]")
    nodes: dict[str, Tree] = {}

    for event in events:
        parents = [by_id[c] for c in event.causes if c in by_id and c in nodes]
        parent_node = nodes[max(parents, key=lambda e: e.seq).id] if parents else graph
        label = f"[bold cyan]{event.seq}[/bold cyan] {event.type} [dim]{_short(event.id)}[/dim]"
        if len(parents) > 1:
            label += f" [dim magenta](+{len(parents) - 1} cause)[/dim magenta]"
        nodes[event.id] = parent_node.add(label)

    console.print()
    console.print(graph)


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
