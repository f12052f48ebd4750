"""owlmend sandbox run: execute a transformation program under the sandbox budget."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console

from owlmend.config import ConfigManager
from owlmend.sandbox import SandboxBudget, SandboxExecutor

console = Console()

sandbox_app = typer.Typer(
    name="sandbox",
    help="Run transformation programs in the sandbox.",
)


def _load_bindings(bindings: str) -> dict[str, object]:
    if not bindings:
        return {}
    candidate = Path(bindings)
    text = candidate.read_text(encoding="utf-8") if candidate.is_file() else bindings
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        typer.echo(f"Error: bindings are not valid JSON: {exc}", err=True)
        raise typer.Exit(2) from exc
    if not isinstance(data, dict):
        typer.echo("Error: bindings must be a JSON object.", err=True)
        raise typer.Exit(2)
    return data


@sandbox_app.command("run")
def run_command(
    program_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Python file defining transform()."),
    bindings: str = typer.Option("", "--bindings", "-b", help="JSON object or path to a JSON file."),
    wall_clock_seconds: float = typer.Option(0.0, "--timeout", help="Wall-clock limit; 0 uses the config."),
    memory_mb: int = typer.Option(0, "--memory-mb", help="Memory limit; 0 uses the config."),
    config: str = typer.Option("", "--config", help="Optional config file path"),
) -> None:
    """Run ``transform(**bindings)`` from a program file and print the result as JSON."""
    cfg = ConfigManager.load(config_path=config or None).get()
    executor = SandboxExecutor.from_config(cfg.sandbox)
    budget = SandboxBudget.from_config(cfg.sandbox)
    if wall_clock_seconds > 0 or memory_mb > 0:
        budget = SandboxBudget(
            cpu_seconds=budget.cpu_seconds,
            memory_mb=memory_mb or budget.memory_mb,
            wall_clock_seconds=wall_clock_seconds or budget.wall_clock_seconds,
            output_bytes=budget.output_bytes,
        )
    program = program_file.read_text(encoding="utf-8")
    result = asyncio.run(executor.run(program, _load_bindings(bindings), budget))
    if result.ok:
        typer.echo(json.dumps(result.value, ensure_ascii=False, indent=2))
        return
    kind = result.error_kind.value if result.error_kind else "error"
    label = "rejected" if result.rejected else kind
    console.print(f"[red]Sandbox {label}:[/red] {result.message}")
    if result.stderr:
        console.print(result.stderr)
    raise typer.Exit(1)
