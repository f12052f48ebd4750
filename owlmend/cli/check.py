"""owlmend check: validate and repair one payload against a declared schema."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console

from owlmend.app import OwlMend
from owlmend.config import build_config
from owlmend.repair import NullCollaborator, RepairOutcome

console = Console(stderr=True)


def _load_document(path: Path, what: str) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        typer.echo(f"Error: cannot read {what} {path}: {exc}", err=True)
        raise typer.Exit(2) from exc


async def _run_check(
    payload: dict[str, Any],
    tool_id: str,
    schema: Any,
    recipes: list[dict[str, Any]],
    config_path: str | None,
    use_model: bool,
) -> RepairOutcome:
    cfg = build_config(config_path, {"knowledge": {"backend": "inmemory"}})
    collaborator = None if use_model else NullCollaborator()
    async with OwlMend.from_config(cfg, collaborator=collaborator) as mend:
        await mend.declare_contract(tool_id, schema)
        for recipe in recipes:
            await mend.declare_recipe(recipe, trusted=True)
        await mend.feedback.flush()
        return await mend.validate_and_repair(payload, tool_id)


def check_command(
    payload_file: Path,
    tool_id: str,
    schema_file: Path,
    recipes_file: Path | None = None,
    config: str | None = None,
    use_model: bool = False,
) -> RepairOutcome:
    """Print the repair outcome as JSON; exit 1 when the call cannot be repaired."""
    payload = _load_document(payload_file, "payload")
    if not isinstance(payload, dict):
        typer.echo("Error: payload must be a JSON/YAML object.", err=True)
        raise typer.Exit(2)
    schema = _load_document(schema_file, "schema")
    recipes: list[dict[str, Any]] = []
    if recipes_file is not None:
        loaded = _load_document(recipes_file, "recipes")
        if isinstance(loaded, dict):
            loaded = [loaded]
        if not isinstance(loaded, list) or not all(isinstance(r, dict) for r in loaded):
            typer.echo("Error: recipes must be an object or a list of objects.", err=True)
            raise typer.Exit(2)
        recipes = loaded

    outcome = asyncio.run(_run_check(payload, tool_id, schema, recipes, config, use_model))
    typer.echo(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2, default=str))
    if not outcome.ok:
        console.print(f"[red]Unresolvable:[/red] {len(outcome.blocking)} blocking violation(s)")
        raise typer.Exit(1)
    return outcome
