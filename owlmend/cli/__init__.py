"""CLI tools: owlmend init, owlmend check, owlmend sandbox, owlmend db."""

import sys
from importlib import metadata
from pathlib import Path

import typer

from owlmend.cli.check import check_command
from owlmend.cli.db import db_app
from owlmend.cli.init_config import init_config_command
from owlmend.cli.sandbox import sandbox_app

app = typer.Typer(
    name="owlmend",
    help="OwlMend: runtime semantic-mismatch detection and repair for tool calls.",
)

app.add_typer(sandbox_app, name="sandbox")
app.add_typer(db_app, name="db")


def _print_version_and_exit() -> None:
    """Print installed package version and exit."""
    try:
        version = metadata.version("owlmend")
    except metadata.PackageNotFoundError:
        version = "unknown"
    print(f"owlmend {version}")
    raise SystemExit(0)


@app.command("init")
def init_command(
    path: str = typer.Option(".", "--path", help="Output directory"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing owlmend.yaml"),
) -> None:
    """Generate default owlmend.yaml in target directory."""
    try:
        init_config_command(path=path, force=force)
    except FileExistsError as exc:
        typer.echo(f"Error: {exc}. Use --force to overwrite.", err=True)
        raise typer.Exit(1) from exc


@app.command("check")
def check(
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Proposed call (JSON or YAML)."),
    tool_id: str = typer.Option(..., "--tool-id", "-t", help="Tool the call targets."),
    schema_file: Path = typer.Option(..., "--schema", "-s", exists=True, dir_okay=False, help="Tool schema file."),
    recipes_file: Path | None = typer.Option(None, "--recipes", "-r", exists=True, dir_okay=False),
    config: str = typer.Option("", "--config", help="Optional config file path"),
    use_model: bool = typer.Option(False, "--use-model", help="Allow model-backed repair strategies."),
) -> None:
    """Validate and repair one proposed call against a declared schema."""
    check_command(
        payload_file,
        tool_id,
        schema_file,
        recipes_file=recipes_file,
        config=config or None,
        use_model=use_model,
    )


def main() -> None:
    """CLI entry point."""
    if "--version" in sys.argv or "-V" in sys.argv:
        _print_version_and_exit()
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
