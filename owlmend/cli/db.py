"""owlmend db migrate: run Alembic upgrade for the knowledge store schema."""

import os
from pathlib import Path

import typer
from alembic import command
from alembic.config import Config

from owlmend.db.engine import DATABASE_URL_ENV

db_app = typer.Typer(
    name="db",
    help="Database operations for the PostgreSQL knowledge store.",
)


def _alembic_config(config_file: str) -> Config:
    path = Path(config_file)
    if not path.exists():
        typer.echo(f"Error: Alembic config not found: {path}", err=True)
        raise typer.Exit(2)
    return Config(str(path))


@db_app.command("migrate")
def migrate_command(
    target: str = typer.Option("head", "--target", "-t", help="Revision to upgrade to (default: head)."),
    database_url: str = typer.Option("", "--database-url", help=f"Database URL (default: {DATABASE_URL_ENV})."),
    config_file: str = typer.Option("alembic.ini", "--config", help="Alembic configuration file."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show current and head revisions without applying."),
) -> None:
    """Run schema migrations (Alembic upgrade)."""
    normalized_target = target.strip()
    if not normalized_target:
        typer.echo("Error: --target must be a non-empty revision string.", err=True)
        raise typer.Exit(2)
    url = database_url.strip() or os.environ.get(DATABASE_URL_ENV, "").strip()
    if not url:
        typer.echo(f"Error: Set {DATABASE_URL_ENV} or pass --database-url.", err=True)
        raise typer.Exit(2)
    os.environ[DATABASE_URL_ENV] = url
    alembic_cfg = _alembic_config(config_file)
    if dry_run:
        command.current(alembic_cfg)
        command.heads(alembic_cfg)
        typer.echo("--dry-run: run without --dry-run to apply migrations.")
        return
    command.upgrade(alembic_cfg, normalized_target)
    typer.echo("Migrations applied.")
