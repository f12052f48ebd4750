"""Config template initialization command."""

from __future__ import annotations

from pathlib import Path

from rich.console import Console

from owlmend.config import OwlMendConfig, YAMLConfigLoader

console = Console()


def init_config_command(path: str = ".", force: bool = False) -> Path:
    """Create owlmend.yaml holding every default setting."""
    target_dir = Path(path).resolve()
    output_path = target_dir / YAMLConfigLoader.DEFAULT_FILENAME
    if output_path.exists() and not force:
        raise FileExistsError(f"Config already exists: {output_path}")
    YAMLConfigLoader.dump(OwlMendConfig().model_dump(mode="json"), output_path)
    console.print(f"[green]Created[/green] {output_path}")
    return output_path
