"""
CLI: ``keel config``: configuration inspection.
"""

from __future__ import annotations

import typer
from pydantic import ValidationError as SettingsValidationError
from rich.table import Table

from keel.cli.utils import console, fail
from keel.core.settings import KeelSettings, get_settings

app = typer.Typer(no_args_is_help=True)

_GROUPS: dict[str, tuple[str, ...]] = {
    "Circuit breaker": ("failure_threshold", "open_timeout"),
    "Retry": ("max_attempts", "base_delay", "max_delay", "multiplier", "jitter_fraction"),
    "Context": ("context_budget", "chars_per_token"),
    "Logging": ("log_level", "log_format"),
}


def _load(env_file: str | None) -> KeelSettings:
    try:
        return get_settings(env_file=env_file, _force_reload=True)
    except SettingsValidationError as e:
        fail(f"Invalid configuration: {e}")


@app.command("show")
def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
    env_file: str | None = typer.Option(None, "--env-file", help="Read settings from this .env file"),
) -> None:
    """Show the effective configuration."""
    if format not in ("table", "json", "env"):
        fail(f"Unknown format {format!r}; expected table, json or env")

    settings = _load(env_file)

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    if format == "env":
        for key, value in sorted(settings.model_dump().items()):
            console.print(f"KEEL_{key.upper()}={value}")
        return

    values = settings.model_dump()
    table = Table(title="keel settings")
    table.add_column("Group")
    table.add_column("Setting")
    table.add_column("Value")
    for group, keys in _GROUPS.items():
        for key in keys:
            table.add_row(group, key, str(values[key]))
    console.print(table)


@app.command("validate")
def validate_config(
    env_file: str | None = typer.Option(None, "--env-file", help="Read settings from this .env file"),
) -> None:
    """Validate configuration from the environment."""
    _load(env_file)
    console.print("[green]✓ Configuration is valid[/green]")
