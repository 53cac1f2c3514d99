"""
Root Typer application for the keel CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="keel",
    help="keel: resilience and bounded-context primitives for agent backends.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from keel import __version__

        typer.echo(f"keel-core {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Log level (default from KEEL_LOG_LEVEL).",
    ),
) -> None:
    """keel CLI: inspect configuration, retry schedules and context assembly."""
    from pydantic import ValidationError as SettingsValidationError

    from keel.core.logging import configure_logging
    from keel.core.settings import get_settings

    try:
        settings = get_settings()
        level, json_format = settings.log_level, settings.log_format == "json"
    except SettingsValidationError:
        # `config validate` reports the problem itself
        level, json_format = "INFO", False

    try:
        configure_logging(
            level=log_level or level,
            json_format=json_format,
            service="keel-cli",
        )
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level") from e


# ── Sub-command registration ─────────────────────────────────────────────

from keel.cli.config import app as config_app  # noqa: E402
from keel.cli.context import app as context_app  # noqa: E402
from keel.cli.retry import app as retry_app  # noqa: E402

app.add_typer(config_app, name="config", help="Configuration inspection.")
app.add_typer(retry_app, name="retry", help="Retry policy tools.")
app.add_typer(context_app, name="context", help="Context assembly tools.")
