"""
CLI: ``keel retry``: inspect backoff schedules.
"""

from __future__ import annotations

import typer

from keel.cli.utils import console, fail_from, print_json, print_table
from keel.core.errors import InvalidConfigError
from keel.core.settings import get_settings
from keel.execution.retry import RetryPolicy

app = typer.Typer(no_args_is_help=True)


@app.command("schedule")
def show_schedule(
    max_attempts: int | None = typer.Option(None, "--max-attempts", "-n", help="Total attempts"),
    base_delay: float | None = typer.Option(None, "--base-delay", help="Delay before attempt 2 (s)"),
    max_delay: float | None = typer.Option(None, "--max-delay", help="Cap on any delay (s)"),
    multiplier: float | None = typer.Option(None, "--multiplier", help="Backoff growth factor"),
    jitter: float | None = typer.Option(None, "--jitter", help="Jitter fraction in [0, 1)"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Print the delay before each retry. Unset options come from settings."""
    overrides = {
        key: value
        for key, value in {
            "max_attempts": max_attempts,
            "base_delay": base_delay,
            "max_delay": max_delay,
            "multiplier": multiplier,
            "jitter_fraction": jitter,
        }.items()
        if value is not None
    }
    try:
        policy = RetryPolicy.from_settings(get_settings(), **overrides)
    except InvalidConfigError as e:
        fail_from(e)

    rows = []
    cumulative = 0.0
    for attempt, delay in enumerate(policy.schedule(), start=2):
        cumulative += delay
        rows.append(
            {
                "attempt": attempt,
                "delay": round(delay, 3),
                "min": round(delay * (1 - policy.jitter_fraction), 3),
                "max": round(delay * (1 + policy.jitter_fraction), 3),
                "cumulative": round(cumulative, 3),
            }
        )

    if as_json:
        print_json(
            {
                "max_attempts": policy.max_attempts,
                "base_delay": policy.base_delay,
                "max_delay": policy.max_delay,
                "multiplier": policy.multiplier,
                "jitter_fraction": policy.jitter_fraction,
                "delays": rows,
            }
        )
        return

    if not rows:
        console.print("[dim]Single attempt, no retries.[/dim]")
        return
    print_table(rows, title=f"Backoff for {policy.max_attempts} attempts")
