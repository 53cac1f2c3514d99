"""
CLI: ``keel context``: run the context assembler over a JSON document.

The document maps tier names to lists of units. A unit is either a string
or an object with ``payload`` (or ``content``) and optional ``cost`` and
``key``::

    {
      "pinned": ["You are a helpful assistant."],
      "recent": [{"content": "hi", "key": "m1"}, {"payload": "...", "cost": 40}]
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer

from keel.cli.utils import console, fail, fail_from, print_json, print_table
from keel.context.assembler import ContextAssembler
from keel.context.budget import estimator_from_name, payload_text
from keel.context.models import ContentUnit, PriorityTier
from keel.core.errors import ContextValidationError
from keel.core.settings import get_settings

app = typer.Typer(no_args_is_help=True)

_PREVIEW = 60


def _parse_unit(raw: Any, tier: PriorityTier) -> ContentUnit:
    if isinstance(raw, str):
        return ContentUnit(raw, tier)
    if not isinstance(raw, dict):
        raise ContextValidationError(f"Unit in '{tier.value}' must be a string or object")
    if "payload" in raw:
        payload = raw["payload"]
    elif "content" in raw:
        payload = raw["content"]
    else:
        raise ContextValidationError(f"Unit in '{tier.value}' needs 'payload' or 'content'")
    return ContentUnit(payload, tier, cost=raw.get("cost"), key=raw.get("key"))


def load_pools(path: Path) -> dict[PriorityTier, list[ContentUnit]]:
    """Read tiered units from a JSON file."""
    document = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise ContextValidationError("Document must be an object mapping tier names to units")
    pools: dict[PriorityTier, list[ContentUnit]] = {}
    for name, units in document.items():
        tier = PriorityTier.parse(name)
        if not isinstance(units, list):
            raise ContextValidationError(f"Tier '{tier.value}' must map to a list")
        pools.setdefault(tier, []).extend(_parse_unit(raw, tier) for raw in units)
    return pools


def _preview(payload: Any) -> str:
    text = " ".join(payload_text(payload).split())
    return text if len(text) <= _PREVIEW else text[: _PREVIEW - 1] + "…"


@app.command("assemble")
def assemble(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON document of tiered units"),
    budget: float | None = typer.Option(None, "--budget", "-b", help="Budget (default from settings)"),
    estimator: str = typer.Option("chars", "--estimator", "-e", help="Estimator: chars, words"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Assemble a bounded context and show what was kept."""
    settings = get_settings()
    try:
        chosen = estimator_from_name(estimator, chars_per_token=settings.chars_per_token)
    except ValueError as e:
        fail(str(e))

    try:
        pools = load_pools(file)
        result = ContextAssembler(chosen).assemble(
            settings.context_budget if budget is None else budget, pools
        )
    except json.JSONDecodeError as e:
        fail(f"{file} is not valid JSON: {e}")
    except ContextValidationError as e:
        fail_from(e)

    rows = [
        {
            "#": index,
            "tier": tier.value,
            "key": unit.key or "",
            "cost": cost,
            "preview": _preview(unit.payload),
        }
        for index, (unit, cost, tier) in enumerate(
            zip(result.units, result.costs, result.tiers), start=1
        )
    ]

    if as_json:
        summary = result.to_dict()
        summary["units"] = [{k: row[k] for k in ("tier", "key", "cost")} for row in rows]
        print_json(summary)
        return

    print_table(rows, title="Assembled context")
    console.print(
        f"\n[bold]Cost:[/bold] {result.total_cost:g} of {result.budget:g}"
        f"  [bold]Remaining:[/bold] {result.remaining:g}"
    )
    if result.over_budget:
        console.print("[yellow]PINNED content exceeds the budget[/yellow]")
    if result.truncated:
        dropped = ", ".join(t.value for t in result.truncated_tiers) or "none"
        console.print(f"[yellow]Truncated:[/yellow] {len(result.rejected)} unit(s) left out ({dropped})")
