"""keel developer CLI (typer + rich)."""
