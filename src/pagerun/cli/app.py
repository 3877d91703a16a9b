"""Unified CLI entry point for pagerun.

Config precedence: settings.default.toml -> settings.<env>.toml -> settings.local.toml -> env vars (PAGERUN_* with double underscores) -> CLI flags.
"""

from __future__ import annotations

from typing import Optional

import typer

from pagerun.cli.run_cmd import login, run_workflow
from pagerun.cli.settings_cmd import settings_app
from pagerun.cli.workflows_cmd import workflows_app

try:
    from importlib.metadata import version

    VERSION = version("pagerun")
except Exception:
    VERSION = "unknown"

APP_HELP = (
    "pagerun — declarative browser workflows. "
    "Run workflow documents against a persistent browser profile, extract text, capture long pages. "
    "Config precedence: settings.default.toml -> settings.local.toml -> env vars (PAGERUN_* with __) -> CLI flags."
)

app = typer.Typer(add_completion=True, help=APP_HELP)

app.command("run")(run_workflow)
app.command("login")(login)
app.add_typer(workflows_app, name="workflows")
app.add_typer(settings_app, name="settings")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the log level (DEBUG, INFO, ...)."),
) -> None:
    """Show help when no subcommand is provided."""
    if version:
        typer.echo(f"pagerun {VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()

    from pagerun.logging_setup import configure_logging

    configure_logging(log_level)


if __name__ == "__main__":
    app()
