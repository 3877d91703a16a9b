"""CLI commands for workflow documents.

Subcommands for listing, inspecting and validating workflows without
starting a browser or the API server.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

workflows_app = typer.Typer(help="Inspect workflow documents — list, show and validate.")
console = Console()


def _get_workflow_dir() -> Path:
    """Return the resolved workflow directory from settings."""
    from pagerun.settings import get_settings

    return Path(get_settings().runner.workflow_dir)


# ---------------------------------------------------------------------------
# pagerun workflows list
# ---------------------------------------------------------------------------


@workflows_app.command("list")
def workflows_list(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Override workflow directory."),
) -> None:
    """List all workflows in the workflow directory."""
    from pagerun.workflow.loader import load_workflows_from_dir

    wf_dir = directory or _get_workflow_dir()
    workflows = load_workflows_from_dir(wf_dir)

    if not workflows:
        console.print(f"No workflows found in {wf_dir}")
        return

    if json_output:
        data = [
            {
                "workflow_id": wf.workflow_id,
                "name": wf.name,
                "steps": len(wf.steps),
                "enabled": wf.enabled,
                "version": wf.version,
                "required_input": wf.required_input.key if wf.required_input else None,
                "tags": wf.tags,
            }
            for wf in workflows
        ]
        console.print_json(json.dumps(data, indent=2))
        return

    table = Table(title=f"Workflows ({wf_dir})")
    table.add_column("ID", style="cyan")
    table.add_column("Name", max_width=40)
    table.add_column("Steps", justify="right")
    table.add_column("Input", style="dim")
    table.add_column("Enabled", justify="center")
    table.add_column("Tags")

    for wf in workflows:
        table.add_row(
            wf.workflow_id,
            wf.name[:40],
            str(len(wf.steps)),
            wf.required_input.key if wf.required_input else "",
            "[green]✓[/green]" if wf.enabled else "[red]✗[/red]",
            ", ".join(wf.tags) if wf.tags else "",
        )

    console.print(table)
    console.print(f"\n[bold]{len(workflows)}[/bold] workflow(s) loaded")


# ---------------------------------------------------------------------------
# pagerun workflows show <id>
# ---------------------------------------------------------------------------


@workflows_app.command("show")
def workflows_show(
    workflow_id: str = typer.Argument(..., help="Workflow ID to display."),
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Override workflow directory."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
) -> None:
    """Display the steps of a single workflow."""
    from pagerun.workflow.loader import load_workflows_from_dir

    wf_dir = directory or _get_workflow_dir()
    workflows = load_workflows_from_dir(wf_dir)
    match = next((wf for wf in workflows if wf.workflow_id == workflow_id), None)

    if not match:
        console.print(f"[red]Workflow not found:[/red] {workflow_id}")
        available = [wf.workflow_id for wf in workflows]
        if available:
            console.print(f"  Available: {', '.join(available)}")
        raise typer.Exit(code=1)

    if json_output:
        console.print_json(match.model_dump_json(indent=2, by_alias=True))
        return

    console.print(f"[bold cyan]{match.workflow_id}[/bold cyan]  v{match.version}")
    console.print(f"  Name:        {match.name or '(none)'}")
    console.print(f"  Description: {match.description or '(none)'}")
    console.print(f"  Enabled:     {'Yes' if match.enabled else 'No'}")
    if match.required_input:
        console.print(f"  Input:       {match.required_input.key} {match.required_input.label}".rstrip())
    if match.tags:
        console.print(f"  Tags:        {', '.join(match.tags)}")

    console.print(f"\n[bold]Steps ({len(match.steps)}):[/bold]")
    for i, step in enumerate(match.steps, 1):
        target = getattr(step, "url", "") or getattr(step, "selector", "")
        target_display = f" {target}" if target else ""
        desc = f" — {step.description}" if step.description else ""
        console.print(f"  {i:2d}. [yellow]{step.action:18s}[/yellow]{target_display}{desc}")


# ---------------------------------------------------------------------------
# pagerun workflows validate <path>
# ---------------------------------------------------------------------------


@workflows_app.command("validate")
def workflows_validate(
    path: Path = typer.Argument(..., help="Path to a workflow JSON file."),
) -> None:
    """Validate a workflow JSON file against the schema."""
    from pydantic import ValidationError

    from pagerun.workflow.loader import load_workflow_from_file

    if not path.exists():
        console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(code=1)

    try:
        wf = load_workflow_from_file(path)
        console.print(f"[green]✓[/green] Valid workflow: {wf.workflow_id} ({len(wf.steps)} steps)")
    except json.JSONDecodeError as e:
        console.print(f"[red]✗ Invalid JSON:[/red] {e}")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        console.print("[red]✗ Validation errors:[/red]")
        for err in e.errors():
            loc = " → ".join(str(x) for x in err["loc"])
            console.print(f"  {loc}: {err['msg']}")
        raise typer.Exit(code=1) from None
