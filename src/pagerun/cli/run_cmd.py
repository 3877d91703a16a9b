"""CLI commands that drive a browser: ``run`` and ``login``."""

from __future__ import annotations

import asyncio
import json
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from pagerun.monitoring.event_bus import ProgressEvent, ProgressStatus
from pagerun.workflow.models import ExecutionStatus

if TYPE_CHECKING:
    from pagerun.service import AutomationService
    from pagerun.workflow.models import ExecutionResult

console = Console()


def _parse_params(pairs: list[str]) -> dict[str, str]:
    """Turn ``key=value`` strings into a dict."""
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--param")
        params[key.strip()] = value
    return params


def _read_line(loop: asyncio.AbstractEventLoop, future: "asyncio.Future[str]") -> None:
    line = sys.stdin.readline()

    def _deliver() -> None:
        if not future.done():
            future.set_result(line)

    try:
        loop.call_soon_threadsafe(_deliver)
    except RuntimeError:
        # loop already closed; the task ended while we were waiting
        pass


async def _wait_for_enter() -> str:
    """Wait for a line on stdin without blocking the event loop or interpreter exit."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()
    threading.Thread(target=_read_line, args=(loop, future), daemon=True).start()
    return await future


class TerminalResumeSink:
    """Prompt on the terminal when a task pauses, and resume it on Enter."""

    def __init__(self, service: "AutomationService") -> None:
        self._service = service
        self._prompt_task: asyncio.Task[None] | None = None

    async def handle_event(self, event: ProgressEvent) -> None:
        if event.status is not ProgressStatus.PAUSED:
            return
        if self._prompt_task is None or self._prompt_task.done():
            self._prompt_task = asyncio.create_task(self._prompt(event.task_id))

    async def _prompt(self, task_id: str) -> None:
        while task_id in self._service.paused_tasks:
            console.print(
                "\n[yellow]⚠ Verification challenge detected.[/yellow] "
                "Solve it in the browser window, then press Enter to resume."
            )
            await _wait_for_enter()
            result = await self._service.resume(task_id)
            if result.accepted:
                console.print("[green]✓[/green] Resumed.")
                return
            console.print(f"[red]Still blocked:[/red] {result.reason}")

    def cancel(self) -> None:
        if self._prompt_task is not None and not self._prompt_task.done():
            self._prompt_task.cancel()


def _print_result(result: "ExecutionResult") -> None:
    ok = result.status is ExecutionStatus.COMPLETED
    marker = "[green]✓[/green]" if ok else "[red]✗[/red]"
    console.print(f"\n{marker} Task {result.task_id}: {result.status.value} in {result.duration_sec:.1f}s")

    if result.data:
        table = Table(title="Extracted data")
        table.add_column("Name", style="cyan")
        table.add_column("Value")
        for name, value in result.data.items():
            table.add_row(name, value)
        console.print(table)

    for shot in result.screenshots:
        console.print(f"  Screenshot {shot.name}: {shot.url}")

    if result.error:
        step = f" at step {result.error.step_index + 1}" if result.error.step_index is not None else ""
        console.print(f"  [red]Error[/red] ({result.error.kind.value}, {result.error.phase}{step}): {result.error.message}")


def run_workflow(
    workflow_file: Path = typer.Argument(..., help="Path to a workflow JSON file."),
    param: list[str] = typer.Option([], "--param", "-p", help="Placeholder value as key=value (repeatable)."),
    input_value: Optional[str] = typer.Option(None, "--input", "-i", help="Value for the workflow's required input."),
    task_id: Optional[str] = typer.Option(None, "--task-id", help="Explicit task id (default: random)."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Print the result as JSON."),
    headed: bool = typer.Option(False, "--headed", help="Show the browser window."),
    no_pause: bool = typer.Option(False, "--no-pause", help="Do not pause on verification challenges."),
) -> None:
    """Execute one workflow locally and print its result."""
    from pydantic import ValidationError

    from pagerun.service import build_service
    from pagerun.settings import get_settings
    from pagerun.workflow.loader import load_workflow_from_file

    if not workflow_file.exists():
        console.print(f"[red]File not found:[/red] {workflow_file}")
        raise typer.Exit(code=1)
    try:
        workflow = load_workflow_from_file(workflow_file)
    except (json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]✗ Invalid workflow:[/red] {e}")
        raise typer.Exit(code=1) from None

    params = _parse_params(param)
    service = build_service(
        get_settings(),
        headless=False if headed else None,
        interactive=False if no_pause else None,
    )
    context = service.build_context(workflow, task_id=task_id, input_value=input_value, parameters=params)

    async def _main() -> "ExecutionResult":
        resumer = None
        if service.coordinator is not None and sys.stdin.isatty():
            resumer = TerminalResumeSink(service)
            service.bus.add_sink(resumer, task_id=context.task_id)
        try:
            return await service.run_workflow(workflow, context)
        finally:
            if resumer is not None:
                resumer.cancel()
            await service.shutdown()

    if not json_output:
        console.print(f"Running [bold]{workflow.workflow_id}[/bold] ({len(workflow.steps)} steps) as task {context.task_id}")
    result = asyncio.run(_main())

    if json_output:
        console.print_json(result.model_dump_json())
    else:
        _print_result(result)

    if result.status is not ExecutionStatus.COMPLETED:
        raise typer.Exit(code=1)


def login(
    url: str = typer.Argument("about:blank", help="Page to open for signing in."),
) -> None:
    """Open a visible browser on the persistent profile so you can sign in."""
    from pagerun.browser.session import SessionManager
    from pagerun.settings import get_settings

    settings = get_settings()
    sessions = SessionManager.from_settings(settings, headless=False)

    async def _main() -> None:
        page = await sessions.acquire()
        try:
            if url and url != "about:blank":
                await page.goto(url)
            console.print(f"Profile: {sessions.profile_dir}")
            console.print("Sign in in the browser window, then press Enter here to save the session and close it.")
            await _wait_for_enter()
        finally:
            await sessions.release(page)
            await sessions.close()

    asyncio.run(_main())
    console.print("[green]✓[/green] Session saved.")
