"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import dataclasses
import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.db.models import Instance
from src.errors.registry import get_error
from src.services.agent_runtime import ValidationCheck
from src.services.provider_sync import ProviderSyncResult
from src.services.remote_executor import ContainerInfo

console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "stopped": "dim",
    "error": "red",
}

CHECK_COLORS = {"ok": "green", "warning": "yellow", "error": "red"}


def _colored(status: str, colors: dict[str, str] = STATUS_COLORS) -> str:
    color = colors.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_instance_table(instances: list[Instance], as_json: bool = False) -> str:
    """Format instances as a Rich table or JSON."""
    if as_json:
        return json.dumps(
            [
                {
                    "id": i.id,
                    "name": i.name,
                    "slug": i.slug,
                    "status": i.status,
                    "container_name": i.container_name,
                    "container_host": i.container_host,
                    "created_at": i.created_at,
                }
                for i in instances
            ],
            indent=2,
        )

    if not instances:
        return "No instances found."

    table = Table(title="Instances")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Slug", style="white")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Container")
    table.add_column("Host")
    for i in instances:
        table.add_row(
            i.id[:12],
            i.slug,
            i.name,
            _colored(i.status),
            i.container_name or "-",
            i.container_host or "-",
        )
    return _render(table)


def format_job_detail(summary: dict[str, Any], as_json: bool = False) -> str:
    """Format a job summary (JobService.get_job_summary) as a panel plus step table."""
    if as_json:
        return json.dumps(summary, indent=2)

    lines = [
        f"[bold]Job ID:[/bold]    {summary['job_id']}",
        f"[bold]Type:[/bold]      {summary['type']}",
        f"[bold]Status:[/bold]    {_colored(summary['status'])}",
        f"[bold]Steps:[/bold]     {summary['completed_steps']}/{summary['total_steps']} completed",
    ]
    if summary.get("current_step"):
        lines.append(f"[bold]Current:[/bold]   {summary['current_step']}")
    if summary.get("error_message"):
        lines.append(
            f"[bold]Error:[/bold]     [red]{summary.get('error_code') or ''} "
            f"{summary['error_message']}[/red]"
        )
        error_def = get_error(summary.get("error_code") or "")
        if error_def:
            lines.append(f"[bold]Fix:[/bold]       {error_def.remediation}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Output / Error")
    for step in summary["steps"]:
        detail = step["error"] if step["status"] == "failed" else step["output"]
        table.add_row(
            str(step["position"] + 1),
            step["name"],
            _colored(step["status"]),
            detail or "",
        )

    return _render(Panel("\n".join(lines), title="Job")) + _render(table)


def format_validation(checks: list[ValidationCheck], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([dataclasses.asdict(c) for c in checks], indent=2)

    table = Table(title="Instance checks")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for check in checks:
        table.add_row(check.name, _colored(check.status, CHECK_COLORS), check.detail)
    return _render(table)


def format_container_table(containers: list[ContainerInfo], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([dataclasses.asdict(c) for c in containers], indent=2)

    if not containers:
        return "No containers found."

    table = Table(title="Containers")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Addresses")
    for c in containers:
        table.add_row(c.name, c.status, ", ".join(c.addresses) or "-")
    return _render(table)


def format_provider_sync(result: ProviderSyncResult, as_json: bool = False) -> str:
    if as_json:
        return json.dumps(dataclasses.asdict(result), indent=2)

    if result.skipped:
        return "Instance has no container; nothing synced."

    lines = [
        f"Profiles:      {'written' if result.profiles_written else 'not written'}"
        f" ({result.profile_count})",
        f"Speech key:    {'written' if result.speech_key_written else 'unchanged'}",
        f"Default model: {result.default_model or 'unchanged'}",
    ]
    for name, error in sorted(result.errors.items()):
        lines.append(f"[red]{name}: {error}[/red]")
    return _render(Panel("\n".join(lines), title="Provider sync"))
