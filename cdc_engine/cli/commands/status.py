"""Status command: queries a running engine's status server."""

from typing import Any, Dict, Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

from cdc_engine.common.config import get_settings

console = Console()

_HEALTH_COLORS = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
_SINK_COLORS = {"HEALTHY": "green", "DEGRADED": "yellow", "RECOVERING": "yellow", "FAILED": "red", "STOPPED": "dim"}


def server_url(url: Optional[str]) -> str:
    return url or f"http://localhost:{get_settings().observability.health_check_port}"


def _position(data: Optional[Dict[str, Any]]) -> str:
    if not data:
        return "-"
    return f"{data['segment']}:{data['offset']}:{data.get('index', 0)}"


@click.command()
@click.option("--url", help="Status server URL (default http://localhost:HEALTH_CHECK_PORT)")
@click.option("--pipeline", "-p", help="Only show this pipeline")
def status(url: Optional[str], pipeline: Optional[str]) -> None:
    """Show pipeline and sink status."""
    console.print("\n[bold blue]CDC Engine Status[/bold blue]\n")

    try:
        response = httpx.get(f"{server_url(url)}/status", timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        console.print(f"[red]✗ Failed to get status: {e}[/red]")
        raise click.Abort()

    pipelines = response.json()["pipelines"]
    if pipeline:
        pipelines = [p for p in pipelines if p["pipeline_id"] == pipeline]
    if not pipelines:
        console.print("[yellow]No pipelines reported[/yellow]\n")
        return

    for data in pipelines:
        _print_pipeline(data)


def _print_pipeline(data: Dict[str, Any]) -> None:
    color = _HEALTH_COLORS.get(data["health"], "white")
    console.print(
        f"[bold]{data['pipeline_id']}[/bold]  {data['state']}  [{color}]{data['health']}[/{color}]"
        + (f"  [dim]{data['reason']}[/dim]" if data.get("reason") else "")
    )
    checkpoint = data["checkpoint"]
    console.print(
        f"  confirmed {_position(data['last_confirmed_position'])}  head {_position(data['head_position'])}  "
        f"lag {data['lag'] if data['lag'] is not None else '-'}  checkpoint {checkpoint['state']}"
        + ("  [red]stalled[/red]" if checkpoint["stalled"] else "")
    )

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Sink")
    table.add_column("Kind")
    table.add_column("State")
    table.add_column("Applied")
    table.add_column("Durable")
    table.add_column("Queue")
    table.add_column("Lag")
    table.add_column("Last error")

    for sink in data["sinks"]:
        sink_color = _SINK_COLORS.get(sink["state"], "white")
        table.add_row(
            sink["sink_id"],
            sink["kind"],
            f"[{sink_color}]{sink['state']}[/{sink_color}]",
            _position(sink["applied_position"]),
            _position(sink["durable_position"]),
            str(sink["queue_depth"]),
            str(sink["lag"]) if sink["lag"] is not None else "-",
            sink.get("last_error") or "",
        )

    console.print(table)
    console.print()
