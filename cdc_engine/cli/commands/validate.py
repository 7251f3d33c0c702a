"""Validate-config command."""

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from cdc_engine.common.config import get_settings, load_topology

console = Console()


@click.command("validate-config")
@click.option("--topology", "-t", "topology_path", required=True, type=click.Path(exists=True, dir_okay=False))
def validate_config(topology_path: str) -> None:
    """Validate settings and a topology file without connecting to anything."""
    console.print("\n[bold blue]Validating configuration[/bold blue]\n")

    try:
        settings = get_settings()
        topology = load_topology(topology_path)
    except ValidationError as e:
        console.print(f"[red]✗ Invalid configuration:[/red]\n{e}")
        raise click.Abort()
    except (ValueError, OSError) as e:
        console.print(f"[red]✗ Invalid configuration: {e}[/red]")
        raise click.Abort()

    pipeline = settings.pipeline
    console.print(
        f"pipeline [cyan]{pipeline.pipeline_id}[/cyan]  mode {pipeline.mode}  source {pipeline.source}  "
        f"state store {pipeline.state_store}  start {pipeline.start_position}\n"
    )

    table = Table(show_header=True, header_style="bold magenta", title="Sinks")
    table.add_column("Sink")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("Tables")
    for sink in topology.sinks:
        tables = sorted(t for t, sinks in topology.bindings.items() if sink.id in sinks)
        table.add_row(sink.id, sink.kind, sink.target, ", ".join(tables) or "[yellow]unbound[/yellow]")
    console.print(table)

    console.print("\n[bold green]✓ Configuration is valid[/bold green]\n")
