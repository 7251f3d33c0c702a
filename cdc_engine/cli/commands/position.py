"""Position commands: inspect and re-seed a pipeline's stored positions."""

from typing import Optional

import click
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from cdc_engine.common.config import get_settings
from cdc_engine.common.errors import CDCError
from cdc_engine.common.models import SourcePosition
from cdc_engine.pipeline.builder import build_position_store

console = Console()


def parse_position(value: str, token: Optional[str] = None) -> SourcePosition:
    """Parse ``SEGMENT:OFFSET[:INDEX]``."""
    parts = value.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise click.BadParameter(f"expected SEGMENT:OFFSET[:INDEX], got {value!r}")
    index = int(parts[2]) if len(parts) == 3 else 0
    return SourcePosition(int(parts[0]), int(parts[1]), index, token)


@click.group()
def position() -> None:
    """Inspect or reset stored positions."""


@position.command("show")
@click.option("--pipeline", "-p", help="Pipeline id (default CDC_PIPELINE_ID)")
def show(pipeline: Optional[str]) -> None:
    """Show the confirmed and per-sink positions of a pipeline."""
    store = build_position_store(get_settings(), pipeline)
    try:
        state = store.load()
    except CDCError as e:
        console.print(f"[red]✗ Failed to read positions: {e}[/red]")
        raise click.Abort()
    finally:
        store.close()

    if state is None:
        console.print(f"[yellow]No stored state for pipeline {store.pipeline_id}[/yellow]\n")
        return

    console.print(f"\n[bold blue]Pipeline {state.pipeline_id}[/bold blue]")
    console.print(f"  last confirmed: {state.last_confirmed_position or '-'}")
    lease = f"{state.lease_owner} until {state.lease_expires_at.isoformat()}" if state.lease_owner and state.lease_expires_at else "free"
    console.print(f"  lease: {lease}\n")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Sink")
    table.add_column("Durable position")
    table.add_column("Tables")
    for sink_id, pos in sorted(state.sink_positions.items()):
        tables = sorted(t for t, sinks in state.sink_bindings.items() if sink_id in sinks)
        table.add_row(sink_id, str(pos), ", ".join(tables))
    console.print(table)
    console.print()


@position.command("reset")
@click.option("--pipeline", "-p", help="Pipeline id (default CDC_PIPELINE_ID)")
@click.option("--to", "to_position", help="SEGMENT:OFFSET[:INDEX] to resume after; omit to restart from CDC_START_POSITION")
@click.option("--token", help="Source resume token (binlog file:pos) for --to")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def reset(pipeline: Optional[str], to_position: Optional[str], token: Optional[str], force: bool) -> None:
    """
    Re-seed the stored positions, e.g. after the source lost the resume position.

    The pipeline must not be running. Events between the old and the new
    position are either replayed or skipped.
    """
    new_position = parse_position(to_position, token) if to_position else None
    target = str(new_position) if new_position else "the configured start position"

    if not force and not Confirm.ask(f"Reset positions to {target}? Sinks may miss or repeat events"):
        console.print("[yellow]Reset cancelled[/yellow]\n")
        return

    store = build_position_store(get_settings(), pipeline)
    try:
        store.reset(new_position)
    except CDCError as e:
        console.print(f"[red]✗ Reset failed: {e}[/red]")
        raise click.Abort()
    finally:
        store.close()
    console.print(f"[green]✓ Positions of {store.pipeline_id} reset to {target}[/green]\n")
