"""Pause, resume and stop commands, sent to a running engine's status server."""

from typing import Any, Dict, Optional

import click
import httpx
from rich.console import Console

from cdc_engine.cli.commands.status import server_url

console = Console()


def _send(command: str, url: Optional[str], pipeline: Optional[str], params: Optional[Dict[str, Any]] = None) -> None:
    query: Dict[str, Any] = dict(params or {})
    if pipeline:
        query["pipeline"] = pipeline
    try:
        response = httpx.post(f"{server_url(url)}/{command}", params=query, timeout=10.0)
    except httpx.HTTPError as e:
        console.print(f"[red]✗ Failed to {command}: {e}[/red]")
        raise click.Abort()

    if response.status_code >= 400:
        console.print(f"[red]✗ {command} rejected ({response.status_code}): {response.text}[/red]")
        raise click.Abort()
    for pipeline_id, outcome in response.json().items():
        console.print(f"[green]✓ {pipeline_id}: {outcome}[/green]")


_url_option = click.option("--url", help="Status server URL (default http://localhost:HEALTH_CHECK_PORT)")
_pipeline_option = click.option("--pipeline", "-p", help="Only this pipeline (default all)")


@click.command()
@_url_option
@_pipeline_option
def pause(url: Optional[str], pipeline: Optional[str]) -> None:
    """Stop consuming new records; sinks keep draining."""
    _send("pause", url, pipeline)


@click.command()
@_url_option
@_pipeline_option
def resume(url: Optional[str], pipeline: Optional[str]) -> None:
    """Resume consuming after a pause."""
    _send("resume", url, pipeline)


@click.command()
@_url_option
@_pipeline_option
@click.option("--no-drain", is_flag=True, help="Abandon queued events instead of flushing them")
def stop(url: Optional[str], pipeline: Optional[str], no_drain: bool) -> None:
    """Stop the pipeline(s), draining sinks unless --no-drain is given."""
    _send("stop", url, pipeline, {"drain": "false" if no_drain else "true"})
