"""Run command: starts the pipelines of a topology and serves status until stopped."""

import signal
import threading
from typing import List, Optional

import click
from rich.console import Console

from cdc_engine.common.config import get_settings, load_topology
from cdc_engine.common.errors import CDCError
from cdc_engine.observability.health import HealthChecker, HealthCheckServer
from cdc_engine.observability.logging_config import get_logger, setup_logging
from cdc_engine.observability.metrics import MetricsExporter
from cdc_engine.pipeline.builder import build_pipelines
from cdc_engine.pipeline.coordinator import PipelineCoordinator, RunState

console = Console()
logger = get_logger(__name__)


@click.command()
@click.option("--topology", "-t", "topology_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="JSON file with sinks and table bindings")
@click.option("--role", type=click.Choice(["all", "publisher", "consumer"]), default="all",
              help="Buffered mode: which side of the transport to run")
@click.option("--no-metrics", is_flag=True, help="Do not expose Prometheus metrics")
@click.option("--no-server", is_flag=True, help="Do not start the status/command HTTP server")
@click.option("--log-level", help="Override LOG_LEVEL")
def run(topology_path: str, role: str, no_metrics: bool, no_server: bool, log_level: Optional[str]) -> None:
    """
    Run the pipeline(s) until SIGINT/SIGTERM or a fatal error.

    Exits with status 1 if any pipeline ends FAILED.
    """
    setup_logging(log_level)
    settings = get_settings()

    try:
        topology = load_topology(topology_path)
    except (ValueError, OSError) as e:
        console.print(f"[red]✗ Invalid topology: {e}[/red]")
        raise click.Abort()

    metrics: Optional[MetricsExporter] = None
    if not no_metrics:
        metrics = MetricsExporter()
        metrics.start()

    pipelines = build_pipelines(settings, topology, metrics=metrics, role=role)
    checker = HealthChecker()
    server: Optional[HealthCheckServer] = None
    if not no_server:
        server = HealthCheckServer(checker)
        server.start()

    started: List[PipelineCoordinator] = []
    try:
        for pipeline in pipelines:
            checker.watch(pipeline)
            pipeline.start()
            started.append(pipeline)
            console.print(f"[green]✓ Pipeline {pipeline.pipeline_id} running[/green]")
    except CDCError as e:
        console.print(f"[red]✗ Failed to start: {e}[/red]")
        _stop_all(started, drain=True)
        if server:
            server.stop()
        raise click.Abort()

    stop_requested = threading.Event()

    def request_stop(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}; stopping")
        stop_requested.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    while not stop_requested.wait(1.0):
        if all(p.state in (RunState.FAILED, RunState.STOPPED) for p in pipelines):
            break

    _stop_all(pipelines, drain=True)
    if server:
        server.stop()

    failed = [p for p in pipelines if p.state is RunState.FAILED]
    for pipeline in failed:
        console.print(f"[red]✗ Pipeline {pipeline.pipeline_id} failed: {pipeline.reason}[/red]")
    if failed:
        raise SystemExit(1)
    console.print("\n[bold green]✓ All pipelines stopped[/bold green]\n")


def _stop_all(pipelines: List[PipelineCoordinator], drain: bool) -> None:
    # Publisher before consumer, so the consumer sees everything published
    for pipeline in pipelines:
        pipeline.stop(drain=drain)
