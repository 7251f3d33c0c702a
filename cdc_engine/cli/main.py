"""Main CLI entry point for the CDC engine."""

import click
from rich.console import Console

from cdc_engine import __version__
from cdc_engine.cli.commands.control import pause, resume, stop
from cdc_engine.cli.commands.position import position
from cdc_engine.cli.commands.run import run
from cdc_engine.cli.commands.status import status
from cdc_engine.cli.commands.validate import validate_config

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="cdc-engine")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    CDC engine - replicate a database change log into heterogeneous sinks.

    Sinks:
    - upsert tables (Postgres)
    - append logs (JSON lines, Kafka)
    - OLAP native tables (StarRocks Stream Load)
    """
    ctx.ensure_object(dict)


# Register commands
cli.add_command(run)
cli.add_command(status)
cli.add_command(pause)
cli.add_command(resume)
cli.add_command(stop)
cli.add_command(position)
cli.add_command(validate_config)


if __name__ == "__main__":
    cli()
