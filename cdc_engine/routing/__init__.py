"""Table-to-sink routing."""

from cdc_engine.routing.router import Router

__all__ = ["Router"]
