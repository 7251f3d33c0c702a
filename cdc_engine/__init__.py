"""Change data capture engine: replicates a database change log into heterogeneous sinks."""

__version__ = "0.1.0"
