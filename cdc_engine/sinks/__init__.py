"""
Sink writers.

Upsert, append-log and OLAP-native sinks share the SinkWriter protocol; each
runs behind its own SinkWorker thread.
"""


# Lazy imports so the in-memory sinks work without database drivers loaded
def __getattr__(name):
    if name == "UpsertTableSink":
        from cdc_engine.sinks.upsert_table import UpsertTableSink
        return UpsertTableSink
    elif name == "AppendLogSink":
        from cdc_engine.sinks.append_log import AppendLogSink
        return AppendLogSink
    elif name == "OLAPNativeSink":
        from cdc_engine.sinks.olap_native import OLAPNativeSink
        return OLAPNativeSink
    elif name == "SinkWorker":
        from cdc_engine.sinks.worker import SinkWorker
        return SinkWorker
    elif name == "build_sink":
        from cdc_engine.sinks.factory import build_sink
        return build_sink
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
