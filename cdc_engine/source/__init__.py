"""
Source logs.

A SourceLog exposes an ordered change log (a MySQL binlog, a transport topic or
an in-memory log for tests); LogReader adds exclusive resume and ordering checks.
"""

from cdc_engine.source.base import ChangeStream, SourceLog
from cdc_engine.source.log_reader import LogReader
from cdc_engine.source.memory_log import InMemorySourceLog

__all__ = [
    "ChangeStream",
    "SourceLog",
    "LogReader",
    "InMemorySourceLog",
]
