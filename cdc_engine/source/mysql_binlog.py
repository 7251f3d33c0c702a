"""MySQL row-based binlog source."""

import re
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import pymysql
from pymysql.cursors import DictCursor, SSDictCursor
from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import QueryEvent, RotateEvent, XidEvent
from pymysqlreplication.row_event import DeleteRowsEvent, UpdateRowsEvent, WriteRowsEvent

from cdc_engine.common.config import MySQLConfig
from cdc_engine.common.errors import ConfigurationError, TransientIOError
from cdc_engine.common.models import RawChangeRecord, ReadFrom, SourcePosition, StartPosition
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)

_BINLOG_SUFFIX = re.compile(r"\.(\d+)$")
# Every binlog file starts with a 4 byte magic header.
BINLOG_START_POS = 4
SNAPSHOT_TOKEN_PREFIX = "snapshot:"


def binlog_segment(log_file: str) -> int:
    """Numeric suffix of a binlog file name (mysql-bin.000042 -> 42)."""
    match = _BINLOG_SUFFIX.search(log_file)
    if not match:
        raise ValueError(f"Unrecognised binlog file name: {log_file}")
    return int(match.group(1))


def make_token(log_file: str, log_pos: int) -> str:
    return f"{log_file}:{log_pos}"


def parse_token(token: str) -> Tuple[str, int]:
    log_file, _, log_pos = token.rpartition(":")
    return log_file, int(log_pos)


def make_snapshot_token(log_file: str, log_pos: int) -> str:
    """Token of a snapshot record; resuming from it restarts the snapshot."""
    return f"{SNAPSHOT_TOKEN_PREFIX}{make_token(log_file, log_pos)}"


def is_snapshot_token(token: str) -> bool:
    return token.startswith(SNAPSHOT_TOKEN_PREFIX)


class MySQLBinlogSource:
    """
    Source log over the MySQL binlog, read with python-mysql-replication.

    Each row of a rows event becomes one record. Positions are
    ``(binlog file number, event end position, row index)``; the token points at
    the start of the enclosing transaction so a reopened stream sees its table
    map events again.

    Started with ``StartPosition.INITIAL``, the source first emits every row of
    the configured tables as a read (``op: "r"``) record positioned at the binlog
    coordinates of the snapshot, then streams the binlog from there.
    """

    def __init__(self, config: MySQLConfig, poll_interval: float = 0.5) -> None:
        """
        Initialize binlog source.

        Args:
            config: MySQL connection settings and table filter
            poll_interval: Wait between polls once the stream has caught up
        """
        self.config = config
        self.poll_interval = poll_interval

    def _connection_settings(self) -> Dict[str, Any]:
        return {
            "host": self.config.host,
            "port": self.config.port,
            "user": self.config.user,
            "passwd": self.config.password,
        }

    def _connect(self) -> pymysql.connections.Connection:
        try:
            return pymysql.connect(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                cursorclass=DictCursor,
            )
        except pymysql.err.OperationalError as e:
            raise TransientIOError(f"Cannot connect to MySQL at {self.config.host}:{self.config.port}: {e}") from e

    def _query(self, sql: str) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql)
                return list(cursor.fetchall())
        finally:
            conn.close()

    def check_row_format(self) -> None:
        """Reject servers that do not log row images."""
        rows = self._query("SHOW VARIABLES LIKE 'binlog_format'")
        binlog_format = rows[0]["Value"] if rows else "OFF"
        if binlog_format.upper() != "ROW":
            raise ConfigurationError(
                f"binlog_format is {binlog_format}; row-based logging is required for before/after images"
            )

    def current_head_position(self) -> Optional[SourcePosition]:
        rows = self._query("SHOW MASTER STATUS")
        if not rows or not rows[0].get("File"):
            return None
        log_file, log_pos = rows[0]["File"], int(rows[0]["Position"])
        return SourcePosition(binlog_segment(log_file), log_pos, 0, make_token(log_file, log_pos))

    def earliest_retained_position(self) -> Optional[SourcePosition]:
        rows = self._query("SHOW BINARY LOGS")
        if not rows:
            return None
        log_file = rows[0]["Log_name"]
        return SourcePosition(binlog_segment(log_file), BINLOG_START_POS, 0, make_token(log_file, BINLOG_START_POS))

    def open_stream(self, start: ReadFrom) -> Union["_BinlogStream", "_SnapshotStream"]:
        self.check_row_format()
        if isinstance(start, SourcePosition):
            if start.token is None:
                raise ConfigurationError(f"binlog position {start} carries no resume token")
            if is_snapshot_token(start.token):
                logger.warning(f"Snapshot interrupted at {start}; taking a new snapshot")
                return self._open_snapshot(first_index=start.index + 1)
            log_file, log_pos = parse_token(start.token)
        elif start is StartPosition.INITIAL:
            return self._open_snapshot()
        elif start is StartPosition.LATEST:
            head = self.current_head_position()
            if head is None:
                raise ConfigurationError("binary logging is disabled on the source")
            log_file, log_pos = parse_token(head.token)  # type: ignore[arg-type]
        else:
            earliest = self.earliest_retained_position()
            if earliest is None:
                raise ConfigurationError("binary logging is disabled on the source")
            log_file, log_pos = parse_token(earliest.token)  # type: ignore[arg-type]
        return self._open_binlog(log_file, log_pos)

    def _open_binlog(self, log_file: str, log_pos: int) -> "_BinlogStream":
        only_schemas = sorted({t.split(".", 1)[0] for t in self.config.tables}) or None
        only_tables = sorted({t.split(".", 1)[1] for t in self.config.tables}) or None
        reader = BinLogStreamReader(
            connection_settings=self._connection_settings(),
            server_id=self.config.server_id,
            only_events=[QueryEvent, XidEvent, RotateEvent, WriteRowsEvent, UpdateRowsEvent, DeleteRowsEvent],
            only_schemas=only_schemas,
            only_tables=only_tables,
            log_file=log_file,
            log_pos=log_pos,
            resume_stream=True,
            blocking=False,
        )
        logger.info(f"Opened binlog stream at {log_file}:{log_pos}")
        return _BinlogStream(reader, log_file, log_pos, self.poll_interval)

    def _open_snapshot(self, first_index: int = 0) -> "_SnapshotStream":
        """
        Start a consistent snapshot of the configured tables.

        The global read lock is held only while the snapshot transaction starts
        and the binlog coordinates are read, so the snapshot and the binlog
        stream that follows it meet at the same point.
        """
        if not self.config.tables:
            raise ConfigurationError("an initial snapshot needs MYSQL_TABLES to name the tables to copy")
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute("FLUSH TABLES WITH READ LOCK")
                cursor.execute("SET SESSION TRANSACTION ISOLATION LEVEL REPEATABLE READ")
                cursor.execute("START TRANSACTION WITH CONSISTENT SNAPSHOT")
                cursor.execute("SHOW MASTER STATUS")
                status = cursor.fetchone()
                cursor.execute("UNLOCK TABLES")
        except pymysql.err.OperationalError as e:
            conn.close()
            raise TransientIOError(f"Cannot start snapshot: {e}") from e
        if not status or not status.get("File"):
            conn.close()
            raise ConfigurationError("binary logging is disabled on the source")

        log_file, log_pos = status["File"], int(status["Position"])
        logger.info(f"Snapshot of {sorted(self.config.tables)} taken at {log_file}:{log_pos}")
        return _SnapshotStream(
            conn,
            sorted(self.config.tables),
            log_file,
            log_pos,
            first_index,
            open_binlog=lambda: self._open_binlog(log_file, log_pos),
        )


class _BinlogStream:
    """Turns binlog row events into one raw record per row."""

    _OPS = ((WriteRowsEvent, "c"), (UpdateRowsEvent, "u"), (DeleteRowsEvent, "d"))

    def __init__(self, reader: BinLogStreamReader, log_file: str, log_pos: int, poll_interval: float) -> None:
        self._reader = reader
        self._log_file = log_file
        self._txn_start = log_pos
        self._poll_interval = poll_interval
        self._pending: List[RawChangeRecord] = []
        self._closed = threading.Event()

    def next(self, timeout: float) -> Optional[RawChangeRecord]:
        waited = 0.0
        while not self._closed.is_set():
            if self._pending:
                return self._pending.pop(0)
            try:
                event = self._reader.fetchone()
            except pymysql.err.OperationalError as e:
                raise TransientIOError(f"binlog connection lost: {e}") from e
            if event is None:
                remaining = timeout - waited
                if remaining <= 0:
                    return None
                wait = min(self._poll_interval, remaining)
                self._closed.wait(wait)
                waited += wait
                continue
            self._handle(event)
        return None

    def _handle(self, event: Any) -> None:
        if isinstance(event, RotateEvent):
            self._log_file = event.next_binlog
            self._txn_start = event.position
            return
        if isinstance(event, QueryEvent):
            if event.query == "BEGIN":
                self._txn_start = self._reader.log_pos
            return
        if isinstance(event, XidEvent):
            self._txn_start = self._reader.log_pos
            return

        op = next((code for cls, code in self._OPS if isinstance(event, cls)), None)
        if op is None:
            return
        log_file = self._reader.log_file
        log_pos = self._reader.log_pos
        segment = binlog_segment(log_file)
        token = make_token(log_file, self._txn_start)
        ts_ms = int(event.timestamp) * 1000
        for index, row in enumerate(event.rows):
            if op == "u":
                before, after = row["before_values"], row["after_values"]
            elif op == "c":
                before, after = None, row["values"]
            else:
                before, after = row["values"], None
            payload = {
                "op": op,
                "before": before,
                "after": after,
                "source": {
                    "db": event.schema,
                    "table": event.table,
                    "ts_ms": ts_ms,
                    "file": log_file,
                    "pos": log_pos,
                    "row": index,
                },
                "ts_ms": ts_ms,
            }
            self._pending.append(
                RawChangeRecord(position=SourcePosition(segment, log_pos, index, token), payload=payload)
            )

    def close(self) -> None:
        self._closed.set()
        self._reader.close()


class _SnapshotStream:
    """
    Emits a consistent snapshot as read records, then hands over to the binlog.

    Snapshot rows share the segment and offset of the snapshot's binlog
    coordinates and are numbered by row index, so they sort before every binlog
    event written after the snapshot. All but the last carry a snapshot token;
    the last carries the plain binlog token, marking the snapshot complete.
    """

    def __init__(
        self,
        conn: pymysql.connections.Connection,
        tables: List[str],
        log_file: str,
        log_pos: int,
        first_index: int,
        open_binlog: Callable[[], _BinlogStream],
    ) -> None:
        self._conn: Optional[pymysql.connections.Connection] = conn
        self._tables = tables
        self._log_file = log_file
        self._log_pos = log_pos
        self._segment = binlog_segment(log_file)
        self._index = first_index
        self._open_binlog = open_binlog
        self._rows = self._read_rows()
        self._lookahead: Optional[Tuple[str, str, Dict[str, Any]]] = None
        self._binlog: Optional[_BinlogStream] = None
        self._ts_ms = int(time.time() * 1000)
        self._closed = threading.Event()

    def _read_rows(self) -> Iterator[Tuple[str, str, Dict[str, Any]]]:
        for table in self._tables:
            schema, name = table.split(".", 1)
            with self._conn.cursor(SSDictCursor) as cursor:  # type: ignore[union-attr]
                cursor.execute(f"SELECT * FROM `{schema}`.`{name}`")
                for row in cursor.fetchall_unbuffered():
                    yield schema, name, row
            logger.info(f"Snapshot of {table} read")

    def _fetch(self) -> Optional[Tuple[str, str, Dict[str, Any]]]:
        try:
            return next(self._rows, None)
        except pymysql.err.OperationalError as e:
            raise TransientIOError(f"snapshot connection lost: {e}") from e

    def next(self, timeout: float) -> Optional[RawChangeRecord]:
        if self._closed.is_set():
            return None
        if self._binlog is not None:
            return self._binlog.next(timeout)

        current = self._lookahead or self._fetch()
        if current is None:
            self._finish_snapshot()
            return self.next(timeout)
        self._lookahead = self._fetch()
        schema, table, row = current
        if self._lookahead is None:
            token = make_token(self._log_file, self._log_pos)
        else:
            token = make_snapshot_token(self._log_file, self._log_pos)
        position = SourcePosition(self._segment, self._log_pos, self._index, token)
        self._index += 1
        payload = {
            "op": "r",
            "before": None,
            "after": row,
            "source": {
                "db": schema,
                "table": table,
                "ts_ms": self._ts_ms,
                "file": self._log_file,
                "pos": self._log_pos,
                "row": position.index,
                "snapshot": True,
            },
            "ts_ms": self._ts_ms,
        }
        return RawChangeRecord(position=position, payload=payload)

    def _finish_snapshot(self) -> None:
        self._close_connection(commit=True)
        logger.info(f"Snapshot complete; streaming binlog from {self._log_file}:{self._log_pos}")
        self._binlog = self._open_binlog()

    def _close_connection(self, commit: bool = False) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            self._rows.close()
            if commit:
                conn.commit()
        except pymysql.err.Error as e:
            logger.warning(f"Error ending snapshot transaction: {e}")
        finally:
            conn.close()

    def close(self) -> None:
        self._closed.set()
        self._close_connection()
        if self._binlog is not None:
            self._binlog.close()
