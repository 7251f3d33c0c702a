"""Versioned key-value stores with conditional writes."""

import fcntl
import json
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import psycopg2
from psycopg2.extras import Json

from cdc_engine.common.errors import ConditionalWriteError, TransientIOError
from cdc_engine.common.postgres import PostgresConnectionManager
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)

Value = Dict[str, Any]


class KeyValueStore(Protocol):
    """
    Durable store of JSON documents.

    Every key has a version, 0 while absent. ``put`` succeeds only when the
    caller's ``expected_version`` matches the stored one and returns the new
    version; otherwise it raises ConditionalWriteError.
    """

    def get(self, key: str) -> Tuple[Optional[Value], int]:
        ...

    def put(self, key: str, value: Value, expected_version: int) -> int:
        ...

    def close(self) -> None:
        ...


class InMemoryKeyValueStore:
    """Process-local store; ``inject_failures`` makes the next calls raise TransientIOError."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[Value, int]] = {}
        self._lock = threading.Lock()
        self._failures = 0

    def inject_failures(self, count: int) -> None:
        with self._lock:
            self._failures = count

    def _check(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise TransientIOError("injected store failure")

    def get(self, key: str) -> Tuple[Optional[Value], int]:
        with self._lock:
            self._check()
            value, version = self._data.get(key, (None, 0))
            return (json.loads(json.dumps(value)) if value is not None else None), version

    def put(self, key: str, value: Value, expected_version: int) -> int:
        with self._lock:
            self._check()
            _, version = self._data.get(key, (None, 0))
            if version != expected_version:
                raise ConditionalWriteError(f"{key}: expected version {expected_version}, found {version}")
            self._data[key] = (json.loads(json.dumps(value, default=str)), version + 1)
            return version + 1

    def close(self) -> None:
        pass


class FileKeyValueStore:
    """
    One JSON file per key in a directory.

    Writes go to a temporary file that is fsynced and renamed over the target;
    an exclusive ``flock`` on a lock file serialises writers across processes.
    """

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock_path = self.directory / ".lock"

    def _path(self, key: str) -> Path:
        return self.directory / f"{re.sub(r'[^A-Za-z0-9_.-]', '_', key)}.json"

    def _read(self, path: Path) -> Tuple[Optional[Value], int]:
        if not path.exists():
            return None, 0
        document = json.loads(path.read_text(encoding="utf-8"))
        return document["value"], int(document["version"])

    def get(self, key: str) -> Tuple[Optional[Value], int]:
        try:
            return self._read(self._path(key))
        except OSError as e:
            raise TransientIOError(f"cannot read {key}: {e}") from e

    def put(self, key: str, value: Value, expected_version: int) -> int:
        path = self._path(key)
        try:
            with open(self._lock_path, "a") as lock:
                fcntl.flock(lock, fcntl.LOCK_EX)
                try:
                    _, version = self._read(path)
                    if version != expected_version:
                        raise ConditionalWriteError(f"{key}: expected version {expected_version}, found {version}")
                    tmp = path.with_suffix(".json.tmp")
                    with open(tmp, "w", encoding="utf-8") as handle:
                        json.dump({"version": version + 1, "value": value}, handle, default=str, sort_keys=True)
                        handle.flush()
                        os.fsync(handle.fileno())
                    os.replace(tmp, path)
                    return version + 1
                finally:
                    fcntl.flock(lock, fcntl.LOCK_UN)
        except OSError as e:
            raise TransientIOError(f"cannot write {key}: {e}") from e

    def close(self) -> None:
        pass


class PostgresKeyValueStore:
    """Versioned rows in a Postgres table (``key``, ``value`` jsonb, ``version``)."""

    def __init__(self, connection: PostgresConnectionManager, table: str = "cdc_pipeline_state") -> None:
        self.connection = connection
        self.table = table
        self._table_ready = False

    def _execute(self, query: str, params: Tuple[Any, ...]) -> Any:
        conn = self.connection.get_connection()
        try:
            with conn.cursor() as cursor:
                if not self._table_ready:
                    cursor.execute(
                        f"CREATE TABLE IF NOT EXISTS {self.table} ("
                        "key TEXT PRIMARY KEY, value JSONB NOT NULL, version BIGINT NOT NULL, "
                        "updated_at TIMESTAMPTZ NOT NULL DEFAULT now())"
                    )
                    self._table_ready = True
                cursor.execute(query, params)
                rows = cursor.fetchall() if cursor.description else None
                rowcount = cursor.rowcount
            conn.commit()
            return rows, rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._table_ready = False
            self.connection.reset()
            raise TransientIOError(f"position store unavailable: {e}") from e

    def get(self, key: str) -> Tuple[Optional[Value], int]:
        rows, _ = self._execute(f"SELECT value, version FROM {self.table} WHERE key = %s", (key,))
        if not rows:
            return None, 0
        return rows[0]["value"], int(rows[0]["version"])

    def put(self, key: str, value: Value, expected_version: int) -> int:
        if expected_version == 0:
            _, rowcount = self._execute(
                f"INSERT INTO {self.table} (key, value, version) VALUES (%s, %s, 1) ON CONFLICT (key) DO NOTHING",
                (key, Json(value)),
            )
        else:
            _, rowcount = self._execute(
                f"UPDATE {self.table} SET value = %s, version = version + 1, updated_at = now() "
                "WHERE key = %s AND version = %s",
                (Json(value), key, expected_version),
            )
        if rowcount != 1:
            raise ConditionalWriteError(f"{key}: version {expected_version} is no longer current")
        return expected_version + 1

    def close(self) -> None:
        self.connection.close()
