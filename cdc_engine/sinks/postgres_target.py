"""Postgres upsert target."""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json

from cdc_engine.common.errors import SinkWriteError, TransientIOError
from cdc_engine.common.models import TableId
from cdc_engine.common.postgres import PostgresConnectionManager
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.sinks.base import RowWrite

logger = get_logger(__name__)

POSITION_COLUMN = "_cdc_position"
DELETED_COLUMN = "_cdc_deleted"
UPDATED_AT_COLUMN = "_cdc_updated_at"


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


class PostgresUpsertTarget:
    """
    Upserts keyed rows into Postgres tables, one transaction per batch.

    Each table carries ``_cdc_position`` (the sortable key of the last applied
    position) and ``_cdc_deleted``. Writes only take effect when their position
    is newer than the stored one; deletes are soft, leaving the row as a
    tombstone. Missing tables are created and new columns are added as TEXT.
    """

    def __init__(
        self,
        connection: PostgresConnectionManager,
        primary_keys: Mapping[str, Sequence[str]],
        target_schema: Optional[str] = None,
    ) -> None:
        """
        Initialize Postgres upsert target.

        Args:
            connection: Connection manager
            primary_keys: table id (schema.table) -> primary key columns
            target_schema: Schema for sink tables; defaults to the source schema
        """
        self.connection = connection
        self.primary_keys = {TableId.parse(t): tuple(c) for t, c in primary_keys.items()}
        self.target_schema = target_schema
        self._columns: Dict[TableId, Set[str]] = {}

    def _qualified(self, table_id: TableId) -> sql.Composed:
        return sql.SQL("{}.{}").format(
            sql.Identifier(self.target_schema or table_id.schema), sql.Identifier(table_id.name)
        )

    def open(self) -> None:
        try:
            self.connection.get_connection()
        except TransientIOError:
            logger.warning("Postgres target not reachable at open; writes will retry")

    def _existing_columns(self, cursor: Any, table_id: TableId) -> Set[str]:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            """,
            (self.target_schema or table_id.schema, table_id.name),
        )
        return {row["column_name"] for row in cursor.fetchall()}

    def _ensure_table(self, cursor: Any, table_id: TableId, columns: Sequence[str]) -> None:
        known = self._columns.get(table_id)
        if known is None:
            key_columns = self.primary_keys[table_id]
            cursor.execute(
                sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                    sql.Identifier(self.target_schema or table_id.schema)
                )
            )
            cursor.execute(
                sql.SQL(
                    "CREATE TABLE IF NOT EXISTS {} ({}, {} TEXT NOT NULL, {} BOOLEAN NOT NULL DEFAULT FALSE, "
                    "{} TIMESTAMPTZ NOT NULL DEFAULT now(), PRIMARY KEY ({}))"
                ).format(
                    self._qualified(table_id),
                    sql.SQL(", ").join(sql.SQL("{} TEXT").format(sql.Identifier(c)) for c in key_columns),
                    sql.Identifier(POSITION_COLUMN),
                    sql.Identifier(DELETED_COLUMN),
                    sql.Identifier(UPDATED_AT_COLUMN),
                    sql.SQL(", ").join(sql.Identifier(c) for c in key_columns),
                )
            )
            known = self._existing_columns(cursor, table_id)
            self._columns[table_id] = known

        for column in columns:
            if column not in known:
                logger.info(f"Adding column {column} to {table_id}")
                cursor.execute(
                    sql.SQL("ALTER TABLE {} ADD COLUMN IF NOT EXISTS {} TEXT").format(
                        self._qualified(table_id), sql.Identifier(column)
                    )
                )
                known.add(column)

    def _upsert_statement(self, write: RowWrite) -> Tuple[sql.Composed, List[Any]]:
        if write.row is None:
            data: Dict[str, Any] = dict(zip(write.key_columns, write.key))
            deleted = True
        else:
            data = dict(write.row)
            deleted = False
        columns = list(data) + [POSITION_COLUMN, DELETED_COLUMN]
        values = [_adapt(v) for v in data.values()] + [write.position.sort_key(), deleted]
        updates = [c for c in columns if c not in write.key_columns] + [UPDATED_AT_COLUMN]

        statement = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({keys}) DO UPDATE SET {updates} "
            "WHERE {table}.{position} < EXCLUDED.{position}"
        ).format(
            table=self._qualified(write.table_id),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            keys=sql.SQL(", ").join(sql.Identifier(c) for c in write.key_columns),
            updates=sql.SQL(", ").join(
                sql.SQL("{} = now()").format(sql.Identifier(c))
                if c == UPDATED_AT_COLUMN
                else sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c))
                for c in updates
            ),
            position=sql.Identifier(POSITION_COLUMN),
        )
        return statement, values

    def write_batch(self, writes: Sequence[RowWrite]) -> int:
        """
        Apply writes in a single transaction.

        Raises:
            TransientIOError: On connection loss; the transaction is rolled back
            SinkWriteError: On any other database error
        """
        if not writes:
            return 0
        conn = self.connection.get_connection()
        changed = 0
        try:
            with conn.cursor() as cursor:
                for write in writes:
                    self._ensure_table(cursor, write.table_id, list(write.row or {}))
                    statement, values = self._upsert_statement(write)
                    cursor.execute(statement, values)
                    changed += cursor.rowcount
            conn.commit()
            return changed
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._columns.clear()
            self.connection.reset()
            raise TransientIOError(f"Postgres write failed: {e}") from e
        except psycopg2.Error as e:
            conn.rollback()
            self._columns.clear()
            raise SinkWriteError(f"Postgres rejected batch: {e}") from e

    def flush(self) -> None:
        # Every write_batch commits before returning.
        pass

    def close(self) -> None:
        self.connection.close()
