"""Debezium change envelope decoder."""

from typing import Any, Dict, Optional

from cdc_engine.common.errors import DecodeError, SchemaError
from cdc_engine.common.models import ChangeEvent, Operation, RawChangeRecord, SourcePosition, TableId
from cdc_engine.common.utils import parse_cdc_timestamp
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)


class EventDecoder:
    """Decodes Debezium-style change envelopes into ChangeEvents."""

    OPERATION_MAP = {
        "c": Operation.INSERT,  # create
        "r": Operation.INSERT,  # read (snapshot)
        "u": Operation.UPDATE,  # update
        "d": Operation.DELETE,  # delete
    }

    REVERSE_OPERATION_MAP = {
        Operation.INSERT: "c",
        Operation.UPDATE: "u",
        Operation.DELETE: "d",
    }

    def decode(self, record: RawChangeRecord) -> Optional[ChangeEvent]:
        """
        Decode one raw change record.

        Supports both:
        - Bare envelope (with 'op', 'before', 'after', 'source')
        - JSON converter output with schemas enabled (envelope under 'payload')

        Args:
            record: Raw record from the source log

        Returns:
            ChangeEvent, or None for control records (tombstones, heartbeats)

        Raises:
            DecodeError: If the record is malformed
        """
        payload = record.payload
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise DecodeError(f"payload is {type(payload).__name__}, expected an object", record.position)

        if "payload" in payload and "op" not in payload:
            payload = payload["payload"]
            if payload is None:
                return None
            if not isinstance(payload, dict):
                raise DecodeError("envelope 'payload' is not an object", record.position)

        if "op" not in payload:
            raise DecodeError("missing 'op' field", record.position)
        if "source" not in payload or not isinstance(payload["source"], dict):
            raise DecodeError("missing 'source' field", record.position)

        operation = self.OPERATION_MAP.get(payload["op"])
        if operation is None:
            raise DecodeError(f"unknown operation code {payload['op']!r}", record.position)

        table_id = self._table_id(payload["source"], record.position)
        before = self._image(payload, "before", record.position)
        after = self._image(payload, "after", record.position)
        if operation is Operation.INSERT:
            before = None

        origin = payload.get("origin_position")
        try:
            return ChangeEvent(
                source_position=record.position,
                table_id=table_id,
                operation=operation,
                before_image=before,
                after_image=after,
                commit_timestamp=self._commit_timestamp(payload),
                origin_position=SourcePosition.from_dict(origin) if origin else None,
            )
        except SchemaError as e:
            raise DecodeError(f"{operation.value} on {table_id}: {e}", record.position) from e
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"invalid origin position {origin!r}: {e}", record.position) from e

    def encode(self, event: ChangeEvent) -> Dict[str, Any]:
        """
        Encode a ChangeEvent back into an envelope.

        The event's own position is recorded as ``origin_position`` so a consumer
        reading the envelope from another log keeps the original source position.
        """
        ts_ms = int(event.commit_timestamp.timestamp() * 1000) if event.commit_timestamp else None
        origin = event.origin_position or event.source_position
        return {
            "op": self.REVERSE_OPERATION_MAP[event.operation],
            "before": dict(event.before_image) if event.before_image is not None else None,
            "after": dict(event.after_image) if event.after_image is not None else None,
            "source": {"db": event.table_id.schema, "table": event.table_id.name, "ts_ms": ts_ms},
            "ts_ms": ts_ms,
            "origin_position": origin.to_dict(),
        }

    def _table_id(self, source: Dict[str, Any], position: SourcePosition) -> TableId:
        # Postgres connectors report both db and schema; MySQL only db.
        schema = source.get("schema") or source.get("db")
        table = source.get("table")
        if not schema or not table:
            raise DecodeError("source block lacks db/schema or table", position)
        return TableId(schema=str(schema), name=str(table))

    def _image(self, payload: Dict[str, Any], key: str, position: SourcePosition) -> Optional[Dict[str, Any]]:
        image = payload.get(key)
        if image is not None and not isinstance(image, dict):
            raise DecodeError(f"'{key}' image is not an object", position)
        return image

    def _commit_timestamp(self, payload: Dict[str, Any]) -> Any:
        ts_ms = payload["source"].get("ts_ms", payload.get("ts_ms"))
        try:
            return parse_cdc_timestamp(ts_ms)
        except (ValueError, OverflowError, OSError) as e:
            logger.warning(f"Failed to parse timestamp {ts_ms}: {e}")
            return None
