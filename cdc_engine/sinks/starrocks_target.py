"""StarRocks Stream Load target (primary-key tables)."""

import json
from typing import Any, Dict, List, Optional

import httpx

from cdc_engine.common.config import StarRocksConfig
from cdc_engine.common.errors import SinkWriteError, TransientIOError
from cdc_engine.common.models import TableId
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)

LOADED_STATUSES = {"Success", "Publish Timeout"}


class StarRocksStreamLoadTarget:
    """
    Loads JSON rows through the Stream Load HTTP API.

    The label makes a load idempotent: a retried load whose label the store has
    already committed is answered with "Label Already Exists" and counts as done.
    Rows carry the ``__op`` column, so upserts and deletes share one load.
    """

    def __init__(self, config: StarRocksConfig, table_map: Optional[Dict[str, str]] = None) -> None:
        """
        Initialize Stream Load target.

        Args:
            config: StarRocks configuration
            table_map: Optional source table id -> StarRocks table name
        """
        self.config = config
        self.table_map = table_map or {}
        self._client: Optional[httpx.Client] = None

    def open(self) -> None:
        if self._client is None:
            self._client = httpx.Client(
                auth=(self.config.user, self.config.password),
                timeout=self.config.timeout_seconds,
                follow_redirects=False,
            )
        logger.info(f"StarRocks Stream Load target at {self.config.load_url}/{self.config.database}")

    def _table_name(self, table_id: TableId) -> str:
        return self.table_map.get(str(table_id), table_id.name)

    def _url(self, table_id: TableId) -> str:
        return f"{self.config.load_url.rstrip('/')}/api/{self.config.database}/{self._table_name(table_id)}/_stream_load"

    def _headers(self, rows: List[Dict[str, Any]], label: str) -> Dict[str, str]:
        columns: List[str] = []
        for row in rows:
            for name in row:
                if name not in columns:
                    columns.append(name)
        return {
            "label": label,
            "format": "json",
            "strip_outer_array": "true",
            "columns": ",".join(f"`{c}`" for c in columns),
            "jsonpaths": json.dumps([f"$.{c}" for c in columns]),
            "Content-Type": "application/json",
        }

    def load(self, table_id: TableId, rows: List[Dict[str, Any]], label: str) -> None:
        """
        Run one Stream Load and wait for its outcome.

        Raises:
            TransientIOError: On connection errors, 5xx responses or a load still in progress
            SinkWriteError: When StarRocks rejects the data or the request
        """
        if self._client is None:
            self.open()
        body = json.dumps(rows, default=str).encode("utf-8")
        headers = self._headers(rows, label)
        url = self._url(table_id)

        try:
            response = self._client.put(url, content=body, headers=headers)
            # The FE answers with a redirect to a BE; auth has to be sent again.
            if response.status_code in (301, 302, 307, 308):
                response = self._client.put(response.headers["location"], content=body, headers=headers)
        except httpx.TransportError as e:
            raise TransientIOError(f"Stream Load to {table_id} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientIOError(f"Stream Load to {table_id} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise SinkWriteError(f"Stream Load to {table_id} rejected: HTTP {response.status_code} {response.text}")

        try:
            result = response.json()
        except ValueError as e:
            raise TransientIOError(f"Stream Load to {table_id} returned a non-JSON body") from e

        status = result.get("Status")
        if status in LOADED_STATUSES:
            logger.debug(f"Loaded {len(rows)} rows into {table_id} (label {label}, status {status})")
            return
        if status == "Label Already Exists":
            existing = result.get("ExistingJobStatus", "FINISHED")
            if existing in ("FINISHED", "VISIBLE", "COMMITTED"):
                logger.info(f"Label {label} already loaded into {table_id}")
                return
            raise TransientIOError(f"load with label {label} is still {existing}")
        raise SinkWriteError(f"Stream Load to {table_id} failed ({status}): {result.get('Message')}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
