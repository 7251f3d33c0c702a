"""
Pytest configuration and shared fixtures for CDC engine tests.
"""

import os

import pytest

# Keep settings deterministic regardless of the developer's environment.
os.environ.setdefault("CDC_STATE_STORE", "memory")


@pytest.fixture
def fast_settings():
    """Pipeline settings with short timeouts so threaded tests finish quickly."""
    from cdc_engine.common.config import PipelineSettings

    return PipelineSettings(
        pipeline_id="test-pipeline",
        batch_size=10,
        batch_timeout_seconds=0.02,
        queue_size=50,
        poll_interval_seconds=0.02,
        checkpoint_interval_seconds=0.05,
        checkpoint_every_events=5,
        stall_timeout_seconds=0.5,
        sink_max_retries=1,
        sink_recovery_interval_seconds=0.05,
        retry_initial_delay_seconds=0.01,
        retry_backoff_factor=1.0,
        retry_max_delay_seconds=0.01,
        source_max_retries=3,
        lease_ttl_seconds=30.0,
        shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
def source_log():
    """Empty in-memory source log."""
    from cdc_engine.source.memory_log import InMemorySourceLog

    return InMemorySourceLog()


@pytest.fixture
def kv_store():
    from cdc_engine.checkpoint.kv_store import InMemoryKeyValueStore

    return InMemoryKeyValueStore()


@pytest.fixture
def position_store(kv_store):
    """Position store for ``test-pipeline`` over an in-memory KV store."""
    from cdc_engine.checkpoint.position_store import PositionStore

    return PositionStore(kv_store, "test-pipeline", owner_id="owner-a")


@pytest.fixture
def mock_postgres_connection():
    """Mock PostgreSQL connection manager with a RealDictCursor-like cursor."""
    from unittest.mock import MagicMock, Mock

    manager = MagicMock()
    mock_conn = MagicMock()
    mock_cursor = MagicMock()

    mock_cursor.description = [("col1",), ("col2",)]
    mock_cursor.fetchall.return_value = []
    mock_cursor.rowcount = 1
    mock_cursor.__enter__ = Mock(return_value=mock_cursor)
    mock_cursor.__exit__ = Mock(return_value=False)

    mock_conn.cursor.return_value = mock_cursor
    mock_conn.closed = 0
    manager.get_connection.return_value = mock_conn

    yield {"manager": manager, "connection": mock_conn, "cursor": mock_cursor}
