"""Postgres connection management shared by the upsert target and the position store."""

import time
from typing import Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from cdc_engine.common.config import PostgresConfig
from cdc_engine.common.errors import TransientIOError
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)


class PostgresConnectionManager:
    """Manages a PostgreSQL connection for a sink target or store."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        """
        Initialize Postgres connection manager.

        Args:
            host: Database host
            port: Database port
            user: Database user
            password: Database password
            database: Database name
            max_retries: Maximum connection retry attempts
            retry_delay: Delay between retries in seconds
        """
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._connection: Optional[psycopg2.extensions.connection] = None

    @classmethod
    def from_config(cls, config: PostgresConfig) -> "PostgresConnectionManager":
        return cls(config.host, config.port, config.user, config.password, config.db)

    def get_connection(self) -> psycopg2.extensions.connection:
        """
        Get database connection with retry logic.

        Returns:
            PostgreSQL connection

        Raises:
            TransientIOError: If connection fails after all retries
        """
        if self._connection and not self._connection.closed:
            return self._connection

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Connecting to Postgres at {self.host}:{self.port}/{self.database} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                self._connection = psycopg2.connect(
                    host=self.host,
                    port=self.port,
                    user=self.user,
                    password=self.password,
                    database=self.database,
                    cursor_factory=RealDictCursor,
                )
                logger.info("Successfully connected to Postgres")
                return self._connection
            except psycopg2.OperationalError as e:
                last_exception = e
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay)

        logger.error(f"Failed to connect after {self.max_retries} attempts")
        raise TransientIOError(f"cannot connect to Postgres: {last_exception}")

    def reset(self) -> None:
        """Drop the current connection so the next call reconnects."""
        if self._connection is not None:
            try:
                self._connection.close()
            except psycopg2.Error:
                pass
        self._connection = None

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def close(self) -> None:
        """Close database connection."""
        if self._connection and not self._connection.closed:
            self._connection.close()
            logger.info("Closed Postgres connection")
