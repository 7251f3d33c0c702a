"""Configuration management for the CDC engine."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Pipeline runtime configuration."""

    model_config = SettingsConfigDict(env_prefix="CDC_")

    pipeline_id: str = "cdc-pipeline"
    mode: Literal["direct", "buffered"] = "direct"
    source: Literal["mysql", "kafka"] = "mysql"
    state_store: Literal["file", "postgres", "memory"] = "file"
    start_position: Literal["earliest", "latest", "initial"] = "earliest"
    batch_size: int = 100
    batch_timeout_seconds: float = 0.2
    queue_size: int = 1000
    poll_interval_seconds: float = 0.5
    checkpoint_interval_seconds: float = 5.0
    checkpoint_every_events: int = 1000
    stall_timeout_seconds: float = 60.0
    decode_failure_policy: Literal["fail", "skip"] = "fail"
    sink_max_retries: int = 3
    sink_recovery_interval_seconds: float = 5.0
    retry_initial_delay_seconds: float = 0.5
    retry_backoff_factor: float = 2.0
    retry_max_delay_seconds: float = 30.0
    source_max_retries: int = 10
    lease_ttl_seconds: float = 30.0
    shutdown_timeout_seconds: float = 30.0
    state_dir: str = ".cdc-state"


class MySQLConfig(BaseSettings):
    """MySQL source configuration."""

    model_config = SettingsConfigDict(env_prefix="MYSQL_")

    user: str = "cdcuser"
    password: str = "cdcpass"
    db: str = "cdcdb"
    host: str = "localhost"
    port: int = 3306
    server_id: int = 5400
    tables: List[str] = Field(default_factory=list)


class PostgresConfig(BaseSettings):
    """Postgres configuration (upsert sink and position store)."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    user: str = "cdcuser"
    password: str = "cdcpass"
    db: str = "cdcdb"
    host: str = "localhost"
    port: int = 5432


class KafkaConfig(BaseSettings):
    """Kafka configuration."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = "localhost:29092"
    topic_prefix: str = "cdc"
    transport_topic: str = "cdc.events"
    source_topic: str = "cdc.source"
    consumer_group: str = "cdc-engine"


class StarRocksConfig(BaseSettings):
    """StarRocks OLAP sink configuration."""

    model_config = SettingsConfigDict(env_prefix="STARROCKS_")

    load_url: str = "http://localhost:8030"
    database: str = "analytics"
    user: str = "root"
    password: str = ""
    max_rows: int = 1000
    flush_interval_seconds: float = 1.0
    timeout_seconds: float = 60.0


class ObservabilityConfig(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_port: int = Field(default=8000, alias="METRICS_PORT")
    health_check_port: int = Field(default=8001, alias="HEALTH_CHECK_PORT")


class Settings(BaseSettings):
    """Main settings container."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    mysql: MySQLConfig = Field(default_factory=MySQLConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    starrocks: StarRocksConfig = Field(default_factory=StarRocksConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class SinkConfig(BaseModel):
    """One sink declaration in a topology file."""

    id: str
    kind: Literal["upsert", "append", "olap"]
    target: Literal["memory", "postgres", "jsonl", "kafka", "starrocks", "console"] = "memory"
    primary_keys: Dict[str, List[str]] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_target(self) -> "SinkConfig":
        allowed = {
            "upsert": {"memory", "postgres"},
            "append": {"memory", "jsonl", "kafka", "console"},
            "olap": {"memory", "starrocks"},
        }
        if self.target not in allowed[self.kind]:
            raise ValueError(f"sink {self.id}: target '{self.target}' is not valid for kind '{self.kind}'")
        if self.kind in ("upsert", "olap") and not self.primary_keys:
            raise ValueError(f"sink {self.id}: primary_keys are required for kind '{self.kind}'")
        return self


class TopologyConfig(BaseModel):
    """Sinks and table-to-sink bindings of one pipeline instance."""

    sinks: List[SinkConfig]
    bindings: Dict[str, List[str]]

    @field_validator("bindings")
    @classmethod
    def _bindings_not_empty(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        if not value:
            raise ValueError("at least one table binding is required")
        return value

    @model_validator(mode="after")
    def _check_references(self) -> "TopologyConfig":
        sink_ids = [sink.id for sink in self.sinks]
        if len(sink_ids) != len(set(sink_ids)):
            raise ValueError("sink ids must be unique")
        for table, targets in self.bindings.items():
            if "." not in table:
                raise ValueError(f"table '{table}' must be written as schema.table")
            unknown = set(targets) - set(sink_ids)
            if unknown:
                raise ValueError(f"table '{table}' is bound to unknown sinks: {sorted(unknown)}")
        return self


def load_topology(path: Optional[str]) -> TopologyConfig:
    """
    Load a topology file.

    Args:
        path: Path to a JSON topology file

    Returns:
        Validated topology
    """
    if path is None:
        raise ValueError("a topology file is required")
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return TopologyConfig.model_validate(data)
