"""Pydantic configuration models for the change relay."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*$")


class TableKind(StrEnum):
    """How captured rows of a table are interpreted downstream."""

    ORDER = "order"
    OUTBOX = "outbox"
    GENERIC = "generic"


class DatabaseConfig(BaseModel):
    """Connection settings for a PostgreSQL database.

    Either a full libpq ``dsn`` or the discrete host/port/database fields
    may be given.  An explicit ``dsn`` wins.
    """

    dsn: SecretStr | None = None
    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "postgres"
    username: str = "postgres"
    password: SecretStr = SecretStr("postgres")
    connect_timeout_seconds: int = Field(default=10, ge=1)

    def conninfo(self) -> str:
        """Return a libpq connection string for psycopg."""
        if self.dsn is not None:
            return self.dsn.get_secret_value()
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.username} password={self.password.get_secret_value()} "
            f"connect_timeout={self.connect_timeout_seconds}"
        )

    def describe(self) -> str:
        """Connection summary without credentials, safe for logs."""
        if self.dsn is not None:
            return "dsn=***"
        return f"{self.username}@{self.host}:{self.port}/{self.database}"


class TableConfig(BaseModel):
    """A captured table and the columns used for change detection.

    Tables with an ``updated_column`` use the tracked query shape (inserts and
    updates); tables without one only yield inserts.
    """

    name: str
    schema_name: str = "public"
    kind: TableKind = TableKind.GENERIC
    primary_key: str = "id"
    created_column: str = "created_at"
    updated_column: str | None = "updated_at"

    @field_validator("schema_name", "primary_key", "created_column", "updated_column")
    @classmethod
    def validate_identifier(cls, v: str | None) -> str | None:
        if v is not None and not _IDENTIFIER.match(v):
            msg = f"'{v}' is not a valid SQL identifier"
            raise ValueError(msg)
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _IDENTIFIER.match(v):
            msg = f"Table name '{v}' must be an unqualified identifier (e.g. 'orders')"
            raise ValueError(msg)
        return v

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"


class PollerConfig(BaseModel):
    """Timestamp-watermark change poller settings."""

    enabled: bool = True
    interval_seconds: float = Field(default=5.0, gt=0)
    status_interval_seconds: float = Field(default=30.0, gt=0)
    initial_lookback_seconds: float = Field(default=60.0, ge=0)
    # Per-table bound on cached row images used as UPDATE before-images.
    snapshot_cache_size: int = Field(default=10_000, ge=0)


class OutboxConfig(BaseModel):
    """Outbox table and drain worker settings."""

    enabled: bool = True
    schema_name: str = "public"
    table_name: str = "outbox_events"
    interval_seconds: float = Field(default=1.0, gt=0)
    batch_size: int = Field(default=100, ge=1)
    error_backoff_multiplier: float = Field(default=5.0, ge=1.0)
    create_table: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


class RetryConfig(BaseModel):
    """Exponential backoff with a hard attempt ceiling."""

    base_delay_seconds: float = Field(default=5.0, gt=0)
    max_delay_seconds: float = Field(default=300.0, gt=0)
    max_attempts: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def validate_delays(self) -> Self:
        if self.max_delay_seconds < self.base_delay_seconds:
            msg = "max_delay_seconds must be >= base_delay_seconds"
            raise ValueError(msg)
        return self


class ReplicationConfig(BaseModel):
    """Logical replication objects supervised by the coordinator."""

    enabled: bool = True
    slot_name: str = "order_events_slot"
    publication_name: str = "cdc_publication"
    subscription_name: str = "local_subscription"
    output_plugin: str = "pgoutput"
    create_slot_if_missing: bool = True
    auto_create_subscription: bool = True
    copy_existing_data: bool = True
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    # Drain pending slot changes into the batch processor on each heartbeat.
    consume_slot_changes: bool = False
    max_changes_per_read: int = Field(default=1000, ge=1)
    force_cleanup_wait_seconds: float = Field(default=2.0, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("slot_name", "publication_name", "subscription_name")
    @classmethod
    def validate_object_name(cls, v: str) -> str:
        if not _IDENTIFIER.match(v):
            msg = f"Replication object name '{v}' must be a plain identifier"
            raise ValueError(msg)
        return v


class HealthMonitorConfig(BaseModel):
    """Replication slot health monitor settings."""

    enabled: bool = True
    interval_seconds: float = Field(default=60.0, gt=0)
    lag_threshold_ms: float = Field(default=30_000.0, ge=0)
    # Assumed WAL apply throughput used to turn lag bytes into milliseconds.
    throughput_bytes_per_second: float = Field(default=1024.0 * 1024.0, gt=0)


class ProcessorConfig(BaseModel):
    """Batch event processor settings."""

    batch_size: int = Field(default=1000, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
    allowed_tables: list[str] = Field(
        default_factory=lambda: ["orders", "outbox_events"]
    )
    forward_to_registry: bool = True
    dead_letter_enabled: bool = True
    dead_letter_table: str = "cdc_dead_letter_events"


class RelayConfig(BaseModel):
    """Root configuration for a relay process."""

    relay_id: str = "cdc-relay"
    source: DatabaseConfig | None = None
    # Subscriber database for native logical replication; None disables it.
    target: DatabaseConfig | None = None
    tables: list[TableConfig] = Field(
        default_factory=lambda: [
            TableConfig(name="orders", kind=TableKind.ORDER),
            TableConfig(name="outbox_events", kind=TableKind.OUTBOX),
        ]
    )
    poller: PollerConfig = Field(default_factory=PollerConfig)
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    replication: ReplicationConfig = Field(default_factory=ReplicationConfig)
    health_monitor: HealthMonitorConfig = Field(default_factory=HealthMonitorConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    health_enabled: bool = False
    health_port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = "info"
    log_json: bool = False

    @field_validator("relay_id")
    @classmethod
    def validate_relay_id(cls, v: str) -> str:
        if not re.match(r"^[a-z0-9][a-z0-9\-]*$", v):
            msg = "relay_id must be lowercase alphanumeric with hyphens"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_unique_tables(self) -> Self:
        seen: set[str] = set()
        for table in self.tables:
            key = table.qualified_name.lower()
            if key in seen:
                msg = f"Duplicate table '{table.qualified_name}'"
                raise ValueError(msg)
            seen.add(key)
        return self

    def tables_of_kind(self, kind: TableKind) -> list[TableConfig]:
        return [t for t in self.tables if t.kind == kind]
