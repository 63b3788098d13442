"""
Relay settings loaded from environment (CDC_RELAY_*) or a .env file.
"""

from __future__ import annotations

import socket
from functools import lru_cache
from typing import Any, Literal, Optional

from pydantic import Field, PrivateAttr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import META_TOPIC
from .routing import FieldFilterIndex, TopicRoutes

DEFAULT_TOPIC = "default-flume-topic"


def local_ip() -> str:
    """Best-effort address of this host, used as the agent identity."""
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class RelaySettings(BaseSettings):
    # destination
    bootstrap_servers: str
    topic: str = DEFAULT_TOPIC
    acks: str = "all"
    producer_config: dict[str, Any] = Field(default_factory=dict)
    allow_topic_override: bool = True
    topic_header: str = META_TOPIC
    partition_header: Optional[str] = None
    static_partition_id: Optional[int] = None

    # sink
    batch_size: int = 100
    send_error_file: str = "kafka_send_error.log"
    alert_enabled: bool = True
    alert_topic: str = "alert"

    # conversion
    converter_mode: Literal["row", "transaction"] = "transaction"
    trans_max_split_row_num: int = 100
    sql_echo: bool = False
    table_to_topic_map: str = ""
    table_fields_filter: str = ""
    old_data_required: bool = False
    sql_topic: str = "sql"
    sql_schema_name: str = "sql"

    # serialization
    use_avro: bool = False
    schema_registry_url: Optional[str] = None

    # counters / identity
    flow_counter_enabled: bool = True
    counter_time_format: str = "%Y-%m-%d %H:%M"
    agent_address: str = Field(default_factory=local_ip)
    source_address: str = ""

    # runtime
    channel_capacity: int = 10_000
    backoff_seconds: float = 0.1
    router_cache_size: int = 4096

    model_config = SettingsConfigDict(
        env_prefix="CDC_RELAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    _topic_routes: Optional[TopicRoutes] = PrivateAttr(default=None)
    _field_filter: Optional[FieldFilterIndex] = PrivateAttr(default=None)

    @field_validator("bootstrap_servers")
    @classmethod
    def _require_servers(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Bootstrap Servers must be specified")
        return v.strip()

    @field_validator("batch_size", "trans_max_split_row_num", "channel_capacity", "router_cache_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @model_validator(mode="after")
    def _parse_specs(self) -> "RelaySettings":
        try:
            routes = TopicRoutes.parse(
                self.table_to_topic_map,
                require_schema=self.use_avro,
                cache_size=self.router_cache_size,
            )
            field_filter = FieldFilterIndex.parse(
                self.table_fields_filter, cache_size=self.router_cache_size
            )
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc

        if self.use_avro and len(routes) == 0:
            raise ValueError("table_to_topic_map cannot be empty when use_avro is enabled")

        # a whole-transaction batch can only go to one topic
        if self.converter_mode == "transaction" and len(routes.topics) > 1:
            raise ValueError(
                "transaction mode maps every batch to one topic; "
                f"table_to_topic_map names {len(routes.topics)}: {routes.topics}"
            )

        self._topic_routes = routes
        self._field_filter = field_filter
        return self

    @property
    def topic_routes(self) -> TopicRoutes:
        if self._topic_routes is None:
            raise ConfigurationError("table_to_topic_map was not parsed")
        return self._topic_routes

    @property
    def field_filter(self) -> FieldFilterIndex:
        if self._field_filter is None:
            raise ConfigurationError("table_fields_filter was not parsed")
        return self._field_filter

    def kafka_producer_config(self) -> dict[str, Any]:
        """confluent-kafka Producer properties; explicit settings win."""
        conf: dict[str, Any] = {"acks": self.acks}
        conf.update(self.producer_config)
        conf["bootstrap.servers"] = self.bootstrap_servers
        return conf

    def summary(self) -> dict[str, Any]:
        return {
            "bootstrap_servers": self.bootstrap_servers,
            "topic": self.topic,
            "converter_mode": self.converter_mode,
            "batch_size": self.batch_size,
            "trans_max_split_row_num": self.trans_max_split_row_num,
            "use_avro": self.use_avro,
            "routes": [r.__dict__ for r in self.topic_routes.routes],
            "send_error_file": self.send_error_file,
            "agent_address": self.agent_address,
        }


def load_settings(**overrides: Any) -> RelaySettings:
    """Build settings, converting validation failures into ConfigurationError."""
    try:
        return RelaySettings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


@lru_cache()
def get_settings() -> RelaySettings:
    return load_settings()
