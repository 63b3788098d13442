"""
Unit tests for RelaySettings validation and producer config.
"""

import pytest

from cdc_relay.errors import ConfigurationError
from cdc_relay.models import META_TOPIC
from cdc_relay.settings import DEFAULT_TOPIC, RelaySettings, load_settings


def test_defaults(make_settings):
    settings = make_settings()
    assert settings.topic == DEFAULT_TOPIC
    assert settings.converter_mode == "transaction"
    assert settings.sql_echo is False
    assert settings.topic_header == META_TOPIC
    assert len(settings.topic_routes) == 0
    assert not settings.field_filter


def test_missing_bootstrap_servers(monkeypatch):
    monkeypatch.delenv("CDC_RELAY_BOOTSTRAP_SERVERS", raising=False)
    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None)


def test_blank_bootstrap_servers():
    with pytest.raises(ConfigurationError):
        load_settings(bootstrap_servers="  ", _env_file=None)


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("CDC_RELAY_BOOTSTRAP_SERVERS", "broker:9092")
    monkeypatch.setenv("CDC_RELAY_BATCH_SIZE", "7")
    settings = load_settings(_env_file=None)
    assert settings.bootstrap_servers == "broker:9092"
    assert settings.batch_size == 7


def test_specs_are_parsed(make_settings):
    settings = make_settings(
        table_to_topic_map="db.orders:orders-topic:ordersSchema",
        table_fields_filter="db.audit;db.orders:secret",
    )
    assert settings.topic_routes.topic_for("db.orders") == "orders-topic"
    assert settings.field_filter.is_table_excluded("db.audit")
    assert settings.field_filter.is_field_excluded("db.orders", "secret")


def test_malformed_mapping_is_configuration_error():
    with pytest.raises(ConfigurationError):
        load_settings(bootstrap_servers="b:9092", table_to_topic_map="db.orders", _env_file=None)


def test_avro_requires_schema_names():
    with pytest.raises(ConfigurationError):
        load_settings(
            bootstrap_servers="b:9092",
            use_avro=True,
            table_to_topic_map="db.orders:orders-topic",
            _env_file=None,
        )


def test_avro_requires_a_mapping():
    with pytest.raises(ConfigurationError, match="cannot be empty"):
        load_settings(bootstrap_servers="b:9092", use_avro=True, table_to_topic_map="", _env_file=None)


def test_unvalidated_settings_raise_configuration_error():
    settings = RelaySettings.model_construct(bootstrap_servers="b:9092")
    with pytest.raises(ConfigurationError):
        settings.topic_routes
    with pytest.raises(ConfigurationError):
        settings.field_filter


def test_transaction_mode_rejects_multiple_topics():
    with pytest.raises(ConfigurationError, match="one topic"):
        load_settings(
            bootstrap_servers="b:9092",
            table_to_topic_map="db.a:t1;db.b:t2",
            _env_file=None,
        )


def test_row_mode_allows_multiple_topics(make_settings):
    settings = make_settings(converter_mode="row", table_to_topic_map="db.a:t1;db.b:t2")
    assert settings.topic_routes.topics == ["t1", "t2"]


@pytest.mark.parametrize("field", ["batch_size", "trans_max_split_row_num", "channel_capacity"])
def test_non_positive_sizes_rejected(field):
    with pytest.raises(ConfigurationError):
        load_settings(bootstrap_servers="b:9092", _env_file=None, **{field: 0})


def test_kafka_producer_config(make_settings):
    settings = make_settings(
        acks="1",
        producer_config={"linger.ms": 5, "bootstrap.servers": "ignored:1"},
    )
    conf = settings.kafka_producer_config()
    assert conf["acks"] == "1"
    assert conf["linger.ms"] == 5
    assert conf["bootstrap.servers"] == "localhost:9092"
