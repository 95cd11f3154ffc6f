from __future__ import annotations

import json

import pytest

from eco_capacity.event_bus.kafka import (
    KafkaConfig,
    _base_conf,
    _decode_kafka_payload,
    _kafka_record_timestamp_utc,
    _strip_scheme,
    _validate,
    kafka_config_from_env,
)


def test_strip_scheme() -> None:
    assert _strip_scheme("SASL_SSL://broker:9092") == "broker:9092"
    assert _strip_scheme("plaintext://broker:9092") == "broker:9092"
    assert _strip_scheme(" broker:9092 ") == "broker:9092"


def test_validate_requires_bootstrap_and_sasl_credentials() -> None:
    with pytest.raises(RuntimeError, match="KAFKA_BOOTSTRAP_SERVERS_MISSING"):
        _validate(KafkaConfig(bootstrap_servers=" "))
    with pytest.raises(RuntimeError, match="KAFKA_SASL_CREDENTIALS_MISSING"):
        _validate(KafkaConfig(bootstrap_servers="broker:9092"))
    _validate(KafkaConfig(bootstrap_servers="broker:9092", security_protocol="PLAINTEXT"))


def test_base_conf_only_sets_sasl_for_sasl_protocols() -> None:
    plain = _base_conf(KafkaConfig(bootstrap_servers="PLAINTEXT://b:9092", security_protocol="PLAINTEXT"))
    assert plain["bootstrap.servers"] == "b:9092"
    assert "sasl.mechanism" not in plain
    sasl = _base_conf(KafkaConfig(bootstrap_servers="b:9092", sasl_username="u", sasl_password="p"))
    assert sasl["sasl.username"] == "u"


def test_kafka_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "broker:9092")
    monkeypatch.setenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT")
    monkeypatch.setenv("KAFKA_POLL_TIMEOUT_MS", "250")
    monkeypatch.delenv("KAFKA_SASL_USERNAME", raising=False)
    monkeypatch.delenv("KAFKA_SASL_PASSWORD", raising=False)
    config = kafka_config_from_env(client_id="node-a")
    assert config.bootstrap_servers == "broker:9092"
    assert config.security_protocol == "PLAINTEXT"
    assert config.client_id == "node-a"
    assert config.poll_timeout_ms == 250
    assert config.sasl_username is None


def test_decode_payload_is_lenient() -> None:
    assert _decode_kafka_payload(json.dumps({"channel": "policies"}).encode("utf-8")) == {"channel": "policies"}
    assert _decode_kafka_payload(b"not json") == {}
    assert _decode_kafka_payload(b"[1, 2]") == {}
    assert _decode_kafka_payload(None) == {}


def test_record_timestamp() -> None:
    assert _kafka_record_timestamp_utc(0) is None
    assert _kafka_record_timestamp_utc("bad") is None
    assert _kafka_record_timestamp_utc(1767225600000) == "2026-01-01T00:00:00+00:00"
