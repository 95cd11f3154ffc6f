"""Kafka Event Bus adapters for cross-instance change notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
import time
from typing import Any

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition

from .publisher import EbRef
from .reader import EbRecord

logger = logging.getLogger("eco_capacity.event_bus")


@dataclass(frozen=True)
class KafkaConfig:
    bootstrap_servers: str
    security_protocol: str = "SASL_SSL"
    sasl_mechanism: str = "PLAIN"
    sasl_username: str | None = None
    sasl_password: str | None = None
    client_id: str = "eco-capacity"
    request_timeout_ms: int = 15000
    retries: int = 3
    poll_timeout_ms: int = 500


def _strip_scheme(value: str) -> str:
    v = value.strip()
    for prefix in ("SASL_SSL://", "PLAINTEXT://", "SSL://"):
        if v.upper().startswith(prefix):
            return v[len(prefix) :]
    return v


def _base_conf(config: KafkaConfig) -> dict[str, Any]:
    conf: dict[str, Any] = {
        "bootstrap.servers": _strip_scheme(config.bootstrap_servers),
        "security.protocol": config.security_protocol,
        "client.id": config.client_id,
    }
    if config.security_protocol.upper().startswith("SASL"):
        conf["sasl.mechanism"] = config.sasl_mechanism
        conf["sasl.username"] = config.sasl_username or ""
        conf["sasl.password"] = config.sasl_password or ""
    return conf


def _validate(config: KafkaConfig) -> None:
    if not config.bootstrap_servers.strip():
        raise RuntimeError("KAFKA_BOOTSTRAP_SERVERS_MISSING")
    if config.security_protocol.upper().startswith("SASL") and not (config.sasl_username and config.sasl_password):
        raise RuntimeError("KAFKA_SASL_CREDENTIALS_MISSING")


class KafkaEventBusPublisher:
    def __init__(self, config: KafkaConfig) -> None:
        _validate(config)
        self.config = config
        conf = _base_conf(config)
        conf["request.timeout.ms"] = max(1000, int(config.request_timeout_ms))
        conf["message.send.max.retries"] = max(0, int(config.retries))
        conf["enable.idempotence"] = True
        self._producer = Producer(conf)

    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        if not topic:
            raise RuntimeError("KAFKA_TOPIC_MISSING")
        payload_bytes = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
        delivery: dict[str, Any] = {}

        def _on_delivery(err, msg) -> None:
            delivery["error"] = err
            delivery["message"] = msg

        self._producer.produce(
            topic=topic,
            key=(partition_key or "").encode("utf-8"),
            value=payload_bytes,
            on_delivery=_on_delivery,
        )
        deadline = time.monotonic() + (max(1000, int(self.config.request_timeout_ms)) / 1000.0)
        while "message" not in delivery and "error" not in delivery:
            self._producer.poll(0.1)
            if time.monotonic() >= deadline:
                raise RuntimeError("KAFKA_PUBLISH_TIMEOUT")
        err = delivery.get("error")
        if err is not None:
            raise RuntimeError(f"KAFKA_PUBLISH_ERROR:{err}")
        msg = delivery["message"]
        logger.info(
            "EB publish kafka topic=%s partition=%s offset=%s bytes=%s",
            topic,
            msg.partition(),
            msg.offset(),
            len(payload_bytes),
        )
        return EbRef(
            topic=topic,
            partition=int(msg.partition()),
            offset=str(msg.offset()),
            offset_kind="kafka_offset",
            published_at_utc=datetime.now(tz=timezone.utc).isoformat(),
        )


class KafkaEventBusReader:
    """Offset-addressed reader with the same shape as the file-bus reader."""

    def __init__(self, config: KafkaConfig) -> None:
        _validate(config)
        self.config = config
        conf = _base_conf(config)
        conf["group.id"] = f"{config.client_id}-group"
        conf["enable.auto.commit"] = False
        conf["auto.offset.reset"] = "earliest"
        conf["session.timeout.ms"] = max(6000, int(config.request_timeout_ms))
        self._consumer = Consumer(conf)

    def read(
        self,
        topic: str,
        *,
        partition: int = 0,
        from_offset: int = 0,
        max_records: int = 20,
    ) -> list[EbRecord]:
        if not topic or max_records <= 0:
            return []
        self._consumer.assign([TopicPartition(topic, int(partition), max(0, int(from_offset)))])
        records: list[EbRecord] = []
        poll_timeout = max(0.05, int(self.config.poll_timeout_ms) / 1000.0)
        try:
            while len(records) < max_records:
                msg = self._consumer.poll(timeout=poll_timeout)
                if msg is None:
                    break
                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        logger.warning(
                            "Kafka read failed topic=%s partition=%s from_offset=%s detail=%s",
                            topic,
                            partition,
                            from_offset,
                            str(msg.error())[:256],
                        )
                    break
                ts_type, ts_ms = msg.timestamp()
                records.append(
                    EbRecord(
                        topic=topic,
                        partition=int(msg.partition()),
                        offset=int(msg.offset()),
                        record={
                            "partition_key": _decode_key(msg.key()),
                            "payload": _decode_kafka_payload(msg.value()),
                            "published_at_utc": _kafka_record_timestamp_utc(ts_ms if ts_type else None),
                        },
                    )
                )
        except KafkaException as exc:
            logger.warning(
                "Kafka read failed topic=%s partition=%s from_offset=%s detail=%s",
                topic,
                partition,
                from_offset,
                str(exc)[:256],
            )
        return records

    def close(self) -> None:
        self._consumer.close()


def kafka_config_from_env(*, client_id: str) -> KafkaConfig:
    bootstrap = (os.getenv("KAFKA_BOOTSTRAP_SERVERS") or "").strip()
    username = (os.getenv("KAFKA_SASL_USERNAME") or "").strip()
    password = (os.getenv("KAFKA_SASL_PASSWORD") or "").strip()
    return KafkaConfig(
        bootstrap_servers=bootstrap,
        security_protocol=(os.getenv("KAFKA_SECURITY_PROTOCOL") or "SASL_SSL").strip(),
        sasl_mechanism=(os.getenv("KAFKA_SASL_MECHANISM") or "PLAIN").strip(),
        sasl_username=username or None,
        sasl_password=password or None,
        client_id=client_id,
        request_timeout_ms=int(os.getenv("KAFKA_REQUEST_TIMEOUT_MS") or "15000"),
        retries=int(os.getenv("KAFKA_PUBLISH_RETRIES") or "3"),
        poll_timeout_ms=int(os.getenv("KAFKA_POLL_TIMEOUT_MS") or "500"),
    )


def _decode_key(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return "" if value is None else str(value)


def _decode_kafka_payload(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (bytes, str)):
        try:
            decoded = json.loads(value.decode("utf-8") if isinstance(value, bytes) else value)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _kafka_record_timestamp_utc(timestamp_ms: Any) -> str | None:
    try:
        value = int(timestamp_ms)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).isoformat()
