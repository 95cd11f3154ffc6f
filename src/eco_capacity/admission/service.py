"""Capacity service wiring: stores, bus, engine, controller, alerts (Phase 7)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Any, Mapping

from eco_capacity.event_bus import EventBusPublisher, EventBusReader, EventBusSource, FileEventBusPublisher

from .alerts import EcologicalAlertGenerator
from .config import (
    CapacityConfigError,
    CapacityPolicyBundle,
    CapacityRuntimeConfig,
    default_policy_bundle,
    load_policy_bundle,
)
from .contracts import (
    CapacityAdjustment,
    CapacityResult,
    DestinationSnapshot,
    EcologicalIndicators,
    WeatherSnapshot,
    as_utc,
)
from .controller import AdmissionController
from .engine import REGISTRY_LOOKUP, DynamicCapacityEngine
from .notify import CHANNEL_OVERRIDES, CHANNEL_POLICIES, ConfigChangeListener, ConfigChangeNotifier
from .overrides import CapacityOverrideRegistry
from .policy_store import PolicyStore
from .store import ConfigStore, ConfigStoreError, build_config_store

logger = logging.getLogger("eco_capacity.admission.service")


@dataclass
class CapacityService:
    config: CapacityRuntimeConfig
    bundle: CapacityPolicyBundle
    store: ConfigStore
    policies: PolicyStore
    overrides: CapacityOverrideRegistry
    engine: DynamicCapacityEngine
    controller: AdmissionController
    alerts: EcologicalAlertGenerator
    notifier: ConfigChangeNotifier
    listener: ConfigChangeListener

    def start_listener(self) -> tuple[threading.Thread, threading.Event]:
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self.listener.run,
            args=(stop_event,),
            kwargs={"poll_seconds": self.config.poll_seconds},
            name=f"capacity-listener-{self.config.instance_id}",
            daemon=True,
        )
        thread.start()
        return thread, stop_event

    def record_capacity(
        self,
        destination: DestinationSnapshot,
        weather: WeatherSnapshot | Mapping[str, Any] | None = None,
        indicators: EcologicalIndicators | Mapping[str, Any] | None = None,
        *,
        override: Any = REGISTRY_LOOKUP,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> CapacityResult:
        """Compute capacity and append it to the adjustment history.

        A history write failure is logged; the computed result is still returned.
        """
        moment = as_utc(now or datetime.now(tz=timezone.utc))
        result = self.engine.compute_capacity(destination, weather, indicators, override=override, now=moment)
        adjustment = CapacityAdjustment.from_result(destination, result, recorded_at_utc=moment, reason=reason)
        try:
            self.store.log_adjustment(adjustment)
        except ConfigStoreError as exc:
            logger.warning(
                "Capacity adjustment not recorded destination=%s detail=%s", destination.destination_id, exc
            )
        return result

    def adjustment_history(self, destination_id: str | None = None, *, limit: int = 100) -> list[CapacityAdjustment]:
        return self.store.load_adjustment_history(destination_id, limit=limit)


def build_capacity_service(
    config: CapacityRuntimeConfig,
    *,
    publisher: EventBusPublisher | None = None,
    source: EventBusSource | None = None,
) -> CapacityService:
    bundle = load_policy_bundle(config.policy_ref) if config.policy_ref else default_policy_bundle()
    store = build_config_store(config.store_dsn, stream_id=config.stream_id)
    if publisher is None or source is None:
        built_publisher, built_source = _build_bus(config)
        publisher = publisher or built_publisher
        source = source or built_source

    notifier = ConfigChangeNotifier(publisher, instance_id=config.instance_id, topic_prefix=config.bus.topic_prefix)
    policies = PolicyStore(store=store, notifier=notifier, defaults=bundle.policies)
    overrides = CapacityOverrideRegistry(store=store, notifier=notifier, bounds=bundle.override_bounds)

    listener = ConfigChangeListener(source, instance_id=config.instance_id, topic_prefix=config.bus.topic_prefix)
    listener.register(CHANNEL_POLICIES, policies)
    listener.register(CHANNEL_OVERRIDES, overrides)
    listener.seek_to_end()
    policies.load()
    overrides.load()

    engine = DynamicCapacityEngine(policies, overrides, bundle)
    logger.info(
        "Capacity service ready instance=%s policy=%s@%s bus=%s",
        config.instance_id,
        bundle.policy_rev.policy_id,
        bundle.policy_rev.revision,
        config.bus.kind,
    )
    return CapacityService(
        config=config,
        bundle=bundle,
        store=store,
        policies=policies,
        overrides=overrides,
        engine=engine,
        controller=AdmissionController(engine, policies),
        alerts=EcologicalAlertGenerator(policies, thresholds=bundle.hazard_thresholds),
        notifier=notifier,
        listener=listener,
    )


def _build_bus(config: CapacityRuntimeConfig) -> tuple[EventBusPublisher, EventBusSource]:
    if config.bus.kind == "file":
        if config.bus.root is None:
            raise CapacityConfigError("capacity.wiring.bus.root is required for the file bus")
        return FileEventBusPublisher(config.bus.root), EventBusReader(config.bus.root)
    if config.bus.kind == "kafka":
        from eco_capacity.event_bus.kafka import (
            KafkaEventBusPublisher,
            KafkaEventBusReader,
            kafka_config_from_env,
        )

        kafka_config = kafka_config_from_env(client_id=config.bus.client_id)
        return KafkaEventBusPublisher(kafka_config), KafkaEventBusReader(kafka_config)
    raise CapacityConfigError(f"unsupported bus kind: {config.bus.kind!r}")
