from __future__ import annotations

from datetime import datetime, timezone
import logging

import pytest

from eco_capacity.admission.alerts import EcologicalAlertGenerator
from eco_capacity.admission.contracts import DestinationSnapshot, EcologicalIndicators, WeatherSnapshot
from eco_capacity.admission.controller import AdmissionController, AdmissionInputError
from eco_capacity.admission.engine import DynamicCapacityEngine
from eco_capacity.admission.overrides import CapacityOverrideRegistry
from eco_capacity.admission.policy_store import PolicyStore
from eco_capacity.admission.schemas import ALERT_DRAFT, schema_errors

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
CALM = EcologicalIndicators(
    soil_compaction=10, vegetation_disturbance=10, wildlife_disturbance=10, water_source_impact=10
)
CLEAR = WeatherSnapshot(alert_level="none")


def _destination(tier: str, *, max_capacity: int = 100, occupancy: int = 20, name: str | None = "Cedar Falls"):
    return DestinationSnapshot(
        destination_id=f"dest-{tier}",
        max_capacity=max_capacity,
        current_occupancy=occupancy,
        sensitivity_tier=tier,
        name=name,
    )


def _controller() -> AdmissionController:
    policies = PolicyStore()
    engine = DynamicCapacityEngine(policies, CapacityOverrideRegistry())
    return AdmissionController(engine, policies)


def test_critical_tier_always_denied_with_restriction_message() -> None:
    controller = _controller()
    destination = _destination("critical", max_capacity=10_000, occupancy=0)
    decision = controller.is_booking_allowed(destination, 1, CLEAR, CALM, NOW)
    assert decision.allowed is False
    assert decision.reason == controller.policies.get("critical").booking_restriction_message
    assert decision.capacity is None


def test_critical_gate_uses_updated_message() -> None:
    controller = _controller()
    controller.policies.update("critical", {"booking_restriction_message": "Closed for lambing season."})
    decision = controller.is_booking_allowed(_destination("critical"), 2, CLEAR, CALM, NOW)
    assert decision.reason == "Closed for lambing season."


def test_group_larger_than_available_is_denied_with_count_and_tier() -> None:
    controller = _controller()
    # medium: 20 + floor(80 * 0.8) = 84 -> 64 available
    decision = controller.is_booking_allowed(_destination("medium"), 65, CLEAR, CALM, NOW)
    assert decision.allowed is False
    assert decision.reason == "Booking exceeds the available spots (64) adjusted for medium ecological sensitivity."
    assert decision.capacity is not None
    assert decision.capacity.available_spots == 64


def test_group_within_available_is_allowed_with_requirements() -> None:
    controller = _controller()
    decision = controller.is_booking_allowed(_destination("medium"), 64, CLEAR, CALM, NOW)
    assert decision.allowed is True
    assert decision.reason is None
    assert decision.requirements == ("eco_briefing",)

    high = controller.is_booking_allowed(_destination("high"), 1, CLEAR, CALM, NOW)
    assert high.allowed is True
    assert high.requirements == ("permit", "eco_briefing")

    low = controller.is_booking_allowed(_destination("low"), 1, CLEAR, CALM, NOW)
    assert low.requirements == ()


def test_full_destination_denies_any_group() -> None:
    controller = _controller()
    decision = controller.is_booking_allowed(_destination("low", occupancy=100), 1, CLEAR, CALM, NOW)
    assert decision.allowed is False
    assert "(0)" in (decision.reason or "")


def test_missing_weather_and_indicators_still_decide() -> None:
    controller = _controller()
    decision = controller.is_booking_allowed(_destination("low"), 5, None, None, NOW)
    assert decision.allowed is True
    assert decision.capacity is not None
    assert decision.capacity.is_degraded


@pytest.mark.parametrize("group_size", [0, -3, 2.5, "4", True, None])
def test_invalid_group_size_is_an_input_error(group_size: object) -> None:
    controller = _controller()
    with pytest.raises(AdmissionInputError):
        controller.is_booking_allowed(_destination("low"), group_size, CLEAR, CALM, NOW)  # type: ignore[arg-type]


def test_invalid_group_size_is_rejected_before_the_critical_gate() -> None:
    controller = _controller()
    with pytest.raises(AdmissionInputError):
        controller.is_booking_allowed(_destination("critical"), 0, CLEAR, CALM, NOW)


def test_decisions_are_logged_with_payload(caplog: pytest.LogCaptureFixture) -> None:
    controller = _controller()
    with caplog.at_level(logging.INFO, logger="eco_capacity.admission.controller"):
        controller.is_booking_allowed(_destination("medium"), 3, CLEAR, CALM, NOW)
    records = [record for record in caplog.records if record.name == "eco_capacity.admission.controller"]
    assert records
    assert records[-1].decision["allowed"] is True


def test_alert_absent_for_low_tier() -> None:
    alerts = EcologicalAlertGenerator(PolicyStore())
    assert alerts.generate_alert(_destination("low")) is None


def test_alert_for_critical_tier_carries_severity_and_message() -> None:
    policies = PolicyStore()
    alerts = EcologicalAlertGenerator(policies)
    draft = alerts.generate_alert(_destination("critical"))
    assert draft is not None
    assert draft.severity == "critical"
    assert draft.destination_id == "dest-critical"
    assert draft.message == policies.get("critical").booking_restriction_message
    assert draft.title == "Ecological Sensitivity Alert: Cedar Falls"
    assert draft.alert_type == "emergency"
    assert draft.is_active is True
    assert schema_errors(ALERT_DRAFT, draft.as_dict()) == []


def test_alert_without_message_uses_generic_text() -> None:
    policies = PolicyStore()
    policies.update("medium", {"booking_restriction_message": None})
    draft = EcologicalAlertGenerator(policies).generate_alert(_destination("medium", name=None))
    assert draft is not None
    assert draft.severity == "low"
    assert draft.message == "This area has medium ecological sensitivity."
    assert draft.title == "Ecological Sensitivity Alert: dest-medium"


def test_alert_follows_policy_updates() -> None:
    policies = PolicyStore()
    alerts = EcologicalAlertGenerator(policies)
    policies.update("low", {"alert_severity": "medium", "booking_restriction_message": "Trail works ahead."})
    draft = alerts.generate_alert(_destination("low"))
    assert draft is not None
    assert draft.severity == "medium"
    assert draft.message == "Trail works ahead."


def test_weather_hazard_alert_draft() -> None:
    alerts = EcologicalAlertGenerator(PolicyStore())
    hot = WeatherSnapshot(temperature=43.0)
    draft = alerts.generate_weather_alert(_destination("low"), hot)
    assert draft is not None
    assert draft.alert_type == "weather"
    assert draft.severity == "high"
    assert draft.evidence["rule"] == "extreme_heat"
    assert schema_errors(ALERT_DRAFT, draft.as_dict()) == []
    assert alerts.generate_weather_alert(_destination("low"), WeatherSnapshot(temperature=20.0)) is None


def test_denial_text_and_capacity_come_from_one_policy_snapshot() -> None:
    controller = _controller()
    controller.policies.update("medium", {"capacity_multiplier": 0.5})
    pinned = controller.policies.snapshot()
    decision = controller.is_booking_allowed(_destination("medium"), 41, CLEAR, CALM, NOW)
    assert decision.allowed is False
    assert decision.capacity is not None
    # 20 + floor(80 * 0.5) = 60 -> 40 available
    assert decision.capacity.available_spots == 40
    assert decision.capacity.policy_revision == pinned.revision
    assert decision.reason == "Booking exceeds the available spots (40) adjusted for medium ecological sensitivity."
