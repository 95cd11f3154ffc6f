"""Standing ecological advisories derived from tier policy (Phase 6)."""

from __future__ import annotations

import logging

from .contracts import AlertDraft, CapacityContractError, DestinationSnapshot, WeatherSnapshot
from .policy_store import PolicyStore
from .weather import HazardThresholds, classify_weather

logger = logging.getLogger("eco_capacity.admission.alerts")


class EcologicalAlertGenerator:
    """Builds alert drafts; persisting or dispatching them is the caller's job."""

    def __init__(self, policies: PolicyStore, *, thresholds: HazardThresholds | None = None) -> None:
        self.policies = policies
        self.thresholds = thresholds or HazardThresholds()

    def generate_alert(self, destination: DestinationSnapshot) -> AlertDraft | None:
        if not isinstance(destination, DestinationSnapshot):
            raise CapacityContractError("destination must be a DestinationSnapshot")
        policy = self.policies.get(destination.sensitivity_tier)
        if policy.alert_severity == "none":
            return None
        message = policy.booking_restriction_message or f"This area has {policy.tier} ecological sensitivity."
        draft = AlertDraft(
            destination_id=destination.destination_id,
            severity=policy.alert_severity,
            message=message,
            title=f"Ecological Sensitivity Alert: {destination.display_name}",
            evidence={"tier": policy.tier, "source": "policy"},
        )
        logger.debug("Ecological alert drafted destination=%s severity=%s", draft.destination_id, draft.severity)
        return draft

    def generate_weather_alert(
        self,
        destination: DestinationSnapshot,
        weather: WeatherSnapshot | None,
    ) -> AlertDraft | None:
        hazard = classify_weather(weather, thresholds=self.thresholds)
        if not hazard.should_alert:
            return None
        return AlertDraft(
            destination_id=destination.destination_id,
            severity=hazard.severity or "high",
            message=hazard.reason or "",
            title=f"Weather Hazard Alert: {destination.display_name}",
            alert_type="weather",
            evidence={"rule": hazard.rule, "source": "weather"},
        )
