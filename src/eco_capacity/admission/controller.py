"""Booking admission decisions (Phase 6)."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Mapping

from .contracts import (
    AdmissionDecision,
    CapacityContractError,
    DestinationSnapshot,
    EcologicalIndicators,
    WeatherSnapshot,
)
from .engine import DynamicCapacityEngine
from .policy_store import PolicyStore

logger = logging.getLogger("eco_capacity.admission.controller")

REQUIREMENT_PERMIT = "permit"
REQUIREMENT_ECO_BRIEFING = "eco_briefing"


class AdmissionInputError(ValueError):
    """Raised when a booking request is malformed (not a capacity denial)."""


class AdmissionController:
    def __init__(self, engine: DynamicCapacityEngine, policies: PolicyStore | None = None) -> None:
        self.engine = engine
        self.policies = policies or engine.policies

    def is_booking_allowed(
        self,
        destination: DestinationSnapshot,
        group_size: int,
        weather: WeatherSnapshot | Mapping[str, Any] | None = None,
        indicators: EcologicalIndicators | Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> AdmissionDecision:
        if isinstance(group_size, bool) or not isinstance(group_size, int):
            raise AdmissionInputError(f"group_size must be an integer: {group_size!r}")
        if group_size <= 0:
            raise AdmissionInputError(f"group_size must be positive: {group_size!r}")
        if not isinstance(destination, DestinationSnapshot):
            raise CapacityContractError("destination must be a DestinationSnapshot")

        # One snapshot serves the gate, the capacity math and the denial text.
        snapshot = self.policies.snapshot()
        policy = snapshot.resolve(destination.sensitivity_tier)
        if policy.tier == "critical":
            decision = AdmissionDecision(
                destination_id=destination.destination_id,
                group_size=group_size,
                allowed=False,
                reason=policy.booking_restriction_message,
            )
            self._log(decision, rule="critical_tier")
            return decision

        capacity = self.engine.compute_capacity(destination, weather, indicators, now=now, policies=snapshot)
        if group_size > capacity.available_spots:
            decision = AdmissionDecision(
                destination_id=destination.destination_id,
                group_size=group_size,
                allowed=False,
                reason=(
                    f"Booking exceeds the available spots ({capacity.available_spots}) "
                    f"adjusted for {policy.tier} ecological sensitivity."
                ),
                capacity=capacity,
            )
            self._log(decision, rule="capacity")
            return decision

        requirements: list[str] = []
        if policy.requires_permit:
            requirements.append(REQUIREMENT_PERMIT)
        if policy.requires_eco_briefing:
            requirements.append(REQUIREMENT_ECO_BRIEFING)
        decision = AdmissionDecision(
            destination_id=destination.destination_id,
            group_size=group_size,
            allowed=True,
            reason=None,
            capacity=capacity,
            requirements=tuple(requirements),
        )
        self._log(decision, rule="capacity")
        return decision

    def _log(self, decision: AdmissionDecision, *, rule: str) -> None:
        available = None if decision.capacity is None else decision.capacity.available_spots
        logger.info(
            "Admission decision destination=%s group_size=%s allowed=%s rule=%s available=%s",
            decision.destination_id,
            decision.group_size,
            decision.allowed,
            rule,
            available,
            extra={"decision": decision.as_dict()},
        )
