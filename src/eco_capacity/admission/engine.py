"""Dynamic capacity engine (Phase 5).

One call reads one policy snapshot and one override snapshot; nothing it
touches can change underneath it. The computation never raises for missing
or unreadable weather/indicator data: those degrade to neutral factors and
are reported on ``CapacityResult.degraded_inputs``.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import math
from typing import Any, Mapping

from .config import CapacityPolicyBundle, default_policy_bundle
from .contracts import (
    ActiveFactorFlags,
    CapacityContractError,
    CapacityOverride,
    CapacityResult,
    DestinationSnapshot,
    EcologicalIndicators,
    WeatherSnapshot,
    as_utc,
)
from .factors import (
    INDICATORS_MISSING,
    NEUTRAL_FACTOR,
    WEATHER_MISSING,
    assess_strain,
    assess_weather,
    is_active_factor,
    season_factor,
)
from .overrides import CapacityOverrideRegistry
from .policy_store import PolicySnapshot, PolicyStore

logger = logging.getLogger("eco_capacity.admission.engine")

REGISTRY_LOOKUP = object()

# Floating point slack for floor(); 80 * 0.7 must stay 56, not 55.
_FLOOR_EPSILON = 1e-9


class DynamicCapacityEngine:
    def __init__(
        self,
        policies: PolicyStore,
        overrides: CapacityOverrideRegistry | None = None,
        bundle: CapacityPolicyBundle | None = None,
    ) -> None:
        self.policies = policies
        self.overrides = overrides
        self.bundle = bundle or default_policy_bundle()

    def compute_capacity(
        self,
        destination: DestinationSnapshot,
        weather: WeatherSnapshot | Mapping[str, Any] | None = None,
        indicators: EcologicalIndicators | Mapping[str, Any] | None = None,
        *,
        override: Any = REGISTRY_LOOKUP,
        now: datetime | None = None,
        policies: PolicySnapshot | None = None,
    ) -> CapacityResult:
        """Compute adjusted capacity and the factor breakdown for one destination.

        ``override`` defaults to a registry lookup; pass ``None`` to compute
        without any override, or a ``CapacityOverride`` to apply that one.
        ``policies`` pins the policy snapshot; by default the current one is taken.
        """
        if not isinstance(destination, DestinationSnapshot):
            raise CapacityContractError("destination must be a DestinationSnapshot")
        moment = as_utc(now or datetime.now(tz=timezone.utc))
        degraded: list[str] = []

        snapshot = policies if policies is not None else self.policies.snapshot()
        policy = snapshot.resolve(destination.sensitivity_tier)
        sensitivity = float(policy.capacity_multiplier)

        weather_value = _coerce_weather(weather, destination.destination_id)
        weather_assessment = assess_weather(
            None if weather_value is None else weather_value.alert_level,
            table=self.bundle.weather_factors,
            weather_present=weather_value is not None,
        )
        if weather_assessment.degraded:
            degraded.append(weather_assessment.degraded)

        season = season_factor(moment, tuning=self.bundle.season)

        strain = assess_strain(
            _coerce_indicators(indicators, destination.destination_id),
            bands=self.bundle.strain_bands,
        )
        if strain.degraded:
            degraded.append(strain.degraded)

        applied = self._resolve_override(destination.destination_id, override, moment)
        override_factor = applied.multiplier if applied is not None else NEUTRAL_FACTOR

        combined = sensitivity * weather_assessment.factor * season * strain.factor * override_factor
        occupancy = destination.current_occupancy
        remaining = max(0, destination.max_capacity - occupancy)
        if self.bundle.capacity_basis == "max_capacity":
            adjusted = _floor(destination.max_capacity * combined)
        else:
            # Overrides above 1.0 never admit past physical capacity.
            adjusted = occupancy + min(remaining, _floor(remaining * combined))
        available = max(0, adjusted - occupancy)

        flags = ActiveFactorFlags(
            sensitivity=is_active_factor(sensitivity),
            weather=is_active_factor(weather_assessment.factor),
            season=is_active_factor(season),
            ecological=is_active_factor(strain.factor),
            override=applied is not None and is_active_factor(override_factor),
        )
        labels: list[str] = []
        if flags.sensitivity:
            labels.append(f"{policy.tier.capitalize()} Sensitivity")
        if flags.weather:
            labels.append(f"Weather Alert ({weather_assessment.alert_level})")
        if flags.season:
            labels.append("High Season")
        if flags.ecological:
            labels.append(f"Ecological Strain ({strain.band})")
        if flags.override:
            labels.append("Admin Override")

        utilization = _utilization_pct(occupancy, adjusted)
        if degraded:
            logger.info(
                "Capacity inputs degraded destination=%s reasons=%s",
                destination.destination_id,
                ",".join(degraded),
            )
        return CapacityResult(
            destination_id=destination.destination_id,
            adjusted_capacity=adjusted,
            available_spots=available,
            combined_multiplier=combined,
            factors={
                "sensitivity": sensitivity,
                "weather": weather_assessment.factor,
                "season": season,
                "ecological": strain.factor,
                "override": override_factor,
            },
            active_factors=tuple(labels),
            active_factor_flags=flags,
            utilization_pct=utilization,
            risk_level=risk_level(utilization),
            degraded_inputs=tuple(degraded),
            policy_revision=snapshot.revision,
            computed_at_utc=moment.isoformat(),
        )

    def _resolve_override(self, destination_id: str, override: Any, now: datetime) -> CapacityOverride | None:
        if override is REGISTRY_LOOKUP:
            if self.overrides is None:
                return None
            return self.overrides.effective(destination_id, now)
        if override is None:
            return None
        if not isinstance(override, CapacityOverride):
            logger.warning(
                "Capacity override ignored destination=%s detail=not a CapacityOverride (%s)",
                destination_id,
                type(override).__name__,
            )
            return None
        if override.destination_id != destination_id:
            logger.warning(
                "Capacity override ignored destination=%s detail=override targets %s",
                destination_id,
                override.destination_id,
            )
            return None
        return override if override.is_effective(now) else None


def risk_level(utilization_pct: float) -> str:
    if utilization_pct > 85:
        return "critical"
    if utilization_pct > 70:
        return "high"
    if utilization_pct > 50:
        return "medium"
    return "low"


def _utilization_pct(occupancy: int, adjusted: int) -> float:
    if adjusted <= 0:
        return 100.0 if occupancy > 0 else 0.0
    return round(occupancy * 100.0 / adjusted, 2)


def _floor(value: float) -> int:
    return max(0, math.floor(value + _FLOOR_EPSILON))


def _coerce_weather(value: Any, destination_id: str) -> WeatherSnapshot | None:
    if value is None or isinstance(value, WeatherSnapshot):
        return value
    try:
        return WeatherSnapshot.from_payload(value)
    except CapacityContractError:
        logger.info("Capacity weather unreadable destination=%s reason=%s", destination_id, WEATHER_MISSING)
        return None


def _coerce_indicators(value: Any, destination_id: str) -> EcologicalIndicators | None:
    if value is None or isinstance(value, EcologicalIndicators):
        return value
    try:
        return EcologicalIndicators.from_payload(value)
    except CapacityContractError:
        logger.info("Capacity indicators unreadable destination=%s reason=%s", destination_id, INDICATORS_MISSING)
        return None
