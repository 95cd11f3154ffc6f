"""Weather hazard classification for standing advisories (Phase 2).

The hazard severity produced here drives advisories only. Capacity discounts
for weather come from the provider's alert level via ``factors.assess_weather``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .contracts import WeatherSnapshot


@dataclass(frozen=True)
class HazardThresholds:
    extreme_heat_celsius: float = 40.0
    thunderstorm_precipitation_min: float = 70.0
    thunderstorm_visibility_max_m: float = 3000.0


@dataclass(frozen=True)
class WeatherHazard:
    should_alert: bool
    severity: str | None = None
    reason: str | None = None
    rule: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "should_alert": self.should_alert,
            "severity": self.severity,
            "reason": self.reason,
            "rule": self.rule,
        }


NO_HAZARD = WeatherHazard(should_alert=False)


def classify_weather(weather: WeatherSnapshot | None, *, thresholds: HazardThresholds | None = None) -> WeatherHazard:
    limits = thresholds or HazardThresholds()
    if weather is None:
        return NO_HAZARD

    temperature = weather.temperature
    if temperature is not None and temperature >= limits.extreme_heat_celsius:
        return WeatherHazard(
            should_alert=True,
            severity="high",
            reason=f"Extreme heat: {temperature:.1f}°C at or above {limits.extreme_heat_celsius:.1f}°C",
            rule="extreme_heat",
        )

    condition = (weather.weather_main or "").strip().lower()
    if "thunderstorm" in condition:
        precipitation = weather.precipitation_probability
        visibility = weather.visibility
        heavy_rain = precipitation is not None and precipitation >= limits.thunderstorm_precipitation_min
        poor_visibility = visibility is not None and visibility <= limits.thunderstorm_visibility_max_m
        if heavy_rain or poor_visibility:
            details = []
            if heavy_rain:
                details.append(f"precipitation {precipitation:.0f}%")
            if poor_visibility:
                details.append(f"visibility {visibility:.0f}m")
            return WeatherHazard(
                should_alert=True,
                severity="high",
                reason=f"Thunderstorm activity with {' and '.join(details)}",
                rule="thunderstorm",
            )

    return NO_HAZARD
