"""Pure capacity factor calculators (Phase 2).

Every function here is stateless and total. Missing or unreadable inputs resolve
to the neutral factor (1.0) and are reported through the ``degraded`` fields of
the assessment objects rather than raised.

Calendar handling for the season factor: a ``date`` is used as given; a naive
``datetime`` is read as UTC; an aware ``datetime`` is converted to UTC before the
month is taken.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Mapping

from .contracts import ALERT_SEVERITIES, INDICATOR_KEYS, EcologicalIndicators

NEUTRAL_FACTOR = 1.0
FACTOR_EPSILON = 1e-9

DEFAULT_WEATHER_FACTORS: dict[str, float] = {
    "none": 1.0,
    "low": 0.95,
    "medium": 0.85,
    "high": 0.7,
    "critical": 0.5,
}

WEATHER_MISSING = "WEATHER_MISSING"
WEATHER_ALERT_LEVEL_UNKNOWN = "WEATHER_ALERT_LEVEL_UNKNOWN"
INDICATORS_MISSING = "INDICATORS_MISSING"
INDICATORS_PARTIAL = "INDICATORS_PARTIAL"


@dataclass(frozen=True)
class SeasonTuning:
    high_season_months: tuple[int, ...] = (5, 6, 7, 8, 9, 10)
    high_season_factor: float = 0.8


@dataclass(frozen=True)
class StrainBands:
    medium_above: float = 0.4
    high_above: float = 0.7
    medium_factor: float = 0.9
    high_factor: float = 0.8


@dataclass(frozen=True)
class StrainAssessment:
    factor: float
    band: str
    normalized: float
    degraded: str | None = None
    missing: tuple[str, ...] = ()


@dataclass(frozen=True)
class WeatherFactorAssessment:
    factor: float
    alert_level: str
    degraded: str | None = None


@dataclass(frozen=True)
class WeatherFactorTable:
    factors: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEATHER_FACTORS))

    def factor_for(self, alert_level: str) -> float:
        return float(self.factors.get(alert_level, NEUTRAL_FACTOR))


def season_factor(when: date | datetime, *, tuning: SeasonTuning | None = None) -> float:
    rules = tuning or SeasonTuning()
    if isinstance(when, datetime):
        moment = when if when.tzinfo is None else when.astimezone(timezone.utc)
        month = moment.month
    else:
        month = when.month
    if month in rules.high_season_months:
        return rules.high_season_factor
    return NEUTRAL_FACTOR


def is_high_season(when: date | datetime, *, tuning: SeasonTuning | None = None) -> bool:
    return season_factor(when, tuning=tuning) < NEUTRAL_FACTOR - FACTOR_EPSILON


def assess_strain(
    indicators: EcologicalIndicators | None,
    *,
    bands: StrainBands | None = None,
) -> StrainAssessment:
    rules = bands or StrainBands()
    if indicators is None:
        return StrainAssessment(
            factor=NEUTRAL_FACTOR,
            band="low",
            normalized=0.0,
            degraded=INDICATORS_MISSING,
            missing=INDICATOR_KEYS,
        )

    readings = indicators.readings()
    present = [_clamp_reading(value) for value in readings.values() if value is not None]
    missing = indicators.missing()
    if not present:
        return StrainAssessment(
            factor=NEUTRAL_FACTOR,
            band="low",
            normalized=0.0,
            degraded=INDICATORS_MISSING,
            missing=missing,
        )

    # Partial sets are averaged over the readings that arrived.
    normalized = sum(present) / (100.0 * len(present))
    if normalized > rules.high_above:
        factor, band = rules.high_factor, "high"
    elif normalized > rules.medium_above:
        factor, band = rules.medium_factor, "medium"
    else:
        factor, band = NEUTRAL_FACTOR, "low"
    return StrainAssessment(
        factor=factor,
        band=band,
        normalized=normalized,
        degraded=INDICATORS_PARTIAL if missing else None,
        missing=missing,
    )


def strain_factor(indicators: EcologicalIndicators | None, *, bands: StrainBands | None = None) -> float:
    return assess_strain(indicators, bands=bands).factor


def assess_weather(
    alert_level: str | None,
    *,
    table: WeatherFactorTable | None = None,
    weather_present: bool = True,
) -> WeatherFactorAssessment:
    factors = table or WeatherFactorTable()
    if not weather_present:
        return WeatherFactorAssessment(factor=NEUTRAL_FACTOR, alert_level="none", degraded=WEATHER_MISSING)
    level = str(alert_level or "").strip().lower()
    if not level:
        return WeatherFactorAssessment(factor=NEUTRAL_FACTOR, alert_level="none")
    if level not in ALERT_SEVERITIES:
        return WeatherFactorAssessment(
            factor=NEUTRAL_FACTOR,
            alert_level="none",
            degraded=WEATHER_ALERT_LEVEL_UNKNOWN,
        )
    return WeatherFactorAssessment(factor=factors.factor_for(level), alert_level=level)


def weather_capacity_factor(alert_level: str | None, *, table: WeatherFactorTable | None = None) -> float:
    return assess_weather(alert_level, table=table).factor


def is_active_factor(value: float) -> bool:
    return abs(float(value) - NEUTRAL_FACTOR) > FACTOR_EPSILON


def _clamp_reading(value: float) -> float:
    return min(100.0, max(0.0, float(value)))
