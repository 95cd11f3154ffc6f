from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from eco_capacity.admission.contracts import ALERT_SEVERITIES, EcologicalIndicators
from eco_capacity.admission.factors import (
    INDICATORS_MISSING,
    INDICATORS_PARTIAL,
    WEATHER_ALERT_LEVEL_UNKNOWN,
    WEATHER_MISSING,
    SeasonTuning,
    assess_strain,
    assess_weather,
    is_active_factor,
    is_high_season,
    season_factor,
    strain_factor,
    weather_capacity_factor,
)


def _indicators(value: float) -> EcologicalIndicators:
    return EcologicalIndicators(
        soil_compaction=value,
        vegetation_disturbance=value,
        wildlife_disturbance=value,
        water_source_impact=value,
    )


@pytest.mark.parametrize("year", [1999, 2024, 2026, 2100])
def test_season_factor_covers_every_month(year: int) -> None:
    for month in range(1, 13):
        expected = 0.8 if 5 <= month <= 10 else 1.0
        assert season_factor(date(year, month, 15)) == expected


def test_season_factor_reads_aware_datetimes_in_utc() -> None:
    # 23:30 on 30 April in UTC-05:00 is already 1 May in UTC.
    local = datetime(2026, 4, 30, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert season_factor(local) == 0.8
    # Naive datetimes are taken as UTC.
    assert season_factor(datetime(2026, 4, 30, 23, 30)) == 1.0
    assert season_factor(datetime(2026, 10, 31, 23, 59, tzinfo=timezone.utc)) == 0.8
    assert season_factor(datetime(2026, 11, 1, 0, 0, tzinfo=timezone.utc)) == 1.0


def test_season_tuning_is_respected() -> None:
    tuning = SeasonTuning(high_season_months=(12, 1, 2), high_season_factor=0.7)
    assert season_factor(date(2026, 1, 10), tuning=tuning) == 0.7
    assert season_factor(date(2026, 7, 10), tuning=tuning) == 1.0
    assert is_high_season(date(2026, 12, 1), tuning=tuning)


def test_strain_factor_bands() -> None:
    assert strain_factor(_indicators(10)) == 1.0
    assert strain_factor(_indicators(50)) == 0.9
    assert strain_factor(_indicators(80)) == 0.8


def test_strain_band_edges_are_upper_inclusive() -> None:
    assert strain_factor(_indicators(40)) == 1.0
    assert strain_factor(_indicators(40.01)) == 0.9
    assert strain_factor(_indicators(70)) == 0.9
    assert strain_factor(_indicators(70.01)) == 0.8


def test_strain_readings_are_clamped_to_range() -> None:
    indicators = EcologicalIndicators(
        soil_compaction=250, vegetation_disturbance=-30, wildlife_disturbance=0, water_source_impact=0
    )
    assessment = assess_strain(indicators)
    assert assessment.normalized == pytest.approx(0.25)
    assert assessment.factor == 1.0


def test_missing_indicators_degrade_to_neutral() -> None:
    absent = assess_strain(None)
    assert absent.factor == 1.0
    assert absent.band == "low"
    assert absent.degraded == INDICATORS_MISSING

    empty = assess_strain(EcologicalIndicators())
    assert empty.factor == 1.0
    assert empty.degraded == INDICATORS_MISSING


def test_partial_indicators_average_present_readings() -> None:
    partial = EcologicalIndicators(soil_compaction=90, vegetation_disturbance=80)
    assessment = assess_strain(partial)
    assert assessment.normalized == pytest.approx(0.85)
    assert assessment.factor == 0.8
    assert assessment.band == "high"
    assert assessment.degraded == INDICATORS_PARTIAL
    assert assessment.missing == ("wildlife_disturbance", "water_source_impact")


def test_complete_indicators_are_not_degraded() -> None:
    assert assess_strain(_indicators(55)).degraded is None


def test_weather_factor_pins_none_and_medium() -> None:
    assert weather_capacity_factor("none") == 1.0
    assert weather_capacity_factor(None) == 1.0
    assert weather_capacity_factor("medium") == 0.85


def test_weather_factor_is_monotonic_in_severity() -> None:
    factors = [weather_capacity_factor(level) for level in ALERT_SEVERITIES]
    assert factors == sorted(factors, reverse=True)
    assert factors[0] == 1.0
    assert all(0.0 < value <= 1.0 for value in factors)


def test_weather_assessment_distinguishes_missing_from_clear() -> None:
    clear = assess_weather("none")
    assert clear.factor == 1.0
    assert clear.degraded is None

    missing = assess_weather(None, weather_present=False)
    assert missing.factor == 1.0
    assert missing.degraded == WEATHER_MISSING

    unknown = assess_weather("apocalyptic")
    assert unknown.factor == 1.0
    assert unknown.alert_level == "none"
    assert unknown.degraded == WEATHER_ALERT_LEVEL_UNKNOWN


def test_active_factor_epsilon() -> None:
    assert not is_active_factor(1.0)
    assert not is_active_factor(1.0 + 1e-12)
    assert is_active_factor(0.95)
    assert is_active_factor(1.2)
