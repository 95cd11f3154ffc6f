from __future__ import annotations

from eco_capacity.admission.contracts import WeatherSnapshot
from eco_capacity.admission.weather import HazardThresholds, classify_weather


def test_extreme_heat_alerts_high() -> None:
    hazard = classify_weather(WeatherSnapshot(temperature=45.0, weather_main="Clear"))
    assert hazard.should_alert is True
    assert hazard.severity == "high"
    assert hazard.rule == "extreme_heat"
    assert "extreme heat" in (hazard.reason or "").lower()


def test_extreme_heat_threshold_is_inclusive() -> None:
    assert classify_weather(WeatherSnapshot(temperature=40.0)).should_alert is True
    assert classify_weather(WeatherSnapshot(temperature=39.9)).should_alert is False


def test_thunderstorm_with_heavy_rain_or_poor_visibility_alerts() -> None:
    rain = classify_weather(WeatherSnapshot(weather_main="Thunderstorm", precipitation_probability=90, visibility=8000))
    assert rain.should_alert is True
    assert rain.severity == "high"
    assert rain.rule == "thunderstorm"
    assert "thunderstorm" in (rain.reason or "").lower()

    murk = classify_weather(WeatherSnapshot(weather_main="thunderstorm", precipitation_probability=20, visibility=2000))
    assert murk.should_alert is True
    assert "visibility 2000m" in (murk.reason or "")


def test_mild_thunderstorm_does_not_alert() -> None:
    hazard = classify_weather(WeatherSnapshot(weather_main="Thunderstorm", precipitation_probability=30, visibility=9000))
    assert hazard.should_alert is False
    assert hazard.severity is None


def test_heat_takes_priority_over_thunderstorm() -> None:
    hazard = classify_weather(
        WeatherSnapshot(temperature=41.0, weather_main="Thunderstorm", precipitation_probability=95, visibility=500)
    )
    assert hazard.rule == "extreme_heat"


def test_missing_weather_never_alerts() -> None:
    assert classify_weather(None).should_alert is False
    assert classify_weather(WeatherSnapshot()).should_alert is False


def test_hazard_is_independent_of_capacity_alert_level() -> None:
    # A critical provider alert level alone is a capacity signal, not a hazard.
    hazard = classify_weather(WeatherSnapshot(temperature=20.0, weather_main="Clouds", alert_level="critical"))
    assert hazard.should_alert is False


def test_custom_thresholds() -> None:
    thresholds = HazardThresholds(extreme_heat_celsius=35.0)
    assert classify_weather(WeatherSnapshot(temperature=36.0), thresholds=thresholds).should_alert is True
