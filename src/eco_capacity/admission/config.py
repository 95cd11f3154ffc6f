"""Capacity policy bundle and runtime profile loaders (Phase 1)."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import hashlib
import json
import os
from pathlib import Path
import re
from typing import Any

import yaml

from .contracts import ALERT_SEVERITIES, SENSITIVITY_TIERS, CapacityContractError, Policy
from .factors import DEFAULT_WEATHER_FACTORS, SeasonTuning, StrainBands, WeatherFactorTable
from .weather import HazardThresholds

_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")
CAPACITY_BASES: tuple[str, ...] = ("remaining_physical", "max_capacity")

DEFAULT_POLICIES: dict[str, Policy] = {
    "low": Policy(
        tier="low",
        capacity_multiplier=1.0,
        requires_permit=False,
        requires_eco_briefing=False,
        alert_severity="none",
        booking_restriction_message=None,
    ),
    "medium": Policy(
        tier="medium",
        capacity_multiplier=0.8,
        requires_permit=False,
        requires_eco_briefing=True,
        alert_severity="low",
        booking_restriction_message="Please review ecological guidelines before visiting.",
    ),
    "high": Policy(
        tier="high",
        capacity_multiplier=0.5,
        requires_permit=True,
        requires_eco_briefing=True,
        alert_severity="high",
        booking_restriction_message="This is a high-sensitivity area. Special permits are required for entry.",
    ),
    "critical": Policy(
        tier="critical",
        capacity_multiplier=0.2,
        requires_permit=True,
        requires_eco_briefing=True,
        alert_severity="critical",
        booking_restriction_message=(
            "Access is strictly limited to authorized research and conservation personnel only."
        ),
    ),
}


class CapacityConfigError(ValueError):
    """Raised when capacity policy or runtime configuration is invalid."""


@dataclass(frozen=True)
class PolicyRev:
    policy_id: str
    revision: str
    content_digest: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"policy_id": self.policy_id, "revision": self.revision}
        if self.content_digest:
            payload["content_digest"] = self.content_digest
        return payload


@dataclass(frozen=True)
class OverrideBounds:
    min_multiplier: float = 0.1
    max_multiplier: float = 1.5
    default_ttl_seconds: int = 24 * 60 * 60


@dataclass(frozen=True)
class CapacityPolicyBundle:
    schema_version: str
    policy_rev: PolicyRev
    policies: dict[str, Policy]
    weather_factors: WeatherFactorTable = field(default_factory=WeatherFactorTable)
    hazard_thresholds: HazardThresholds = field(default_factory=HazardThresholds)
    season: SeasonTuning = field(default_factory=SeasonTuning)
    strain_bands: StrainBands = field(default_factory=StrainBands)
    override_bounds: OverrideBounds = field(default_factory=OverrideBounds)
    capacity_basis: str = "remaining_physical"

    def policy(self, tier: str) -> Policy:
        key = str(tier).strip().lower()
        if key not in self.policies:
            known = ",".join(sorted(self.policies))
            raise CapacityConfigError(f"unknown sensitivity tier '{key}' (known: {known})")
        return self.policies[key]

    def as_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "policy_rev": self.policy_rev.as_dict(),
            "capacity_basis": self.capacity_basis,
            "policies": {tier: policy.as_dict() for tier, policy in self.policies.items()},
            "weather_factors": dict(self.weather_factors.factors),
            "hazard_thresholds": {
                "extreme_heat_celsius": self.hazard_thresholds.extreme_heat_celsius,
                "thunderstorm_precipitation_min": self.hazard_thresholds.thunderstorm_precipitation_min,
                "thunderstorm_visibility_max_m": self.hazard_thresholds.thunderstorm_visibility_max_m,
            },
            "season": {
                "high_season_months": list(self.season.high_season_months),
                "high_season_factor": self.season.high_season_factor,
            },
            "strain_bands": {
                "medium_above": self.strain_bands.medium_above,
                "high_above": self.strain_bands.high_above,
                "medium_factor": self.strain_bands.medium_factor,
                "high_factor": self.strain_bands.high_factor,
            },
            "override_bounds": {
                "min_multiplier": self.override_bounds.min_multiplier,
                "max_multiplier": self.override_bounds.max_multiplier,
                "default_ttl_seconds": self.override_bounds.default_ttl_seconds,
            },
        }

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


@dataclass(frozen=True)
class BusSettings:
    kind: str
    root: Path | None
    topic_prefix: str
    client_id: str


@dataclass(frozen=True)
class CapacityRuntimeConfig:
    profile_id: str
    instance_id: str
    stream_id: str
    store_dsn: str
    policy_ref: Path | None
    poll_seconds: float
    bus: BusSettings


def default_policy_bundle() -> CapacityPolicyBundle:
    return CapacityPolicyBundle(
        schema_version="v1",
        policy_rev=PolicyRev(policy_id="capacity.policy.builtin", revision="r0"),
        policies=dict(DEFAULT_POLICIES),
    )


def load_policy_bundle(path: Path) -> CapacityPolicyBundle:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise CapacityConfigError("capacity policy file must be a mapping")

    schema_version = str(data.get("schema_version") or "").strip()
    if not schema_version:
        raise CapacityConfigError("schema_version is required")

    policy_id = str(data.get("policy_id") or "").strip()
    revision = str(data.get("revision") or "").strip()
    if not policy_id or not revision:
        raise CapacityConfigError("policy_id and revision are required")

    policies_payload = data.get("policies")
    if not isinstance(policies_payload, dict) or not policies_payload:
        raise CapacityConfigError("policies must be a non-empty mapping")
    unknown = sorted(set(str(key).strip().lower() for key in policies_payload) - set(SENSITIVITY_TIERS))
    if unknown:
        raise CapacityConfigError(f"policies has unknown tiers: {','.join(unknown)}")

    policies: dict[str, Policy] = {}
    for tier in SENSITIVITY_TIERS:
        payload = policies_payload.get(tier)
        if payload is None:
            raise CapacityConfigError(f"policies missing tier '{tier}'")
        if not isinstance(payload, dict):
            raise CapacityConfigError(f"policy '{tier}' must be a mapping")
        try:
            policies[tier] = Policy.from_payload(payload, tier=tier)
        except CapacityContractError as exc:
            raise CapacityConfigError(f"policy '{tier}' is invalid: {exc}") from exc

    weather_factors = _parse_weather_factors(data.get("weather_factors"))
    hazard_thresholds = _parse_hazard_thresholds(data.get("hazard_thresholds"))
    season = _parse_season(data.get("season"))
    strain_bands = _parse_strain_bands(data.get("strain_bands"))
    override_bounds = _parse_override_bounds(data.get("override_bounds"))
    capacity_basis = str(data.get("capacity_basis") or "remaining_physical").strip().lower()
    if capacity_basis not in CAPACITY_BASES:
        raise CapacityConfigError(f"capacity_basis must be one of {CAPACITY_BASES}: {capacity_basis!r}")

    content_digest = str(data.get("content_digest") or "").strip()
    bundle = CapacityPolicyBundle(
        schema_version=schema_version,
        policy_rev=PolicyRev(policy_id=policy_id, revision=revision),
        policies=policies,
        weather_factors=weather_factors,
        hazard_thresholds=hazard_thresholds,
        season=season,
        strain_bands=strain_bands,
        override_bounds=override_bounds,
        capacity_basis=capacity_basis,
    )
    if not content_digest:
        content_digest = bundle_digest(bundle)
    return replace(bundle, policy_rev=replace(bundle.policy_rev, content_digest=content_digest))


def bundle_digest(bundle: CapacityPolicyBundle) -> str:
    """sha256 over the canonical bundle content, excluding any recorded digest."""
    payload = bundle.as_dict()
    payload["policy_rev"].pop("content_digest", None)
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()


def load_runtime_config(profile_path: Path) -> CapacityRuntimeConfig:
    payload = yaml.safe_load(Path(profile_path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise CapacityConfigError("CAPACITY_PROFILE_INVALID")

    profile_id = str(payload.get("profile_id") or "local")
    capacity = payload.get("capacity") if isinstance(payload.get("capacity"), dict) else {}
    wiring = capacity.get("wiring") if isinstance(capacity.get("wiring"), dict) else {}
    bus_payload = wiring.get("bus") if isinstance(wiring.get("bus"), dict) else {}

    instance_id = _none_if_blank(_resolve_env_token(wiring.get("instance_id"))) or f"{profile_id}-{os.getpid()}"
    stream_id = _none_if_blank(_resolve_env_token(wiring.get("stream_id"))) or "eco_capacity.v0"
    store_dsn = _none_if_blank(_resolve_env_token(wiring.get("store_dsn") or os.getenv("CAPACITY_STORE_DSN")))
    if not store_dsn:
        raise CapacityConfigError("capacity.wiring.store_dsn is required")

    policy_ref_raw = _none_if_blank(
        _resolve_env_token(capacity.get("policy_ref") or os.getenv("CAPACITY_POLICY_REF"))
    )
    poll_seconds = _float_setting(_resolve_env_token(wiring.get("poll_seconds", 2.0)), field_name="poll_seconds")
    if poll_seconds <= 0:
        raise CapacityConfigError("capacity.wiring.poll_seconds must be positive")

    bus_kind = str(_resolve_env_token(bus_payload.get("kind")) or "file").strip().lower()
    if bus_kind not in {"file", "kafka"}:
        raise CapacityConfigError(f"capacity.wiring.bus.kind must be file or kafka: {bus_kind!r}")
    bus_root = _none_if_blank(_resolve_env_token(bus_payload.get("root")))
    if bus_kind == "file" and not bus_root:
        raise CapacityConfigError("capacity.wiring.bus.root is required for the file bus")
    topic_prefix = _none_if_blank(_resolve_env_token(bus_payload.get("topic_prefix"))) or "eco_capacity.config"
    client_id = _none_if_blank(_resolve_env_token(bus_payload.get("client_id"))) or instance_id

    return CapacityRuntimeConfig(
        profile_id=profile_id,
        instance_id=instance_id,
        stream_id=stream_id,
        store_dsn=store_dsn,
        policy_ref=Path(policy_ref_raw) if policy_ref_raw else None,
        poll_seconds=poll_seconds,
        bus=BusSettings(
            kind=bus_kind,
            root=Path(bus_root) if bus_root else None,
            topic_prefix=topic_prefix,
            client_id=client_id,
        ),
    )


def _parse_weather_factors(value: Any) -> WeatherFactorTable:
    if value is None:
        return WeatherFactorTable()
    if not isinstance(value, dict):
        raise CapacityConfigError("weather_factors must be a mapping")
    factors = dict(DEFAULT_WEATHER_FACTORS)
    for level, raw in value.items():
        key = str(level).strip().lower()
        if key not in ALERT_SEVERITIES:
            raise CapacityConfigError(f"weather_factors has unknown alert level '{key}'")
        factors[key] = _float_setting(raw, field_name=f"weather_factors.{key}")
    if factors["none"] != 1.0:
        raise CapacityConfigError("weather_factors.none must be exactly 1.0")
    previous = None
    for level in ALERT_SEVERITIES:
        factor = factors[level]
        if not 0.0 < factor <= 1.0:
            raise CapacityConfigError(f"weather_factors.{level} must be in (0, 1]: {factor!r}")
        if previous is not None and factor > previous:
            raise CapacityConfigError(
                f"weather_factors must be non-increasing in severity; {level}={factor} exceeds {previous}"
            )
        previous = factor
    return WeatherFactorTable(factors=factors)


def _parse_hazard_thresholds(value: Any) -> HazardThresholds:
    if value is None:
        return HazardThresholds()
    if not isinstance(value, dict):
        raise CapacityConfigError("hazard_thresholds must be a mapping")
    defaults = HazardThresholds()
    return HazardThresholds(
        extreme_heat_celsius=_float_setting(
            value.get("extreme_heat_celsius", defaults.extreme_heat_celsius),
            field_name="hazard_thresholds.extreme_heat_celsius",
        ),
        thunderstorm_precipitation_min=_float_setting(
            value.get("thunderstorm_precipitation_min", defaults.thunderstorm_precipitation_min),
            field_name="hazard_thresholds.thunderstorm_precipitation_min",
        ),
        thunderstorm_visibility_max_m=_float_setting(
            value.get("thunderstorm_visibility_max_m", defaults.thunderstorm_visibility_max_m),
            field_name="hazard_thresholds.thunderstorm_visibility_max_m",
        ),
    )


def _parse_season(value: Any) -> SeasonTuning:
    if value is None:
        return SeasonTuning()
    if not isinstance(value, dict):
        raise CapacityConfigError("season must be a mapping")
    defaults = SeasonTuning()
    months_raw = value.get("high_season_months", list(defaults.high_season_months))
    if not isinstance(months_raw, list):
        raise CapacityConfigError("season.high_season_months must be a list")
    months: list[int] = []
    for index, item in enumerate(months_raw):
        if isinstance(item, bool) or not isinstance(item, int) or not 1 <= item <= 12:
            raise CapacityConfigError(f"season.high_season_months[{index}] must be a month number 1-12")
        months.append(item)
    factor = _float_setting(
        value.get("high_season_factor", defaults.high_season_factor),
        field_name="season.high_season_factor",
    )
    if not 0.0 < factor <= 1.0:
        raise CapacityConfigError("season.high_season_factor must be in (0, 1]")
    return SeasonTuning(high_season_months=tuple(sorted(set(months))), high_season_factor=factor)


def _parse_strain_bands(value: Any) -> StrainBands:
    if value is None:
        return StrainBands()
    if not isinstance(value, dict):
        raise CapacityConfigError("strain_bands must be a mapping")
    defaults = StrainBands()
    bands = StrainBands(
        medium_above=_float_setting(value.get("medium_above", defaults.medium_above), field_name="strain_bands.medium_above"),
        high_above=_float_setting(value.get("high_above", defaults.high_above), field_name="strain_bands.high_above"),
        medium_factor=_float_setting(
            value.get("medium_factor", defaults.medium_factor), field_name="strain_bands.medium_factor"
        ),
        high_factor=_float_setting(value.get("high_factor", defaults.high_factor), field_name="strain_bands.high_factor"),
    )
    if not 0.0 <= bands.medium_above < bands.high_above <= 1.0:
        raise CapacityConfigError("strain_bands thresholds must satisfy 0 <= medium_above < high_above <= 1")
    if not 0.0 < bands.high_factor <= bands.medium_factor <= 1.0:
        raise CapacityConfigError("strain_bands factors must satisfy 0 < high_factor <= medium_factor <= 1")
    return bands


def _parse_override_bounds(value: Any) -> OverrideBounds:
    if value is None:
        return OverrideBounds()
    if not isinstance(value, dict):
        raise CapacityConfigError("override_bounds must be a mapping")
    defaults = OverrideBounds()
    bounds = OverrideBounds(
        min_multiplier=_float_setting(
            value.get("min_multiplier", defaults.min_multiplier), field_name="override_bounds.min_multiplier"
        ),
        max_multiplier=_float_setting(
            value.get("max_multiplier", defaults.max_multiplier), field_name="override_bounds.max_multiplier"
        ),
        default_ttl_seconds=_int_setting(
            value.get("default_ttl_seconds", defaults.default_ttl_seconds),
            field_name="override_bounds.default_ttl_seconds",
        ),
    )
    if not 0.0 < bounds.min_multiplier <= bounds.max_multiplier:
        raise CapacityConfigError("override_bounds must satisfy 0 < min_multiplier <= max_multiplier")
    if bounds.default_ttl_seconds <= 0:
        raise CapacityConfigError("override_bounds.default_ttl_seconds must be positive")
    return bounds


def _float_setting(value: Any, *, field_name: str) -> float:
    if isinstance(value, bool):
        raise CapacityConfigError(f"{field_name} must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise CapacityConfigError(f"{field_name} must be numeric: {value!r}") from exc


def _int_setting(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise CapacityConfigError(f"{field_name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise CapacityConfigError(f"{field_name} must be an integer: {value!r}") from exc
    if number != value and not isinstance(value, str):
        raise CapacityConfigError(f"{field_name} must be an integer: {value!r}")
    return number


def _resolve_env_token(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    key = match.group(1)
    default = match.group(2) or ""
    return os.getenv(key, default)


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
