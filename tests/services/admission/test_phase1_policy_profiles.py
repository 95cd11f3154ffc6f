from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from eco_capacity.admission.config import (
    DEFAULT_POLICIES,
    CapacityConfigError,
    default_policy_bundle,
    load_policy_bundle,
    load_runtime_config,
)
from eco_capacity.admission.contracts import SENSITIVITY_TIERS


def _bundle_path() -> Path:
    return Path("config/capacity/policy_profiles_v0.yaml")


def _bundle_payload() -> dict:
    return yaml.safe_load(_bundle_path().read_text(encoding="utf-8"))


def _write(tmp_path: Path, payload: dict, name: str = "bundle.yaml") -> Path:
    path = tmp_path / name
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def test_policy_bundle_loads_all_tiers() -> None:
    bundle = load_policy_bundle(_bundle_path())
    assert bundle.schema_version == "v1"
    assert bundle.policy_rev.policy_id == "capacity.policy.v0"
    assert bundle.policy_rev.revision == "r1"
    assert len(bundle.policy_rev.content_digest or "") == 64
    assert set(bundle.policies) == set(SENSITIVITY_TIERS)
    assert bundle.policy("critical").booking_restriction_message
    assert bundle.capacity_basis == "remaining_physical"


def test_shipped_bundle_matches_builtin_defaults() -> None:
    bundle = load_policy_bundle(_bundle_path())
    for tier in SENSITIVITY_TIERS:
        assert bundle.policy(tier) == DEFAULT_POLICIES[tier]
    builtin = default_policy_bundle()
    assert dict(bundle.weather_factors.factors) == dict(builtin.weather_factors.factors)
    assert bundle.season == builtin.season
    assert bundle.strain_bands == builtin.strain_bands
    assert bundle.override_bounds == builtin.override_bounds


def test_content_digest_is_stable_across_loads() -> None:
    assert load_policy_bundle(_bundle_path()).policy_rev.content_digest == load_policy_bundle(
        _bundle_path()
    ).policy_rev.content_digest


def test_unknown_tier_lookup_raises_config_error() -> None:
    bundle = load_policy_bundle(_bundle_path())
    with pytest.raises(CapacityConfigError):
        bundle.policy("extreme")


def test_missing_tier_is_rejected(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["policies"].pop("high")
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))


def test_weather_factors_must_be_non_increasing(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["weather_factors"]["high"] = 0.9
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))


def test_weather_factor_none_is_pinned_to_one(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["weather_factors"]["none"] = 0.99
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))


def test_weather_factor_tuning_is_accepted_when_monotonic(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["weather_factors"] = {"low": 0.9, "high": 0.6, "critical": 0.3}
    bundle = load_policy_bundle(_write(tmp_path, payload))
    assert bundle.weather_factors.factor_for("medium") == 0.85
    assert bundle.weather_factors.factor_for("critical") == 0.3


def test_strain_band_thresholds_must_be_ordered(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["strain_bands"]["medium_above"] = 0.8
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))


def test_critical_policy_without_message_is_rejected(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["policies"]["critical"]["booking_restriction_message"] = None
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))


def test_unknown_capacity_basis_is_rejected(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["capacity_basis"] = "vibes"
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))


def test_runtime_profile_resolves_env_tokens(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CAPACITY_INSTANCE_ID", "node-a")
    monkeypatch.setenv("CAPACITY_STORE_DSN", str(tmp_path / "capacity.sqlite"))
    monkeypatch.setenv("CAPACITY_BUS_ROOT", str(tmp_path / "bus"))
    monkeypatch.delenv("CAPACITY_POLICY_REF", raising=False)
    config = load_runtime_config(Path("config/capacity/runtime_local.yaml"))
    assert config.profile_id == "local"
    assert config.instance_id == "node-a"
    assert config.store_dsn == str(tmp_path / "capacity.sqlite")
    assert config.bus.kind == "file"
    assert config.bus.root == tmp_path / "bus"
    assert config.bus.topic_prefix == "eco_capacity.config"
    assert config.policy_ref == Path("config/capacity/policy_profiles_v0.yaml")
    assert config.poll_seconds == 2.0


def test_runtime_profile_requires_bus_root_for_file_bus(tmp_path: Path) -> None:
    profile = _write(
        tmp_path,
        {"profile_id": "t", "capacity": {"wiring": {"store_dsn": "x.sqlite", "bus": {"kind": "file"}}}},
        name="profile.yaml",
    )
    with pytest.raises(CapacityConfigError):
        load_runtime_config(profile)


def test_runtime_profile_rejects_unknown_bus_kind(tmp_path: Path) -> None:
    profile = _write(
        tmp_path,
        {"profile_id": "t", "capacity": {"wiring": {"store_dsn": "x.sqlite", "bus": {"kind": "carrier_pigeon"}}}},
        name="profile.yaml",
    )
    with pytest.raises(CapacityConfigError):
        load_runtime_config(profile)


@pytest.mark.parametrize(
    "section, change",
    [
        ("capacity_basis", "max_capacity"),
        ("season", {"high_season_months": [6, 7], "high_season_factor": 0.9}),
        ("override_bounds", {"min_multiplier": 0.2, "max_multiplier": 1.5, "default_ttl_seconds": 3600}),
        ("hazard_thresholds", {"extreme_heat_celsius": 38.0}),
    ],
)
def test_content_digest_covers_every_tunable_section(tmp_path: Path, section: str, change: object) -> None:
    baseline = _bundle_payload()
    baseline.pop("content_digest", None)
    tuned = dict(baseline)
    tuned[section] = change
    assert (
        load_policy_bundle(_write(tmp_path, baseline, "a.yaml")).policy_rev.content_digest
        != load_policy_bundle(_write(tmp_path, tuned, "b.yaml")).policy_rev.content_digest
    )


def test_recorded_content_digest_is_kept(tmp_path: Path) -> None:
    payload = _bundle_payload()
    payload["content_digest"] = "f" * 64
    assert load_policy_bundle(_write(tmp_path, payload)).policy_rev.content_digest == "f" * 64


@pytest.mark.parametrize("ttl", ["soon", 1.5, True, None])
def test_override_ttl_must_be_an_integer(tmp_path: Path, ttl: object) -> None:
    payload = _bundle_payload()
    payload["override_bounds"] = {"default_ttl_seconds": ttl}
    with pytest.raises(CapacityConfigError):
        load_policy_bundle(_write(tmp_path, payload))
