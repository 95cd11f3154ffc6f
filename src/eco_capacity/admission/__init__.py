"""Capacity admission contracts, calculators, policy stores and decision helpers."""

from .alerts import EcologicalAlertGenerator
from .config import (
    DEFAULT_POLICIES,
    CapacityConfigError,
    CapacityPolicyBundle,
    CapacityRuntimeConfig,
    OverrideBounds,
    PolicyRev,
    default_policy_bundle,
    load_policy_bundle,
    load_runtime_config,
)
from .contracts import (
    ALERT_SEVERITIES,
    SENSITIVITY_TIERS,
    ActiveFactorFlags,
    AdmissionDecision,
    AlertDraft,
    CapacityAdjustment,
    CapacityContractError,
    CapacityOverride,
    CapacityResult,
    DestinationSnapshot,
    EcologicalIndicators,
    Policy,
    WeatherSnapshot,
)
from .controller import AdmissionController, AdmissionInputError
from .engine import DynamicCapacityEngine, risk_level
from .factors import (
    SeasonTuning,
    StrainBands,
    WeatherFactorTable,
    assess_strain,
    assess_weather,
    season_factor,
    strain_factor,
    weather_capacity_factor,
)
from .notify import ChangeNotice, ConfigChangeListener, ConfigChangeNotifier
from .overrides import CapacityOverrideRegistry, OverrideValidationError
from .policy_store import PolicyStore, PolicyUpdateError
from .schemas import ContractSchemaError, validate_contract
from .store import ConfigStore, ConfigStoreError, ConfigStoreTrustError, build_config_store
from .weather import HazardThresholds, WeatherHazard, classify_weather

__all__ = [
    "ALERT_SEVERITIES",
    "ActiveFactorFlags",
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionInputError",
    "AlertDraft",
    "CapacityAdjustment",
    "CapacityConfigError",
    "CapacityContractError",
    "CapacityOverride",
    "CapacityOverrideRegistry",
    "CapacityPolicyBundle",
    "CapacityResult",
    "CapacityRuntimeConfig",
    "ChangeNotice",
    "ConfigChangeListener",
    "ConfigChangeNotifier",
    "ConfigStore",
    "ConfigStoreError",
    "ConfigStoreTrustError",
    "ContractSchemaError",
    "DEFAULT_POLICIES",
    "DestinationSnapshot",
    "DynamicCapacityEngine",
    "EcologicalAlertGenerator",
    "EcologicalIndicators",
    "HazardThresholds",
    "OverrideBounds",
    "OverrideValidationError",
    "Policy",
    "PolicyRev",
    "PolicyStore",
    "PolicyUpdateError",
    "SENSITIVITY_TIERS",
    "SeasonTuning",
    "StrainBands",
    "WeatherFactorTable",
    "WeatherHazard",
    "WeatherSnapshot",
    "assess_strain",
    "assess_weather",
    "build_config_store",
    "classify_weather",
    "default_policy_bundle",
    "load_policy_bundle",
    "load_runtime_config",
    "risk_level",
    "season_factor",
    "strain_factor",
    "validate_contract",
    "weather_capacity_factor",
]
