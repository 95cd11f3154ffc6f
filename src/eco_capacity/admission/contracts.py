"""Admission contract types (Phase 1)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
from typing import Any, Mapping

SENSITIVITY_TIERS: tuple[str, ...] = ("low", "medium", "high", "critical")
ALERT_SEVERITIES: tuple[str, ...] = ("none", "low", "medium", "high", "critical")
POLICY_FIELDS: tuple[str, ...] = (
    "capacity_multiplier",
    "requires_permit",
    "requires_eco_briefing",
    "alert_severity",
    "booking_restriction_message",
)
INDICATOR_KEYS: tuple[str, ...] = (
    "soil_compaction",
    "vegetation_disturbance",
    "wildlife_disturbance",
    "water_source_impact",
)
FACTOR_KEYS: tuple[str, ...] = ("sensitivity", "weather", "season", "ecological", "override")

_CAMEL_ALIASES: dict[str, str] = {
    "capacityMultiplier": "capacity_multiplier",
    "requiresPermit": "requires_permit",
    "requiresEcoBriefing": "requires_eco_briefing",
    "alertSeverity": "alert_severity",
    "bookingRestrictionMessage": "booking_restriction_message",
    "destinationId": "destination_id",
    "expiresAt": "expires_at_utc",
    "expires_at": "expires_at_utc",
    "maxCapacity": "max_capacity",
    "currentOccupancy": "current_occupancy",
    "sensitivityTier": "sensitivity_tier",
    "ecologicalSensitivity": "sensitivity_tier",
    "windSpeed": "wind_speed",
    "precipitationProbability": "precipitation_probability",
    "weatherMain": "weather_main",
    "alertLevel": "alert_level",
    "soilCompaction": "soil_compaction",
    "vegetationDisturbance": "vegetation_disturbance",
    "wildlifeDisturbance": "wildlife_disturbance",
    "waterSourceImpact": "water_source_impact",
}


class CapacityContractError(ValueError):
    """Raised when caller-supplied admission payloads are structurally invalid."""


@dataclass(frozen=True)
class Policy:
    tier: str
    capacity_multiplier: float
    requires_permit: bool
    requires_eco_briefing: bool
    alert_severity: str
    booking_restriction_message: str | None = None

    def __post_init__(self) -> None:
        multiplier = self.capacity_multiplier
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)):
            raise CapacityContractError(f"policy[{self.tier}].capacity_multiplier must be numeric")
        if not 0.0 < float(multiplier) <= 1.0:
            raise CapacityContractError(
                f"policy[{self.tier}].capacity_multiplier must be in (0, 1]: {multiplier!r}"
            )
        for field_name in ("requires_permit", "requires_eco_briefing"):
            if not isinstance(getattr(self, field_name), bool):
                raise CapacityContractError(f"policy[{self.tier}].{field_name} must be boolean")
        if self.alert_severity not in ALERT_SEVERITIES:
            raise CapacityContractError(
                f"policy[{self.tier}].alert_severity must be one of {ALERT_SEVERITIES}: {self.alert_severity!r}"
            )
        if self.tier == "critical" and not (self.booking_restriction_message or "").strip():
            raise CapacityContractError("policy[critical] requires a non-empty booking_restriction_message")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, tier: str | None = None) -> "Policy":
        if not isinstance(payload, Mapping):
            raise CapacityContractError("policy payload must be a mapping")
        data = _normalize_keys(payload)
        tier_value = normalize_tier(tier if tier is not None else data.get("tier") or data.get("sensitivity_level"))
        missing = [key for key in POLICY_FIELDS if key not in data and key != "booking_restriction_message"]
        if missing:
            raise CapacityContractError(f"policy[{tier_value}] missing fields: {','.join(missing)}")
        message = data.get("booking_restriction_message")
        return cls(
            tier=tier_value,
            capacity_multiplier=data["capacity_multiplier"],
            requires_permit=data["requires_permit"],
            requires_eco_briefing=data["requires_eco_briefing"],
            alert_severity=str(data["alert_severity"] or "").strip().lower(),
            booking_restriction_message=None if message in (None, "") else str(message),
        )

    def merged(self, changes: Mapping[str, Any]) -> "Policy":
        data = _normalize_keys(changes)
        data.pop("tier", None)
        data.pop("sensitivity_level", None)
        unknown = sorted(set(data) - set(POLICY_FIELDS))
        if unknown:
            raise CapacityContractError(f"policy update has unknown fields: {','.join(unknown)}")
        payload = self.as_dict()
        payload.update(data)
        return Policy.from_payload(payload, tier=self.tier)

    def as_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "capacity_multiplier": self.capacity_multiplier,
            "requires_permit": self.requires_permit,
            "requires_eco_briefing": self.requires_eco_briefing,
            "alert_severity": self.alert_severity,
            "booking_restriction_message": self.booking_restriction_message,
        }

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


@dataclass(frozen=True)
class CapacityOverride:
    destination_id: str
    multiplier: float
    reason: str
    active: bool = True
    expires_at_utc: datetime | None = None
    set_at_utc: datetime | None = None

    def __post_init__(self) -> None:
        for field_name in ("expires_at_utc", "set_at_utc"):
            value = getattr(self, field_name)
            if value is None:
                continue
            if not isinstance(value, datetime):
                raise CapacityContractError(f"override {field_name} must be a datetime: {value!r}")
            # Naive timestamps are read as UTC.
            object.__setattr__(self, field_name, as_utc(value))

    def is_effective(self, now: datetime) -> bool:
        if not self.active:
            return False
        if self.expires_at_utc is None:
            return True
        return self.expires_at_utc > as_utc(now)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CapacityOverride":
        if not isinstance(payload, Mapping):
            raise CapacityContractError("override payload must be a mapping")
        data = _normalize_keys(payload)
        destination_id = str(data.get("destination_id") or "").strip()
        if not destination_id:
            raise CapacityContractError("override requires non-empty destination_id")
        multiplier = data.get("multiplier")
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)):
            raise CapacityContractError("override multiplier must be numeric")
        active = data.get("active", True)
        if not isinstance(active, bool):
            raise CapacityContractError("override active must be boolean")
        return cls(
            destination_id=destination_id,
            multiplier=float(multiplier),
            reason=str(data.get("reason") or "").strip(),
            active=active,
            expires_at_utc=parse_optional_utc(data.get("expires_at_utc"), field_name="expires_at_utc"),
            set_at_utc=parse_optional_utc(data.get("set_at_utc"), field_name="set_at_utc"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "destination_id": self.destination_id,
            "multiplier": self.multiplier,
            "reason": self.reason,
            "active": self.active,
            "expires_at_utc": None if self.expires_at_utc is None else self.expires_at_utc.isoformat(),
            "set_at_utc": None if self.set_at_utc is None else self.set_at_utc.isoformat(),
        }

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


@dataclass(frozen=True)
class DestinationSnapshot:
    destination_id: str
    max_capacity: int
    current_occupancy: int
    sensitivity_tier: str
    name: str | None = None

    def __post_init__(self) -> None:
        if not str(self.destination_id or "").strip():
            raise CapacityContractError("destination_id must be non-empty")
        if isinstance(self.max_capacity, bool) or not isinstance(self.max_capacity, int) or self.max_capacity <= 0:
            raise CapacityContractError(f"max_capacity must be a positive integer: {self.max_capacity!r}")
        if (
            isinstance(self.current_occupancy, bool)
            or not isinstance(self.current_occupancy, int)
            or self.current_occupancy < 0
        ):
            raise CapacityContractError(
                f"current_occupancy must be a non-negative integer: {self.current_occupancy!r}"
            )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DestinationSnapshot":
        if not isinstance(payload, Mapping):
            raise CapacityContractError("destination payload must be a mapping")
        data = _normalize_keys(payload)
        required = ["destination_id", "max_capacity", "current_occupancy", "sensitivity_tier"]
        if "destination_id" not in data and "id" in data:
            data["destination_id"] = data["id"]
        missing = [key for key in required if key not in data]
        if missing:
            raise CapacityContractError(f"destination missing fields: {','.join(missing)}")
        name = data.get("name")
        return cls(
            destination_id=str(data["destination_id"]).strip(),
            max_capacity=data["max_capacity"],
            current_occupancy=data["current_occupancy"],
            sensitivity_tier=str(data["sensitivity_tier"] or "").strip().lower(),
            name=None if name in (None, "") else str(name),
        )

    @property
    def display_name(self) -> str:
        return self.name or self.destination_id

    def as_dict(self) -> dict[str, Any]:
        return {
            "destination_id": self.destination_id,
            "name": self.name,
            "max_capacity": self.max_capacity,
            "current_occupancy": self.current_occupancy,
            "sensitivity_tier": self.sensitivity_tier,
        }


@dataclass(frozen=True)
class WeatherSnapshot:
    temperature: float | None = None
    humidity: float | None = None
    wind_speed: float | None = None
    precipitation_probability: float | None = None
    visibility: float | None = None
    weather_main: str | None = None
    alert_level: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "WeatherSnapshot | None":
        """Lenient parse: unreadable readings become None instead of failing."""
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            raise CapacityContractError("weather payload must be a mapping")
        data = _normalize_keys(payload)
        weather_main = data.get("weather_main")
        alert_level = data.get("alert_level")
        return cls(
            temperature=_optional_float(data.get("temperature")),
            humidity=_optional_float(data.get("humidity")),
            wind_speed=_optional_float(data.get("wind_speed")),
            precipitation_probability=_optional_float(data.get("precipitation_probability")),
            visibility=_optional_float(data.get("visibility")),
            weather_main=None if weather_main in (None, "") else str(weather_main),
            alert_level=None if alert_level in (None, "") else str(alert_level).strip().lower(),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "humidity": self.humidity,
            "wind_speed": self.wind_speed,
            "precipitation_probability": self.precipitation_probability,
            "visibility": self.visibility,
            "weather_main": self.weather_main,
            "alert_level": self.alert_level,
        }


@dataclass(frozen=True)
class EcologicalIndicators:
    soil_compaction: float | None = None
    vegetation_disturbance: float | None = None
    wildlife_disturbance: float | None = None
    water_source_impact: float | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "EcologicalIndicators | None":
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            raise CapacityContractError("ecological indicators payload must be a mapping")
        data = _normalize_keys(payload)
        return cls(**{key: _optional_float(data.get(key)) for key in INDICATOR_KEYS})

    def readings(self) -> dict[str, float | None]:
        return {key: getattr(self, key) for key in INDICATOR_KEYS}

    def missing(self) -> tuple[str, ...]:
        return tuple(key for key, value in self.readings().items() if value is None)

    def as_dict(self) -> dict[str, Any]:
        return dict(self.readings())


@dataclass(frozen=True)
class ActiveFactorFlags:
    sensitivity: bool = False
    weather: bool = False
    season: bool = False
    ecological: bool = False
    override: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {key: getattr(self, key) for key in FACTOR_KEYS}


@dataclass(frozen=True)
class CapacityResult:
    destination_id: str
    adjusted_capacity: int
    available_spots: int
    combined_multiplier: float
    factors: dict[str, float]
    active_factors: tuple[str, ...]
    active_factor_flags: ActiveFactorFlags
    utilization_pct: float
    risk_level: str
    degraded_inputs: tuple[str, ...] = ()
    policy_revision: int = 0
    computed_at_utc: str = ""

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_inputs)

    def as_dict(self) -> dict[str, Any]:
        return {
            "destination_id": self.destination_id,
            "adjusted_capacity": self.adjusted_capacity,
            "available_spots": self.available_spots,
            "combined_multiplier": self.combined_multiplier,
            "factors": dict(self.factors),
            "active_factors": list(self.active_factors),
            "active_factor_flags": self.active_factor_flags.as_dict(),
            "utilization_pct": self.utilization_pct,
            "risk_level": self.risk_level,
            "degraded_inputs": list(self.degraded_inputs),
            "policy_revision": self.policy_revision,
            "computed_at_utc": self.computed_at_utc,
        }


@dataclass(frozen=True)
class CapacityAdjustment:
    """One recorded capacity computation, kept for the adjustment history."""

    destination_id: str
    recorded_at_utc: datetime
    original_capacity: int
    adjusted_capacity: int
    combined_multiplier: float
    factors: dict[str, float]
    active_factors: tuple[str, ...] = ()
    reason: str | None = None

    def __post_init__(self) -> None:
        if not str(self.destination_id or "").strip():
            raise CapacityContractError("adjustment requires non-empty destination_id")
        if not isinstance(self.recorded_at_utc, datetime):
            raise CapacityContractError(f"adjustment recorded_at_utc must be a datetime: {self.recorded_at_utc!r}")
        object.__setattr__(self, "recorded_at_utc", as_utc(self.recorded_at_utc))

    @classmethod
    def from_result(
        cls,
        destination: "DestinationSnapshot",
        result: CapacityResult,
        *,
        recorded_at_utc: datetime,
        reason: str | None = None,
    ) -> "CapacityAdjustment":
        labels = ", ".join(result.active_factors)
        return cls(
            destination_id=destination.destination_id,
            recorded_at_utc=recorded_at_utc,
            original_capacity=destination.max_capacity,
            adjusted_capacity=result.adjusted_capacity,
            combined_multiplier=result.combined_multiplier,
            factors=dict(result.factors),
            active_factors=tuple(result.active_factors),
            reason=reason or (labels or None),
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CapacityAdjustment":
        if not isinstance(payload, Mapping):
            raise CapacityContractError("adjustment payload must be a mapping")
        data = _normalize_keys(payload)
        missing = [
            name
            for name in ("destination_id", "recorded_at_utc", "original_capacity", "adjusted_capacity")
            if data.get(name) is None
        ]
        if missing:
            raise CapacityContractError(f"adjustment missing fields: {','.join(missing)}")
        factors = data.get("factors") or {}
        if not isinstance(factors, Mapping):
            raise CapacityContractError("adjustment factors must be a mapping")
        try:
            return cls(
                destination_id=str(data["destination_id"]).strip(),
                recorded_at_utc=parse_optional_utc(data["recorded_at_utc"], field_name="recorded_at_utc"),
                original_capacity=int(data["original_capacity"]),
                adjusted_capacity=int(data["adjusted_capacity"]),
                combined_multiplier=float(data.get("combined_multiplier", 1.0)),
                factors={str(key): float(value) for key, value in factors.items()},
                active_factors=tuple(str(label) for label in data.get("active_factors") or ()),
                reason=None if data.get("reason") in (None, "") else str(data["reason"]),
            )
        except CapacityContractError:
            raise
        except (TypeError, ValueError) as exc:
            raise CapacityContractError(f"adjustment payload is invalid: {exc}") from exc

    def as_dict(self) -> dict[str, Any]:
        return {
            "destination_id": self.destination_id,
            "recorded_at_utc": self.recorded_at_utc.isoformat(),
            "original_capacity": self.original_capacity,
            "adjusted_capacity": self.adjusted_capacity,
            "combined_multiplier": self.combined_multiplier,
            "factors": dict(self.factors),
            "active_factors": list(self.active_factors),
            "reason": self.reason,
        }

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


@dataclass(frozen=True)
class AdmissionDecision:
    destination_id: str
    group_size: int
    allowed: bool
    reason: str | None
    capacity: CapacityResult | None = None
    requirements: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "destination_id": self.destination_id,
            "group_size": self.group_size,
            "allowed": self.allowed,
            "reason": self.reason,
        }
        if self.capacity is not None:
            payload["capacity"] = self.capacity.as_dict()
        if self.requirements:
            payload["requirements"] = list(self.requirements)
        return payload


@dataclass(frozen=True)
class AlertDraft:
    destination_id: str
    severity: str
    message: str
    title: str
    alert_type: str = "emergency"
    is_active: bool = True
    evidence: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "destination_id": self.destination_id,
            "severity": self.severity,
            "message": self.message,
            "title": self.title,
            "alert_type": self.alert_type,
            "is_active": self.is_active,
            "evidence": dict(self.evidence),
        }

    def digest(self) -> str:
        canonical = json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def normalize_tier(value: Any) -> str:
    tier = str(value or "").strip().lower()
    if tier not in SENSITIVITY_TIERS:
        raise CapacityContractError(f"sensitivity tier must be one of {SENSITIVITY_TIERS}: {value!r}")
    return tier


def parse_optional_utc(value: Any, *, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        token = str(value).strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(token)
        except ValueError as exc:
            raise CapacityContractError(f"{field_name} must be RFC3339-ish UTC timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        raise CapacityContractError(f"{field_name} must include timezone information")
    return dt.astimezone(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return number


def _normalize_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {_CAMEL_ALIASES.get(str(key), str(key)): value for key, value in payload.items()}
