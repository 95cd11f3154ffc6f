"""eco-capacity operator CLI.

Inputs are JSON documents (inline or a file path); every command prints JSON
lines on stdout.
"""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Any

from eco_capacity.logging_utils import configure_logging

from .config import CapacityConfigError, default_policy_bundle, load_policy_bundle, load_runtime_config
from .contracts import (
    CapacityContractError,
    DestinationSnapshot,
    EcologicalIndicators,
    WeatherSnapshot,
    parse_optional_utc,
)
from .controller import AdmissionInputError
from .engine import REGISTRY_LOOKUP
from .overrides import OverrideValidationError
from .policy_store import PolicyUpdateError
from .service import CapacityService, build_capacity_service
from .store import ConfigStoreError
from .weather import classify_weather

logger = logging.getLogger("eco_capacity.admission.cli")

_INPUT_ERRORS = (
    CapacityContractError,
    CapacityConfigError,
    AdmissionInputError,
    PolicyUpdateError,
    OverrideValidationError,
    json.JSONDecodeError,
    OSError,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ecological visitor-capacity admission engine")
    parser.add_argument("--log-level", default=None, help="Logging level (defaults to CAPACITY_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    capacity = sub.add_parser("capacity", help="Compute adjusted capacity for a destination")
    _add_profile(capacity)
    _add_snapshot_inputs(capacity)
    capacity.add_argument("--no-override", action="store_true", help="Ignore any administrator override")
    capacity.add_argument("--reason", default=None, help="Note stored with the adjustment history entry")
    capacity.add_argument("--no-record", action="store_true", help="Do not append to the adjustment history")

    history = sub.add_parser("history", help="Print recorded capacity adjustments, newest first")
    _add_profile(history)
    history.add_argument("--destination-id", default=None, help="Only this destination")
    history.add_argument("--limit", type=int, default=100, help="Maximum entries")

    admit = sub.add_parser("admit", help="Decide whether a booking is allowed")
    _add_profile(admit)
    _add_snapshot_inputs(admit)
    admit.add_argument("--group-size", type=int, required=True, help="Visitors in the booking")

    alert = sub.add_parser("alert", help="Draft standing advisories for a destination")
    _add_profile(alert)
    alert.add_argument("--destination", required=True, help="Destination snapshot JSON")
    alert.add_argument("--weather", default=None, help="Weather snapshot JSON for hazard advisories")

    classify = sub.add_parser("classify-weather", help="Classify a weather snapshot for hazards")
    classify.add_argument("--weather", required=True, help="Weather snapshot JSON")
    classify.add_argument("--policy-ref", default=None, help="Policy bundle YAML with hazard thresholds")

    policy = sub.add_parser("policy", help="Show or update tier policies")
    policy_sub = policy.add_subparsers(dest="policy_command", required=True)
    policy_show = policy_sub.add_parser("show", help="Print the current policy table")
    _add_profile(policy_show)
    policy_update = policy_sub.add_parser("update", help="Merge field changes into one tier policy")
    _add_profile(policy_update)
    policy_update.add_argument("--tier", required=True, help="Sensitivity tier")
    policy_update.add_argument("--changes", required=True, help="Partial policy JSON")

    override = sub.add_parser("override", help="Manage per-destination capacity overrides")
    override_sub = override.add_subparsers(dest="override_command", required=True)
    override_set = override_sub.add_parser("set", help="Create or replace an override")
    _add_profile(override_set)
    override_set.add_argument("--destination-id", required=True)
    override_set.add_argument("--multiplier", type=float, required=True)
    override_set.add_argument("--reason", required=True)
    expiry = override_set.add_mutually_exclusive_group()
    expiry.add_argument("--expires-at", default=None, help="RFC3339 expiry timestamp")
    expiry.add_argument("--ttl-seconds", type=int, default=None, help="Expiry relative to now")
    expiry.add_argument("--no-expiry", action="store_true", help="Keep until cleared")
    override_clear = override_sub.add_parser("clear", help="Remove an override")
    _add_profile(override_clear)
    override_clear.add_argument("--destination-id", required=True)
    override_list = override_sub.add_parser("list", help="List effective overrides")
    _add_profile(override_list)

    listen = sub.add_parser("listen", help="Follow change notifications and reload snapshots")
    _add_profile(listen)
    listen.add_argument("--once", action="store_true", help="Poll once and exit")
    return parser


def _add_profile(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--profile", required=True, help="Runtime profile YAML")


def _add_snapshot_inputs(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--destination", required=True, help="Destination snapshot JSON")
    parser.add_argument("--weather", default=None, help="Weather snapshot JSON")
    parser.add_argument("--indicators", default=None, help="Ecological indicators JSON")
    parser.add_argument("--now", default=None, help="Evaluation time (RFC3339); defaults to now")


def _load_json(value: str) -> Any:
    text = value.strip()
    if not text.startswith(("{", "[")):
        text = Path(value).read_text(encoding="utf-8")
    return json.loads(text)


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True, ensure_ascii=True))


def _service(args: argparse.Namespace) -> CapacityService:
    return build_capacity_service(load_runtime_config(Path(args.profile)))


def _now(args: argparse.Namespace) -> datetime:
    parsed = parse_optional_utc(getattr(args, "now", None), field_name="now")
    return parsed or datetime.now(tz=timezone.utc)


def _snapshots(args: argparse.Namespace) -> tuple[DestinationSnapshot, WeatherSnapshot | None, EcologicalIndicators | None]:
    destination = DestinationSnapshot.from_payload(_load_json(args.destination))
    weather = WeatherSnapshot.from_payload(_load_json(args.weather)) if args.weather else None
    indicators = EcologicalIndicators.from_payload(_load_json(args.indicators)) if args.indicators else None
    return destination, weather, indicators


def _cmd_capacity(args: argparse.Namespace) -> int:
    service = _service(args)
    destination, weather, indicators = _snapshots(args)
    override = None if args.no_override else REGISTRY_LOOKUP
    if args.no_record:
        result = service.engine.compute_capacity(destination, weather, indicators, override=override, now=_now(args))
    else:
        result = service.record_capacity(
            destination, weather, indicators, override=override, now=_now(args), reason=args.reason
        )
    _emit(result.as_dict())
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    service = _service(args)
    for adjustment in service.adjustment_history(args.destination_id, limit=args.limit):
        _emit(adjustment.as_dict())
    return 0


def _cmd_admit(args: argparse.Namespace) -> int:
    service = _service(args)
    destination, weather, indicators = _snapshots(args)
    decision = service.controller.is_booking_allowed(destination, args.group_size, weather, indicators, _now(args))
    _emit(decision.as_dict())
    return 0


def _cmd_alert(args: argparse.Namespace) -> int:
    service = _service(args)
    destination = DestinationSnapshot.from_payload(_load_json(args.destination))
    drafts = [service.alerts.generate_alert(destination)]
    if args.weather:
        weather = WeatherSnapshot.from_payload(_load_json(args.weather))
        drafts.append(service.alerts.generate_weather_alert(destination, weather))
    for draft in drafts:
        if draft is not None:
            _emit({**draft.as_dict(), "digest": draft.digest()})
    return 0


def _cmd_classify_weather(args: argparse.Namespace) -> int:
    bundle = load_policy_bundle(Path(args.policy_ref)) if args.policy_ref else default_policy_bundle()
    weather = WeatherSnapshot.from_payload(_load_json(args.weather))
    _emit(classify_weather(weather, thresholds=bundle.hazard_thresholds).as_dict())
    return 0


def _cmd_policy(args: argparse.Namespace) -> int:
    service = _service(args)
    if args.policy_command == "show":
        _emit(
            {
                "revision": service.policies.revision,
                "policies": {tier: policy.as_dict() for tier, policy in service.policies.list_all().items()},
            }
        )
        return 0
    changes = _load_json(args.changes)
    if not isinstance(changes, dict):
        raise PolicyUpdateError("--changes must be a JSON object")
    updated = service.policies.update(args.tier, changes)
    _emit({"revision": service.policies.revision, "policy": updated.as_dict()})
    return 0


def _cmd_override(args: argparse.Namespace) -> int:
    service = _service(args)
    now = datetime.now(tz=timezone.utc)
    if args.override_command == "set":
        override = service.overrides.build(
            destination_id=args.destination_id,
            multiplier=args.multiplier,
            reason=args.reason,
            now=now,
            expires_at_utc=parse_optional_utc(args.expires_at, field_name="expires_at"),
            ttl_seconds=args.ttl_seconds,
            no_expiry=args.no_expiry,
        )
        _emit(service.overrides.set(override, now=now).as_dict())
        return 0
    if args.override_command == "clear":
        removed = service.overrides.clear(args.destination_id)
        _emit({"destination_id": args.destination_id, "cleared": removed})
        return 0
    for override in service.overrides.list_effective(now).values():
        _emit(override.as_dict())
    return 0


def _cmd_listen(args: argparse.Namespace) -> int:
    service = _service(args)
    if args.once:
        _emit({"reloads": service.listener.poll_once()})
        return 0
    thread, stop_event = service.start_listener()
    try:
        while thread.is_alive():
            thread.join(timeout=1.0)
    except KeyboardInterrupt:
        stop_event.set()
        thread.join()
    return 0


_COMMANDS = {
    "capacity": _cmd_capacity,
    "history": _cmd_history,
    "admit": _cmd_admit,
    "alert": _cmd_alert,
    "classify-weather": _cmd_classify_weather,
    "policy": _cmd_policy,
    "override": _cmd_override,
    "listen": _cmd_listen,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = getattr(logging, args.log_level.strip().upper(), logging.INFO) if args.log_level else None
    configure_logging(level=level)
    try:
        return _COMMANDS[args.command](args)
    except _INPUT_ERRORS as exc:
        print(json.dumps({"error": type(exc).__name__, "detail": str(exc)}, ensure_ascii=True), file=sys.stderr)
        return 2
    except ConfigStoreError as exc:
        logger.error("Capacity store unavailable detail=%s", exc)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
