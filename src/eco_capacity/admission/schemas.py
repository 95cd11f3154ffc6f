"""JSON Schema contracts for capacity payloads crossing a process boundary."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
import yaml

SCHEMA_ROOT = Path(__file__).resolve().parent / "contract_schemas"

CHANGE_NOTICE = "change_notice.schema.yaml"
CAPACITY_RESULT = "capacity_result.schema.yaml"
ALERT_DRAFT = "alert_draft.schema.yaml"


class ContractSchemaError(ValueError):
    """Raised when a payload fails its contract schema."""


@lru_cache(maxsize=None)
def load_schema(name: str) -> dict[str, Any]:
    path = SCHEMA_ROOT / name
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ContractSchemaError(f"schema {name} must be a mapping")
    return data


@lru_cache(maxsize=None)
def _validator(name: str) -> Draft202012Validator:
    schema = load_schema(name)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def schema_errors(name: str, payload: Any) -> list[str]:
    errors = sorted(_validator(name).iter_errors(payload), key=lambda e: list(e.path))
    return [error.message for error in errors]


def validate_contract(name: str, payload: Any) -> None:
    messages = schema_errors(name, payload)
    if messages:
        raise ContractSchemaError(f"{name} validation failed: {'; '.join(messages)}")
