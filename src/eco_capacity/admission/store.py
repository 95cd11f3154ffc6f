"""Durable policy and override store (Phase 3)."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
from typing import Any, Iterator, Mapping

import psycopg

from .contracts import CapacityAdjustment, CapacityContractError, CapacityOverride, Policy

ADJUSTMENT_HISTORY_LIMIT = 1000


class ConfigStoreError(RuntimeError):
    """Raised when durable store operations fail."""


class ConfigStoreTrustError(ConfigStoreError):
    """Raised when stored rows are unreadable or internally inconsistent."""


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def build_config_store(dsn: str, *, stream_id: str) -> "ConfigStore":
    if is_postgres_dsn(dsn):
        return PostgresConfigStore(dsn=dsn, stream_id=stream_id)
    return SqliteConfigStore(path=Path(_sqlite_path(dsn)), stream_id=stream_id)


class ConfigStore:
    def load_policies(self) -> dict[str, Policy]:
        raise NotImplementedError

    def save_policies(self, policies: Mapping[str, Policy]) -> None:
        raise NotImplementedError

    def load_overrides(self) -> dict[str, CapacityOverride]:
        raise NotImplementedError

    def save_override(self, override: CapacityOverride) -> None:
        raise NotImplementedError

    def clear_override(self, destination_id: str) -> bool:
        raise NotImplementedError

    def log_adjustment(self, adjustment: CapacityAdjustment) -> None:
        raise NotImplementedError

    def load_adjustment_history(
        self, destination_id: str | None = None, *, limit: int = 100
    ) -> list[CapacityAdjustment]:
        """Newest first; ``destination_id=None`` spans every destination."""
        raise NotImplementedError


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS capacity_policies (
    stream_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    policy_json TEXT NOT NULL,
    updated_at_utc TEXT NOT NULL,
    PRIMARY KEY (stream_id, tier)
);
CREATE TABLE IF NOT EXISTS capacity_overrides (
    stream_id TEXT NOT NULL,
    destination_id TEXT NOT NULL,
    override_json TEXT NOT NULL,
    multiplier REAL NOT NULL,
    active INTEGER NOT NULL,
    expires_at_utc TEXT,
    updated_at_utc TEXT NOT NULL,
    PRIMARY KEY (stream_id, destination_id)
);
CREATE TABLE IF NOT EXISTS capacity_adjustments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL,
    destination_id TEXT NOT NULL,
    recorded_at_utc TEXT NOT NULL,
    adjustment_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS capacity_adjustments_by_destination
    ON capacity_adjustments (stream_id, destination_id, id);
"""

_POSTGRES_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS capacity_policies (
        stream_id TEXT NOT NULL,
        tier TEXT NOT NULL,
        policy_json TEXT NOT NULL,
        updated_at_utc TEXT NOT NULL,
        PRIMARY KEY (stream_id, tier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS capacity_overrides (
        stream_id TEXT NOT NULL,
        destination_id TEXT NOT NULL,
        override_json TEXT NOT NULL,
        multiplier DOUBLE PRECISION NOT NULL,
        active BOOLEAN NOT NULL,
        expires_at_utc TEXT,
        updated_at_utc TEXT NOT NULL,
        PRIMARY KEY (stream_id, destination_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS capacity_adjustments (
        id BIGSERIAL PRIMARY KEY,
        stream_id TEXT NOT NULL,
        destination_id TEXT NOT NULL,
        recorded_at_utc TEXT NOT NULL,
        adjustment_json TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS capacity_adjustments_by_destination
        ON capacity_adjustments (stream_id, destination_id, id)
    """,
)


@dataclass
class SqliteConfigStore(ConfigStore):
    path: Path
    stream_id: str

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SQLITE_SCHEMA)

    def load_policies(self) -> dict[str, Policy]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tier, policy_json FROM capacity_policies WHERE stream_id = ?",
                (self.stream_id,),
            ).fetchall()
        return {str(row[0]): _parse_policy_row(tier=row[0], policy_json=row[1]) for row in rows}

    def save_policies(self, policies: Mapping[str, Policy]) -> None:
        now = _utc_now()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            for tier, policy in policies.items():
                conn.execute(
                    """
                    INSERT INTO capacity_policies (stream_id, tier, policy_json, updated_at_utc)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(stream_id, tier) DO UPDATE SET
                        policy_json=excluded.policy_json,
                        updated_at_utc=excluded.updated_at_utc
                    """,
                    (self.stream_id, str(tier), policy.canonical_json(), now),
                )

    def load_overrides(self) -> dict[str, CapacityOverride]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT destination_id, override_json, multiplier, active
                FROM capacity_overrides
                WHERE stream_id = ?
                """,
                (self.stream_id,),
            ).fetchall()
        overrides: dict[str, CapacityOverride] = {}
        for row in rows:
            override = _parse_override_row(
                destination_id=row[0],
                override_json=row[1],
                multiplier=row[2],
                active=bool(row[3]),
            )
            overrides[override.destination_id] = override
        return overrides

    def save_override(self, override: CapacityOverride) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO capacity_overrides (
                    stream_id, destination_id, override_json, multiplier, active, expires_at_utc, updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stream_id, destination_id) DO UPDATE SET
                    override_json=excluded.override_json,
                    multiplier=excluded.multiplier,
                    active=excluded.active,
                    expires_at_utc=excluded.expires_at_utc,
                    updated_at_utc=excluded.updated_at_utc
                """,
                _override_params(self.stream_id, override),
            )

    def clear_override(self, destination_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM capacity_overrides WHERE stream_id = ? AND destination_id = ?",
                (self.stream_id, _normalize_destination(destination_id)),
            )
            return cursor.rowcount > 0

    def log_adjustment(self, adjustment: CapacityAdjustment) -> None:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO capacity_adjustments (stream_id, destination_id, recorded_at_utc, adjustment_json)
                VALUES (?, ?, ?, ?)
                """,
                _adjustment_params(self.stream_id, adjustment),
            )
            conn.execute(
                """
                DELETE FROM capacity_adjustments
                WHERE stream_id = ? AND id NOT IN (
                    SELECT id FROM capacity_adjustments WHERE stream_id = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (self.stream_id, self.stream_id, ADJUSTMENT_HISTORY_LIMIT),
            )

    def load_adjustment_history(
        self, destination_id: str | None = None, *, limit: int = 100
    ) -> list[CapacityAdjustment]:
        bounded = _history_limit(limit)
        with self._connect() as conn:
            if destination_id is None:
                rows = conn.execute(
                    """
                    SELECT destination_id, adjustment_json FROM capacity_adjustments
                    WHERE stream_id = ? ORDER BY id DESC LIMIT ?
                    """,
                    (self.stream_id, bounded),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT destination_id, adjustment_json FROM capacity_adjustments
                    WHERE stream_id = ? AND destination_id = ? ORDER BY id DESC LIMIT ?
                    """,
                    (self.stream_id, _normalize_destination(destination_id), bounded),
                ).fetchall()
        return [_parse_adjustment_row(destination_id=row[0], adjustment_json=row[1]) for row in rows]

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(str(self.path))
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise ConfigStoreError(f"STORE_UNAVAILABLE:{exc}") from exc
        finally:
            if conn is not None:
                conn.close()


@dataclass
class PostgresConfigStore(ConfigStore):
    dsn: str
    stream_id: str

    def __post_init__(self) -> None:
        with self._connect() as conn:
            for statement in _POSTGRES_SCHEMA:
                conn.execute(statement)

    def load_policies(self) -> dict[str, Policy]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tier, policy_json FROM capacity_policies WHERE stream_id = %s",
                (self.stream_id,),
            ).fetchall()
        return {str(row[0]): _parse_policy_row(tier=row[0], policy_json=row[1]) for row in rows}

    def save_policies(self, policies: Mapping[str, Policy]) -> None:
        now = _utc_now()
        with self._connect() as conn:
            with conn.cursor() as cur:
                for tier, policy in policies.items():
                    cur.execute(
                        """
                        INSERT INTO capacity_policies (stream_id, tier, policy_json, updated_at_utc)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (stream_id, tier) DO UPDATE SET
                            policy_json = excluded.policy_json,
                            updated_at_utc = excluded.updated_at_utc
                        """,
                        (self.stream_id, str(tier), policy.canonical_json(), now),
                    )

    def load_overrides(self) -> dict[str, CapacityOverride]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT destination_id, override_json, multiplier, active
                FROM capacity_overrides
                WHERE stream_id = %s
                """,
                (self.stream_id,),
            ).fetchall()
        overrides: dict[str, CapacityOverride] = {}
        for row in rows:
            override = _parse_override_row(
                destination_id=row[0],
                override_json=row[1],
                multiplier=row[2],
                active=bool(row[3]),
            )
            overrides[override.destination_id] = override
        return overrides

    def save_override(self, override: CapacityOverride) -> None:
        stream_id, destination_id, override_json, multiplier, active, expires_at_utc, updated_at_utc = (
            _override_params(self.stream_id, override)
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO capacity_overrides (
                    stream_id, destination_id, override_json, multiplier, active, expires_at_utc, updated_at_utc
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (stream_id, destination_id) DO UPDATE SET
                    override_json = excluded.override_json,
                    multiplier = excluded.multiplier,
                    active = excluded.active,
                    expires_at_utc = excluded.expires_at_utc,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (stream_id, destination_id, override_json, multiplier, bool(active), expires_at_utc, updated_at_utc),
            )

    def clear_override(self, destination_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM capacity_overrides WHERE stream_id = %s AND destination_id = %s",
                (self.stream_id, _normalize_destination(destination_id)),
            )
            return cursor.rowcount > 0

    def log_adjustment(self, adjustment: CapacityAdjustment) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO capacity_adjustments (stream_id, destination_id, recorded_at_utc, adjustment_json)
                    VALUES (%s, %s, %s, %s)
                    """,
                    _adjustment_params(self.stream_id, adjustment),
                )
                cur.execute(
                    """
                    DELETE FROM capacity_adjustments
                    WHERE stream_id = %s AND id NOT IN (
                        SELECT id FROM capacity_adjustments WHERE stream_id = %s ORDER BY id DESC LIMIT %s
                    )
                    """,
                    (self.stream_id, self.stream_id, ADJUSTMENT_HISTORY_LIMIT),
                )

    def load_adjustment_history(
        self, destination_id: str | None = None, *, limit: int = 100
    ) -> list[CapacityAdjustment]:
        bounded = _history_limit(limit)
        with self._connect() as conn:
            if destination_id is None:
                rows = conn.execute(
                    """
                    SELECT destination_id, adjustment_json FROM capacity_adjustments
                    WHERE stream_id = %s ORDER BY id DESC LIMIT %s
                    """,
                    (self.stream_id, bounded),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT destination_id, adjustment_json FROM capacity_adjustments
                    WHERE stream_id = %s AND destination_id = %s ORDER BY id DESC LIMIT %s
                    """,
                    (self.stream_id, _normalize_destination(destination_id), bounded),
                ).fetchall()
        return [_parse_adjustment_row(destination_id=row[0], adjustment_json=row[1]) for row in rows]

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with psycopg.connect(self.dsn) as conn:
                yield conn
        except psycopg.Error as exc:
            raise ConfigStoreError(f"STORE_UNAVAILABLE:{exc}") from exc


def _parse_policy_row(*, tier: Any, policy_json: Any) -> Policy:
    try:
        payload = json.loads(str(policy_json))
    except json.JSONDecodeError as exc:
        raise ConfigStoreTrustError("POLICY_ROW_CORRUPT:policy_json is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigStoreTrustError("POLICY_ROW_CORRUPT:policy_json must decode to object")
    try:
        policy = Policy.from_payload(payload)
    except CapacityContractError as exc:
        raise ConfigStoreTrustError(f"POLICY_ROW_CORRUPT:{exc}") from exc
    if policy.tier != str(tier):
        raise ConfigStoreTrustError("POLICY_ROW_MISMATCH:tier column differs from policy payload tier")
    return policy


def _parse_override_row(*, destination_id: Any, override_json: Any, multiplier: Any, active: bool) -> CapacityOverride:
    try:
        payload = json.loads(str(override_json))
    except json.JSONDecodeError as exc:
        raise ConfigStoreTrustError("OVERRIDE_ROW_CORRUPT:override_json is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigStoreTrustError("OVERRIDE_ROW_CORRUPT:override_json must decode to object")
    try:
        override = CapacityOverride.from_payload(payload)
    except CapacityContractError as exc:
        raise ConfigStoreTrustError(f"OVERRIDE_ROW_CORRUPT:{exc}") from exc
    if override.destination_id != str(destination_id):
        raise ConfigStoreTrustError("OVERRIDE_ROW_MISMATCH:destination_id column differs from payload")
    if abs(override.multiplier - float(multiplier)) > 1e-9:
        raise ConfigStoreTrustError("OVERRIDE_ROW_MISMATCH:multiplier column differs from payload")
    if override.active != active:
        raise ConfigStoreTrustError("OVERRIDE_ROW_MISMATCH:active column differs from payload")
    return override


def _parse_adjustment_row(*, destination_id: Any, adjustment_json: Any) -> CapacityAdjustment:
    try:
        payload = json.loads(str(adjustment_json))
    except json.JSONDecodeError as exc:
        raise ConfigStoreTrustError("ADJUSTMENT_ROW_CORRUPT:adjustment_json is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigStoreTrustError("ADJUSTMENT_ROW_CORRUPT:adjustment_json must decode to object")
    try:
        adjustment = CapacityAdjustment.from_payload(payload)
    except CapacityContractError as exc:
        raise ConfigStoreTrustError(f"ADJUSTMENT_ROW_CORRUPT:{exc}") from exc
    if adjustment.destination_id != str(destination_id):
        raise ConfigStoreTrustError("ADJUSTMENT_ROW_MISMATCH:destination_id column differs from payload")
    return adjustment


def _adjustment_params(stream_id: str, adjustment: CapacityAdjustment) -> tuple[Any, ...]:
    return (
        stream_id,
        adjustment.destination_id,
        adjustment.recorded_at_utc.isoformat(),
        adjustment.canonical_json(),
    )


def _history_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ConfigStoreError(f"history limit must be a positive integer: {limit!r}")
    return min(limit, ADJUSTMENT_HISTORY_LIMIT)


def _override_params(stream_id: str, override: CapacityOverride) -> tuple[Any, ...]:
    expires = None if override.expires_at_utc is None else override.expires_at_utc.isoformat()
    return (
        stream_id,
        override.destination_id,
        override.canonical_json(),
        override.multiplier,
        1 if override.active else 0,
        expires,
        _utc_now(),
    )


def _normalize_destination(destination_id: str) -> str:
    normalized = str(destination_id).strip()
    if not normalized:
        raise ConfigStoreError("destination_id must be non-empty")
    return normalized


def _sqlite_path(dsn: str) -> str:
    value = str(dsn or "").strip()
    if not value:
        raise ConfigStoreError("sqlite store path/DSN must be non-empty")
    if value.startswith("sqlite:///"):
        return value[len("sqlite:///") :]
    if value.startswith("sqlite://"):
        return value[len("sqlite://") :]
    return value


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
