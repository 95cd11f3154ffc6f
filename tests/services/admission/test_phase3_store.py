from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sqlite3

import pytest

from eco_capacity.admission.config import DEFAULT_POLICIES
from eco_capacity.admission import store as store_module
from eco_capacity.admission.contracts import CapacityAdjustment, CapacityOverride
from eco_capacity.admission.store import (
    ConfigStoreError,
    ConfigStoreTrustError,
    SqliteConfigStore,
    build_config_store,
    is_postgres_dsn,
)


def _sqlite_store(tmp_path: Path, *, stream_id: str = "capacity.phase3") -> SqliteConfigStore:
    store = build_config_store(str(tmp_path / "capacity_phase3.sqlite"), stream_id=stream_id)
    assert isinstance(store, SqliteConfigStore)
    return store


def _override(destination_id: str = "dest-1", multiplier: float = 0.5) -> CapacityOverride:
    return CapacityOverride(
        destination_id=destination_id,
        multiplier=multiplier,
        reason="trail erosion",
        expires_at_utc=datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc) + timedelta(hours=24),
        set_at_utc=datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_dsn_detection() -> None:
    assert is_postgres_dsn("postgres://u:p@h/db")
    assert is_postgres_dsn("postgresql://u:p@h/db")
    assert not is_postgres_dsn("runs/capacity.sqlite")
    assert not is_postgres_dsn(None)


def test_sqlite_dsn_prefix_is_stripped(tmp_path: Path) -> None:
    store = build_config_store(f"sqlite:///{tmp_path / 'prefixed.sqlite'}", stream_id="s")
    assert isinstance(store, SqliteConfigStore)
    assert store.path == tmp_path / "prefixed.sqlite"


def test_policies_roundtrip(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    assert store.load_policies() == {}
    store.save_policies(DEFAULT_POLICIES)
    assert store.load_policies() == DEFAULT_POLICIES

    updated = dict(DEFAULT_POLICIES)
    updated["medium"] = DEFAULT_POLICIES["medium"].merged({"capacity_multiplier": 0.6})
    store.save_policies(updated)
    assert store.load_policies()["medium"].capacity_multiplier == 0.6


def test_overrides_roundtrip_and_clear(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.save_override(_override())
    store.save_override(_override("dest-2", 0.3))
    loaded = store.load_overrides()
    assert set(loaded) == {"dest-1", "dest-2"}
    assert loaded["dest-1"] == _override()

    store.save_override(_override("dest-1", 1.2))
    assert store.load_overrides()["dest-1"].multiplier == 1.2

    assert store.clear_override("dest-1") is True
    assert store.clear_override("dest-1") is False
    assert set(store.load_overrides()) == {"dest-2"}


def test_streams_are_isolated(tmp_path: Path) -> None:
    a = _sqlite_store(tmp_path, stream_id="a")
    b = _sqlite_store(tmp_path, stream_id="b")
    a.save_override(_override())
    assert b.load_overrides() == {}


def test_corrupt_policy_row_raises_trust_error(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.save_policies(DEFAULT_POLICIES)
    with sqlite3.connect(store.path) as conn:
        conn.execute("UPDATE capacity_policies SET policy_json = '{not json' WHERE tier = 'high'")
    with pytest.raises(ConfigStoreTrustError):
        store.load_policies()


def test_mismatched_override_row_raises_trust_error(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.save_override(_override())
    with sqlite3.connect(store.path) as conn:
        conn.execute("UPDATE capacity_overrides SET multiplier = 0.9 WHERE destination_id = 'dest-1'")
    with pytest.raises(ConfigStoreTrustError):
        store.load_overrides()


def test_unreachable_store_raises_store_error(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.path.unlink()
    store.path.mkdir()
    with pytest.raises(ConfigStoreError):
        store.load_policies()


def test_clear_override_requires_destination(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    with pytest.raises(ConfigStoreError):
        store.clear_override("  ")


def _adjustment(destination_id: str, minute: int, adjusted: int = 74) -> CapacityAdjustment:
    return CapacityAdjustment(
        destination_id=destination_id,
        recorded_at_utc=datetime(2026, 6, 1, 12, minute, tzinfo=timezone.utc),
        original_capacity=100,
        adjusted_capacity=adjusted,
        combined_multiplier=0.68,
        factors={"sensitivity": 0.8, "weather": 0.85},
        active_factors=("Medium Sensitivity", "Weather Alert (medium)"),
    )


def test_adjustment_history_is_newest_first_and_filtered(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.log_adjustment(_adjustment("dest-1", 0, adjusted=74))
    store.log_adjustment(_adjustment("dest-2", 1, adjusted=90))
    store.log_adjustment(_adjustment("dest-1", 2, adjusted=60))

    history = store.load_adjustment_history("dest-1")
    assert [entry.adjusted_capacity for entry in history] == [60, 74]
    assert history[0].factors == {"sensitivity": 0.8, "weather": 0.85}
    assert history[0].reason is None
    assert [entry.destination_id for entry in store.load_adjustment_history(limit=2)] == ["dest-1", "dest-2"]
    assert _sqlite_store(tmp_path, stream_id="other").load_adjustment_history() == []


def test_adjustment_history_is_bounded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(store_module, "ADJUSTMENT_HISTORY_LIMIT", 3)
    store = _sqlite_store(tmp_path)
    for minute in range(5):
        store.log_adjustment(_adjustment("dest-1", minute, adjusted=minute))
    assert [entry.adjusted_capacity for entry in store.load_adjustment_history(limit=10)] == [4, 3, 2]


def test_adjustment_history_rejects_bad_limit(tmp_path: Path) -> None:
    with pytest.raises(ConfigStoreError):
        _sqlite_store(tmp_path).load_adjustment_history(limit=0)


def test_corrupt_adjustment_row_raises_trust_error(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.log_adjustment(_adjustment("dest-1", 0))
    with sqlite3.connect(str(store.path)) as conn:
        conn.execute("UPDATE capacity_adjustments SET adjustment_json = 'nope'")
    with pytest.raises(ConfigStoreTrustError):
        store.load_adjustment_history()
