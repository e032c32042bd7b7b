"""Tests for the manifest store and its query helpers."""

from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest
import yaml

from piv_orchestrator.errors import ManifestError
from piv_orchestrator.manifest import (
    ManifestStore,
    active_checkpoints,
    freshness_window_days,
    latest_entry,
    manifest_path,
    pending_failures,
    phase_numbers,
    phase_status,
    profile_freshness,
    refresh_profile_freshness,
)
from piv_orchestrator.schemas import (
    ExecutionStatus,
    FailureEntry,
    NotificationEntry,
    PlanStatus,
    ValidationStatus,
)

NOW = dt.datetime(2026, 3, 10, 12, 0, tzinfo=dt.timezone.utc)


def test_read_missing_manifest_is_empty_skeleton(store: ManifestStore) -> None:
    assert store.exists() is False
    assert store.read() == {"phases": {}}


def test_merge_preserves_unknown_fields(store: ManifestStore, project: Path) -> None:
    path = manifest_path(project)
    path.parent.mkdir(parents=True)
    path.write_text(
        yaml.safe_dump({"custom": {"keep": True}, "phases": {"1": {"plan": "complete"}}}),
        encoding="utf-8",
    )

    merged = store.merge({"phases": {1: {"execution": "in_progress"}}})

    assert merged["custom"] == {"keep": True}
    assert merged["phases"][1] == {"plan": "complete", "execution": "in_progress"}
    on_disk = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert on_disk["custom"] == {"keep": True}
    assert "last_updated" in on_disk


def test_merge_replaces_lists(store: ManifestStore) -> None:
    store.merge({"pending_research": ["stripe", "redis"]})
    merged = store.merge({"pending_research": ["redis"]})

    assert merged["pending_research"] == ["redis"]


def test_string_phase_keys_are_normalised(store: ManifestStore, project: Path) -> None:
    path = manifest_path(project)
    path.parent.mkdir(parents=True)
    path.write_text("phases:\n  '2': {plan: complete}\n  bogus: {}\n", encoding="utf-8")

    manifest = store.read()

    assert list(manifest["phases"]) == [2]
    assert phase_numbers(manifest) == [2]


def test_corrupt_manifest_raises(store: ManifestStore, project: Path) -> None:
    path = manifest_path(project)
    path.parent.mkdir(parents=True)
    path.write_text("phases: [unclosed\n", encoding="utf-8")

    with pytest.raises(ManifestError, match="corrupt"):
        store.read()


def test_non_mapping_manifest_raises(store: ManifestStore, project: Path) -> None:
    path = manifest_path(project)
    path.parent.mkdir(parents=True)
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ManifestError):
        store.read()


def test_append_and_typed_writers(store: ManifestStore) -> None:
    store.add_failure(FailureEntry(command="execute", phase=1, error_category="test_failure"))
    store.add_notification(NotificationEntry(type="phase_complete", phase=1))
    store.append("checkpoints", {"tag": "checkpoint/phase-1-x", "phase": 1, "status": "active"})
    store.set_phase_stage(1, plan=PlanStatus.COMPLETE.value)

    manifest = store.read()

    assert manifest["failures"][0]["resolution"] == "pending"
    assert manifest["notifications"][0]["acknowledged"] is False
    assert phase_status(manifest, 1).plan == PlanStatus.COMPLETE
    assert phase_status(manifest, 1).execution == ExecutionStatus.NOT_STARTED
    assert [entry["tag"] for entry in active_checkpoints(manifest)] == ["checkpoint/phase-1-x"]


def test_update_applies_mutator_to_fresh_read(store: ManifestStore) -> None:
    store.merge({"counter": 1})

    result = store.update(lambda m: m.__setitem__("counter", m["counter"] + 1))

    assert result["counter"] == 2
    assert store.read()["counter"] == 2


def test_pending_failures_returns_indices() -> None:
    manifest = {
        "failures": [
            {"command": "execute", "resolution": "auto_fixed"},
            {"command": "validate-implementation", "resolution": "pending"},
            "garbage",
        ]
    }

    assert pending_failures(manifest) == [(1, manifest["failures"][1])]


def test_phase_status_tolerates_unknown_values() -> None:
    manifest = {"phases": {1: {"plan": "weird"}, 2: {"validation": "pass"}}}

    assert phase_status(manifest, 1).plan == PlanStatus.NOT_STARTED
    assert phase_status(manifest, 2).validation == ValidationStatus.PASS
    assert phase_status(manifest, 9).is_complete is False


def test_profile_freshness_window() -> None:
    fresh = {"generated_at": "2026-03-08T00:00:00Z"}
    stale = {"generated_at": "2026-02-01T00:00:00Z"}
    flagged = {"freshness": "stale"}

    assert profile_freshness(fresh, 7, now=NOW) == "fresh"
    assert profile_freshness(stale, 7, now=NOW) == "stale"
    assert profile_freshness(flagged, 7, now=NOW) == "stale"
    assert profile_freshness({}, 7, now=NOW) == "fresh"


def test_refresh_profile_freshness_uses_manifest_window() -> None:
    manifest = {
        "settings": {"profile_freshness_days": 60},
        "profiles": {"stripe": {"generated_at": "2026-02-01T00:00:00Z"}, "bad": "nope"},
    }

    assert freshness_window_days(manifest) == 60
    assert refresh_profile_freshness(manifest, now=NOW) == {"stripe": {"freshness": "fresh"}}
    assert freshness_window_days({"settings": {"profile_freshness_days": "x"}}, 5) == 5


def test_latest_entry_filters_by_phase() -> None:
    manifest = {
        "plans": [
            {"phase": 1, "plan_file": "a.md"},
            {"phase": 2, "plan_file": "b.md"},
            {"phase": 1, "plan_file": "c.md"},
        ]
    }

    assert latest_entry(manifest, "plans", phase=1)["plan_file"] == "c.md"
    assert latest_entry(manifest, "plans")["plan_file"] == "c.md"
    assert latest_entry(manifest, "plans", phase=3) is None
    assert latest_entry(manifest, "missing") is None
